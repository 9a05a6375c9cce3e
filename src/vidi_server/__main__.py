# Vidi Server: Main Entry Point
#
# Parses command-line flags over the VIDI_* environment and runs the
# API server under uvicorn.

import argparse
import logging

from . import __version__
from .config import ServerConfig


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vidi-server",
        description="Vidi dashboard server: storage, live updates and WASM builds",
        epilog="Every flag can also be set with a VIDI_<NAME> environment variable.",
    )
    parser.add_argument("--host", help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Listen port (default: 8080)")
    parser.add_argument("--db-path", dest="db_path", help="SQLite database file")
    parser.add_argument("--wasm-dir", dest="wasm_dir", help="Output directory for compiled renderers")
    parser.add_argument("--workspace-dir", dest="workspace_dir", help="Cargo workspace root")
    parser.add_argument("--template-dir", dest="template_dir", help="Dashboard template crate")
    parser.add_argument("--static-dir", dest="static_dir", help="Directory with the portal and viewer pages")
    parser.add_argument("--log-dir", dest="log_dir", help="Directory for audit logs")
    parser.add_argument(
        "--log-level",
        dest="log_level",
        choices=["critical", "error", "warning", "info", "debug"],
        help="Log level (default: info)",
    )
    parser.add_argument("--default-ttl", dest="default_ttl", type=int,
                        help="TTL in seconds for new temporary dashboards (default: 86400)")
    parser.add_argument("--cleanup-interval", dest="cleanup_interval", type=int,
                        help="Seconds between expiry sweeps (default: 300)")
    parser.add_argument("--max-concurrent-builds", dest="max_concurrent_builds", type=int,
                        help="Builds allowed to run at once (default: 1)")
    parser.add_argument("--stage-timeout", dest="stage_timeout", type=float,
                        help="Seconds before a toolchain stage is killed (default: 600)")
    parser.add_argument("--tls-cert", dest="tls_cert", help="TLS certificate (PEM)")
    parser.add_argument("--tls-key", dest="tls_key", help="TLS private key (PEM)")
    parser.add_argument("--version", action="version", version=f"vidi-server {__version__}")
    return parser


def main(argv=None):
    """Main entry point for the Vidi server."""
    args = build_parser().parse_args(argv)
    config = ServerConfig.from_env(**vars(args))

    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if (config.tls_cert is None) != (config.tls_key is None):
        raise SystemExit("--tls-cert and --tls-key must be given together")

    from .api.main import start_api_server
    start_api_server(config)


if __name__ == "__main__":
    main()
