# Vidi Server: Configuration
#
# Settings are layered: dataclass defaults, then VIDI_* environment
# variables (a .env file in the working directory is loaded first), then
# command-line flags parsed in __main__.

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from dotenv import load_dotenv

ENV_PREFIX = "VIDI_"

DEFAULT_TTL = 86400          # 24 hours (seconds)
CLEANUP_INTERVAL = 300       # 5 minutes (seconds)
STAGE_TIMEOUT = 600          # per toolchain stage (seconds)


@dataclass
class ServerConfig:
    """Runtime configuration for the dashboard server."""

    host: str = "0.0.0.0"
    port: int = 8080
    db_path: Path = Path("dashboards.db")
    wasm_dir: Path = Path("wasm")
    workspace_dir: Path = Path(".")
    template_dir: Optional[Path] = None
    static_dir: Path = Path("vidi-server/static")
    log_dir: Path = Path("logs")
    log_level: str = "info"
    tls_cert: Optional[Path] = None
    tls_key: Optional[Path] = None

    default_ttl: int = DEFAULT_TTL
    cleanup_interval: int = CLEANUP_INTERVAL
    max_concurrent_builds: int = 1
    stage_timeout: float = STAGE_TIMEOUT

    # Toolchain executables. Each may carry leading arguments, e.g.
    # "python3 fake_cargo.py", and is split on whitespace.
    cargo: str = "cargo"
    rustup: str = "rustup"
    wasm_bindgen: str = "wasm-bindgen"
    wasm_opt: str = "wasm-opt"

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if f.type in (Path, Optional[Path]) and isinstance(value, str):
                setattr(self, f.name, Path(value))
        if self.template_dir is None:
            self.template_dir = (
                Path(self.workspace_dir) / "vidi-server" / "dashboard-template"
            )
        if self.default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        if self.cleanup_interval <= 0:
            raise ValueError("cleanup_interval must be positive")
        if self.max_concurrent_builds < 1:
            raise ValueError("max_concurrent_builds must be at least 1")

    @property
    def tls_enabled(self) -> bool:
        return self.tls_cert is not None and self.tls_key is not None

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        dotenv: bool = True,
        **overrides,
    ) -> "ServerConfig":
        """Build a config from VIDI_* variables plus explicit overrides.

        ``overrides`` whose value is ``None`` are ignored so argparse
        namespaces can be passed through unchanged.
        """
        if env is None:
            if dotenv:
                load_dotenv()
            env = os.environ

        values: Dict[str, object] = {}
        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            values[f.name] = _coerce(f.type, raw)

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    # -- Toolchain helpers ------------------------------------------------

    def command(self, name: str) -> List[str]:
        """Return the argv prefix for a configured tool."""
        return str(getattr(self, name)).split()


def _coerce(type_, raw: str):
    if type_ is int:
        return int(raw)
    if type_ is float:
        return float(raw)
    if type_ is bool:
        return raw.lower() in ("1", "true", "yes", "on")
    if type_ in (Path, Optional[Path]):
        return Path(raw)
    return raw
