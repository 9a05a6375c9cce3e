"""
Shared pytest fixtures for the Vidi server test suite.

Autouse fixtures isolate every test from live data:
  - Audit logger -> temp directory (no events in ./logs)

The ``fake_toolchain`` fixture writes small Python scripts that stand in
for cargo, rustup, wasm-bindgen and wasm-opt. They append each call to a
log file and produce the files the real tools would. The fake cargo
copies the template's dashboard.json into its wasm output and the fake
wasm-bindgen carries that into the bundle, so a test can tell which
document an artifact was built from.
"""

import sys
from pathlib import Path
from typing import List, Optional

import pytest

from vidi_server.config import ServerConfig
from vidi_server.core import audit_log as audit_mod
from vidi_server.models.dashboard import DashboardMeta, DashboardRecord
from vidi_server.storage.dashboard_store import DashboardStore
from vidi_server.stream.hub import BroadcastHub


@pytest.fixture(autouse=True)
def _isolate_audit_logs(tmp_path):
    """Point the global AuditLogger at a temp directory for every test."""
    old_logger = audit_mod._audit_logger
    logger = audit_mod.AuditLogger(log_dir=tmp_path / "audit_logs")
    audit_mod.set_audit_logger(logger)

    yield logger

    logger.close()
    audit_mod._audit_logger = old_logger


# ── Store / hub ─────────────────────────────────────────────────────

SAMPLE_DOCUMENT = {
    "title": "Training run",
    "plots": [
        {"id": 1, "title": "loss", "layers": [{"points": [[0.0, 1.0], [1.0, 0.5]]}]},
        {"id": 2, "title": "accuracy", "layers": []},
    ],
}


@pytest.fixture
def sample_document():
    return {
        "title": SAMPLE_DOCUMENT["title"],
        "plots": [dict(p) for p in SAMPLE_DOCUMENT["plots"]],
    }


@pytest.fixture
def store(tmp_path):
    return DashboardStore(tmp_path / "dashboards.db")


@pytest.fixture
def hub():
    return BroadcastHub()


@pytest.fixture
def make_record(sample_document):
    """Factory for records; keyword arguments go to DashboardMeta."""

    def _make(document=None, **meta_fields) -> DashboardRecord:
        return DashboardRecord(
            meta=DashboardMeta(**meta_fields),
            document=sample_document if document is None else document,
        )

    return _make


# ── Fake toolchain ──────────────────────────────────────────────────

_TOOL_SCRIPT = '''\
import pathlib
import sys
import time

TOOL = {tool!r}
MODE = {mode!r}
DELAY = {delay!r}
LOG = {log!r}

args = sys.argv[1:]
with open(LOG, "a", encoding="utf-8") as fh:
    fh.write(TOOL + " " + " ".join(args) + "\\n")

if args[:1] == ["--version"]:
    print(TOOL + " 0.0.0-fake")
    sys.exit(0)
if TOOL == "rustup":
    print("wasm32-unknown-unknown")
    sys.exit(0)

if DELAY:
    time.sleep(DELAY)
if MODE == "fail":
    sys.stderr.write(TOOL + ": simulated failure\\n")
    sys.exit(1)

if TOOL == "cargo":
    out = pathlib.Path("target/wasm32-unknown-unknown/release")
    out.mkdir(parents=True, exist_ok=True)
    template_input = pathlib.Path("vidi-server/dashboard-template/dashboard.json")
    data = template_input.read_bytes() if template_input.exists() else b"\\0asm"
    (out / "dashboard_template.wasm").write_bytes(data)
elif TOOL == "wasm-bindgen":
    out_dir = pathlib.Path(args[args.index("--out-dir") + 1])
    name = args[args.index("--out-name") + 1]
    out_dir.mkdir(parents=True, exist_ok=True)
    (out_dir / (name + ".js")).write_text("export default function init() {{}}\\n")
    wasm_input = pathlib.Path(args[0])
    data = wasm_input.read_bytes() if wasm_input.exists() else b"\\0asm"
    (out_dir / (name + "_bg.wasm")).write_bytes(data)
'''


class FakeToolchain:
    """Builds ServerConfigs whose tool commands run fake scripts."""

    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self.log = root / "invocations.log"
        self._count = 0

    def command(self, tool: str, mode: str = "ok", delay: float = 0.0) -> str:
        if mode == "missing":
            return str(self.root / f"no-such-{tool}")
        self._count += 1
        script = self.root / f"fake_{tool.replace('-', '_')}_{self._count}.py"
        script.write_text(
            _TOOL_SCRIPT.format(tool=tool, mode=mode, delay=delay, log=str(self.log)),
            encoding="utf-8",
        )
        return f"{sys.executable} {script}"

    def config(
        self,
        cargo: str = "ok",
        bindgen: str = "ok",
        wasm_opt: str = "ok",
        cargo_delay: float = 0.0,
        **overrides,
    ) -> ServerConfig:
        values = dict(
            db_path=self.root / "dashboards.db",
            wasm_dir=self.root / "wasm",
            workspace_dir=self.root / "workspace",
            log_dir=self.root / "logs",
            static_dir=self.root / "static",
            stage_timeout=30.0,
            cargo=self.command("cargo", cargo, cargo_delay),
            rustup=self.command("rustup"),
            wasm_bindgen=self.command("wasm-bindgen", bindgen),
            wasm_opt=self.command("wasm-opt", wasm_opt),
        )
        values.update(overrides)
        (self.root / "workspace").mkdir(parents=True, exist_ok=True)
        return ServerConfig(**values)

    def invocations(self, tool: Optional[str] = None) -> List[str]:
        if not self.log.exists():
            return []
        lines = self.log.read_text(encoding="utf-8").splitlines()
        if tool is None:
            return lines
        return [line for line in lines if line.split(" ", 1)[0] == tool]

    def builds(self) -> List[str]:
        """cargo build invocations (one per build attempt)."""
        return [line for line in self.invocations("cargo") if line.startswith("cargo build")]


@pytest.fixture
def fake_toolchain(tmp_path):
    return FakeToolchain(tmp_path / "toolchain")
