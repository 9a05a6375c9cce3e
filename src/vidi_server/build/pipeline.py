# Vidi Server: Build Pipeline
#
# Compiles a dashboard document into a WASM renderer bundle:
#
#   serialize  document -> <template_dir>/dashboard.json
#   compile    cargo build --release --target wasm32-unknown-unknown
#   bindgen    wasm-bindgen -> <wasm_dir>/<id>/vidi.js + vidi_bg.wasm
#   optimize   wasm-opt -Oz (optional; failure is only logged)
#
# At most one build per dashboard runs at a time (in-flight set) and at
# most ``max_concurrent_builds`` run in total (semaphore). Builds share
# the template crate, so serialize through bindgen runs one build at a
# time; optimization overlaps. Progress is recorded through the store's
# build status state machine.

import asyncio
import json
import logging
import shutil
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from ..config import ServerConfig
from ..core.audit_log import EventSeverity, EventType, get_audit_logger
from ..errors import (
    AlreadyInProgressError,
    BuildFailedError,
    ConflictError,
    NotFoundError,
    ToolchainUnavailableError,
    VidiError,
)
from ..models.dashboard import BuildStatus
from ..storage.dashboard_store import DashboardStore
from .toolchain import StageResult, run_command

logger = logging.getLogger(__name__)

WASM_TARGET = "wasm32-unknown-unknown"
TEMPLATE_PACKAGE = "dashboard-template"
TEMPLATE_ARTIFACT = "dashboard_template.wasm"
OUT_NAME = "vidi"


class BuildPipeline:
    """De-duplicated, concurrency-limited dashboard builds.

    Args:
        store: Where build status is recorded and documents are read.
        config: Paths, tool commands, concurrency and stage timeout.
    """

    def __init__(self, store: DashboardStore, config: Optional[ServerConfig] = None):
        self._store = store
        self._config = config or ServerConfig()
        self.wasm_dir = Path(self._config.wasm_dir)
        self.workspace_dir = Path(self._config.workspace_dir)
        self.template_dir = Path(self._config.template_dir)
        self.stage_timeout = self._config.stage_timeout

        self._semaphore = asyncio.Semaphore(self._config.max_concurrent_builds)
        self._workspace_lock = asyncio.Lock()
        self._in_flight: Set[str] = set()
        self._in_flight_lock = threading.Lock()
        self._tasks: Set[asyncio.Task] = set()
        # Builds whose result was discarded because the record was replaced.
        self._superseded: Set[str] = set()

        # Filled by verify_toolchain(); None until the check has run.
        self.toolchain_status: Optional[Dict[str, bool]] = None

    # ── Artifact paths ──────────────────────────────────────────────

    def artifact_dir(self, dashboard_id: str) -> Path:
        return self.wasm_dir / dashboard_id

    def artifact_path(self, dashboard_id: str) -> Path:
        return self.artifact_dir(dashboard_id) / f"{OUT_NAME}.js"

    def wasm_exists(self, dashboard_id: str) -> bool:
        return self.artifact_path(dashboard_id).exists()

    def is_compiling(self, dashboard_id: str) -> bool:
        with self._in_flight_lock:
            return dashboard_id in self._in_flight

    def compiling_ids(self) -> List[str]:
        with self._in_flight_lock:
            return sorted(self._in_flight)

    # ── In-flight set ───────────────────────────────────────────────

    def _claim(self, dashboard_id: str) -> bool:
        # Membership check and insert under one lock, no await between.
        with self._in_flight_lock:
            if dashboard_id in self._in_flight:
                return False
            self._in_flight.add(dashboard_id)
            return True

    def _release(self, dashboard_id: str):
        with self._in_flight_lock:
            self._in_flight.discard(dashboard_id)

    # ── Entry points ────────────────────────────────────────────────

    async def compile(self, dashboard_id: str, document: Any):
        """Build ``document`` for ``dashboard_id`` and wait for the result.

        Raises:
            AlreadyInProgressError: a build for this dashboard is running.
            BuildFailedError: a required stage failed (status is ``failed``).
            NotFoundError: the dashboard does not exist.
        """
        if not self._claim(dashboard_id):
            raise AlreadyInProgressError(dashboard_id)
        try:
            await self._run_claimed(dashboard_id, document)
        finally:
            self._superseded.discard(dashboard_id)
            self._release(dashboard_id)

    def submit(self, dashboard_id: str) -> bool:
        """Start a background build from the stored document.

        Must be called from the event loop. Returns False without doing
        anything when a build for the dashboard is already in flight.
        """
        if not self._claim(dashboard_id):
            logger.debug("Build for %s already in flight", dashboard_id)
            return False
        try:
            self._reset_to_pending(dashboard_id)
            task = asyncio.get_running_loop().create_task(
                self._build_from_store(dashboard_id),
                name=f"build-{dashboard_id}",
            )
        except BaseException:
            self._release(dashboard_id)
            raise
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def wait_idle(self):
        """Wait until every background build started by submit() is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self):
        """Cancel background builds (their tools are killed)."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── Build execution ─────────────────────────────────────────────

    async def _build_from_store(self, dashboard_id: str):
        try:
            await self._run_claimed(dashboard_id, None)
        except BuildFailedError:
            pass  # recorded as failed and audited in _run_claimed
        except VidiError as exc:
            logger.warning("Build for %s not run: %s", dashboard_id, exc)
        except asyncio.CancelledError:
            logger.info("Build for %s cancelled", dashboard_id)
            raise
        except Exception:
            logger.exception("Unexpected error building %s", dashboard_id)
        finally:
            superseded = dashboard_id in self._superseded
            self._superseded.discard(dashboard_id)
            self._release(dashboard_id)

        # The content changed while we were building; build the new version.
        if superseded:
            logger.info("Dashboard %s replaced during build, rebuilding", dashboard_id)
            self.submit(dashboard_id)

    def _reset_to_pending(self, dashboard_id: str):
        record = self._store.get(dashboard_id)
        if record is None:
            raise NotFoundError(dashboard_id)
        if record.meta.build_status.is_terminal:
            self._store.update_build_status(dashboard_id, BuildStatus.PENDING)

    async def _run_claimed(self, dashboard_id: str, document: Optional[Any]):
        """Run every stage for a claimed dashboard.

        ``document`` None means read it from the store once the build has
        started.
        """
        self._reset_to_pending(dashboard_id)
        audit = get_audit_logger()

        async with self._semaphore:
            self._store.update_build_status(dashboard_id, BuildStatus.BUILDING)
            logger.info("Starting WASM build for dashboard %s", dashboard_id)
            audit.log_event(EventType.BUILD_STARTED, "Build started", dashboard_id=dashboard_id)

            try:
                if document is None:
                    document = self._store.get_document(dashboard_id)
                    if document is None:
                        raise NotFoundError(dashboard_id)
                await self._run_stages(dashboard_id, document)
            except BuildFailedError as exc:
                logger.error("Build failed for %s at %s: %s",
                             dashboard_id, exc.stage, exc.diagnostics)
                audit.log_event(
                    EventType.BUILD_FAILED,
                    f"Build failed at stage {exc.stage}",
                    dashboard_id=dashboard_id,
                    severity=EventSeverity.ERROR,
                    details={"stage": exc.stage, "diagnostics": exc.diagnostics},
                )
                self._finish(dashboard_id, BuildStatus.FAILED, str(exc))
                raise
            except asyncio.CancelledError:
                self._finish(dashboard_id, BuildStatus.FAILED, "Build cancelled")
                raise
            except Exception as exc:
                audit.log_event(
                    EventType.BUILD_FAILED,
                    "Build aborted",
                    dashboard_id=dashboard_id,
                    severity=EventSeverity.ERROR,
                    details={"error": str(exc)},
                )
                self._finish(dashboard_id, BuildStatus.FAILED, f"Build aborted: {exc}")
                raise

            logger.info("WASM build complete for dashboard %s", dashboard_id)
            audit.log_event(EventType.BUILD_SUCCEEDED, "Build succeeded", dashboard_id=dashboard_id)
            self._finish(dashboard_id, BuildStatus.READY)

    def _finish(self, dashboard_id: str, status: BuildStatus, error: Optional[str] = None):
        """Record the terminal status unless the record moved on without us."""
        try:
            self._store.update_build_status(dashboard_id, status, error)
        except NotFoundError:
            logger.info("Dashboard %s deleted during build; result discarded", dashboard_id)
            self.delete_artifact(dashboard_id)
        except ConflictError:
            logger.info("Dashboard %s changed during build; %s result discarded",
                        dashboard_id, status.value)
            self._superseded.add(dashboard_id)

    async def _run_stages(self, dashboard_id: str, document: Any):
        out_dir = self.artifact_dir(dashboard_id)
        # The template crate reads one dashboard.json and cargo writes one
        # target wasm, so serialize through bindgen holds the workspace.
        async with self._workspace_lock:
            await self._build_in_workspace(document, out_dir)

        # optimize
        bg_wasm = out_dir / f"{OUT_NAME}_bg.wasm"
        result = await run_command(
            self._config.command("wasm_opt") + ["-Oz", "-o", str(bg_wasm), str(bg_wasm)],
            timeout=self.stage_timeout,
        )
        if result.ok:
            logger.info("wasm-opt applied for dashboard %s", dashboard_id)
        else:
            logger.warning("wasm-opt skipped for %s: %s", dashboard_id, result.diagnostics())

    async def _build_in_workspace(self, document: Any, out_dir: Path):
        # serialize
        build_input = self.template_dir / "dashboard.json"
        try:
            build_input.parent.mkdir(parents=True, exist_ok=True)
            build_input.write_text(json.dumps(document), encoding="utf-8")
        except (OSError, TypeError, ValueError) as exc:
            raise BuildFailedError("serialize", str(exc)) from exc

        # compile
        await self._required_stage(
            "compile",
            self._config.command("cargo") + [
                "build", "--release", "--target", WASM_TARGET, "-p", TEMPLATE_PACKAGE,
            ],
            cwd=self.workspace_dir,
        )

        # bindgen
        try:
            out_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BuildFailedError("bindgen", str(exc)) from exc
        wasm_input = self.workspace_dir / "target" / WASM_TARGET / "release" / TEMPLATE_ARTIFACT
        await self._required_stage(
            "bindgen",
            self._config.command("wasm_bindgen") + [
                str(wasm_input),
                "--target", "web",
                "--out-dir", str(out_dir),
                "--out-name", OUT_NAME,
                "--no-typescript",
            ],
        )

    async def _required_stage(self, stage: str, argv: List[str], cwd: Optional[Path] = None) -> StageResult:
        logger.debug("Running %s stage: %s", stage, " ".join(argv))
        result = await run_command(argv, cwd=cwd, timeout=self.stage_timeout)
        if not result.ok:
            raise BuildFailedError(stage, result.diagnostics())
        return result

    # ── Maintenance ─────────────────────────────────────────────────

    def delete_artifact(self, dashboard_id: str) -> bool:
        """Remove a dashboard's build output. Failures are logged only."""
        out_dir = self.artifact_dir(dashboard_id)
        if not out_dir.exists():
            return False
        try:
            shutil.rmtree(out_dir)
        except OSError as exc:
            logger.warning("Failed to delete artifact for %s: %s", dashboard_id, exc)
            return False
        logger.debug("Deleted artifact for %s", dashboard_id)
        return True

    async def verify_toolchain(self) -> Dict[str, bool]:
        """Check that the external build tools can be run.

        The wasm32 target and wasm-opt are reported but not required.

        Raises:
            ToolchainUnavailableError: cargo or wasm-bindgen is missing.
        """
        status: Dict[str, bool] = {}

        cargo = await run_command(self._config.command("cargo") + ["--version"], timeout=30)
        status["cargo"] = cargo.ok

        targets = await run_command(
            self._config.command("rustup") + ["target", "list", "--installed"], timeout=30
        )
        status["wasm32_target"] = targets.ok and WASM_TARGET in targets.stdout
        if not status["wasm32_target"]:
            logger.warning(
                "%s target not installed. Run: rustup target add %s", WASM_TARGET, WASM_TARGET
            )

        bindgen = await run_command(
            self._config.command("wasm_bindgen") + ["--version"], timeout=30
        )
        status["wasm_bindgen"] = bindgen.ok

        wasm_opt = await run_command(self._config.command("wasm_opt") + ["--version"], timeout=30)
        status["wasm_opt"] = wasm_opt.ok

        self.toolchain_status = status
        missing = [name for name in ("cargo", "wasm_bindgen") if not status[name]]

        get_audit_logger().log_event(
            EventType.TOOLCHAIN_CHECKED,
            "Toolchain check " + ("failed" if missing else "passed"),
            severity=EventSeverity.WARNING if missing else EventSeverity.INFO,
            details=status,
        )
        if missing:
            raise ToolchainUnavailableError(missing)
        return status
