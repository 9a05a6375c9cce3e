# Vidi Server: Service Container
#
# Route modules reach the store, hub, pipeline and sweeper through the
# module-level ``services`` object instead of importing singletons, so
# tests can configure it against a temporary database and a fake
# toolchain before the app starts.

import logging
from datetime import datetime
from typing import Optional

from fastapi.staticfiles import StaticFiles

from ..build.pipeline import BuildPipeline
from ..config import ServerConfig
from ..core.audit_log import AuditLogger, set_audit_logger
from ..lifecycle.sweeper import LifecycleSweeper
from ..storage.dashboard_store import DashboardStore
from ..stream.hub import BroadcastHub

logger = logging.getLogger(__name__)


class AppServices:
    """Holds the running server's components."""

    def __init__(self):
        self.config: Optional[ServerConfig] = None
        self.store: Optional[DashboardStore] = None
        self.hub: Optional[BroadcastHub] = None
        self.pipeline: Optional[BuildPipeline] = None
        self.sweeper: Optional[LifecycleSweeper] = None
        self.static_files: Optional[StaticFiles] = None
        self.started_at: Optional[datetime] = None

    @property
    def configured(self) -> bool:
        return self.store is not None

    def configure(self, config: ServerConfig) -> "AppServices":
        """Build every component from ``config``."""
        self.config = config
        set_audit_logger(AuditLogger(config.log_dir))
        self.store = DashboardStore(config.db_path)
        self.hub = BroadcastHub()
        self.pipeline = BuildPipeline(self.store, config)
        self.sweeper = LifecycleSweeper(
            self.store,
            self.hub,
            self.pipeline,
            interval=config.cleanup_interval,
            initial_delay=config.cleanup_interval,
        )
        self.static_files = StaticFiles(directory=config.static_dir, check_dir=False)
        logger.info("Services configured (db=%s, wasm_dir=%s)", config.db_path, config.wasm_dir)
        return self

    def reset(self):
        """Drop every component (tests reconfigure between cases)."""
        self.config = None
        self.store = None
        self.hub = None
        self.pipeline = None
        self.sweeper = None
        self.static_files = None
        self.started_at = None


services = AppServices()
