# Vidi Server: Lifecycle Sweeper
#
# Background asyncio task that deletes expired temporary dashboards.
# Each pass snapshots the dashboards that currently have viewers, then
# asks the store to purge everything expired outside that snapshot.
# Deleted dashboards also lose their broadcast channel and build output.
#
# A failing pass is logged and the loop carries on at the next interval.

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from ..build.pipeline import BuildPipeline
from ..core.audit_log import EventType, get_audit_logger
from ..models.dashboard import utcnow
from ..storage.dashboard_store import DashboardStore
from ..stream.hub import BroadcastHub

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 300  # 5 minutes


class LifecycleSweeper:
    """Periodic TTL enforcement.

    Args:
        store: Dashboard store to purge.
        hub: Source of the active-viewer exclusion set.
        pipeline: Used to remove build output of deleted dashboards.
            Optional so the sweeper can run without a build setup.
        interval: Seconds between passes.
        initial_delay: Seconds before the first pass.
    """

    def __init__(
        self,
        store: DashboardStore,
        hub: BroadcastHub,
        pipeline: Optional[BuildPipeline] = None,
        interval: int = DEFAULT_INTERVAL,
        initial_delay: int = 0,
    ):
        self._store = store
        self._hub = hub
        self._pipeline = pipeline
        self._interval = interval
        self._initial_delay = initial_delay

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._last_run: Optional[datetime] = None
        self._run_count = 0
        self._total_deleted = 0

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self):
        """Start the sweep loop as a background task."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info(
            "Lifecycle sweeper started (interval=%ds, initial_delay=%ds)",
            self._interval,
            self._initial_delay,
        )

    async def stop(self):
        """Stop the sweep loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Lifecycle sweeper stopped")

    @property
    def running(self) -> bool:
        return self._running

    @property
    def last_run(self) -> Optional[datetime]:
        return self._last_run

    @property
    def run_count(self) -> int:
        return self._run_count

    @property
    def total_deleted(self) -> int:
        return self._total_deleted

    # ── Sweep Loop ───────────────────────────────────────────────────

    async def _sweep_loop(self):
        if self._initial_delay > 0:
            await asyncio.sleep(self._initial_delay)

        while self._running:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Dashboard cleanup pass failed")
            await asyncio.sleep(self._interval)

    async def run_once(self, now: Optional[datetime] = None) -> List[str]:
        """Run a single pass immediately. Returns the deleted ids."""
        active = self._hub.active_dashboard_ids()
        deleted = self._store.purge_expired(active, now=now)

        self._last_run = utcnow()
        self._run_count += 1
        self._total_deleted += len(deleted)

        if not deleted:
            logger.debug("Cleanup pass: nothing expired (%d active excluded)", len(active))
            return deleted

        audit = get_audit_logger()
        for dashboard_id in deleted:
            self._hub.remove_dashboard(dashboard_id)
            if self._pipeline is not None:
                self._pipeline.delete_artifact(dashboard_id)
            audit.log_event(
                EventType.DASHBOARD_EXPIRED,
                "Dashboard expired and was deleted",
                dashboard_id=dashboard_id,
            )
        logger.info("Cleaned up %d expired dashboards", len(deleted))
        return deleted
