# Vidi Server: Dashboard Audit Log
#
# Append-only, structured record of dashboard lifecycle events: creation,
# replacement, metadata edits, deletion, TTL expiry and build transitions.
# Entries are JSON lines (structlog JSONRenderer) in a daily file under
# log_dir, so an operator can answer "what happened to dashboard X".

import json
import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog


class EventType(str, Enum):
    """Kinds of dashboard lifecycle events."""

    DASHBOARD_CREATED = "dashboard.created"
    DASHBOARD_REPLACED = "dashboard.replaced"
    DASHBOARD_META_UPDATED = "dashboard.meta_updated"
    DASHBOARD_DELETED = "dashboard.deleted"
    DASHBOARD_EXPIRED = "dashboard.expired"

    BUILD_STARTED = "build.started"
    BUILD_SUCCEEDED = "build.succeeded"
    BUILD_FAILED = "build.failed"

    TOOLCHAIN_CHECKED = "toolchain.checked"
    SYSTEM_START = "system.start"
    SYSTEM_STOP = "system.stop"


class EventSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class AuditLogger:
    """
    Append-only audit logger for dashboard lifecycle events.

    Each instance owns a dedicated stdlib logger and file handler, so
    several instances (e.g. one per test) never write into each other's
    files.
    """

    def __init__(self, log_dir: Optional[Path] = None):
        """
        Args:
            log_dir: Directory for audit logs (default: ./logs)
        """
        self.log_dir = Path(log_dir or "logs")
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.log_file = self.log_dir / f"audit_{datetime.now().strftime('%Y-%m-%d')}.log"

        self._stdlib_logger = logging.getLogger(f"vidi_server.audit.{uuid4().hex[:8]}")
        self._stdlib_logger.setLevel(logging.INFO)
        self._stdlib_logger.propagate = False

        self._handler = logging.FileHandler(self.log_file, mode="a", encoding="utf-8")
        self._handler.setLevel(logging.INFO)
        self._handler.setFormatter(logging.Formatter("%(message)s"))  # structlog renders
        self._stdlib_logger.addHandler(self._handler)

        self.logger = structlog.wrap_logger(
            self._stdlib_logger,
            processors=[
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso", utc=True),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
        )

    def log_event(
        self,
        event_type: EventType,
        message: str,
        dashboard_id: Optional[str] = None,
        severity: EventSeverity = EventSeverity.INFO,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Append one event.

        Returns:
            str: Event ID (UUID) for reference
        """
        event_id = str(uuid4())
        event_data = {
            "event_id": event_id,
            "event_type": event_type.value,
            "severity": severity.value,
            "message": message,
            "dashboard_id": dashboard_id,
            "details": details or {},
        }

        if severity == EventSeverity.ERROR:
            self.logger.error("dashboard_event", **event_data)
        elif severity == EventSeverity.WARNING:
            self.logger.warning("dashboard_event", **event_data)
        else:
            self.logger.info("dashboard_event", **event_data)

        return event_id

    def query_events(
        self,
        dashboard_id: Optional[str] = None,
        event_types: Optional[List[EventType]] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Read back today's events, newest last."""
        self._handler.flush()
        if not self.log_file.exists():
            return []

        wanted = {t.value for t in event_types} if event_types else None
        events = []
        with open(self.log_file, encoding="utf-8") as fh:
            for line in fh:
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if dashboard_id and entry.get("dashboard_id") != dashboard_id:
                    continue
                if wanted and entry.get("event_type") not in wanted:
                    continue
                events.append(entry)
        return events[-limit:]

    def close(self):
        self._stdlib_logger.removeHandler(self._handler)
        self._handler.close()


# Global logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get global audit logger (singleton pattern)."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def set_audit_logger(audit_logger: Optional[AuditLogger]):
    global _audit_logger
    _audit_logger = audit_logger
