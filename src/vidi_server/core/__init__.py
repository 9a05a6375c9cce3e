# Vidi Server: Core Module - Shared Utilities
#
# Core module provides functionality shared across the server:
# - SQLite connection helper (WAL mode, explicit transactions)
# - Dashboard audit logging

from .audit_log import (
    AuditLogger,
    EventSeverity,
    EventType,
    get_audit_logger,
    set_audit_logger,
)
from .db import connect, immediate_transaction

__all__ = [
    # Audit Logging
    "AuditLogger",
    "EventType",
    "EventSeverity",
    "get_audit_logger",
    "set_audit_logger",
    # Database
    "connect",
    "immediate_transaction",
]
