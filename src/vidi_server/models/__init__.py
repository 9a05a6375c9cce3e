"""Dashboard and streaming data models."""

from .dashboard import (
    DEFAULT_TTL,
    BuildStatus,
    DashboardMeta,
    DashboardRecord,
    DashboardSummary,
    ListQuery,
    MetaUpdate,
    plot_count,
    utcnow,
)
from .messages import (
    Ack,
    AppendPoints,
    ClientMessage,
    Connected,
    ErrorNotice,
    GetState,
    RefreshAll,
    ReplaceTrace,
    ServerMessage,
    SyncRequest,
    UpdateCommand,
    UpdatePlot,
    parse_client_message,
    parse_update_command,
)

__all__ = [
    "DEFAULT_TTL",
    "BuildStatus",
    "DashboardMeta",
    "DashboardRecord",
    "DashboardSummary",
    "ListQuery",
    "MetaUpdate",
    "plot_count",
    "utcnow",
    "Ack",
    "AppendPoints",
    "ClientMessage",
    "Connected",
    "ErrorNotice",
    "GetState",
    "RefreshAll",
    "ReplaceTrace",
    "ServerMessage",
    "SyncRequest",
    "UpdateCommand",
    "UpdatePlot",
    "parse_client_message",
    "parse_update_command",
]
