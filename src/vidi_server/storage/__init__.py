"""Dashboard persistence."""

from .dashboard_store import DashboardStore

__all__ = ["DashboardStore"]
