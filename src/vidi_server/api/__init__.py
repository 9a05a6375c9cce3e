"""HTTP and WebSocket interface."""

from .services import AppServices, services

__all__ = ["AppServices", "services"]
