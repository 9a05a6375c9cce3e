# Vidi Server: Main Package
#
# Stores dashboard documents with TTL-based expiry, streams live updates
# to viewers over WebSocket and builds a WASM renderer per dashboard.

__version__ = "0.1.0"
__author__ = "Vidi Team"
__description__ = "Dashboard storage, streaming and WASM build server"

from .config import ServerConfig
from .errors import (
    AlreadyInProgressError,
    BuildFailedError,
    ConflictError,
    NotFoundError,
    StorageError,
    ToolchainUnavailableError,
    VidiError,
)

__all__ = [
    "__version__",
    "ServerConfig",
    "VidiError",
    "NotFoundError",
    "ConflictError",
    "AlreadyInProgressError",
    "ToolchainUnavailableError",
    "BuildFailedError",
    "StorageError",
]
