"""
Vidi Server Exception Classes

Every error the store, broadcast hub and build pipeline raise derives from
``VidiError``.  The API layer maps each class to an HTTP status through
``http_status``; nothing else in the package needs to know about HTTP.
"""

from typing import Optional


class VidiError(Exception):
    """Base exception for dashboard server operations"""

    http_status = 500


class NotFoundError(VidiError):
    """Raised when a referenced dashboard does not exist"""

    http_status = 404

    def __init__(self, dashboard_id: str, message: Optional[str] = None):
        self.dashboard_id = dashboard_id
        super().__init__(message or f"Dashboard not found: {dashboard_id}")


class ConflictError(VidiError):
    """Raised on an invariant violation or malformed input"""

    http_status = 400


class AlreadyInProgressError(VidiError):
    """Raised when a build is requested for a dashboard already building"""

    # Reported as accepted: the build the caller asked for is running.
    http_status = 202

    def __init__(self, dashboard_id: str):
        self.dashboard_id = dashboard_id
        super().__init__(f"Dashboard {dashboard_id} is already being compiled")


class ToolchainUnavailableError(VidiError):
    """Raised when required external build tools cannot be found"""

    def __init__(self, missing):
        self.missing = list(missing)
        super().__init__(
            "Build toolchain unavailable: missing " + ", ".join(self.missing)
        )


class BuildFailedError(VidiError):
    """Raised when a required build stage fails

    Carries the stage name and the captured diagnostic text.  A build
    failure never affects the dashboard record beyond its build status.
    """

    def __init__(self, stage: str, diagnostics: str):
        self.stage = stage
        self.diagnostics = diagnostics
        super().__init__(f"Build stage '{stage}' failed: {diagnostics}")


class StorageError(VidiError):
    """Raised when the underlying database fails"""
    pass
