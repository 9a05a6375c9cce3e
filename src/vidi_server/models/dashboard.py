# Vidi Server: Dashboard Model
#
# Defines DashboardMeta / DashboardRecord, the build status state machine,
# list summaries and the query / partial-update value objects the store
# accepts.  The dashboard document itself is opaque JSON; only the plot
# count is ever read out of it.

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from ..errors import ConflictError

DEFAULT_TTL = 86400  # 24 hours (seconds)

SORT_FIELDS = ("created_at", "updated_at", "last_accessed_at")
SORT_ORDERS = ("asc", "desc")
MAX_PAGE_SIZE = 1000
# Metadata fields a PATCH may reset by sending null.
CLEARABLE_FIELDS = ("xp_name", "user", "tags")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(ts: datetime) -> str:
    """Fixed-width ISO-8601 so stored timestamps sort lexicographically."""
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class BuildStatus(str, Enum):
    """Compilation state of a dashboard's renderer artifact."""

    PENDING = "pending"      # waiting for a build (new or changed content)
    BUILDING = "building"    # toolchain running
    READY = "ready"          # artifact built
    FAILED = "failed"        # last build failed; see build_error

    @property
    def is_terminal(self) -> bool:
        return self in (BuildStatus.READY, BuildStatus.FAILED)

    def can_transition_to(self, target: "BuildStatus") -> bool:
        return target in _BUILD_TRANSITIONS[self]


_BUILD_TRANSITIONS = {
    BuildStatus.PENDING: {BuildStatus.BUILDING},
    BuildStatus.BUILDING: {BuildStatus.READY, BuildStatus.FAILED},
    BuildStatus.READY: {BuildStatus.PENDING},
    BuildStatus.FAILED: {BuildStatus.PENDING},
}


def plot_count(document: Any) -> int:
    """Number of plots in a dashboard document, top level plus tabs."""
    if not isinstance(document, dict):
        return 0
    plots = document.get("plots")
    total = len(plots) if isinstance(plots, list) else 0
    tabs = document.get("tabs")
    if isinstance(tabs, list):
        for tab in tabs:
            if isinstance(tab, dict) and isinstance(tab.get("plots"), list):
                total += len(tab["plots"])
    return total


@dataclass
class DashboardMeta:
    """Identity and governance record for one dashboard.

    ``permanent`` and ``ttl`` are kept mutually exclusive: a permanent
    dashboard has its ttl cleared, a temporary one must carry a positive
    ttl.  Unset timestamps all default to the same instant.
    """

    id: str = field(default_factory=lambda: str(uuid4()))
    xp_name: Optional[str] = None
    user: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    permanent: bool = False
    ttl: Optional[int] = DEFAULT_TTL
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None
    build_status: BuildStatus = BuildStatus.PENDING
    build_error: Optional[str] = None

    def __post_init__(self):
        now = utcnow()
        self.created_at = self.created_at or now
        self.updated_at = self.updated_at or self.created_at
        self.last_accessed_at = self.last_accessed_at or self.created_at
        self.build_status = BuildStatus(self.build_status)
        self.tags = list(self.tags)

        if self.permanent:
            self.ttl = None
        if not self.permanent:
            if self.ttl is None:
                raise ConflictError("A temporary dashboard needs a ttl")
            if self.ttl <= 0:
                raise ConflictError("ttl must be a positive number of seconds")
        if self.build_status != BuildStatus.FAILED:
            self.build_error = None

    def expires_at(self) -> Optional[datetime]:
        if self.permanent or self.ttl is None:
            return None
        return self.last_accessed_at + timedelta(seconds=self.ttl)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        expiry = self.expires_at()
        if expiry is None:
            return False
        return (now or utcnow()) > expiry

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "xp_name": self.xp_name,
            "user": self.user,
            "tags": list(self.tags),
            "permanent": self.permanent,
            "ttl": self.ttl,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "last_accessed_at": format_timestamp(self.last_accessed_at),
            "build_status": self.build_status.value,
            "build_error": self.build_error,
        }


@dataclass
class DashboardRecord:
    """Full dashboard: metadata plus the opaque visualization document."""

    meta: DashboardMeta
    document: Any

    @property
    def id(self) -> str:
        return self.meta.id

    def to_dict(self) -> Dict[str, Any]:
        d = self.meta.to_dict()
        d["document"] = self.document
        return d


@dataclass
class DashboardSummary:
    """List view of a dashboard; never carries the document."""

    id: str
    xp_name: Optional[str]
    user: Optional[str]
    tags: List[str]
    permanent: bool
    ttl: Optional[int]
    created_at: datetime
    updated_at: datetime
    last_accessed_at: datetime
    plot_count: int
    build_status: BuildStatus

    @classmethod
    def from_record(cls, record: DashboardRecord) -> "DashboardSummary":
        meta = record.meta
        return cls(
            id=meta.id,
            xp_name=meta.xp_name,
            user=meta.user,
            tags=list(meta.tags),
            permanent=meta.permanent,
            ttl=meta.ttl,
            created_at=meta.created_at,
            updated_at=meta.updated_at,
            last_accessed_at=meta.last_accessed_at,
            plot_count=plot_count(record.document),
            build_status=meta.build_status,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "xp_name": self.xp_name,
            "user": self.user,
            "tags": list(self.tags),
            "permanent": self.permanent,
            "ttl": self.ttl,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "last_accessed_at": format_timestamp(self.last_accessed_at),
            "plot_count": self.plot_count,
            "build_status": self.build_status.value,
        }


@dataclass
class ListQuery:
    """Filter, sort and pagination for listing dashboards.

    Filters are ANDed; a filter left as ``None`` matches everything.
    ``tag`` matches dashboards whose tag list contains it exactly.
    """

    xp_name: Optional[str] = None
    user: Optional[str] = None
    tag: Optional[str] = None
    permanent: Optional[bool] = None
    sort: str = "updated_at"
    order: str = "desc"
    limit: int = 50
    offset: int = 0

    def __post_init__(self):
        if self.sort not in SORT_FIELDS:
            raise ConflictError(
                f"Invalid sort field '{self.sort}' (expected one of {', '.join(SORT_FIELDS)})"
            )
        self.order = self.order.lower()
        if self.order not in SORT_ORDERS:
            raise ConflictError(f"Invalid sort order '{self.order}' (expected asc or desc)")
        if not 1 <= self.limit <= MAX_PAGE_SIZE:
            raise ConflictError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if self.offset < 0:
            raise ConflictError("offset must not be negative")


@dataclass
class MetaUpdate:
    """Partial metadata update: fields left as ``None`` are preserved.

    Names in ``clear`` (xp_name, user, tags) are reset to empty instead.

    Giving a ttl makes the dashboard temporary; ``permanent=True`` clears
    the ttl.  Turning a permanent dashboard temporary without a ttl is
    rejected.
    """

    xp_name: Optional[str] = None
    user: Optional[str] = None
    tags: Optional[List[str]] = None
    permanent: Optional[bool] = None
    ttl: Optional[int] = None
    clear: Tuple[str, ...] = ()

    def apply_to(self, meta: DashboardMeta, now: Optional[datetime] = None) -> DashboardMeta:
        if self.permanent is True and self.ttl is not None:
            raise ConflictError("A permanent dashboard cannot also have a ttl")

        if self.permanent is True:
            permanent, ttl = True, None
        elif self.ttl is not None:
            permanent, ttl = False, self.ttl
        elif self.permanent is False:
            permanent, ttl = False, meta.ttl
            if ttl is None:
                raise ConflictError("ttl is required when making a dashboard temporary")
        else:
            permanent, ttl = meta.permanent, meta.ttl

        return replace(
            meta,
            xp_name=self._resolve("xp_name", meta.xp_name),
            user=self._resolve("user", meta.user),
            tags=list(self._resolve("tags", meta.tags) or []),
            permanent=permanent,
            ttl=ttl,
            updated_at=now or utcnow(),
        )

    def _resolve(self, name: str, current: Any) -> Any:
        if name in self.clear:
            return None
        value = getattr(self, name)
        return value if value is not None else current
