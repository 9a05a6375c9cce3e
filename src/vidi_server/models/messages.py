# Vidi Server: Streaming Message Model
#
# Update commands (what a producer pushes), server messages (what a viewer
# receives, each stamped with a sequence number) and client messages
# (what a viewer may send back).  Everything is a closed set of frozen
# dataclasses; JSON only appears in parse_*() and to_dict().

import json
import math
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, List, Sequence, Tuple, Union

from ..errors import ConflictError

Point = Tuple[float, ...]


def _parse_points(raw: Any, dims: Sequence[int]) -> Tuple[Point, ...]:
    if not isinstance(raw, list):
        raise ConflictError("points must be a list of coordinate lists")
    points = []
    width = None
    for item in raw:
        if not isinstance(item, (list, tuple)) or len(item) not in dims:
            raise ConflictError(
                f"each point must have {' or '.join(str(d) for d in dims)} coordinates"
            )
        if width is not None and len(item) != width:
            raise ConflictError("points mix 2D and 3D coordinates")
        width = len(item)
        if not all(_is_coordinate(v) for v in item):
            raise ConflictError("point coordinates must be finite numbers")
        points.append(tuple(float(v) for v in item))
    return tuple(points)


def _is_coordinate(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _flatten(points: Sequence[Point]) -> List[float]:
    return [v for point in points for v in point]


def _require_int(data: Dict[str, Any], key: str) -> int:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConflictError(f"'{key}' must be a non-negative integer")
    return value


# ── Update commands ─────────────────────────────────────────────────


@dataclass(frozen=True)
class AppendPoints:
    """Append points to one layer (data series) of a plot."""

    plot_id: int
    layer_idx: int
    points: Tuple[Point, ...]

    wire_type: ClassVar[str] = "append_points"

    def wire_fields(self) -> Dict[str, Any]:
        return {
            "plot_id": self.plot_id,
            "layer_idx": self.layer_idx,
            "points": _flatten(self.points),
        }


@dataclass(frozen=True)
class ReplaceTrace:
    """Replace every point of one layer of a plot."""

    plot_id: int
    layer_idx: int
    points: Tuple[Point, ...]

    wire_type: ClassVar[str] = "replace_trace"

    def wire_fields(self) -> Dict[str, Any]:
        return {
            "plot_id": self.plot_id,
            "layer_idx": self.layer_idx,
            "points": _flatten(self.points),
        }


@dataclass(frozen=True)
class UpdatePlot:
    """Replace an entire plot."""

    plot_id: int
    plot: Any

    wire_type: ClassVar[str] = "update_plot"

    def wire_fields(self) -> Dict[str, Any]:
        return {"plot_id": self.plot_id, "plot": self.plot}


@dataclass(frozen=True)
class RefreshAll:
    """Replace the whole dashboard document."""

    dashboard: Any

    wire_type: ClassVar[str] = "refresh_all"

    def wire_fields(self) -> Dict[str, Any]:
        return {"dashboard": self.dashboard}


UpdateCommand = Union[AppendPoints, ReplaceTrace, UpdatePlot, RefreshAll]

# Accepted command "type" values and the point dimensions each allows.
_SERIES_COMMANDS = {
    "append_points": (AppendPoints, (2, 3)),
    "append_points_2d": (AppendPoints, (2,)),
    "append_points_3d": (AppendPoints, (3,)),
    "replace_trace": (ReplaceTrace, (2, 3)),
    "replace_trace_2d": (ReplaceTrace, (2,)),
    "replace_trace_3d": (ReplaceTrace, (3,)),
}


def parse_update_command(data: Any) -> UpdateCommand:
    """Build an UpdateCommand from its JSON form.

    Raises:
        ConflictError: unknown ``type`` or malformed fields.
    """
    if not isinstance(data, dict):
        raise ConflictError("update command must be a JSON object")
    kind = data.get("type")

    if kind in _SERIES_COMMANDS:
        cls, dims = _SERIES_COMMANDS[kind]
        return cls(
            plot_id=_require_int(data, "plot_id"),
            layer_idx=_require_int(data, "layer_idx"),
            points=_parse_points(data.get("points"), dims),
        )
    if kind == "update_plot":
        if "plot" not in data:
            raise ConflictError("update_plot requires 'plot'")
        return UpdatePlot(plot_id=_require_int(data, "plot_id"), plot=data["plot"])
    if kind == "refresh_all":
        if "dashboard" not in data:
            raise ConflictError("refresh_all requires 'dashboard'")
        return RefreshAll(dashboard=data["dashboard"])

    raise ConflictError(f"Unknown update command type: {kind!r}")


# ── Server messages ─────────────────────────────────────────────────


@dataclass(frozen=True)
class Connected:
    dashboard_id: str

    wire_type: ClassVar[str] = "connected"

    def wire_fields(self) -> Dict[str, Any]:
        return {"dashboard_id": self.dashboard_id}


@dataclass(frozen=True)
class ErrorNotice:
    message: str

    wire_type: ClassVar[str] = "error"

    def wire_fields(self) -> Dict[str, Any]:
        return {"message": self.message}


@dataclass(frozen=True)
class ServerMessage:
    """A payload stamped with its per-dashboard sequence number."""

    seq: int
    payload: Union[AppendPoints, ReplaceTrace, UpdatePlot, RefreshAll, Connected, ErrorNotice]

    @property
    def type(self) -> str:
        return self.payload.wire_type

    def to_dict(self) -> Dict[str, Any]:
        d = {"type": self.payload.wire_type, "seq": self.seq}
        d.update(self.payload.wire_fields())
        return d


# ── Client messages ─────────────────────────────────────────────────


@dataclass(frozen=True)
class SyncRequest:
    """Viewer asks for a resync after reconnecting."""

    last_seq: int


@dataclass(frozen=True)
class Ack:
    """Viewer acknowledges a sequence number (informational only)."""

    seq: int


@dataclass(frozen=True)
class GetState:
    """Viewer asks for the current full state."""


ClientMessage = Union[SyncRequest, Ack, GetState]


def parse_client_message(raw: str) -> ClientMessage:
    """Parse a text frame from a viewer.

    Raises:
        ConflictError: not JSON, not an object, or an unknown ``type``.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        raise ConflictError(f"client message is not valid JSON: {exc}") from None
    if not isinstance(data, dict):
        raise ConflictError("client message must be a JSON object")

    kind = data.get("type")
    if kind == "sync":
        return SyncRequest(last_seq=_require_int(data, "last_seq"))
    if kind == "ack":
        return Ack(seq=_require_int(data, "seq"))
    if kind == "get_state":
        return GetState()
    raise ConflictError(f"Unknown client message type: {kind!r}")
