from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from rt_canvas.crdt.operations import OpId
from rt_canvas.ws.manager import ConnectionManager, PeerConnection
from rt_canvas.ws.protocol import PresenceLeave, PresenceUpdate


logger = logging.getLogger(__name__)

Coord = Tuple[int, int]
PEER_COLOR_COUNT = 8


class ToolKind(str, enum.Enum):
    select = "select"
    freehand = "freehand"
    text = "text"
    line = "line"
    arrow = "arrow"
    rectangle = "rectangle"
    double_box = "double_box"
    diamond = "diamond"
    ellipse = "ellipse"
    triangle = "triangle"
    parallelogram = "parallelogram"
    hexagon = "hexagon"
    trapezoid = "trapezoid"
    rounded_rect = "rounded_rect"
    cylinder = "cylinder"
    cloud = "cloud"
    star = "star"


class ActivityKind(str, enum.Enum):
    idle = "idle"
    drawing = "drawing"
    selected = "selected"
    dragging = "dragging"
    resizing = "resizing"
    typing = "typing"


_ACTIVITY_LABELS = {
    ActivityKind.idle: "Idle",
    ActivityKind.drawing: "Drawing",
    ActivityKind.selected: "Selected",
    ActivityKind.dragging: "Moving",
    ActivityKind.resizing: "Resizing",
    ActivityKind.typing: "Typing",
}


@dataclass(frozen=True)
class CursorActivity:
    kind: ActivityKind = ActivityKind.idle
    tool: Optional[ToolKind] = None
    start: Optional[Coord] = None
    current: Optional[Coord] = None
    shape_id: Optional[str] = None

    @property
    def label(self) -> str:
        return _ACTIVITY_LABELS[self.kind]

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": self.kind.value}
        if self.tool is not None:
            data["tool"] = self.tool.value
        if self.start is not None:
            data["start"] = list(self.start)
        if self.current is not None:
            data["current"] = list(self.current)
        if self.shape_id is not None:
            data["shape_id"] = self.shape_id
        return data

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "CursorActivity":
        try:
            kind = ActivityKind(raw.get("kind", "idle"))
        except ValueError:
            kind = ActivityKind.idle
        tool = raw.get("tool")
        start = raw.get("start")
        current = raw.get("current")
        return cls(
            kind=kind,
            tool=ToolKind(tool) if tool in ToolKind._value2member_map_ else None,
            start=tuple(start) if start else None,
            current=tuple(current) if current else None,
            shape_id=raw.get("shape_id"),
        )


def color_index(actor: str) -> int:
    try:
        first = int(actor[:2], 16)
    except ValueError:
        first = sum(actor.encode("utf-8"))
    return first % PEER_COLOR_COUNT


def default_display_name(actor: str) -> str:
    return f"Peer-{actor[:4]}"


@dataclass
class PeerState:
    actor: str
    display_name: str
    cursor: Optional[Coord] = None
    tool: str = ToolKind.select.value
    activity: CursorActivity = field(default_factory=CursorActivity)
    color_index: int = 0
    timestamp_ms: int = 0
    last_seen: float = 0.0
    connection: Optional[PeerConnection] = None  # referenced, owned by the sync engine

    @property
    def sync_progress(self) -> Optional[OpId]:
        return self.connection.last_received if self.connection is not None else None


PresenceListener = Callable[[str, Optional[PeerState]], None]


class PresenceChannel:
    """Ephemeral cursor/tool broadcast, independent of the operation log.

    Updates are best effort and rate limited: calls that arrive faster than
    `interval` are coalesced so only the latest state goes out. Received
    state simply overwrites what was there and expires without a heartbeat.
    """

    def __init__(
        self,
        actor: str,
        connections: ConnectionManager,
        *,
        display_name: Optional[str] = None,
        interval: float = 0.05,
        expiry: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        metrics: Any | None = None,
        enabled: bool = True,
    ) -> None:
        self.actor = actor
        self.connections = connections
        self.display_name = display_name or default_display_name(actor)
        self.interval = interval
        self.expiry = expiry
        self.clock = clock
        self.metrics = metrics
        self.enabled = enabled
        self._local: Optional[PresenceUpdate] = None
        self._last_sent: Optional[float] = None
        self._flush_task: asyncio.Task | None = None
        self._peers: Dict[str, PeerState] = {}
        self._listeners: List[PresenceListener] = []

    def subscribe(self, listener: PresenceListener) -> None:
        self._listeners.append(listener)

    def _emit(self, actor: str, state: Optional[PeerState]) -> None:
        for listener in list(self._listeners):
            try:
                listener(actor, state)
            except Exception:
                logger.exception("presence listener failed")

    # Outgoing
    def local_update(self) -> Optional[PresenceUpdate]:
        return self._local

    def publish(
        self,
        cursor: Optional[Coord],
        tool: ToolKind | str = ToolKind.select,
        activity: Optional[CursorActivity] = None,
    ) -> bool:
        """Record local presence and send it now, or coalesce it. Returns True if sent now."""
        self._local = PresenceUpdate(
            actor=self.actor,
            display_name=self.display_name,
            cursor=cursor,
            tool=ToolKind(tool).value,
            activity=(activity or CursorActivity()).to_dict(),
            color_index=color_index(self.actor),
            timestamp_ms=int(time.time() * 1000),
        )
        if not self.enabled:
            return False
        now = self.clock()
        if self._last_sent is None or now - self._last_sent >= self.interval:
            self._send_local()
            return True
        if self.metrics is not None:
            self.metrics.incr("presence_coalesced")
        if self._flush_task is None or self._flush_task.done():
            delay = self.interval - (now - self._last_sent)
            self._flush_task = asyncio.create_task(self._flush_after(delay))
        return False

    async def _flush_after(self, delay: float) -> None:
        await asyncio.sleep(max(delay, 0.0))
        self._send_local()

    def _send_local(self) -> None:
        if self._local is None:
            return
        self._last_sent = self.clock()
        sent = self.connections.broadcast(self._local)
        if self.metrics is not None and sent:
            self.metrics.incr("presence_sent", sent)

    def on_peer_connected(self, peer: PeerConnection) -> None:
        # newcomers see our cursor without waiting for the next move
        if self.enabled and self._local is not None:
            peer.send(self._local)

    def leave(self) -> None:
        if self.enabled:
            self.connections.broadcast(PresenceLeave(actor=self.actor))

    # Incoming
    def receive(self, update: PresenceUpdate, connection: Optional[PeerConnection] = None) -> Optional[PeerState]:
        if update.actor == self.actor:
            return None
        if self.metrics is not None:
            self.metrics.incr("presence_received")
        state = PeerState(
            actor=update.actor,
            display_name=update.display_name or default_display_name(update.actor),
            cursor=tuple(update.cursor) if update.cursor is not None else None,
            tool=update.tool,
            activity=CursorActivity.from_dict(update.activity),
            color_index=update.color_index % PEER_COLOR_COUNT,
            timestamp_ms=update.timestamp_ms,
            last_seen=self.clock(),
            connection=connection,
        )
        self._peers[update.actor] = state
        self._emit(update.actor, state)
        return state

    def remove(self, actor: str) -> bool:
        if self._peers.pop(actor, None) is None:
            return False
        self._emit(actor, None)
        return True

    def expire(self) -> List[str]:
        """Drop peers not heard from within the expiry window."""
        now = self.clock()
        stale = [a for a, s in self._peers.items() if now - s.last_seen > self.expiry]
        for actor in stale:
            logger.debug("presence for %s expired", actor)
            self.remove(actor)
        return stale

    def peers(self) -> List[PeerState]:
        return sorted(self._peers.values(), key=lambda s: s.actor)

    def get(self, actor: str) -> Optional[PeerState]:
        return self._peers.get(actor)

    def __len__(self) -> int:
        return len(self._peers)

    async def close(self) -> None:
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
        self._peers.clear()
