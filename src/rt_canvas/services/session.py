from __future__ import annotations

import asyncio
import enum
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from rt_canvas.core.config import Settings, get_settings
from rt_canvas.core.errors import ConnectError, OfflineModeError, SessionClosedError
from rt_canvas.core.metrics import SyncMetrics
from rt_canvas.crdt import intents as build
from rt_canvas.crdt.document import Cell, CanvasSnapshot, Coord, DocumentChange, DocumentStore, ShapeRecord
from rt_canvas.crdt.operations import Change, Intent, Operation
from rt_canvas.crdt.oplog import OperationLog
from rt_canvas.services import persistence
from rt_canvas.services.executor import DocumentContext
from rt_canvas.services.presence import CursorActivity, PeerState, PresenceChannel, ToolKind
from rt_canvas.services.sync import SyncEngine
from rt_canvas.services.tickets import Endpoint, Ticket, decode_ticket
from rt_canvas.services.undo import UndoController
from rt_canvas.ws.manager import ConnectionManager, PeerConnection, Transport
from rt_canvas.ws.transport import Connector, WebSocketConnector


logger = logging.getLogger(__name__)


class SessionEventKind(str, enum.Enum):
    ready = "ready"
    peer_status = "peer_status"
    presence_update = "presence_update"
    presence_removed = "presence_removed"
    error = "error"


@dataclass
class SessionEvent:
    kind: SessionEventKind
    document_id: str
    ticket: Optional[str] = None
    peer_count: int = 0
    connected: bool = False
    actor: Optional[str] = None
    presence: Optional[PeerState] = None
    message: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventListener = Callable[[SessionEvent], None]
CellInput = Mapping[Coord, Union[Cell, str]]


def _as_cells(cells: CellInput, shape_id: Optional[str] = None) -> Dict[Coord, Cell]:
    out: Dict[Coord, Cell] = {}
    for coord, value in cells.items():
        cell = Cell(ch=value) if isinstance(value, str) else value
        if shape_id is not None:
            cell = Cell(cell.ch, cell.brush, cell.line_style, shape_id)
        out[(int(coord[0]), int(coord[1]))] = cell
    return out


class Session:
    """One replica of one document: log, store, undo, sync and presence.

    Local edits run synchronously on the event loop; inbound network
    traffic is funnelled through the document context, so the store only
    ever sees one writer at a time.
    """

    def __init__(
        self,
        document_id: str,
        *,
        settings: Settings | None = None,
        actor: str | None = None,
        offline: bool | None = None,
        metrics: SyncMetrics | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or get_settings()
        self.document_id = document_id
        self.actor = actor or uuid.uuid4().hex
        self.offline = self.settings.offline if offline is None else offline
        self.metrics = metrics or SyncMetrics()
        self.log = OperationLog()
        self.store = DocumentStore(self.actor, self.log, self.metrics)
        self.undo_controller = UndoController(self.store, self.settings.undo_max_history)
        self.context = DocumentContext()
        self.connections = ConnectionManager()
        self.presence = PresenceChannel(
            self.actor,
            self.connections,
            display_name=self.settings.display_name,
            interval=self.settings.presence_interval_ms / 1000.0,
            expiry=self.settings.presence_expiry_s,
            clock=clock,
            metrics=self.metrics,
            enabled=not self.offline,
        )
        self.sync = SyncEngine(
            document_id,
            self.store,
            self.context,
            connections=self.connections,
            presence=self.presence,
            metrics=self.metrics,
            anti_entropy_interval=0.0 if self.offline else self.settings.anti_entropy_interval_s,
        )
        self.ticket: Optional[Ticket] = None
        self._listeners: List[EventListener] = []
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False
        self.presence.subscribe(self._on_presence)
        self.sync.subscribe(self._on_peer)

    @property
    def mode(self) -> str:
        return "offline" if self.offline else "online"

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        await self.context.start()
        if not self.offline:
            self.sync.start()
            self.spawn(self._expire_presence())

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # Notifications
    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def on_change(self, listener: Callable[[DocumentChange], None]) -> Callable[[], None]:
        return self.store.subscribe(listener)

    def emit(self, kind: SessionEventKind, **fields: Any) -> SessionEvent:
        event = SessionEvent(kind=kind, document_id=self.document_id, **fields)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("session listener failed")
        return event

    def set_ticket(self, ticket: Optional[Ticket]) -> None:
        self.ticket = ticket
        self.emit(SessionEventKind.ready, ticket=ticket.encode() if ticket is not None else None)

    def _on_presence(self, actor: str, state: Optional[PeerState]) -> None:
        if state is None:
            self.emit(SessionEventKind.presence_removed, actor=actor)
        else:
            self.emit(SessionEventKind.presence_update, actor=actor, presence=state)

    def _on_peer(self, peer: PeerConnection, connected: bool) -> None:
        self.emit(
            SessionEventKind.peer_status,
            peer_count=len(self.connections),
            connected=connected,
            actor=peer.remote_actor,
        )

    async def _expire_presence(self) -> None:
        interval = max(min(self.presence.expiry / 2, 1.0), 0.01)
        while True:
            await asyncio.sleep(interval)
            self.context.post(self.presence.expire)

    # Edits
    def _check_open(self) -> None:
        if self._closed:
            raise SessionClosedError(self.document_id)

    def submit(self, intents: Iterable[Intent]) -> Change:
        """Apply one local action as a single undoable Change."""
        self._check_open()
        return self.undo_controller.perform(intents)

    def set_cells(self, cells: CellInput) -> Change:
        return self.submit([build.set_cells(_as_cells(cells))])

    def clear_cells(self, coords: Iterable[Coord]) -> Change:
        return self.submit([build.clear_cells(coords)])

    def create_shape(
        self,
        record: ShapeRecord,
        cells: CellInput | None = None,
        *,
        shape_id: str | None = None,
        z: int | None = None,
    ) -> str:
        shape_id = shape_id or uuid.uuid4().hex
        z = self.store.max_z() + 1 if z is None else z
        intents = [build.create_shape(shape_id, record, z)]
        if cells:
            intents.append(build.set_cells(_as_cells(cells, shape_id)))
        self.submit(intents)
        return shape_id

    def _redraw(self, builder: Callable[..., Intent], shape_id: str, record: ShapeRecord, cells: CellInput | None) -> Change:
        shape_id = self.resolve_shape(shape_id)
        current = self.store.shape(shape_id)
        if current is None:
            raise KeyError(shape_id)
        intents: List[Intent] = [builder(shape_id, record)]
        if cells is not None:
            drawn = _as_cells(cells, shape_id)
            stale = [c for c in current.cells if c not in drawn and self._owned_by(c, shape_id)]
            if drawn:
                intents.append(build.set_cells(drawn))
            if stale:
                intents.append(build.clear_cells(stale))
        return self.submit(intents)

    def update_shape(self, shape_id: str, record: ShapeRecord, cells: CellInput | None = None) -> Change:
        return self._redraw(build.update_shape, shape_id, record, cells)

    def move_shape(self, shape_id: str, record: ShapeRecord, cells: CellInput | None = None) -> Change:
        return self._redraw(build.move_shape, shape_id, record, cells)

    def resize_shape(self, shape_id: str, record: ShapeRecord, cells: CellInput | None = None) -> Change:
        return self._redraw(build.resize_shape, shape_id, record, cells)

    def _owned_by(self, coord: Coord, shape_id: str) -> bool:
        cell = self.store.cell(*coord)
        return cell is not None and cell.shape_id == shape_id

    def delete_shape(self, shape_id: str) -> Change:
        shape_id = self.resolve_shape(shape_id)
        current = self.store.shape(shape_id)
        if current is None:
            raise KeyError(shape_id)
        intents = [build.delete_shape(shape_id)]
        owned = [c for c in current.cells if self._owned_by(c, shape_id)]
        if owned:
            # clearing keeps the drawn cells restorable by undo
            intents.append(build.clear_cells(owned))
        return self.submit(intents)

    def bring_to_front(self, shape_id: str) -> Change:
        shape_id = self.resolve_shape(shape_id)
        if self.store.shape(shape_id) is None:
            raise KeyError(shape_id)
        return self.submit([build.reorder_shape(shape_id, self.store.max_z() + 1)])

    def send_to_back(self, shape_id: str) -> Change:
        shape_id = self.resolve_shape(shape_id)
        if self.store.shape(shape_id) is None:
            raise KeyError(shape_id)
        return self.submit([build.reorder_shape(shape_id, self.store.min_z() - 1)])

    def undo(self) -> Optional[Change]:
        self._check_open()
        return self.undo_controller.undo()

    def redo(self) -> Optional[Change]:
        self._check_open()
        return self.undo_controller.redo()

    def resolve_shape(self, shape_id: str) -> str:
        """Id a shape lives under now; undoing a delete restores it under a new one."""
        return self.undo_controller.resolve(shape_id)

    def can_undo(self) -> bool:
        return self.undo_controller.can_undo()

    def can_redo(self) -> bool:
        return self.undo_controller.can_redo()

    # Reads
    def snapshot(self) -> CanvasSnapshot:
        return self.store.snapshot()

    def peers(self) -> List[PeerState]:
        return self.presence.peers()

    def publish_presence(
        self,
        cursor: Optional[Coord],
        tool: ToolKind | str = ToolKind.select,
        activity: Optional[CursorActivity] = None,
    ) -> bool:
        self._check_open()
        return self.presence.publish(cursor, tool, activity)

    # Persistence
    def export_operations(self) -> Dict[str, Any]:
        return persistence.export_operations(self.document_id, self.log)

    def load_operations(self, ops: Iterable[Operation]) -> List[Operation]:
        """Seed the log with a previously exported operation set."""
        self._check_open()
        return self.store.integrate(ops)

    def save(self, path) -> Any:
        return persistence.save_file(path, self.document_id, self.log)

    # Peers
    def connect_transport(self, transport: Transport, *, outbound: bool = False) -> PeerConnection:
        self._check_open()
        if self.offline:
            raise OfflineModeError()
        return self.sync.attach(transport, outbound=outbound)

    async def accept(self, transport: Transport) -> None:
        """Serve an inbound peer until its connection ends."""
        if self._closed or self.offline:
            logger.info("refusing peer %s: session is %s", transport.label, "closed" if self._closed else "offline")
            await transport.close()
            return
        peer = self.sync.attach(transport)
        await self.sync.wait_closed(peer)

    async def drain(self) -> None:
        """Wait until all inbound work posted so far has been applied."""
        await self.context.drain()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.presence.leave()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.presence.close()
        await self.sync.close()
        await self.context.stop()
        dropped = self.log.discard_pending()
        if dropped:
            logger.debug("discarded %d operation(s) still waiting on dependencies", dropped)
        logger.info("session %s closed", self.document_id)


class SessionManager:
    """Issues and redeems tickets and owns the sessions of this node."""

    def __init__(
        self,
        settings: Settings | None = None,
        connector: Connector | None = None,
        *,
        backoff_base: float = 1.0,
    ) -> None:
        self.settings = settings or get_settings()
        self.connector = connector or WebSocketConnector(self.settings.connect_timeout_s)
        self.backoff_base = backoff_base
        self._sessions: Dict[str, Session] = {}

    def get(self, document_id: str) -> Optional[Session]:
        return self._sessions.get(document_id)

    def sessions(self) -> List[Session]:
        return list(self._sessions.values())

    def local_endpoints(self) -> Tuple[Endpoint, ...]:
        return tuple(Endpoint(host=h, port=self.settings.listen_port) for h in self.settings.advertise_hosts)

    def issue_ticket(self, document_id: str) -> Ticket:
        return Ticket(document_id=document_id, endpoints=self.local_endpoints())

    def _backoff(self, attempt: int) -> float:
        base = 2 ** (attempt - 1)
        return (base + random.random()) * self.backoff_base

    async def _new_session(self, document_id: str) -> Session:
        if document_id in self._sessions:
            raise ValueError(f"document {document_id} already has a session")
        session = Session(document_id, settings=self.settings)
        self._sessions[document_id] = session
        await session.start()
        return session

    async def create_session(
        self,
        document_id: str | None = None,
        operations: Iterable[Operation] | None = None,
    ) -> Session:
        """Start a session for a new (or loaded) document and issue its ticket."""
        session = await self._new_session(document_id or uuid.uuid4().hex)
        if operations is not None:
            session.load_operations(operations)
        session.set_ticket(None if session.offline else self.issue_ticket(session.document_id))
        logger.info("created %s session for %s", session.mode, session.document_id)
        return session

    async def join_session(self, ticket: Ticket | str) -> Session:
        """Redeem a ticket: dial a holder and bootstrap the full history from it."""
        parsed = decode_ticket(ticket) if isinstance(ticket, str) else ticket
        if self.settings.offline:
            raise OfflineModeError("cannot join a session in offline mode")
        if parsed.document_id in self._sessions:
            raise ValueError(f"document {parsed.document_id} already has a session")
        transport = await self._dial(parsed)
        try:
            session = await self._new_session(parsed.document_id)
        except ValueError:
            await transport.close()
            raise
        # a fresh log presents an empty version vector, so the holder streams everything
        peer = session.connect_transport(transport, outbound=True)
        session.set_ticket(self.issue_ticket(parsed.document_id))
        session.spawn(self._maintain(session, parsed, peer))
        logger.info("joined %s via %s", parsed.document_id, peer.label)
        return session

    async def _dial(self, ticket: Ticket) -> Transport:
        for endpoint in ticket.endpoints:
            try:
                return await self.connector.connect(endpoint, ticket.document_id)
            except ConnectError as exc:
                logger.warning("could not reach %s: %s", endpoint, exc.detail)
        raise ConnectError(f"no endpoint of ticket for {ticket.document_id} is reachable", ticket.endpoints)

    async def _maintain(self, session: Session, ticket: Ticket, peer: PeerConnection) -> None:
        """Redial the ticket's endpoints whenever the outbound link drops."""
        while not session.closed:
            await session.sync.wait_closed(peer)
            if session.closed:
                return
            for attempt in range(1, self.settings.reconnect_attempts + 1):
                delay = self._backoff(attempt)
                logger.info("reconnecting to %s in %.1fs (attempt %d)", ticket.document_id, delay, attempt)
                await asyncio.sleep(delay)
                if session.closed:
                    return
                try:
                    transport = await self._dial(ticket)
                except ConnectError as exc:
                    logger.warning("reconnect attempt %d failed: %s", attempt, exc.detail)
                    continue
                peer = session.connect_transport(transport, outbound=True)
                break
            else:
                session.emit(SessionEventKind.error, message=f"lost connection to {ticket.document_id}")
                return

    async def close_session(self, document_id: str) -> None:
        session = self._sessions.pop(document_id, None)
        if session is not None:
            await session.close()

    async def close_all(self) -> None:
        for document_id in list(self._sessions):
            await self.close_session(document_id)
