from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List

from rt_canvas.core.errors import ProtocolError
from rt_canvas.crdt.document import DocumentChange, DocumentStore
from rt_canvas.crdt.operations import Operation
from rt_canvas.services.executor import DocumentContext
from rt_canvas.services.presence import PresenceChannel
from rt_canvas.ws.manager import ConnectionManager, PeerClosed, PeerConnection, Transport
from rt_canvas.ws.protocol import (
    OperationBatch,
    PresenceLeave,
    PresenceUpdate,
    VersionVectorExchange,
)


logger = logging.getLogger(__name__)

PeerListener = Callable[[PeerConnection, bool], None]


class SyncEngine:
    """Keeps the local log in step with every connected peer.

    On connect both sides send their version vector and answer with whatever
    the other side lacks. After that every newly applied operation, local or
    remote, is flooded to the other peers; duplicates are dropped by the log.
    """

    def __init__(
        self,
        document_id: str,
        store: DocumentStore,
        context: DocumentContext,
        *,
        connections: ConnectionManager | None = None,
        presence: PresenceChannel | None = None,
        metrics: Any | None = None,
        anti_entropy_interval: float = 0.0,
    ) -> None:
        self.document_id = document_id
        self.store = store
        self.context = context
        self.connections = connections if connections is not None else ConnectionManager()
        self.presence = presence
        self.metrics = metrics
        self.anti_entropy_interval = anti_entropy_interval
        self._readers: Dict[str, asyncio.Task] = {}
        self._listeners: List[PeerListener] = []
        self._anti_entropy: asyncio.Task | None = None
        self._unsubscribe = store.subscribe(self._on_document_change)
        self._closed = False

    @property
    def actor(self) -> str:
        return self.store.actor

    def subscribe(self, listener: PeerListener) -> None:
        self._listeners.append(listener)

    def _emit(self, peer: PeerConnection, connected: bool) -> None:
        for listener in list(self._listeners):
            try:
                listener(peer, connected)
            except Exception:
                logger.exception("peer listener failed")

    def _incr(self, name: str, amount: int = 1) -> None:
        if self.metrics is not None:
            self.metrics.incr(name, amount)

    # Lifecycle
    def start(self) -> None:
        if self.anti_entropy_interval > 0 and (self._anti_entropy is None or self._anti_entropy.done()):
            self._anti_entropy = asyncio.create_task(self._anti_entropy_loop())

    async def close(self) -> None:
        self._closed = True
        self._unsubscribe()
        tasks = list(self._readers.values())
        if self._anti_entropy is not None:
            tasks.append(self._anti_entropy)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._readers.clear()
        await self.connections.close_all()

    def version_message(self) -> VersionVectorExchange:
        return VersionVectorExchange(
            document_id=self.document_id,
            actor=self.actor,
            vector=self.store.log.version_vector(),
        )

    # Connections
    def attach(self, transport: Transport, *, outbound: bool = False) -> PeerConnection:
        """Adopt a connected transport and open the version-vector exchange."""
        peer = PeerConnection(transport, outbound=outbound)
        self.connections.connect(peer)
        peer.send(self.version_message())
        peer.awaiting_vector = True
        if self.presence is not None:
            self.presence.on_peer_connected(peer)
        self._readers[peer.id] = asyncio.create_task(self._read_loop(peer))
        self._incr("peer_connects")
        logger.info("peer %s connected (%s)", peer.label, "outbound" if outbound else "inbound")
        self._emit(peer, True)
        return peer

    async def wait_closed(self, peer: PeerConnection) -> None:
        task = self._readers.get(peer.id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def _read_loop(self, peer: PeerConnection) -> None:
        try:
            while True:
                try:
                    message = await peer.receive()
                except ProtocolError as exc:
                    logger.warning("dropping message from %s: %s", peer.label, exc)
                    continue
                self.context.post(self.handle, peer, message)
        except PeerClosed:
            pass
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("connection to %s failed: %s", peer.label, exc)
        finally:
            self._readers.pop(peer.id, None)
            await self.connections.disconnect(peer)
            if not self._closed:
                self.context.post(self._on_peer_lost, peer)

    def _on_peer_lost(self, peer: PeerConnection) -> None:
        self._incr("peer_disconnects")
        logger.info("peer %s disconnected", peer.label)
        if self.presence is not None and peer.remote_actor is not None:
            if self.connections.by_actor(peer.remote_actor) is None:
                self.presence.remove(peer.remote_actor)
        self._emit(peer, False)

    # Outgoing
    def _on_document_change(self, event: DocumentChange) -> None:
        if event.local:
            self.broadcast(event.operations)

    def broadcast(self, ops: Iterable[Operation], exclude: PeerConnection | None = None) -> int:
        batch = list(ops)
        if not batch or self._closed:
            return 0
        message = OperationBatch.from_operations(self.document_id, batch)
        sent = 0
        for peer in self.connections.peers():
            if peer is exclude or peer.closed:
                continue
            peer.send(message)
            peer.last_sent = batch[-1].id
            sent += 1
        self._incr("ops_sent", len(batch) * sent)
        return sent

    def request_sync(self) -> None:
        """Re-run the version-vector exchange with every peer."""
        self.connections.broadcast(self.version_message())

    async def _anti_entropy_loop(self) -> None:
        while True:
            await asyncio.sleep(self.anti_entropy_interval)
            self.context.post(self.request_sync)

    # Incoming (runs on the document context)
    def handle(self, peer: PeerConnection, message) -> None:
        if isinstance(message, VersionVectorExchange):
            self._handle_vector(peer, message)
        elif isinstance(message, OperationBatch):
            self._handle_batch(peer, message)
        elif isinstance(message, PresenceUpdate):
            if self.presence is not None:
                current = self.presence.get(message.actor)
                if current is not None and current.timestamp_ms > message.timestamp_ms:
                    return
                if self.presence.receive(message, peer) is not None:
                    self.connections.broadcast(message, exclude=peer)
        elif isinstance(message, PresenceLeave):
            if self.presence is not None and self.presence.remove(message.actor):
                self.connections.broadcast(message, exclude=peer)

    def _handle_vector(self, peer: PeerConnection, message: VersionVectorExchange) -> None:
        if message.document_id != self.document_id:
            logger.warning("peer %s is on document %s, not %s", peer.label, message.document_id, self.document_id)
            return
        peer.remote_actor = message.actor
        opening = peer.awaiting_vector
        peer.awaiting_vector = False
        log = self.store.log
        missing = log.missing_since(message.vector)
        if missing:
            peer.send(OperationBatch.from_operations(self.document_id, missing))
            peer.last_sent = missing[-1].id
            self._incr("ops_sent", len(missing))
            logger.debug("sent %d operation(s) to %s", len(missing), peer.label)
        if opening:
            # our own opening vector is already on its way
            return
        ours = log.version_vector()
        if any(seq > ours.get(actor, 0) for actor, seq in message.vector.items()):
            # they have operations we lack
            peer.send(self.version_message())

    def _handle_batch(self, peer: PeerConnection, message: OperationBatch) -> None:
        if message.document_id != self.document_id:
            logger.warning("dropping batch for foreign document %s", message.document_id)
            return
        try:
            ops = message.to_operations()
        except ProtocolError as exc:
            logger.warning("dropping batch from %s: %s", peer.label, exc)
            return
        if not ops:
            return
        self._incr("ops_received", len(ops))
        peer.last_received = ops[-1].id
        applied = self.store.integrate(ops)
        if applied:
            self.broadcast(applied, exclude=peer)
