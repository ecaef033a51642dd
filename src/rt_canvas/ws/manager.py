from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Dict, List, Optional, Protocol

from pydantic import BaseModel

from rt_canvas.crdt.operations import OpId
from rt_canvas.ws.protocol import decode_message, encode_message


logger = logging.getLogger(__name__)


class PeerClosed(Exception):
    """The underlying transport is gone."""


class Transport(Protocol):
    label: str

    async def send_text(self, data: str) -> None: ...

    async def receive_text(self) -> str: ...

    async def close(self) -> None: ...


class PeerConnection:
    """One live link to a remote replica.

    Sends are queued and written by a background task so callers on the
    document context never wait on the network.
    """

    def __init__(self, transport: Transport, *, outbound: bool = False) -> None:
        self.id = uuid.uuid4().hex
        self.transport = transport
        self.outbound = outbound
        self.remote_actor: Optional[str] = None
        self.connected_at = time.time()
        self.last_sent: Optional[OpId] = None
        self.last_received: Optional[OpId] = None
        # set while our opening version vector is unanswered
        self.awaiting_vector = False
        self._outbox: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._writer: asyncio.Task | None = None
        self.closed = False

    @property
    def label(self) -> str:
        return self.transport.label

    def start(self) -> None:
        if self._writer is None or self._writer.done():
            self._writer = asyncio.create_task(self._write_loop())

    def send(self, message: BaseModel) -> None:
        if self.closed:
            return
        self._outbox.put_nowait(encode_message(message))

    async def receive(self):
        if self.closed:
            raise PeerClosed(self.label)
        raw = await self.transport.receive_text()
        return decode_message(raw)

    async def _write_loop(self) -> None:
        while True:
            data = await self._outbox.get()
            if data is None:
                break
            try:
                await self.transport.send_text(data)
            except Exception as exc:
                logger.info("send to %s failed: %s", self.label, exc)
                self.closed = True
                break

    async def close(self) -> None:
        if self.closed and (self._writer is None or self._writer.done()):
            return
        self.closed = True
        if self._writer is not None and not self._writer.done():
            self._outbox.put_nowait(None)
            try:
                await asyncio.wait_for(self._writer, timeout=1.0)
            except asyncio.TimeoutError:
                self._writer.cancel()
        try:
            await self.transport.close()
        except Exception as exc:
            logger.debug("closing %s: %s", self.label, exc)


class ConnectionManager:
    def __init__(self) -> None:
        self._peers: Dict[str, PeerConnection] = {}

    def connect(self, peer: PeerConnection) -> None:
        self._peers[peer.id] = peer
        peer.start()

    async def disconnect(self, peer: PeerConnection) -> None:
        self._peers.pop(peer.id, None)
        await peer.close()

    def peers(self) -> List[PeerConnection]:
        return list(self._peers.values())

    def by_actor(self, actor: str) -> Optional[PeerConnection]:
        for peer in self._peers.values():
            if peer.remote_actor == actor:
                return peer
        return None

    def __len__(self) -> int:
        return len(self._peers)

    def broadcast(self, message: BaseModel, exclude: PeerConnection | None = None) -> int:
        sent = 0
        for peer in list(self._peers.values()):
            if peer is exclude or peer.closed:
                continue
            peer.send(message)
            sent += 1
        return sent

    async def close_all(self) -> None:
        for peer in list(self._peers.values()):
            await self.disconnect(peer)
