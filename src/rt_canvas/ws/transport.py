"""Concrete transports: FastAPI websockets (inbound), websockets client (outbound), in-memory pipes."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Protocol, Tuple

import websockets
from fastapi import WebSocket, WebSocketDisconnect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from rt_canvas.core.errors import ConnectError
from rt_canvas.services.tickets import Endpoint
from rt_canvas.ws.manager import PeerClosed, Transport


logger = logging.getLogger(__name__)

PEER_PATH = "/v1/ws/docs/{doc_id}"


class StarletteTransport:
    """Inbound peer accepted by the node's FastAPI app."""

    def __init__(self, websocket: WebSocket) -> None:
        self.ws = websocket
        client = websocket.client
        self.label = f"in:{client.host}:{client.port}" if client else "in:?"

    async def send_text(self, data: str) -> None:
        await self.ws.send_text(data)

    async def receive_text(self) -> str:
        try:
            return await self.ws.receive_text()
        except (WebSocketDisconnect, RuntimeError) as exc:
            raise PeerClosed(self.label) from exc

    async def close(self) -> None:
        await self.ws.close()


class WebSocketClientTransport:
    """Outbound peer dialed with the websockets client."""

    def __init__(self, conn, label: str) -> None:
        self.conn = conn
        self.label = label

    async def send_text(self, data: str) -> None:
        await self.conn.send(data)

    async def receive_text(self) -> str:
        try:
            data = await self.conn.recv()
        except ConnectionClosed as exc:
            raise PeerClosed(self.label) from exc
        return data if isinstance(data, str) else data.decode("utf-8")

    async def close(self) -> None:
        await self.conn.close()


_CLOSED = object()


class MemoryTransport:
    """One end of an in-process pipe."""

    def __init__(self, inbox: asyncio.Queue, outbox: asyncio.Queue, label: str) -> None:
        self._inbox = inbox
        self._outbox = outbox
        self.label = label
        self.closed = False

    async def send_text(self, data: str) -> None:
        if self.closed:
            raise PeerClosed(self.label)
        await self._outbox.put(data)

    async def receive_text(self) -> str:
        if self.closed:
            raise PeerClosed(self.label)
        data = await self._inbox.get()
        if data is _CLOSED:
            self.closed = True
            raise PeerClosed(self.label)
        return data

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # wake both readers
        self._outbox.put_nowait(_CLOSED)
        self._inbox.put_nowait(_CLOSED)


def memory_pipe(left: str = "a", right: str = "b") -> Tuple[MemoryTransport, MemoryTransport]:
    q1: asyncio.Queue = asyncio.Queue()
    q2: asyncio.Queue = asyncio.Queue()
    return MemoryTransport(q1, q2, f"mem:{left}->{right}"), MemoryTransport(q2, q1, f"mem:{right}->{left}")


class Connector(Protocol):
    async def connect(self, endpoint: Endpoint, document_id: str) -> Transport: ...


class WebSocketConnector:
    def __init__(self, timeout: float = 10.0) -> None:
        self.timeout = timeout

    async def connect(self, endpoint: Endpoint, document_id: str) -> Transport:
        url = f"ws://{endpoint.host}:{endpoint.port}" + PEER_PATH.format(doc_id=document_id)
        try:
            conn = await websockets.connect(url, open_timeout=self.timeout)
        except (OSError, asyncio.TimeoutError, InvalidHandshake, InvalidURI) as exc:
            raise ConnectError(f"cannot reach {endpoint}: {exc}", (endpoint,)) from exc
        return WebSocketClientTransport(conn, f"out:{endpoint}")


Acceptor = Callable[[Transport], Awaitable[None]]


class MemoryNetwork:
    """In-process stand-in for the network: endpoints map to accept callbacks."""

    def __init__(self) -> None:
        self._listeners: Dict[Tuple[str, int], Tuple[str, Acceptor]] = {}
        self._tasks: set[asyncio.Task] = set()

    def listen(self, endpoint: Endpoint, document_id: str, acceptor: Acceptor) -> None:
        self._listeners[(endpoint.host, endpoint.port)] = (document_id, acceptor)

    def unlisten(self, endpoint: Endpoint) -> None:
        self._listeners.pop((endpoint.host, endpoint.port), None)

    async def connect(self, endpoint: Endpoint, document_id: str) -> Transport:
        entry: Optional[Tuple[str, Acceptor]] = self._listeners.get((endpoint.host, endpoint.port))
        if entry is None:
            raise ConnectError(f"cannot reach {endpoint}: connection refused", (endpoint,))
        served_doc, acceptor = entry
        if served_doc != document_id:
            raise ConnectError(f"{endpoint} does not serve document {document_id}", (endpoint,))
        ours, theirs = memory_pipe("dialer", str(endpoint))
        task = asyncio.create_task(acceptor(theirs))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return ours
