from __future__ import annotations

import asyncio

import pytest

from rt_canvas.core.metrics import SyncMetrics
from rt_canvas.services.presence import (
    ActivityKind,
    CursorActivity,
    PresenceChannel,
    ToolKind,
    color_index,
    default_display_name,
)
from rt_canvas.ws.manager import ConnectionManager, PeerClosed, PeerConnection
from rt_canvas.ws.protocol import PresenceUpdate, decode_message
from rt_canvas.ws.transport import memory_pipe

ME = "0a" + "0" * 30
OTHER = "ff" + "1" * 30


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def update(actor: str = OTHER, cursor=(3, 4), ts: int = 1) -> PresenceUpdate:
    return PresenceUpdate(
        actor=actor,
        display_name="Ann",
        cursor=cursor,
        tool="rectangle",
        activity={"kind": "drawing", "tool": "rectangle", "start": [1, 1], "current": [3, 4]},
        color_index=color_index(actor),
        timestamp_ms=ts,
    )


def test_received_presence_overwrites_and_expires():
    clock = FakeClock()
    channel = PresenceChannel(ME, ConnectionManager(), expiry=5.0, clock=clock)
    seen = []
    channel.subscribe(lambda actor, state: seen.append((actor, state)))

    channel.receive(update(cursor=(1, 1), ts=1))
    clock.now += 3
    state = channel.receive(update(cursor=(7, 8), ts=2))

    assert len(channel) == 1
    assert state.cursor == (7, 8)
    assert state.activity.kind is ActivityKind.drawing
    assert state.activity.label == "Drawing"
    assert state.activity.start == (1, 1)

    clock.now += 4.9
    assert channel.expire() == []
    clock.now += 0.2
    assert channel.expire() == [OTHER]
    assert channel.peers() == []
    assert seen[-1] == (OTHER, None)


def test_own_presence_is_ignored():
    channel = PresenceChannel(ME, ConnectionManager())
    assert channel.receive(update(actor=ME)) is None
    assert len(channel) == 0


def test_peer_identity_defaults():
    assert default_display_name("abcdef12") == "Peer-abcd"
    assert color_index("0a00") == 10 % 8
    assert 0 <= color_index("not-hex") < 8
    unknown = CursorActivity.from_dict({"kind": "teleporting", "tool": "laser"})
    assert unknown.kind is ActivityKind.idle and unknown.tool is None


@pytest.mark.anyio
async def test_publish_is_rate_limited_and_coalesced():
    clock = FakeClock()
    metrics = SyncMetrics()
    connections = ConnectionManager()
    ours, theirs = memory_pipe("me", "peer")
    connections.connect(PeerConnection(ours))
    channel = PresenceChannel(ME, connections, interval=0.05, clock=clock, metrics=metrics)

    assert channel.publish((0, 0), ToolKind.freehand) is True
    clock.now += 0.01
    assert channel.publish((1, 0), ToolKind.freehand) is False
    clock.now += 0.01
    assert channel.publish((2, 0), ToolKind.freehand, CursorActivity(ActivityKind.drawing)) is False

    first = decode_message(await theirs.receive_text())
    assert first.cursor == (0, 0)

    # only the latest state goes out once the interval has passed
    second = decode_message(await asyncio.wait_for(theirs.receive_text(), timeout=1.0))
    assert second.cursor == (2, 0)
    assert second.activity["kind"] == "drawing"
    assert metrics.counters["presence_sent"] == 2
    assert metrics.counters["presence_coalesced"] == 2

    await channel.close()
    await connections.close_all()


@pytest.mark.anyio
async def test_new_peer_gets_current_presence_and_leave_is_broadcast():
    connections = ConnectionManager()
    channel = PresenceChannel(ME, connections, display_name="Me", interval=0.0)
    channel.publish((5, 5), ToolKind.text)

    ours, theirs = memory_pipe("me", "peer")
    peer = PeerConnection(ours)
    connections.connect(peer)
    channel.on_peer_connected(peer)
    channel.leave()

    hello = decode_message(await theirs.receive_text())
    bye = decode_message(await theirs.receive_text())
    assert (hello.type, hello.display_name, hello.cursor) == ("presence", "Me", (5, 5))
    assert (bye.type, bye.actor) == ("presence_leave", ME)

    await connections.close_all()


@pytest.mark.anyio
async def test_disabled_channel_sends_nothing():
    connections = ConnectionManager()
    ours, theirs = memory_pipe()
    connections.connect(PeerConnection(ours))
    channel = PresenceChannel(ME, connections, enabled=False)

    assert channel.publish((1, 1)) is False
    channel.leave()
    assert channel.local_update().cursor == (1, 1)

    await connections.close_all()
    # the only thing left in the pipe is the close marker
    with pytest.raises(PeerClosed):
        await asyncio.wait_for(theirs.receive_text(), timeout=0.1)
