from __future__ import annotations

import asyncio

import pytest

from rt_canvas.core.config import Settings
from rt_canvas.crdt import intents
from rt_canvas.crdt.document import Cell, DocumentStore
from rt_canvas.crdt.operations import OpId
from rt_canvas.services.presence import ToolKind
from rt_canvas.services.session import Session, SessionEventKind
from rt_canvas.services.tickets import Endpoint
from rt_canvas.ws.protocol import OperationBatch, PresenceUpdate, VersionVectorExchange
from rt_canvas.ws.transport import MemoryNetwork, memory_pipe

DOC = "doc-sync"
HIGH = "b" * 32
LOW = "a" * 32
MID = "ab" * 16


@pytest.fixture
def anyio_backend():
    return "asyncio"


def make_settings(**overrides) -> Settings:
    base = dict(
        offline=False,
        anti_entropy_interval_s=0.0,
        presence_interval_ms=0,
        presence_expiry_s=30.0,
        advertise_hosts=["127.0.0.1"],
    )
    base.update(overrides)
    return Settings(**base)


async def wait_until(predicate, timeout: float = 3.0):
    start = asyncio.get_event_loop().time()
    while not predicate():
        if asyncio.get_event_loop().time() - start > timeout:
            raise AssertionError("timeout waiting for condition")
        await asyncio.sleep(0.01)


async def open_session(actor: str, **overrides) -> Session:
    session = Session(DOC, settings=make_settings(**overrides), actor=actor)
    await session.start()
    return session


async def link(network: MemoryNetwork, host: Session, guest: Session, port: int):
    endpoint = Endpoint(host="127.0.0.1", port=port)
    network.listen(endpoint, DOC, host.accept)
    transport = await network.connect(endpoint, DOC)
    return guest.connect_transport(transport, outbound=True)


@pytest.mark.anyio
async def test_concurrent_offline_edits_converge_on_higher_id():
    a = await open_session(HIGH)
    b = await open_session(LOW)
    a.set_cells({(0, 0): "#"})
    b.set_cells({(0, 0): "*"})
    assert b.snapshot().char_at(0, 0) == "*"

    await link(MemoryNetwork(), a, b, 7001)
    await wait_until(lambda: len(a.log) == 2 and len(b.log) == 2)

    assert a.snapshot().char_at(0, 0) == "#"
    assert b.snapshot().char_at(0, 0) == "#"
    assert a.snapshot() == b.snapshot()

    await a.close()
    await b.close()


@pytest.mark.anyio
async def test_newcomer_bootstraps_full_history():
    holder = await open_session(HIGH)
    holder.set_cells({(x, 0): c for x, c in enumerate("hello")})
    holder.clear_cells([(0, 0)])
    newcomer = await open_session(LOW)
    assert newcomer.log.version_vector() == {}

    await link(MemoryNetwork(), holder, newcomer, 7002)
    await wait_until(lambda: len(newcomer.log) == len(holder.log))

    assert newcomer.snapshot() == holder.snapshot()
    assert newcomer.snapshot().as_lines() == ["ello"]

    await holder.close()
    await newcomer.close()


@pytest.mark.anyio
async def test_live_edits_flood_through_intermediate_peer():
    network = MemoryNetwork()
    a, b, c = await open_session(HIGH), await open_session(MID), await open_session(LOW)
    await link(network, a, b, 7003)
    await link(network, b, c, 7004)

    a.set_cells({(1, 1): "A"})
    c.set_cells({(2, 2): "C"})
    await wait_until(lambda: all(len(s.log) == 2 for s in (a, b, c)))

    assert a.snapshot() == b.snapshot() == c.snapshot()
    assert c.snapshot().char_at(1, 1) == "A"
    assert a.snapshot().char_at(2, 2) == "C"

    for s in (a, b, c):
        await s.close()


@pytest.mark.anyio
async def test_disconnect_keeps_log_and_reconnect_resumes():
    network = MemoryNetwork()
    a, b = await open_session(HIGH), await open_session(LOW)
    peer = await link(network, a, b, 7005)
    a.set_cells({(0, 0): "1"})
    await wait_until(lambda: b.snapshot().char_at(0, 0) == "1")

    await peer.close()
    await wait_until(lambda: len(a.connections) == 0 and len(b.connections) == 0)
    a.set_cells({(1, 0): "2"})
    b.set_cells({(2, 0): "3"})
    assert b.snapshot().char_at(0, 0) == "1"

    await link(network, a, b, 7005)
    await wait_until(lambda: len(a.log) == 3 and len(b.log) == 3)
    assert a.snapshot().as_lines() == b.snapshot().as_lines() == ["123"]
    assert a.metrics.counters["peer_disconnects"] == 1

    await a.close()
    await b.close()


@pytest.mark.anyio
async def test_presence_reaches_peers_and_leave_removes_it():
    a, b = await open_session(HIGH), await open_session(LOW)
    await link(MemoryNetwork(), a, b, 7006)

    a.publish_presence((4, 2), ToolKind.ellipse)
    await wait_until(lambda: b.presence.get(HIGH) is not None)
    state = b.presence.get(HIGH)
    assert state.cursor == (4, 2)
    assert state.tool == "ellipse"
    assert state.display_name == f"Peer-{HIGH[:4]}"

    await a.close()
    await wait_until(lambda: b.presence.get(HIGH) is None)
    await b.close()


@pytest.mark.anyio
async def test_raw_peer_exchange_answers_with_missing_operations():
    session = await open_session(HIGH)
    session.set_cells({(0, 0): "x"})
    session.set_cells({(1, 0): "y"})

    ours, theirs = memory_pipe("probe", "session")
    session.connect_transport(theirs)
    hello = VersionVectorExchange.model_validate_json(await ours.receive_text())
    assert hello.vector == {HIGH: 2}

    await ours.send_text(VersionVectorExchange(document_id=DOC, actor=LOW, vector={HIGH: 1}).model_dump_json())
    batch = OperationBatch.model_validate_json(await asyncio.wait_for(ours.receive_text(), timeout=1.0))
    assert [op.id for op in batch.to_operations()] == [OpId(HIGH, 2)]

    # garbage is dropped without tearing the link down
    await ours.send_text("{not json")
    await ours.send_text(VersionVectorExchange(document_id=DOC, actor=LOW, vector={}).model_dump_json())
    again = OperationBatch.model_validate_json(await asyncio.wait_for(ours.receive_text(), timeout=1.0))
    assert len(again.operations) == 2

    await session.close()


@pytest.mark.anyio
async def test_operations_for_another_document_are_ignored():
    session = await open_session(HIGH)
    ours, theirs = memory_pipe("probe", "session")
    session.connect_transport(theirs)
    await ours.receive_text()

    foreign = Session("other-doc", settings=make_settings(), actor=LOW)
    foreign.set_cells({(0, 0): "!"})
    batch = OperationBatch.from_operations("other-doc", list(foreign.log))
    await ours.send_text(batch.model_dump_json())
    await session.drain()
    await asyncio.sleep(0.05)
    await session.drain()

    assert len(session.log) == 0
    await session.close()


@pytest.mark.anyio
async def test_bootstrap_transfers_history_once():
    holder = await open_session(HIGH)
    for x in range(20):
        holder.set_cells({(x, 0): "="})
    newcomer = await open_session(LOW)

    await link(MemoryNetwork(), holder, newcomer, 7007)
    await wait_until(lambda: len(newcomer.log) == len(holder.log))
    await asyncio.sleep(0.1)
    await holder.drain()
    await newcomer.drain()

    assert newcomer.metrics.counters["ops_received"] == len(holder.log) == 20
    assert holder.metrics.counters["ops_sent"] == 20
    assert holder.metrics.counters["ops_received"] == 0

    await holder.close()
    await newcomer.close()


@pytest.mark.anyio
async def test_anti_entropy_repairs_a_lost_flood():
    a = await open_session(HIGH, anti_entropy_interval_s=0.05)
    b = await open_session(LOW, anti_entropy_interval_s=0.05)
    await link(MemoryNetwork(), a, b, 7008)
    await wait_until(lambda: len(a.connections) == 1 and len(b.connections) == 1)

    # applied on a without being flooded, as if the broadcast was dropped
    third = DocumentStore(MID)
    third.commit([intents.set_cells({(6, 1): Cell("?")})])
    a.context.post(a.store.integrate, list(third.log))

    await wait_until(lambda: b.snapshot().char_at(6, 1) == "?")
    assert a.snapshot() == b.snapshot()

    await a.close()
    await b.close()


@pytest.mark.anyio
async def test_running_session_prunes_silent_peers():
    session = await open_session(HIGH, presence_expiry_s=0.1)
    removed = []
    session.subscribe(lambda e: removed.append(e.actor) if e.kind == SessionEventKind.presence_removed else None)

    session.context.post(session.presence.receive, PresenceUpdate(actor=LOW, cursor=(1, 2), timestamp_ms=1))
    await wait_until(lambda: session.presence.get(LOW) is not None)

    await wait_until(lambda: removed == [LOW])
    assert session.peers() == []

    await session.close()
