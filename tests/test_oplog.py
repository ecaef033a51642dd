from __future__ import annotations

from rt_canvas.crdt.operations import Operation, OpId, OpKind
from rt_canvas.crdt.oplog import OperationLog


def make_op(actor: str, seq: int, deps=(), ch: str = "x") -> Operation:
    return Operation(
        id=OpId(actor, seq),
        deps=tuple(deps),
        kind=OpKind.set_cells,
        payload={"cells": [{"x": seq, "y": 0, "ch": ch}]},
    )


def test_append_is_idempotent():
    log = OperationLog()
    op = make_op("a", 1)

    first = log.append(op)
    second = log.append(op)

    assert first.applied_ids == [OpId("a", 1)]
    assert second.known and second.applied == []
    assert len(log) == 1


def test_same_actor_gap_is_buffered_until_predecessor_arrives():
    log = OperationLog()
    a1, a2, a3 = make_op("a", 1), make_op("a", 2), make_op("a", 3)

    assert log.append(a3).buffered
    assert log.append(a2).buffered
    assert [op.id for op in log.pending()] == [a2.id, a3.id]
    assert not log.causally_ready(a3)

    result = log.append(a1)

    assert result.applied_ids == [a1.id, a2.id, a3.id]
    assert log.pending() == []
    assert log.version_vector() == {"a": 3}


def test_cross_actor_dependency_is_respected():
    log = OperationLog()
    a1 = make_op("a", 1)
    b1 = make_op("b", 1, deps=[a1.id])

    assert log.append(b1).buffered
    assert b1.id not in log

    released = log.append(a1)

    assert released.applied_ids == [a1.id, b1.id]
    assert log.happened_before(a1.id, b1.id)
    assert not log.happened_before(b1.id, a1.id)


def test_concurrent_operations_are_unordered():
    log = OperationLog()
    a1, b1 = make_op("a", 1), make_op("b", 1)
    log.extend([a1, b1])

    assert not log.happened_before(a1.id, b1.id)
    assert not log.happened_before(b1.id, a1.id)
    assert log.heads() == [a1.id, b1.id]

    c1 = make_op("c", 1, deps=[a1.id, b1.id])
    log.append(c1)
    assert log.heads() == [c1.id]
    assert log.clock_of(c1.id) == {"a": 1, "b": 1, "c": 1}


def test_missing_since_returns_causal_delta():
    log = OperationLog()
    a1, a2 = make_op("a", 1), make_op("a", 2)
    b1 = make_op("b", 1, deps=[a2.id])
    log.extend([a1, a2, b1])

    assert [op.id for op in log.missing_since({})] == [a1.id, a2.id, b1.id]
    assert [op.id for op in log.missing_since({"a": 1})] == [a2.id, b1.id]
    assert log.missing_since({"a": 2, "b": 1}) == []
    assert log.next_seq("a") == 3
    assert log.next_seq("z") == 1


def test_discard_pending_drops_unready_operations():
    log = OperationLog()
    log.append(make_op("a", 2))

    assert log.discard_pending() == 1
    assert log.pending() == []
    # the predecessor alone no longer releases anything
    assert log.append(make_op("a", 1)).applied_ids == [OpId("a", 1)]
    assert len(log) == 1
