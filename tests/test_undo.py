from __future__ import annotations

from rt_canvas.crdt import intents
from rt_canvas.crdt.document import Cell, DocumentStore, ShapeRecord
from rt_canvas.services.undo import UndoController

A = "a" * 32
B = "b" * 32

ARROW = ShapeRecord(kind="arrow", params={"from": [0, 0], "to": [2, 0]}, cells=((0, 0), (1, 0), (2, 0)))


def make(actor: str = A, max_history: int = 100):
    store = DocumentStore(actor)
    return store, UndoController(store, max_history=max_history)


def test_undo_then_redo_restores_snapshots_exactly():
    store, undo = make()
    undo.perform([intents.set_cells({(0, 0): Cell("a"), (1, 0): Cell("b")})])
    before = store.snapshot()

    undo.perform([
        intents.set_cells({(0, 0): Cell("x", brush="heavy")}),
        intents.create_shape("s", ARROW, z=3),
        intents.clear_cells([(1, 0)]),
    ])
    after = store.snapshot()

    undo.undo()
    assert store.snapshot() == before
    undo.redo()
    assert store.snapshot() == after


def test_chained_undo_walks_back_through_history():
    store, undo = make()
    undo.perform([intents.set_cells({(0, 0): Cell("a")})])
    undo.perform([intents.set_cells({(0, 0): Cell("b")})])

    undo.undo()
    assert store.snapshot().char_at(0, 0) == "a"
    undo.undo()
    assert store.snapshot().char_at(0, 0) is None
    assert not undo.can_undo()

    undo.redo()
    assert store.snapshot().char_at(0, 0) == "a"
    undo.redo()
    assert store.snapshot().char_at(0, 0) == "b"
    assert not undo.can_redo()

    # history only grows
    assert len(store.log) == 6


def test_empty_stacks_report_nothing_to_do():
    store, undo = make()
    assert undo.undo() is None
    assert undo.redo() is None
    assert len(store.log) == 0


def test_new_change_clears_redo_stack():
    _, undo = make()
    undo.perform([intents.set_cells({(0, 0): Cell("a")})])
    undo.undo()
    assert undo.can_redo()

    undo.perform([intents.set_cells({(3, 3): Cell("z")})])
    assert not undo.can_redo()
    assert undo.undo_count() == 1


def test_history_is_capped():
    _, undo = make(max_history=3)
    for i in range(5):
        undo.perform([intents.set_cells({(i, 0): Cell("#")})])
    assert undo.undo_count() == 3


def test_undo_leaves_remote_overwrites_alone():
    store, undo = make(A)
    undo.perform([intents.set_cells({(0, 0): Cell("a"), (1, 0): Cell("a")})])

    remote = DocumentStore(B)
    remote.integrate(list(store.log))
    remote.commit([intents.set_cells({(0, 0): Cell("r")})])
    store.integrate(list(remote.log))

    undo.undo()

    snap = store.snapshot()
    assert snap.char_at(0, 0) == "r"
    assert snap.char_at(1, 0) is None


def test_undo_create_retracts_shape_and_redo_brings_it_back():
    store, undo = make()
    undo.perform([
        intents.create_shape("s", ARROW, z=1),
        intents.set_cells({c: Cell("-", shape_id="s") for c in ARROW.cells}),
    ])
    created = store.snapshot()

    undo.undo()
    assert store.snapshot().shapes == {}
    assert store.snapshot().cells == {}

    undo.redo()
    assert store.snapshot() == created


def test_undo_delete_restores_shape_under_new_id():
    store, undo = make()
    undo.perform([
        intents.create_shape("s", ARROW, z=4),
        intents.set_cells({c: Cell("-", shape_id="s") for c in ARROW.cells}),
    ])
    drawn = store.snapshot()
    undo.perform([intents.delete_shape("s"), intents.clear_cells(list(ARROW.cells))])
    assert store.snapshot().shapes == {}

    change = undo.undo()
    snap = store.snapshot()
    (restored,) = snap.shapes.values()
    assert restored.id != "s"
    assert change.restored == {"s": restored.id}
    assert undo.resolve("s") == restored.id
    assert undo.resolve(restored.id) == restored.id
    assert (restored.kind, restored.cells, restored.z) == ("arrow", ARROW.cells, 4)
    assert snap.as_lines() == drawn.as_lines() == ["---"]
    assert all(cell.shape_id == restored.id for cell in snap.cells.values())

    # redo deletes the restored shape, not the tombstoned one
    undo.redo()
    assert store.snapshot().shapes == {}
    assert store.snapshot().cells == {}


def test_undo_reorder_restores_previous_z():
    store, undo = make()
    undo.perform([intents.create_shape("s", ARROW, z=2)])
    undo.perform([intents.reorder_shape("s", 10)])

    undo.undo()
    assert store.snapshot().shapes["s"].z == 2
