from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from rt_canvas.crdt import intents as build
from rt_canvas.crdt.document import Cell, Coord, DocumentStore, ShapeRecord
from rt_canvas.crdt.operations import (
    CELL_KINDS,
    SHAPE_RECORD_KINDS,
    Change,
    Intent,
    OpId,
    OpKind,
)
from rt_canvas.crdt.payloads import validate_payload


logger = logging.getLogger(__name__)

# ("cell", (x, y)) | ("shape", shape_id) | ("z", shape_id)
Key = Tuple[str, Any]


@dataclass
class Before:
    """Values the keys of a Change held just before it was applied."""

    cells: Dict[Coord, Optional[Cell]] = field(default_factory=dict)
    shapes: Dict[str, Optional[ShapeRecord]] = field(default_factory=dict)
    z: Dict[str, Optional[int]] = field(default_factory=dict)
    deleted: Set[str] = field(default_factory=set)
    winners: Dict[Key, Optional[OpId]] = field(default_factory=dict)  # op that wrote each value


@dataclass
class UndoEntry:
    change: Change
    before: Before
    forward: List[Intent]


def _forward_intents(change: Change) -> List[Intent]:
    return [Intent(op.kind, dict(op.payload)) for op in change.operations]


def _resolve(mapping: Mapping[str, str], shape_id: Optional[str]) -> Optional[str]:
    seen = set()
    while shape_id in mapping and shape_id not in seen:
        seen.add(shape_id)
        shape_id = mapping[shape_id]
    return shape_id


def _remap(intent: Intent, mapping: Mapping[str, str]) -> Intent:
    if not mapping:
        return intent
    payload: Dict[str, Any] = dict(intent.payload)
    if "shape_id" in payload:
        payload["shape_id"] = _resolve(mapping, payload["shape_id"])
    if intent.kind == OpKind.set_cells:
        payload["cells"] = [{**c, "shape": _resolve(mapping, c.get("shape"))} for c in payload["cells"]]
    return Intent(intent.kind, payload)


class UndoController:
    """Per-actor undo/redo expressed as new compensating Changes.

    History is never rewritten: undo appends an inverse Change and redo
    re-applies the original intents as a fresh Change. Only keys whose
    visible write still comes from the undone Change are reverted, so
    later edits by other peers are left alone. A compensating write counts
    as the write whose value it restored, which keeps chained undos exact.
    """

    def __init__(self, store: DocumentStore, max_history: int = 100) -> None:
        self.store = store
        self.max_history = max_history
        self._undo: List[UndoEntry] = []
        self._redo: List[UndoEntry] = []
        self._remap: Dict[str, str] = {}  # deleted shape id -> id it was restored as
        self._restores: Dict[Tuple[OpId, Key], Optional[OpId]] = {}

    # Stack info
    def can_undo(self) -> bool:
        return bool(self._undo)

    def can_redo(self) -> bool:
        return bool(self._redo)

    def undo_count(self) -> int:
        return len(self._undo)

    def redo_count(self) -> int:
        return len(self._redo)

    def clear(self) -> None:
        self._undo.clear()
        self._redo.clear()

    # Recording
    def capture(self, intents: Iterable[Intent]) -> Before:
        store = self.store
        before = Before()
        for intent in intents:
            payload = validate_payload(intent.kind, intent.payload)
            if intent.kind in CELL_KINDS:
                for c in payload["cells"]:
                    coord = (int(c["x"]), int(c["y"])) if isinstance(c, dict) else (int(c[0]), int(c[1]))
                    if coord not in before.cells:
                        op_id, value = store.cell_winner(coord)
                        before.cells[coord] = value
                        before.winners[("cell", coord)] = op_id
                continue
            shape_id = payload["shape_id"]
            if intent.kind in SHAPE_RECORD_KINDS or intent.kind == OpKind.delete_shape:
                if shape_id not in before.shapes:
                    op_id, record = store.shape_winner(shape_id)
                    before.shapes[shape_id] = record
                    before.winners[("shape", shape_id)] = op_id
                if intent.kind == OpKind.delete_shape:
                    before.deleted.add(shape_id)
            if shape_id not in before.z:
                op_id, z = store.z_winner(shape_id)
                before.z[shape_id] = z
                before.winners[("z", shape_id)] = op_id
        return before

    def record(self, change: Change, before: Before, forward: Optional[List[Intent]] = None, *, clear_redo: bool = True) -> None:
        if not change.operations:
            return
        self._undo.append(UndoEntry(change, before, forward or _forward_intents(change)))
        while len(self._undo) > self.max_history:
            self._undo.pop(0)
        if clear_redo:
            self._redo.clear()

    def perform(self, intents: Iterable[Intent]) -> Change:
        """Commit intents as a local Change and remember it for undo."""
        staged = list(intents)
        before = self.capture(staged)
        change = self.store.commit(staged)
        self.record(change, before)
        return change

    # Undo / redo
    def undo(self) -> Optional[Change]:
        """Revert the most recent local Change. Returns None when there is nothing to undo."""
        if not self._undo:
            logger.debug("nothing to undo")
            return None
        entry = self._undo.pop()
        planned, restored_ids = self._inverse(entry)
        change = self.store.commit([intent for intent, _ in planned])
        change.restored = restored_ids
        # commit stamps one operation per intent, in order
        for op, (_, restored) in zip(change.operations, planned):
            for key, source in restored:
                self._restores[(op.id, key)] = source
        self._redo.append(entry)
        return change

    def redo(self) -> Optional[Change]:
        """Re-apply the most recently undone Change as a new forward Change."""
        if not self._redo:
            logger.debug("nothing to redo")
            return None
        entry = self._redo.pop()
        forward = [_remap(i, self._remap) for i in entry.forward]
        before = self.capture(forward)
        change = self.store.commit(forward)
        self.record(change, before, forward, clear_redo=False)
        return change

    def resolve(self, shape_id: str) -> str:
        """Current id of a shape, following restores of deleted shapes."""
        return _resolve(self._remap, shape_id)

    def _owned(self, key: Key, winner: Optional[OpId], own: Set[OpId]) -> bool:
        seen: Set[OpId] = set()
        while winner is not None and winner not in own and winner not in seen:
            seen.add(winner)
            winner = self._restores.get((winner, key))
        return winner is not None and winner in own

    def _inverse(
        self, entry: UndoEntry
    ) -> Tuple[List[Tuple[Intent, List[Tuple[Key, Optional[OpId]]]]], Dict[str, str]]:
        store = self.store
        before = entry.before
        own: Set[OpId] = set(entry.change.op_ids)
        restored_ids: Dict[str, str] = {}
        planned: List[Tuple[Intent, List[Tuple[Key, Optional[OpId]]]]] = []

        for shape_id in sorted(before.deleted):
            record = before.shapes.get(shape_id)
            if record is None:
                continue
            # tombstones are permanent; bring the shape back under a new id
            new_id = uuid.uuid4().hex
            restored_ids[shape_id] = new_id
            z = before.z.get(shape_id)
            planned.append((build.create_shape(new_id, record, z if z is not None else store.max_z() + 1), []))

        for shape_id, record in sorted(before.shapes.items()):
            if shape_id in before.deleted:
                continue
            key = ("shape", shape_id)
            if self._owned(key, store.shape_winner(shape_id)[0], own):
                planned.append((build.update_shape(shape_id, record), [(key, before.winners.get(key))]))
        for shape_id, z in sorted(before.z.items()):
            if shape_id in before.deleted or z is None:
                continue
            key = ("z", shape_id)
            if self._owned(key, store.z_winner(shape_id)[0], own):
                planned.append((build.reorder_shape(shape_id, z), [(key, before.winners.get(key))]))

        sets: Dict[Coord, Cell] = {}
        clears: List[Coord] = []
        for coord, cell in sorted(before.cells.items()):
            if not self._owned(("cell", coord), store.cell_winner(coord)[0], own):
                continue
            if cell is None:
                clears.append(coord)
            elif cell.shape_id in restored_ids:
                sets[coord] = Cell(cell.ch, cell.brush, cell.line_style, restored_ids[cell.shape_id])
            else:
                sets[coord] = cell
        if sets:
            planned.append((build.set_cells(sets), [(("cell", c), before.winners.get(("cell", c))) for c in sets]))
        if clears:
            planned.append((build.clear_cells(clears), [(("cell", c), before.winners.get(("cell", c))) for c in clears]))

        self._remap.update(restored_ids)
        return planned, restored_ids
