from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, Generic, Iterable, List, Mapping, Optional, Set, Tuple, TypeVar

from rt_canvas.crdt.operations import (
    CELL_KINDS,
    SHAPE_RECORD_KINDS,
    Change,
    Intent,
    Operation,
    OpId,
    OpKind,
)
from rt_canvas.crdt.oplog import OperationLog
from rt_canvas.crdt.payloads import validate_payload


logger = logging.getLogger(__name__)

Coord = Tuple[int, int]
V = TypeVar("V")


@dataclass(frozen=True)
class Cell:
    ch: str
    brush: Optional[str] = None
    line_style: Optional[str] = None
    shape_id: Optional[str] = None  # back-reference, resolved through the store


@dataclass(frozen=True)
class Shape:
    id: str
    kind: str
    params: Mapping[str, Any]
    cells: Tuple[Coord, ...]
    z: int = 0
    label: Optional[str] = None
    color: Optional[str] = None


@dataclass(frozen=True)
class ShapeRecord:
    """Register value for a shape; everything but its id and z-order."""

    kind: str
    params: Mapping[str, Any]
    cells: Tuple[Coord, ...]
    label: Optional[str] = None
    color: Optional[str] = None

    @classmethod
    def from_payload(cls, raw: Mapping[str, Any]) -> "ShapeRecord":
        return cls(
            kind=str(raw["kind"]),
            params=dict(raw.get("params") or {}),
            cells=tuple((int(x), int(y)) for x, y in raw.get("cells") or []),
            label=raw.get("label"),
            color=raw.get("color"),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "params": dict(self.params),
            "cells": [list(c) for c in self.cells],
            "label": self.label,
            "color": self.color,
        }


@dataclass
class _Entry(Generic[V]):
    op_id: OpId
    value: Optional[V]


class _Register(Generic[V]):
    """Multi-value register: keeps the causally maximal writes, shows the highest id."""

    __slots__ = ("entries",)

    def __init__(self) -> None:
        self.entries: List[_Entry[V]] = []

    def write(self, log: OperationLog, op_id: OpId, value: Optional[V]) -> bool:
        for e in self.entries:
            if e.op_id == op_id or log.happened_before(op_id, e.op_id):
                return False
        self.entries = [e for e in self.entries if not log.happened_before(e.op_id, op_id)]
        self.entries.append(_Entry(op_id, value))
        return True

    def winner(self) -> Optional[_Entry[V]]:
        if not self.entries:
            return None
        return max(self.entries, key=lambda e: e.op_id)


@dataclass(frozen=True)
class CanvasSnapshot:
    """Immutable view of the materialized canvas."""

    cells: Mapping[Coord, Cell]
    shapes: Mapping[str, Shape]
    deleted_shapes: frozenset = frozenset()
    version: Mapping[str, int] = field(default_factory=dict)

    def char_at(self, x: int, y: int) -> Optional[str]:
        cell = self.cells.get((x, y))
        return cell.ch if cell else None

    def shape_order(self) -> List[Shape]:
        """Shapes bottom to top."""
        return sorted(self.shapes.values(), key=lambda s: (s.z, s.id))

    def bounds(self) -> Optional[Tuple[int, int, int, int]]:
        if not self.cells:
            return None
        xs = [x for x, _ in self.cells]
        ys = [y for _, y in self.cells]
        return min(xs), min(ys), max(xs), max(ys)

    def as_lines(self) -> List[str]:
        box = self.bounds()
        if box is None:
            return []
        min_x, min_y, max_x, max_y = box
        lines = []
        for y in range(min_y, max_y + 1):
            row = "".join(self.char_at(x, y) or " " for x in range(min_x, max_x + 1))
            lines.append(row.rstrip())
        return lines

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CanvasSnapshot):
            return NotImplemented
        return (
            dict(self.cells) == dict(other.cells)
            and dict(self.shapes) == dict(other.shapes)
        )


@dataclass
class DocumentChange:
    """Passed to subscribers after each applied batch."""

    operations: List[Operation]
    local: bool
    cells: Set[Coord] = field(default_factory=set)
    shapes: Set[str] = field(default_factory=set)


Listener = Callable[[DocumentChange], None]


class DocumentStore:
    """Materialized canvas state: a pure fold of the operation log.

    Every cell and every shape is a register resolved by causality first and
    by operation id second, so replicas that saw the same operations agree no
    matter the arrival order.
    """

    def __init__(self, actor: str, log: OperationLog | None = None, metrics: Any | None = None) -> None:
        self.actor = actor
        self.log = log if log is not None else OperationLog()
        self.metrics = metrics
        self._applied: Set[OpId] = set()
        self._cells: Dict[Coord, _Register[Cell]] = {}
        self._shapes: Dict[str, _Register[ShapeRecord]] = {}
        self._z: Dict[str, _Register[int]] = {}
        self._tombstones: Set[str] = set()
        self._listeners: List[Listener] = []

    # Subscriptions
    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, event: DocumentChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("document listener failed")

    # Local edits
    def commit(self, intents: Iterable[Intent]) -> Change:
        """Stamp intents as one Change from the local actor and apply it."""
        staged: List[Tuple[str, Dict[str, Any]]] = [
            (intent.kind, validate_payload(intent.kind, intent.payload)) for intent in intents
        ]
        change = Change(actor=self.actor)
        if not staged:
            return change
        seq = self.log.next_seq(self.actor)
        deps = tuple(h for h in self.log.heads() if h != OpId(self.actor, seq - 1))
        for kind, payload in staged:
            op = Operation(id=OpId(self.actor, seq), deps=deps, kind=kind, payload=payload)
            change.operations.append(op)
            # later ops in the same change follow the earlier ones implicitly
            deps = ()
            seq += 1
        self.integrate(change.operations, local=True)
        return change

    # Remote + local application
    def integrate(self, ops: Iterable[Operation], local: bool = False) -> List[Operation]:
        """Add operations to the log and materialize whatever became causally ready."""
        started = time.perf_counter()
        newly: List[Operation] = []
        for op in ops:
            result = self.log.append(op)
            if result.known and self.metrics is not None:
                self.metrics.incr("ops_duplicate")
            if result.buffered and self.metrics is not None:
                self.metrics.incr("ops_buffered")
            newly.extend(result.applied)
        if not newly:
            return []
        event = DocumentChange(operations=newly, local=local)
        for op in newly:
            self._apply(op, event)
        if self.metrics is not None:
            self.metrics.incr("ops_applied", len(newly))
            self.metrics.record_latency((time.perf_counter() - started) * 1000)
        self._notify(event)
        return newly

    def apply(self, op: Operation) -> bool:
        """Materialize one operation. Re-applying a known id is a no-op."""
        if op.id in self._applied:
            return False
        if op.id not in self.log:
            return bool(self.integrate([op]))
        event = DocumentChange(operations=[op], local=op.actor == self.actor)
        self._apply(op, event)
        self._notify(event)
        return True

    def _apply(self, op: Operation, event: DocumentChange) -> None:
        if op.id in self._applied:
            return
        self._applied.add(op.id)
        payload = op.payload
        if op.kind in CELL_KINDS:
            if op.kind == OpKind.set_cells:
                writes = [
                    (
                        (int(c["x"]), int(c["y"])),
                        Cell(
                            ch=c["ch"],
                            brush=c.get("brush"),
                            line_style=c.get("line_style"),
                            shape_id=c.get("shape"),
                        ),
                    )
                    for c in payload["cells"]
                ]
            else:
                writes = [((int(x), int(y)), None) for x, y in payload["cells"]]
            for coord, value in writes:
                reg = self._cells.setdefault(coord, _Register())
                if reg.write(self.log, op.id, value):
                    event.cells.add(coord)
        elif op.kind in SHAPE_RECORD_KINDS:
            shape_id = payload["shape_id"]
            raw = payload.get("shape")
            record = ShapeRecord.from_payload(raw) if raw is not None else None
            if self._shapes.setdefault(shape_id, _Register()).write(self.log, op.id, record):
                event.shapes.add(shape_id)
            if payload.get("z") is not None:
                self._z.setdefault(shape_id, _Register()).write(self.log, op.id, int(payload["z"]))
        elif op.kind == OpKind.reorder_shape:
            shape_id = payload["shape_id"]
            if self._z.setdefault(shape_id, _Register()).write(self.log, op.id, int(payload["z"])):
                event.shapes.add(shape_id)
        elif op.kind == OpKind.delete_shape:
            shape_id = payload["shape_id"]
            if shape_id not in self._tombstones:
                self._tombstones.add(shape_id)
                event.shapes.add(shape_id)

    # Reads
    def cell(self, x: int, y: int) -> Optional[Cell]:
        reg = self._cells.get((x, y))
        if reg is None:
            return None
        win = reg.winner()
        if win is None or win.value is None:
            return None
        if win.value.shape_id is not None and win.value.shape_id in self._tombstones:
            return None
        return win.value

    def cell_winner(self, coord: Coord) -> Tuple[Optional[OpId], Optional[Cell]]:
        """Winning write for a cell, ignoring tombstone visibility."""
        reg = self._cells.get(coord)
        win = reg.winner() if reg else None
        if win is None:
            return None, None
        return win.op_id, win.value

    def shape(self, shape_id: str) -> Optional[Shape]:
        if shape_id in self._tombstones:
            return None
        reg = self._shapes.get(shape_id)
        win = reg.winner() if reg else None
        if win is None or win.value is None:
            return None
        rec = win.value
        return Shape(
            id=shape_id,
            kind=rec.kind,
            params=MappingProxyType(dict(rec.params)),
            cells=rec.cells,
            z=self.z_of(shape_id),
            label=rec.label,
            color=rec.color,
        )

    def shape_winner(self, shape_id: str) -> Tuple[Optional[OpId], Optional[ShapeRecord]]:
        reg = self._shapes.get(shape_id)
        win = reg.winner() if reg else None
        if win is None:
            return None, None
        return win.op_id, win.value

    def z_of(self, shape_id: str) -> int:
        reg = self._z.get(shape_id)
        win = reg.winner() if reg else None
        return int(win.value) if win is not None and win.value is not None else 0

    def z_winner(self, shape_id: str) -> Tuple[Optional[OpId], Optional[int]]:
        reg = self._z.get(shape_id)
        win = reg.winner() if reg else None
        if win is None:
            return None, None
        return win.op_id, win.value

    def max_z(self) -> int:
        live = [self.z_of(s) for s in self.shape_ids()]
        return max(live) if live else 0

    def min_z(self) -> int:
        live = [self.z_of(s) for s in self.shape_ids()]
        return min(live) if live else 0

    def shape_ids(self) -> List[str]:
        return sorted(s for s in self._shapes if self.shape(s) is not None)

    def snapshot(self) -> CanvasSnapshot:
        cells: Dict[Coord, Cell] = {}
        for coord in self._cells:
            cell = self.cell(*coord)
            if cell is not None:
                cells[coord] = cell
        shapes: Dict[str, Shape] = {}
        for shape_id in self._shapes:
            shape = self.shape(shape_id)
            if shape is not None:
                shapes[shape_id] = shape
        return CanvasSnapshot(
            cells=MappingProxyType(cells),
            shapes=MappingProxyType(shapes),
            deleted_shapes=frozenset(self._tombstones),
            version=MappingProxyType(self.log.version_vector()),
        )

    @classmethod
    def replay(cls, actor: str, ops: Iterable[Operation], metrics: Any | None = None) -> "DocumentStore":
        """Build a fresh store from a previously exported operation set."""
        store = cls(actor, metrics=metrics)
        store.integrate(ops)
        return store
