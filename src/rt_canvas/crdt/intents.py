"""Builders for edit intents submitted by the input/tool layer."""

from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from rt_canvas.crdt.document import Cell, Coord, ShapeRecord
from rt_canvas.crdt.operations import Intent, OpKind


def cell_payload(coord: Coord, cell: Cell) -> Dict[str, Any]:
    x, y = coord
    return {
        "x": x,
        "y": y,
        "ch": cell.ch,
        "brush": cell.brush,
        "line_style": cell.line_style,
        "shape": cell.shape_id,
    }


def set_cells(cells: Mapping[Coord, Cell] | Iterable[Tuple[Coord, Cell]]) -> Intent:
    items = cells.items() if isinstance(cells, Mapping) else cells
    return Intent(OpKind.set_cells, {"cells": [cell_payload(c, v) for c, v in items]})


def clear_cells(coords: Iterable[Coord]) -> Intent:
    return Intent(OpKind.clear_cells, {"cells": [[x, y] for x, y in coords]})


def _shape_intent(kind: str, shape_id: str, record: Optional[ShapeRecord], z: Optional[int] = None) -> Intent:
    payload: Dict[str, Any] = {
        "shape_id": shape_id,
        "shape": record.to_payload() if record is not None else None,
    }
    if z is not None:
        payload["z"] = z
    return Intent(kind, payload)


def create_shape(shape_id: str, record: ShapeRecord, z: int = 0) -> Intent:
    return _shape_intent(OpKind.create_shape, shape_id, record, z)


def update_shape(shape_id: str, record: Optional[ShapeRecord]) -> Intent:
    return _shape_intent(OpKind.update_shape, shape_id, record)


def move_shape(shape_id: str, record: ShapeRecord) -> Intent:
    return _shape_intent(OpKind.move_shape, shape_id, record)


def resize_shape(shape_id: str, record: ShapeRecord) -> Intent:
    return _shape_intent(OpKind.resize_shape, shape_id, record)


def delete_shape(shape_id: str) -> Intent:
    return Intent(OpKind.delete_shape, {"shape_id": shape_id})


def reorder_shape(shape_id: str, z: int) -> Intent:
    return Intent(OpKind.reorder_shape, {"shape_id": shape_id, "z": z})
