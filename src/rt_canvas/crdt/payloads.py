"""Validation of operation payloads, for local intents and remote operations alike."""

from __future__ import annotations

import enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from rt_canvas.core.errors import ProtocolError
from rt_canvas.crdt.operations import OpKind


class ShapeKind(str, enum.Enum):
    line = "line"
    arrow = "arrow"
    rectangle = "rectangle"
    double_box = "double_box"
    diamond = "diamond"
    ellipse = "ellipse"
    freehand = "freehand"
    text = "text"
    triangle = "triangle"
    parallelogram = "parallelogram"
    hexagon = "hexagon"
    trapezoid = "trapezoid"
    rounded_rect = "rounded_rect"
    cylinder = "cylinder"
    cloud = "cloud"
    star = "star"


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class CellWrite(_Payload):
    x: int
    y: int
    ch: str = Field(min_length=1, max_length=1)
    brush: Optional[str] = None
    line_style: Optional[str] = None
    shape: Optional[str] = None


class SetCellsPayload(_Payload):
    cells: List[CellWrite] = Field(min_length=1)


class ClearCellsPayload(_Payload):
    cells: List[Tuple[int, int]] = Field(min_length=1)


class ShapeRecordModel(_Payload):
    kind: ShapeKind
    params: Dict[str, Any] = Field(default_factory=dict)
    cells: List[Tuple[int, int]] = Field(default_factory=list)
    label: Optional[str] = None
    color: Optional[str] = None


class ShapePayload(_Payload):
    shape_id: str = Field(min_length=1)
    # None retracts the shape (used when undoing its creation)
    shape: Optional[ShapeRecordModel]
    z: Optional[int] = None


class DeleteShapePayload(_Payload):
    shape_id: str = Field(min_length=1)


class ReorderShapePayload(_Payload):
    shape_id: str = Field(min_length=1)
    z: int


_MODELS = {
    OpKind.set_cells: SetCellsPayload,
    OpKind.clear_cells: ClearCellsPayload,
    OpKind.create_shape: ShapePayload,
    OpKind.update_shape: ShapePayload,
    OpKind.move_shape: ShapePayload,
    OpKind.resize_shape: ShapePayload,
    OpKind.delete_shape: DeleteShapePayload,
    OpKind.reorder_shape: ReorderShapePayload,
}


def validate_payload(kind: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Return the normalized (JSON-shaped) payload, or raise ProtocolError."""
    model = _MODELS.get(kind)
    if model is None:
        raise ProtocolError(f"unknown operation kind: {kind!r}")
    try:
        parsed = model.model_validate(dict(payload))
    except ValidationError as exc:
        raise ProtocolError(f"invalid {kind} payload: {exc.error_count()} error(s)") from exc
    return parsed.model_dump(mode="json")
