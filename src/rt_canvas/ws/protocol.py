"""Peer wire messages. One JSON object per websocket text frame."""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from rt_canvas.core.errors import ProtocolError
from rt_canvas.crdt.operations import Operation, OpId
from rt_canvas.crdt.payloads import validate_payload


class OperationModel(BaseModel):
    id: Tuple[str, int]
    deps: List[Tuple[str, int]] = Field(default_factory=list)
    kind: str
    payload: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_operation(cls, op: Operation) -> "OperationModel":
        return cls(
            id=(op.id.actor, op.id.seq),
            deps=[(d.actor, d.seq) for d in op.deps],
            kind=op.kind,
            payload=dict(op.payload),
        )

    def to_operation(self) -> Operation:
        actor, seq = self.id
        if seq < 1:
            raise ProtocolError(f"invalid sequence number {seq}")
        return Operation(
            id=OpId(actor, seq),
            deps=tuple(OpId(a, s) for a, s in self.deps),
            kind=self.kind,
            payload=validate_payload(self.kind, self.payload),
        )


class VersionVectorExchange(BaseModel):
    type: Literal["version_vector"] = "version_vector"
    document_id: str
    actor: str
    vector: Dict[str, int] = Field(default_factory=dict)


class OperationBatch(BaseModel):
    type: Literal["op_batch"] = "op_batch"
    document_id: str
    operations: List[OperationModel] = Field(default_factory=list)

    @classmethod
    def from_operations(cls, document_id: str, ops: List[Operation]) -> "OperationBatch":
        return cls(document_id=document_id, operations=[OperationModel.from_operation(op) for op in ops])

    def to_operations(self) -> List[Operation]:
        return [m.to_operation() for m in self.operations]


class PresenceUpdate(BaseModel):
    type: Literal["presence"] = "presence"
    actor: str
    display_name: Optional[str] = None
    cursor: Optional[Tuple[int, int]] = None
    tool: str = "select"
    activity: Dict[str, Any] = Field(default_factory=lambda: {"kind": "idle"})
    color_index: int = 0
    timestamp_ms: int = 0


class PresenceLeave(BaseModel):
    type: Literal["presence_leave"] = "presence_leave"
    actor: str


Message = Annotated[
    Union[VersionVectorExchange, OperationBatch, PresenceUpdate, PresenceLeave],
    Field(discriminator="type"),
]

_adapter: TypeAdapter = TypeAdapter(Message)


def encode_message(msg: BaseModel) -> str:
    return msg.model_dump_json()


def decode_message(raw: str | bytes) -> Union[VersionVectorExchange, OperationBatch, PresenceUpdate, PresenceLeave]:
    try:
        return _adapter.validate_json(raw)
    except ValidationError as exc:
        raise ProtocolError(f"undecodable message: {exc.error_count()} error(s)") from exc
