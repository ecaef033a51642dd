from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Tuple


# Operations are identified by (actor, seq). The pair is unique and totally
# ordered; per-actor sequence numbers start at 1 and have no gaps.


VersionVector = Dict[str, int]


class OpKind(str):
    set_cells = "set_cells"
    clear_cells = "clear_cells"
    create_shape = "create_shape"
    update_shape = "update_shape"
    move_shape = "move_shape"
    resize_shape = "resize_shape"
    delete_shape = "delete_shape"
    reorder_shape = "reorder_shape"


CELL_KINDS = frozenset({OpKind.set_cells, OpKind.clear_cells})
# Kinds that write the whole shape record register
SHAPE_RECORD_KINDS = frozenset(
    {OpKind.create_shape, OpKind.update_shape, OpKind.move_shape, OpKind.resize_shape}
)
ALL_KINDS = CELL_KINDS | SHAPE_RECORD_KINDS | {OpKind.delete_shape, OpKind.reorder_shape}


@dataclass(frozen=True, order=True)
class OpId:
    actor: str
    seq: int

    def to_list(self) -> List[Any]:
        return [self.actor, self.seq]

    @classmethod
    def from_list(cls, raw: Iterable[Any]) -> "OpId":
        actor, seq = raw
        return cls(str(actor), int(seq))

    def __str__(self) -> str:
        return f"{self.seq}@{self.actor[:8]}"


@dataclass(frozen=True)
class Operation:
    id: OpId
    deps: Tuple[OpId, ...]
    kind: str
    payload: Mapping[str, Any] = field(default_factory=dict, hash=False)

    @property
    def actor(self) -> str:
        return self.id.actor

    @property
    def seq(self) -> int:
        return self.id.seq

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id.to_list(),
            "deps": [d.to_list() for d in self.deps],
            "kind": self.kind,
            "payload": dict(self.payload),
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Operation":
        return cls(
            id=OpId.from_list(raw["id"]),
            deps=tuple(OpId.from_list(d) for d in raw.get("deps", [])),
            kind=str(raw["kind"]),
            payload=dict(raw.get("payload") or {}),
        )


@dataclass(frozen=True)
class Intent:
    """A not-yet-stamped edit: what to do, before an id and deps are assigned."""

    kind: str
    payload: Mapping[str, Any]


@dataclass
class Change:
    """All operations produced by one local action; the unit of undo."""

    actor: str
    operations: List[Operation] = field(default_factory=list)
    # shapes this Change brought back under a new id, old id -> new id
    restored: Dict[str, str] = field(default_factory=dict)

    @property
    def id(self) -> OpId | None:
        return self.operations[0].id if self.operations else None

    @property
    def op_ids(self) -> List[OpId]:
        return [op.id for op in self.operations]

    def __len__(self) -> int:
        return len(self.operations)


def covers(vector: Mapping[str, int], op_id: OpId) -> bool:
    """True if a replica described by `vector` has already seen `op_id`."""
    return vector.get(op_id.actor, 0) >= op_id.seq


def merge_vectors(a: Mapping[str, int], b: Mapping[str, int]) -> VersionVector:
    merged = dict(b)
    for actor, seq in a.items():
        merged[actor] = max(seq, merged.get(actor, 0))
    return merged
