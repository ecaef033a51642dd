from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Set

from rt_canvas.crdt.operations import Operation, OpId, VersionVector, covers


logger = logging.getLogger(__name__)


@dataclass
class AppendResult:
    known: bool = False  # op id was already applied or buffered
    buffered: bool = False  # stored, waiting for dependencies
    applied: List[Operation] = field(default_factory=list)  # newly applied, causal order

    @property
    def applied_ids(self) -> List[OpId]:
        return [op.id for op in self.applied]


class OperationLog:
    """Append-only, causally ordered set of every operation this replica has seen.

    Operations whose dependencies are not all present are held in a delivery
    buffer and released, in causal order, as soon as the last one arrives.
    """

    def __init__(self) -> None:
        self._ops: Dict[OpId, Operation] = {}
        self._order: List[OpId] = []  # application order, always causal
        self._vector: VersionVector = {}
        self._clocks: Dict[OpId, VersionVector] = {}  # causal past of each op
        self._heads: Set[OpId] = set()
        self._pending: Dict[OpId, Operation] = {}
        self._waiting_on: Dict[OpId, Set[OpId]] = {}  # missing dep -> pending ops

    # Queries
    def __contains__(self, op_id: object) -> bool:
        return op_id in self._ops

    def __len__(self) -> int:
        return len(self._order)

    def __iter__(self) -> Iterator[Operation]:
        return (self._ops[i] for i in self._order)

    def get(self, op_id: OpId) -> Optional[Operation]:
        return self._ops.get(op_id)

    def is_known(self, op_id: OpId) -> bool:
        return op_id in self._ops or op_id in self._pending

    def version_vector(self) -> VersionVector:
        return dict(self._vector)

    def next_seq(self, actor: str) -> int:
        return self._vector.get(actor, 0) + 1

    def heads(self) -> List[OpId]:
        return sorted(self._heads)

    def pending(self) -> List[Operation]:
        return [self._pending[i] for i in sorted(self._pending)]

    def clock_of(self, op_id: OpId) -> VersionVector:
        return self._clocks[op_id]

    def happened_before(self, a: OpId, b: OpId) -> bool:
        """True if `a` is in the causal past of `b` (and a != b)."""
        if a == b:
            return False
        clock = self._clocks.get(b)
        return clock is not None and covers(clock, a)

    def _missing_deps(self, op: Operation) -> List[OpId]:
        missing = [d for d in op.deps if d not in self._ops]
        if op.seq > 1:
            prev = OpId(op.actor, op.seq - 1)
            if prev not in self._ops and prev not in missing:
                missing.append(prev)
        return missing

    def causally_ready(self, op: Operation) -> bool:
        return not self._missing_deps(op)

    def missing_since(self, peer_vector: Mapping[str, int]) -> List[Operation]:
        """Operations this replica has that a peer at `peer_vector` lacks, in causal order."""
        return [self._ops[i] for i in self._order if not covers(peer_vector, i)]

    # Mutation
    def append(self, op: Operation) -> AppendResult:
        if self.is_known(op.id):
            return AppendResult(known=True)
        missing = self._missing_deps(op)
        if missing:
            self._pending[op.id] = op
            for dep in missing:
                self._waiting_on.setdefault(dep, set()).add(op.id)
            logger.debug("buffered %s waiting on %s", op.id, [str(m) for m in missing])
            return AppendResult(buffered=True)

        result = AppendResult()
        self._store(op)
        result.applied.append(op)
        self._release(op.id, result)
        return result

    def extend(self, ops: Iterable[Operation]) -> AppendResult:
        total = AppendResult()
        for op in ops:
            res = self.append(op)
            total.applied.extend(res.applied)
        return total

    def discard_pending(self) -> int:
        count = len(self._pending)
        self._pending.clear()
        self._waiting_on.clear()
        return count

    def _store(self, op: Operation) -> None:
        clock: VersionVector = {}
        prev = OpId(op.actor, op.seq - 1)
        parents = list(op.deps)
        if op.seq > 1:
            parents.append(prev)
        for parent in parents:
            for actor, seq in self._clocks[parent].items():
                if seq > clock.get(actor, 0):
                    clock[actor] = seq
        clock[op.actor] = op.seq

        self._ops[op.id] = op
        self._order.append(op.id)
        self._clocks[op.id] = clock
        self._vector[op.actor] = op.seq
        self._heads.difference_update(parents)
        self._heads.add(op.id)

    def _release(self, arrived: OpId, result: AppendResult) -> None:
        stack = [arrived]
        while stack:
            dep = stack.pop()
            for waiting_id in sorted(self._waiting_on.pop(dep, ())):
                op = self._pending.get(waiting_id)
                if op is None or not self.causally_ready(op):
                    continue
                del self._pending[waiting_id]
                self._store(op)
                result.applied.append(op)
                stack.append(op.id)
