"""Operation-set import/export for the save/load collaborator.

The canvas is saved as its operation log, not as rendered cells, so that
ids and dependencies survive a reload and later merges keep converging.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from pydantic import BaseModel, Field, ValidationError

from rt_canvas.core.errors import ProtocolError
from rt_canvas.crdt.operations import Operation
from rt_canvas.ws.protocol import OperationModel


logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


class OperationSet(BaseModel):
    version: int = FORMAT_VERSION
    document_id: str = Field(min_length=1)
    operations: List[OperationModel] = Field(default_factory=list)


def export_operations(document_id: str, ops: Iterable[Operation]) -> Dict[str, Any]:
    """JSON-able operation set, ids and deps verbatim, in causal order."""
    payload = OperationSet(
        document_id=document_id,
        operations=[OperationModel.from_operation(op) for op in ops],
    )
    return payload.model_dump(mode="json")


def import_operations(raw: Mapping[str, Any] | str | bytes) -> Tuple[str, List[Operation]]:
    try:
        if isinstance(raw, (str, bytes)):
            parsed = OperationSet.model_validate_json(raw)
        else:
            parsed = OperationSet.model_validate(dict(raw))
    except ValidationError as exc:
        raise ProtocolError(f"invalid operation set: {exc.error_count()} error(s)") from exc
    if parsed.version != FORMAT_VERSION:
        raise ProtocolError(f"unsupported operation set version {parsed.version}")
    return parsed.document_id, [m.to_operation() for m in parsed.operations]


def save_file(path: str | Path, document_id: str, ops: Iterable[Operation]) -> Path:
    target = Path(path)
    data = export_operations(document_id, ops)
    target.write_text(json.dumps(data, indent=2), encoding="utf-8")
    logger.info("saved %d operation(s) of %s to %s", len(data["operations"]), document_id, target)
    return target


def load_file(path: str | Path) -> Tuple[str, List[Operation]]:
    source = Path(path)
    document_id, ops = import_operations(source.read_text(encoding="utf-8"))
    logger.info("loaded %d operation(s) of %s from %s", len(ops), document_id, source)
    return document_id, ops
