from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from rt_canvas.core.errors import ConnectError, OfflineModeError, TicketDecodeError
from rt_canvas.services.session import Session, SessionManager


router = APIRouter(prefix="/v1")


def _manager(request: Request) -> SessionManager:
    return request.app.state.sessions


def _session_or_404(request: Request, doc_id: str) -> Session:
    session = _manager(request).get(doc_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"unknown document {doc_id}")
    return session


class PeerInfo(BaseModel):
    actor: str
    display_name: str
    cursor: Optional[List[int]] = None
    tool: str
    activity: str
    color_index: int
    sync_progress: Optional[str] = None


class SessionInfo(BaseModel):
    document_id: str
    actor: str
    mode: str
    ticket: Optional[str] = None
    connections: int
    operations: int
    peers: List[PeerInfo]


def _session_info(session: Session) -> SessionInfo:
    peers = [
        PeerInfo(
            actor=p.actor,
            display_name=p.display_name,
            cursor=list(p.cursor) if p.cursor is not None else None,
            tool=p.tool,
            activity=p.activity.label,
            color_index=p.color_index,
            sync_progress=str(p.sync_progress) if p.sync_progress is not None else None,
        )
        for p in session.peers()
    ]
    return SessionInfo(
        document_id=session.document_id,
        actor=session.actor,
        mode=session.mode,
        ticket=session.ticket.encode() if session.ticket is not None else None,
        connections=len(session.connections),
        operations=len(session.log),
        peers=peers,
    )


@router.get("/session", response_model=SessionInfo)
async def get_session(request: Request) -> Any:
    sessions = _manager(request).sessions()
    if not sessions:
        raise HTTPException(status_code=404, detail="no active session")
    return _session_info(sessions[0])


class CreateDocRequest(BaseModel):
    document_id: Optional[str] = None


@router.post("/docs", response_model=SessionInfo)
async def create_doc(req: CreateDocRequest, request: Request) -> Any:
    manager = _manager(request)
    if req.document_id and manager.get(req.document_id) is not None:
        raise HTTPException(status_code=409, detail=f"document {req.document_id} already open")
    session = await manager.create_session(req.document_id)
    return _session_info(session)


class JoinRequest(BaseModel):
    ticket: str


@router.post("/join", response_model=SessionInfo)
async def join(req: JoinRequest, request: Request) -> Any:
    try:
        session = await _manager(request).join_session(req.ticket)
    except TicketDecodeError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except OfflineModeError as e:
        raise HTTPException(status_code=409, detail=e.detail)
    except ConnectError as e:
        raise HTTPException(status_code=502, detail=e.detail)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _session_info(session)


class ShapeInfo(BaseModel):
    id: str
    kind: str
    z: int
    label: Optional[str] = None
    color: Optional[str] = None
    params: Dict[str, Any]
    cells: List[List[int]]


class GetDocResponse(BaseModel):
    id: str
    lines: List[str]
    origin: Optional[List[int]] = None
    shapes: List[ShapeInfo]
    version: Dict[str, int]


@router.get("/docs/{doc_id}", response_model=GetDocResponse)
async def get_doc(doc_id: str, request: Request) -> Any:
    snap = _session_or_404(request, doc_id).snapshot()
    box = snap.bounds()
    shapes = [
        ShapeInfo(
            id=s.id,
            kind=s.kind,
            z=s.z,
            label=s.label,
            color=s.color,
            params=dict(s.params),
            cells=[list(c) for c in s.cells],
        )
        for s in snap.shape_order()
    ]
    return GetDocResponse(
        id=doc_id,
        lines=snap.as_lines(),
        origin=[box[0], box[1]] if box else None,
        shapes=shapes,
        version=dict(snap.version),
    )


@router.get("/docs/{doc_id}/operations")
async def export_doc(doc_id: str, request: Request) -> Dict[str, Any]:
    return _session_or_404(request, doc_id).export_operations()
