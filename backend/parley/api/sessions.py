"""
Sessions API endpoints - Session lifecycle, messages, search, export and commands.

Errors raised by the session subsystem are translated into JSON responses by
the ParleyError handler registered in ``main.create_app``.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..core.commands import CommandResult
from ..models import (
    Message,
    MessageType,
    Participant,
    Session,
    SessionSummary,
)
from ..services import SessionServices

router = APIRouter(prefix="/sessions", tags=["sessions"])


def get_services(request: Request) -> SessionServices:
    """Session services built by the application lifespan."""
    return request.app.state.services


class SessionRequest(BaseModel):
    """Two participants that need a session."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    participant_a: Participant
    participant_b: Participant


class SessionResponse(BaseModel):
    """Session plus whether it was reused instead of created."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session: Session
    reused: bool = False


class SendMessageRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    sender_id: str = Field(..., min_length=1)
    content: str = ""
    type: MessageType = MessageType.USER
    images: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RenameRequest(BaseModel):
    title: str = Field(..., min_length=1)
    keywords: Optional[List[str]] = None


class CommandRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    command: str = Field(..., min_length=1)
    current_session_id: Optional[str] = None


class DeleteResponse(BaseModel):
    deleted: int


@router.post("", response_model=SessionResponse, response_model_by_alias=True)
async def find_or_create_session(
    request: SessionRequest,
    services: SessionServices = Depends(get_services)
):
    """Reuse an empty session for the pair, or create one."""
    session = await services.lifecycle.find_or_create_session(
        request.participant_a, request.participant_b
    )
    return SessionResponse(session=session, reused=session.reused)


@router.get("", response_model=List[SessionSummary])
async def list_sessions(
    limit: Optional[int] = Query(None, ge=1),
    participant_id: Optional[str] = Query(None),
    services: SessionServices = Depends(get_services)
):
    """Sessions by most recent activity, optionally for one participant."""
    if participant_id:
        sessions = await services.lifecycle.get_sessions_for_participant(participant_id)
        sessions = sessions[:limit] if limit else sessions
    else:
        sessions = await services.query.list_recent(limit)
    return [SessionSummary.from_session(s) for s in sessions]


@router.get("/search", response_model=List[SessionSummary])
async def search_sessions(
    q: str = Query(..., min_length=1),
    services: SessionServices = Depends(get_services)
):
    """Search titles and keywords."""
    return [SessionSummary.from_session(s) for s in await services.query.search(q)]


@router.get("/export")
async def export_sessions(services: SessionServices = Depends(get_services)):
    """Export every session and chat log."""
    return await services.store.export_all()


@router.post("/import")
async def import_sessions(
    payload: Dict[str, Any] = Body(...),
    services: SessionServices = Depends(get_services)
):
    """Import an export payload; existing records with the same ids are replaced."""
    imported = await services.store.import_all(payload)
    return {"imported": imported}


@router.post("/commands", response_model=CommandResult)
async def run_command(
    request: CommandRequest,
    services: SessionServices = Depends(get_services)
):
    """Run a text command such as ``history 5`` or ``delete old 30``."""
    return await services.commands.execute(request.command, request.current_session_id)


@router.delete("", response_model=DeleteResponse)
async def delete_sessions(
    older_than_days: Optional[int] = Query(None, ge=1),
    services: SessionServices = Depends(get_services)
):
    """Delete every session, or only those idle for more than ``older_than_days``."""
    if older_than_days is not None:
        return DeleteResponse(deleted=await services.query.delete_older_than(older_than_days))
    return DeleteResponse(deleted=await services.query.delete_all())


@router.get("/{session_id}", response_model=Session, response_model_by_alias=True)
async def get_session(session_id: str, services: SessionServices = Depends(get_services)):
    return await services.store.load_session(session_id)


@router.patch("/{session_id}", response_model=Session, response_model_by_alias=True)
async def rename_session(
    session_id: str,
    request: RenameRequest,
    services: SessionServices = Depends(get_services)
):
    return await services.store.update_session_title(session_id, request.title, request.keywords)


@router.post("/{session_id}/activate", response_model=Session, response_model_by_alias=True)
async def activate_session(session_id: str, services: SessionServices = Depends(get_services)):
    return await services.lifecycle.activate_session(session_id)


@router.post("/{session_id}/deactivate", response_model=Session, response_model_by_alias=True)
async def deactivate_session(session_id: str, services: SessionServices = Depends(get_services)):
    return await services.lifecycle.deactivate_session(session_id)


@router.post("/{session_id}/title", response_model=Session, response_model_by_alias=True)
async def regenerate_title(session_id: str, services: SessionServices = Depends(get_services)):
    """Re-run title generation for one session."""
    await services.titles.generate_for_session(session_id, force=True)
    return await services.store.load_session(session_id)


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_session(session_id: str, services: SessionServices = Depends(get_services)):
    """Delete a session together with its chat log."""
    await services.query.delete_session(session_id)


@router.post(
    "/{session_id}/messages",
    response_model=Message,
    response_model_by_alias=True,
    status_code=status.HTTP_201_CREATED
)
async def send_message(
    session_id: str,
    request: SendMessageRequest,
    services: SessionServices = Depends(get_services)
):
    return await services.lifecycle.send_message(
        session_id,
        request.sender_id,
        request.content,
        type=request.type,
        images=request.images,
        metadata=request.metadata,
    )


@router.get("/{session_id}/messages", response_model=List[Message], response_model_by_alias=True)
async def get_messages(
    session_id: str,
    limit: Optional[int] = Query(None, ge=0),
    offset: int = Query(0, ge=0),
    q: Optional[str] = Query(None, description="Case-insensitive content filter"),
    services: SessionServices = Depends(get_services)
):
    session = await services.store.load_session(session_id)
    if q:
        return await services.message_log.search_messages(session.chat_log_id, q)
    return await services.message_log.get_messages(session.chat_log_id, limit, offset)


@router.delete("/{session_id}/messages", response_model=DeleteResponse)
async def clear_messages(session_id: str, services: SessionServices = Depends(get_services)):
    session = await services.store.load_session(session_id)
    return DeleteResponse(deleted=await services.message_log.clear_log(session.chat_log_id))
