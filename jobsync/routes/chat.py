import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from ..auth.security import ensure_company_member, get_current_user, user_roles_in
from ..db import get_db
from ..errors import NotFoundError, PermissionDeniedError
from ..models.models import User
from ..schemas.chat import ChatMessageCreate, ChatMessageOut, ChatParticipantOut, ChatRoomCreate, ChatRoomOut
from ..services import chat_rooms, directory


router = APIRouter(prefix="/chat", tags=["chat"])

# Roles allowed into the vendor team room
VENDOR_TEAM_ROLES = {"vendor", "worker"}


def _ensure_vendor_team_member(db: Session, user_id: uuid.UUID, company_id: uuid.UUID, room_id=None) -> None:
    if not VENDOR_TEAM_ROLES & user_roles_in(db, user_id, company_id):
        raise PermissionDeniedError("Vendor team chat is for vendors and workers", entity_type="chat", entity_id=room_id)


@router.get("/rooms", response_model=List[ChatRoomOut])
def list_rooms(
    entity_id: uuid.UUID,
    entity_type: str = "job",
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    company_id = directory.entity_company_id(db, entity_type, entity_id)
    if company_id is None:
        raise NotFoundError(f"{entity_type} not found", entity_type=entity_type, entity_id=entity_id)
    ensure_company_member(db, me.id, company_id)
    return chat_rooms.list_rooms(db, entity_type, entity_id, me.id)


@router.post("/rooms", response_model=ChatRoomOut)
def open_room(
    body: ChatRoomCreate,
    response: Response,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    """
    Open (or create) a job-scoped room and join it.
    Private rooms need `participant_user_id`; both users join on creation.
    """
    company_id = directory.entity_company_id(db, body.entity_type, body.entity_id)
    if company_id is None:
        raise NotFoundError(f"{body.entity_type} not found", entity_type=body.entity_type, entity_id=body.entity_id)
    ensure_company_member(db, me.id, company_id)
    if body.room_type == "vendor_workers":
        _ensure_vendor_team_member(db, me.id, company_id)
    if body.room_type == "private":
        if body.participant_user_id is None:
            raise HTTPException(status_code=400, detail="participant_user_id is required for private rooms")
        ensure_company_member(db, body.participant_user_id, company_id)
    try:
        room, created = chat_rooms.get_or_create(
            db,
            body.entity_type,
            body.entity_id,
            body.room_type,
            company_id,
            me.id,
            name=body.name,
            counterpart_user_id=body.participant_user_id if body.room_type == "private" else None,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if created:
        response.status_code = status.HTTP_201_CREATED
    return room


@router.post("/rooms/{room_id}/join", response_model=ChatParticipantOut)
def join_room(room_id: uuid.UUID, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    room = chat_rooms.get_room(db, room_id)
    ensure_company_member(db, me.id, room.company_id)
    if room.room_type == "vendor_workers":
        _ensure_vendor_team_member(db, me.id, room.company_id, room.id)
    if room.room_type == "private" and str(me.id) not in room.participant_key.split(":"):
        raise PermissionDeniedError("Private room", entity_type="chat", entity_id=room.id)
    return chat_rooms.join(db, room.id, me.id)


@router.get("/rooms/{room_id}/messages", response_model=List[ChatMessageOut])
def list_messages(
    room_id: uuid.UUID,
    after: Optional[datetime] = None,
    limit: int = 200,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    return chat_rooms.list_messages(db, room_id, me.id, after=after, limit=limit)


@router.post("/rooms/{room_id}/messages", response_model=ChatMessageOut, status_code=status.HTTP_201_CREATED)
def send_message(
    room_id: uuid.UUID,
    body: ChatMessageCreate,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    if not body.message.strip():
        raise HTTPException(status_code=400, detail="Message is empty")
    return chat_rooms.post_message(db, room_id, me.id, body.message)
