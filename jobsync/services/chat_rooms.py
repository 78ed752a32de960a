"""
Job-scoped chat rooms.

Rooms are created on first access and reused afterwards: one public and one
vendor/workers room per entity, and one private room per unordered pair of
users. A private room's name is taken from the counterpart's display name at
creation time and is not updated if that name later changes.
Membership only grows; joining twice is a no-op.
"""
import uuid
from datetime import datetime
from typing import List, Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..errors import NotFoundError, PermissionDeniedError
from ..models.models import ChatMessage, ChatParticipant, ChatRoom
from . import directory


log = structlog.get_logger(__name__)

ROOM_TYPES = ("public", "vendor_workers", "private")
DEFAULT_NAMES = {"public": "Public Discussion", "vendor_workers": "Vendor Team Chat"}


def participant_key(user_a, user_b) -> str:
    return ":".join(sorted([str(user_a), str(user_b)]))


def find_room(db: Session, entity_type: str, entity_id: uuid.UUID, room_type: str, key: str = "") -> Optional[ChatRoom]:
    return (
        db.query(ChatRoom)
        .filter(
            ChatRoom.entity_type == entity_type,
            ChatRoom.entity_id == entity_id,
            ChatRoom.room_type == room_type,
            ChatRoom.participant_key == key,
        )
        .first()
    )


def get_room(db: Session, room_id) -> ChatRoom:
    try:
        rid = uuid.UUID(str(room_id))
    except (TypeError, ValueError):
        raise NotFoundError("Invalid room id")
    room = db.query(ChatRoom).filter(ChatRoom.id == rid).first()
    if room is None:
        raise NotFoundError("Chat room not found", entity_type="chat", entity_id=rid)
    return room


def is_participant(db: Session, room_id: uuid.UUID, user_id: uuid.UUID) -> bool:
    return (
        db.query(ChatParticipant.id)
        .filter(ChatParticipant.room_id == room_id, ChatParticipant.user_id == user_id)
        .first()
        is not None
    )


def _add_participant(db: Session, room_id: uuid.UUID, user_id: uuid.UUID) -> bool:
    if is_participant(db, room_id, user_id):
        return False
    db.add(ChatParticipant(room_id=room_id, user_id=user_id))
    db.flush()
    return True


def get_or_create(
    db: Session,
    entity_type: str,
    entity_id: uuid.UUID,
    room_type: str,
    company_id: uuid.UUID,
    creator_id: uuid.UUID,
    name: Optional[str] = None,
    counterpart_user_id: Optional[uuid.UUID] = None,
) -> Tuple[ChatRoom, bool]:
    """
    Look up the room for (entity, room_type[, user pair]) or create it.

    The creator always ends up a participant; for a new private room the
    counterpart joins too.

    Returns:
        (room, created)
    """
    if room_type not in ROOM_TYPES:
        raise ValueError(f"Unknown room type {room_type}")
    key = ""
    if room_type == "private":
        if counterpart_user_id is None or counterpart_user_id == creator_id:
            raise ValueError("Private rooms need a counterpart other than the creator")
        key = participant_key(creator_id, counterpart_user_id)

    existing = find_room(db, entity_type, entity_id, room_type, key)
    if existing is not None:
        _add_participant(db, existing.id, creator_id)
        db.commit()
        return existing, False

    if room_type == "private":
        counterpart_name, _ = directory.user_display(db, counterpart_user_id)
        name = name or f"Chat with {counterpart_name}"
    else:
        name = name or DEFAULT_NAMES[room_type]

    room = ChatRoom(
        entity_type=entity_type,
        entity_id=entity_id,
        room_type=room_type,
        name=name,
        company_id=company_id,
        participant_key=key,
        created_by=creator_id,
    )
    db.add(room)
    try:
        db.flush()
    except IntegrityError:
        # Another request created it first
        db.rollback()
        existing = find_room(db, entity_type, entity_id, room_type, key)
        if existing is None:
            raise
        _add_participant(db, existing.id, creator_id)
        db.commit()
        return existing, False

    _add_participant(db, room.id, creator_id)
    if counterpart_user_id is not None:
        _add_participant(db, room.id, counterpart_user_id)
    db.commit()
    log.info("chat_room_created", room_id=str(room.id), room_type=room_type, entity_id=str(entity_id))
    return room, True


def join(db: Session, room_id, user_id: uuid.UUID) -> ChatParticipant:
    room = get_room(db, room_id)
    try:
        _add_participant(db, room.id, user_id)
        db.commit()
    except IntegrityError:
        # Concurrent join of the same user; the other insert won
        db.rollback()
    return (
        db.query(ChatParticipant)
        .filter(ChatParticipant.room_id == room.id, ChatParticipant.user_id == user_id)
        .one()
    )


def list_rooms(db: Session, entity_type: str, entity_id: uuid.UUID, user_id: uuid.UUID) -> List[ChatRoom]:
    rooms = (
        db.query(ChatRoom)
        .filter(ChatRoom.entity_type == entity_type, ChatRoom.entity_id == entity_id)
        .order_by(ChatRoom.created_at.asc())
        .all()
    )
    # Private rooms are only listed to their two participants
    return [r for r in rooms if r.room_type != "private" or str(user_id) in r.participant_key.split(":")]


def post_message(db: Session, room_id, sender_id: uuid.UUID, text: str) -> ChatMessage:
    room = get_room(db, room_id)
    if not is_participant(db, room.id, sender_id):
        raise PermissionDeniedError("Join the room before posting", entity_type="chat", entity_id=room.id)
    sender_name, sender_role = directory.user_display(db, sender_id)
    msg = ChatMessage(
        room_id=room.id,
        sender_id=sender_id,
        sender_name=sender_name,
        sender_role=sender_role,
        message=text.strip(),
    )
    db.add(msg)
    db.commit()
    db.refresh(msg)
    return msg


def list_messages(
    db: Session,
    room_id,
    user_id: uuid.UUID,
    after: Optional[datetime] = None,
    limit: int = 200,
) -> List[ChatMessage]:
    room = get_room(db, room_id)
    if not is_participant(db, room.id, user_id):
        raise PermissionDeniedError("Not a participant of this room", entity_type="chat", entity_id=room.id)
    q = db.query(ChatMessage).filter(ChatMessage.room_id == room.id)
    if after is not None:
        q = q.filter(ChatMessage.created_at > after)
    return q.order_by(ChatMessage.created_at.asc()).limit(max(1, min(500, limit))).all()
