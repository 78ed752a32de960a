import uuid
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field


RoomType = Literal["public", "vendor_workers", "private"]


class ChatRoomCreate(BaseModel):
    entity_type: str = "job"
    entity_id: uuid.UUID
    room_type: RoomType
    name: Optional[str] = None
    # Required for private rooms
    participant_user_id: Optional[uuid.UUID] = None


class ChatRoomOut(BaseModel):
    id: uuid.UUID
    entity_type: str
    entity_id: uuid.UUID
    room_type: str
    name: Optional[str] = None
    company_id: uuid.UUID
    created_at: datetime

    class Config:
        from_attributes = True


class ChatParticipantOut(BaseModel):
    room_id: uuid.UUID
    user_id: uuid.UUID
    joined_at: datetime

    class Config:
        from_attributes = True


class ChatMessageCreate(BaseModel):
    message: str = Field(min_length=1, max_length=4000)


class ChatMessageOut(BaseModel):
    id: uuid.UUID
    room_id: uuid.UUID
    sender_id: uuid.UUID
    sender_name: str
    sender_role: str
    message: str
    created_at: datetime

    class Config:
        from_attributes = True
