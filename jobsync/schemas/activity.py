import uuid
from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


EntityType = Literal["job", "job_task", "team_task", "invoice", "chat", "sms"]
AssigneeKind = Literal["vendor", "worker", "team"]


# ---------------------------------------------------------------------------
# Payload variants, one per action_type
# ---------------------------------------------------------------------------


class CreatedPayload(BaseModel):
    action_type: Literal["created"] = "created"
    notes: Optional[str] = None


class AssignmentPayload(BaseModel):
    action_type: Literal["assignment"] = "assignment"
    assignee_kind: AssigneeKind
    previous_assignee_id: Optional[uuid.UUID] = None
    assignee_id: uuid.UUID
    assignee_name: Optional[str] = None
    notes: Optional[str] = None


class StatusChangePayload(BaseModel):
    action_type: Literal["status_change"] = "status_change"
    old_status: Optional[str] = None
    new_status: str
    notes: Optional[str] = None


class StatusRequestPayload(BaseModel):
    action_type: Literal["status_request"] = "status_request"
    notes: str


class StatusResponsePayload(BaseModel):
    action_type: Literal["status_response"] = "status_response"
    notes: str
    in_reply_to: uuid.UUID
    progress_percentage: Optional[int] = Field(default=None, ge=0, le=100)


class DeadlineApproachingPayload(BaseModel):
    action_type: Literal["deadline_approaching"] = "deadline_approaching"
    title: str
    deadline: datetime
    lookahead_hours: int = 24


class InvoiceCreatedPayload(BaseModel):
    action_type: Literal["invoice_created"] = "invoice_created"
    invoice_number: Optional[str] = None
    amount: Optional[float] = None
    notes: Optional[str] = None


ActivityPayload = Annotated[
    Union[
        CreatedPayload,
        AssignmentPayload,
        StatusChangePayload,
        StatusRequestPayload,
        StatusResponsePayload,
        DeadlineApproachingPayload,
        InvoiceCreatedPayload,
    ],
    Field(discriminator="action_type"),
]

payload_adapter = TypeAdapter(ActivityPayload)

ACTION_TYPES = (
    "created",
    "assignment",
    "status_change",
    "status_request",
    "status_response",
    "deadline_approaching",
    "invoice_created",
)

NOTIFICATION_TYPES = {
    "created": None,
    "assignment": "assignment",
    "status_change": "status_update",
    "status_request": "status_request",
    "status_response": "status_response",
    "deadline_approaching": "deadline",
    "invoice_created": "invoice",
}


# ---------------------------------------------------------------------------
# Records and filters
# ---------------------------------------------------------------------------


class ActivityRecordOut(BaseModel):
    id: uuid.UUID
    entity_type: str
    entity_id: uuid.UUID
    company_id: Optional[uuid.UUID] = None
    action_type: str
    actor_user_id: Optional[uuid.UUID] = None
    recipient_user_id: Optional[uuid.UUID] = None
    notes: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    notification_type: Optional[str] = None
    payload: Optional[dict] = None
    in_reply_to_id: Optional[uuid.UUID] = None
    deadline_notified: bool = False
    is_read: bool = False
    created_at: datetime

    class Config:
        from_attributes = True


class ActivityFilter(BaseModel):
    entity_type: Optional[EntityType] = None
    entity_id: Optional[uuid.UUID] = None
    recipient_id: Optional[uuid.UUID] = None
    actor_id: Optional[uuid.UUID] = None
    action_type: Optional[str] = None
    company_id: Optional[uuid.UUID] = None
    unread_only: bool = False
    before: Optional[datetime] = None
    limit: int = Field(default=50, ge=1, le=500)
    newest_first: bool = True


class UnreadCount(BaseModel):
    total: int


class StatusRequestCreate(BaseModel):
    entity_type: Literal["job", "job_task", "team_task"]
    entity_id: uuid.UUID
    notes: Optional[str] = None


class StatusResponseCreate(BaseModel):
    notes: str = Field(min_length=1)
    progress_percentage: Optional[int] = Field(default=None, ge=0, le=100)


class StatusExchanges(BaseModel):
    received_requests: list[ActivityRecordOut]
    sent_requests: list[ActivityRecordOut]
    responses: list[ActivityRecordOut]


class AssignmentUpdate(BaseModel):
    vendor_id: Optional[uuid.UUID] = None
    worker_id: Optional[uuid.UUID] = None
    team_id: Optional[uuid.UUID] = None
    notes: Optional[str] = None


class StatusUpdate(BaseModel):
    status: str = Field(min_length=1, max_length=50)
    notes: Optional[str] = None


class RecipientOut(BaseModel):
    user_id: Optional[uuid.UUID] = None
    via: Optional[str] = None
    error: Optional[str] = None
    detail: Optional[str] = None


class ScanReportOut(BaseModel):
    scanned: int
    emitted: int
    suppressed: int
    skipped: int
