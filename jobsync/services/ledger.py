"""
Activity ledger service.
Append-only store of typed activity records backing the feed, the per-job
history, the status-update screens and the notification badge.
"""
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Union

from pydantic import BaseModel
from sqlalchemy import event, func, inspect
from sqlalchemy.orm import Session

from ..db import as_naive_utc, utcnow
from ..errors import LedgerImmutableError, NotFoundError, PermissionDeniedError
from ..models.models import ENTITY_TYPES, ActivityLog
from ..schemas.activity import (
    NOTIFICATION_TYPES,
    ActivityFilter,
    AssignmentPayload,
    DeadlineApproachingPayload,
    InvoiceCreatedPayload,
    StatusChangePayload,
    StatusResponsePayload,
    payload_adapter,
)
from . import directory


ENTITY_LABELS = {"job": "Job", "job_task": "Task", "team_task": "Task", "invoice": "Invoice", "chat": "Chat", "sms": "SMS"}

# The one column that may change after insert
MUTABLE_COLUMNS = {"is_read"}


def _flatten(payload: BaseModel, entity_type: str) -> dict:
    """Derive the flat notes/old_value/new_value columns from a typed payload."""
    notes = getattr(payload, "notes", None)
    old_value = None
    new_value = None
    if isinstance(payload, AssignmentPayload):
        old_value = str(payload.previous_assignee_id) if payload.previous_assignee_id else None
        new_value = str(payload.assignee_id)
    elif isinstance(payload, StatusChangePayload):
        old_value = payload.old_status
        new_value = payload.new_status
    elif isinstance(payload, StatusResponsePayload):
        if payload.progress_percentage is not None:
            new_value = str(payload.progress_percentage)
    elif isinstance(payload, DeadlineApproachingPayload):
        label = ENTITY_LABELS.get(entity_type, entity_type)
        notes = f'{label} "{payload.title}" deadline is approaching in less than {payload.lookahead_hours} hours'
        new_value = payload.deadline.isoformat()
    elif isinstance(payload, InvoiceCreatedPayload):
        new_value = payload.invoice_number
    return {"notes": notes, "old_value": old_value, "new_value": new_value}


def _latest_created_at(db: Session, entity_type: str, entity_id: uuid.UUID) -> Optional[datetime]:
    return (
        db.query(func.max(ActivityLog.created_at))
        .filter(ActivityLog.entity_type == entity_type, ActivityLog.entity_id == entity_id)
        .scalar()
    )


def _next_created_at(db: Session, entity_type: str, entity_id: uuid.UUID) -> datetime:
    last = _latest_created_at(db, entity_type, entity_id)
    now = utcnow()
    if last is None:
        return now
    # timestamptz columns come back offset-aware on Postgres
    last = as_naive_utc(last)
    if now <= last:
        now = last + timedelta(microseconds=1)
    return now


def append(
    db: Session,
    entity_type: str,
    entity_id,
    payload: Union[BaseModel, dict],
    *,
    actor_user_id: Optional[uuid.UUID] = None,
    recipient_user_id: Optional[uuid.UUID] = None,
    deadline_notified: bool = False,
    company_id: Optional[uuid.UUID] = None,
) -> ActivityLog:
    """
    Append one record to the ledger.

    The record is flushed, not committed: it becomes durable with the
    caller's unit of work, together with whatever state change it describes.

    Args:
        db: Database session
        entity_type: job|job_task|team_task|invoice|chat|sms
        entity_id: Entity ID
        payload: A payload variant (or its dict form) keyed by action_type
        actor_user_id: User who acted; None for system-initiated records
        recipient_user_id: User to notify, if any
        deadline_notified: Marks the one deadline alert of an entity
        company_id: Owning company; looked up from the entity when omitted

    Returns:
        The flushed ActivityLog
    """
    if entity_type not in ENTITY_TYPES:
        raise ValueError(f"Unknown entity type {entity_type}")
    if isinstance(payload, dict):
        payload = payload_adapter.validate_python(payload)
    eid = uuid.UUID(str(entity_id))
    action_type = payload.action_type
    if company_id is None:
        company_id = directory.entity_company_id(db, entity_type, eid)

    record = ActivityLog(
        entity_type=entity_type,
        entity_id=eid,
        company_id=company_id,
        action_type=action_type,
        actor_user_id=actor_user_id,
        recipient_user_id=recipient_user_id,
        notification_type=NOTIFICATION_TYPES.get(action_type),
        payload=payload.model_dump(mode="json"),
        in_reply_to_id=payload.in_reply_to if isinstance(payload, StatusResponsePayload) else None,
        deadline_notified=deadline_notified,
        is_read=False,
        created_at=_next_created_at(db, entity_type, eid),
        **_flatten(payload, entity_type),
    )
    db.add(record)
    db.flush()
    return record


def get(db: Session, record_id) -> ActivityLog:
    try:
        rid = uuid.UUID(str(record_id))
    except (TypeError, ValueError):
        raise NotFoundError("Invalid activity id")
    record = db.query(ActivityLog).filter(ActivityLog.id == rid).first()
    if record is None:
        raise NotFoundError("Activity record not found", entity_type="activity", entity_id=rid)
    return record


def query(db: Session, filt: ActivityFilter) -> List[ActivityLog]:
    q = db.query(ActivityLog)
    if filt.entity_type:
        q = q.filter(ActivityLog.entity_type == filt.entity_type)
    if filt.entity_id:
        q = q.filter(ActivityLog.entity_id == filt.entity_id)
    if filt.recipient_id:
        q = q.filter(ActivityLog.recipient_user_id == filt.recipient_id)
    if filt.actor_id:
        q = q.filter(ActivityLog.actor_user_id == filt.actor_id)
    if filt.action_type:
        q = q.filter(ActivityLog.action_type == filt.action_type)
    if filt.company_id:
        owned = directory.company_entity_ids(db, filt.company_id)
        if not owned:
            return []
        q = q.filter(ActivityLog.entity_id.in_(list(owned)))
    if filt.unread_only:
        q = q.filter(ActivityLog.is_read.is_(False))
    if filt.before:
        q = q.filter(ActivityLog.created_at < filt.before)
    if filt.newest_first:
        q = q.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
    else:
        q = q.order_by(ActivityLog.created_at.asc(), ActivityLog.id.asc())
    return q.limit(filt.limit).all()


def job_history(db: Session, job_id, limit: int = 200) -> List[ActivityLog]:
    """Chronological timeline of a job together with its job and team tasks."""
    ids = directory.job_entity_ids(db, job_id)
    return (
        db.query(ActivityLog)
        .filter(ActivityLog.entity_id.in_(list(ids)))
        .order_by(ActivityLog.created_at.asc(), ActivityLog.id.asc())
        .limit(limit)
        .all()
    )


def mark_read(db: Session, record_id, user_id: Optional[uuid.UUID] = None) -> ActivityLog:
    record = get(db, record_id)
    if user_id is not None and record.recipient_user_id != user_id:
        raise PermissionDeniedError("Only the recipient can mark this notification read", entity_type="activity", entity_id=record.id)
    if not record.is_read:
        record.is_read = True
        db.flush()
    return record


def mark_all_read(db: Session, recipient_id: uuid.UUID) -> int:
    # Row by row so each flip goes through the outbox and reaches live badges
    rows = (
        db.query(ActivityLog)
        .filter(ActivityLog.recipient_user_id == recipient_id, ActivityLog.is_read.is_(False))
        .all()
    )
    for row in rows:
        row.is_read = True
    db.flush()
    return len(rows)


def unread_count(db: Session, recipient_id: uuid.UUID) -> int:
    return int(
        db.query(func.count(ActivityLog.id))
        .filter(ActivityLog.recipient_user_id == recipient_id, ActivityLog.is_read.is_(False))
        .scalar()
        or 0
    )


@event.listens_for(Session, "before_flush")
def _guard_immutability(session: Session, flush_context, instances) -> None:
    for obj in session.deleted:
        if isinstance(obj, ActivityLog):
            raise LedgerImmutableError("Activity records are never deleted", entity_type="activity", entity_id=obj.id)
    for obj in session.dirty:
        if not isinstance(obj, ActivityLog):
            continue
        state = inspect(obj)
        for attr in state.mapper.column_attrs:
            if attr.key in MUTABLE_COLUMNS:
                continue
            if state.attrs[attr.key].history.has_changes():
                raise LedgerImmutableError(
                    f"Activity field {attr.key} is immutable", entity_type="activity", entity_id=obj.id
                )
