"""
Two-message status exchange: someone asks the current assignee of a job or
task for an update, the assignee answers.

The request is addressed to whoever the assignment hierarchy resolves to.
The response swaps roles (the requester becomes the recipient), points at
the request through `in_reply_to_id`, and marks the request read in the
same transaction.
"""
import uuid
from typing import Dict, List, Optional

import structlog
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..auth.security import ensure_company_member
from ..db import utcnow
from ..errors import NotFoundError, PermissionDeniedError
from ..models.models import TASK_ENTITY_TYPES, ActivityLog, JobTask, TeamTask
from ..schemas.activity import StatusRequestPayload, StatusResponsePayload
from . import assignment, directory, ledger


log = structlog.get_logger(__name__)

REQUESTABLE_TYPES = ("job", "job_task", "team_task")


def request(
    db: Session,
    entity_type: str,
    entity_id,
    actor_id: uuid.UUID,
    notes: Optional[str] = None,
) -> ActivityLog:
    """
    Ask the resolved assignee of an entity for a status update.

    Raises:
        NotFoundError: the entity does not exist
        PermissionDeniedError: the actor is not a member of the entity's company
        UnresolvedRecipientError: nobody can be notified; nothing is written
    """
    if entity_type not in REQUESTABLE_TYPES:
        raise NotFoundError(f"Status requests are not supported for {entity_type}", entity_type=entity_type, entity_id=entity_id)
    item = directory.get_work_item(db, entity_type, entity_id)
    company_id = directory.entity_company_id(db, entity_type, item.id)
    ensure_company_member(db, actor_id, company_id)

    resolution = assignment.resolve(db, entity_type, item.id)
    if not resolution.ok:
        log.info(
            "status_request_unresolved",
            entity_type=entity_type,
            entity_id=str(item.id),
            reason=str(resolution.error),
        )
        raise resolution.error

    text = (notes or "").strip() or f"Status update requested for {entity_type} {item.title}"
    record = ledger.append(
        db,
        entity_type,
        item.id,
        StatusRequestPayload(notes=text),
        actor_user_id=actor_id,
        recipient_user_id=resolution.user_id,
        company_id=company_id,
    )
    db.commit()
    log.info(
        "status_requested",
        record_id=str(record.id),
        entity_type=entity_type,
        entity_id=str(item.id),
        recipient=str(resolution.user_id),
        via=resolution.via,
    )
    return record


def respond(
    db: Session,
    request_id,
    responder_id: uuid.UUID,
    notes: str,
    progress_percentage: Optional[int] = None,
) -> ActivityLog:
    """
    Answer a status request.

    Raises:
        NotFoundError: no such record, or it is not a status request
        PermissionDeniedError: the responder is not the request's recipient
    """
    original = ledger.get(db, request_id)
    if original.action_type != "status_request":
        raise NotFoundError("Status request not found", entity_type="activity", entity_id=original.id)
    if original.recipient_user_id != responder_id:
        raise PermissionDeniedError("Only the addressee can answer this request", entity_type="activity", entity_id=original.id)

    record = ledger.append(
        db,
        original.entity_type,
        original.entity_id,
        StatusResponsePayload(
            notes=notes,
            in_reply_to=original.id,
            progress_percentage=progress_percentage,
        ),
        actor_user_id=responder_id,
        recipient_user_id=original.actor_user_id,
        company_id=original.company_id,
    )
    ledger.mark_read(db, original.id)

    if progress_percentage is not None and original.entity_type in TASK_ENTITY_TYPES:
        model = JobTask if original.entity_type == "job_task" else TeamTask
        task = db.query(model).filter(model.id == original.entity_id).first()
        if task is not None:
            task.progress_percentage = progress_percentage
            task.updated_at = utcnow()

    db.commit()
    log.info(
        "status_responded",
        record_id=str(record.id),
        in_reply_to=str(original.id),
        recipient=str(original.actor_user_id),
    )
    return record


def list_exchanges(db: Session, user_id: uuid.UUID, limit: int = 100) -> Dict[str, List[ActivityLog]]:
    """Requests addressed to or sent by a user, and the responses around them."""
    requests = (
        db.query(ActivityLog)
        .filter(
            ActivityLog.action_type == "status_request",
            or_(ActivityLog.recipient_user_id == user_id, ActivityLog.actor_user_id == user_id),
        )
        .order_by(ActivityLog.created_at.desc())
        .limit(limit)
        .all()
    )
    responses = (
        db.query(ActivityLog)
        .filter(
            ActivityLog.action_type == "status_response",
            or_(ActivityLog.recipient_user_id == user_id, ActivityLog.actor_user_id == user_id),
        )
        .order_by(ActivityLog.created_at.desc())
        .limit(limit)
        .all()
    )
    return {
        "received_requests": [r for r in requests if r.recipient_user_id == user_id],
        "sent_requests": [r for r in requests if r.actor_user_id == user_id],
        "responses": responses,
    }
