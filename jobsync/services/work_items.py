"""
Assignment and status changes on jobs and tasks.

Each mutation and the ledger record describing it are written in one
transaction, so the history never disagrees with the row it describes.
"""
import uuid
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from ..auth.security import ensure_company_member
from ..db import utcnow
from ..errors import NotFoundError
from ..models.models import ActivityLog, JobTask, TeamTask
from ..schemas.activity import AssignmentPayload, StatusChangePayload
from . import assignment, directory, ledger


log = structlog.get_logger(__name__)


def _pick_target(vendor_id, worker_id, team_id):
    chosen = [(k, v) for k, v in (("vendor", vendor_id), ("worker", worker_id), ("team", team_id)) if v]
    if len(chosen) != 1:
        raise ValueError("Exactly one of vendor_id, worker_id, team_id must be given")
    return chosen[0]


def _assignee_name(db: Session, kind: str, target_id: uuid.UUID) -> str:
    if kind == "vendor":
        return directory.get_vendor_user(db, target_id).name
    if kind == "worker":
        return directory.get_worker_user(db, target_id).name
    name = directory.get_team_name(db, target_id)
    if name is None:
        raise NotFoundError("Team not found", entity_type="team", entity_id=target_id)
    return name


def _previous_assignee(item) -> Optional[uuid.UUID]:
    if isinstance(item, TeamTask):
        return item.assigned_to_worker_id or item.team_id
    return item.assigned_to_vendor_id or item.assigned_to_worker_id or item.assigned_to_team_id


def assign(
    db: Session,
    entity_type: str,
    entity_id,
    actor_id: uuid.UUID,
    vendor_id: Optional[uuid.UUID] = None,
    worker_id: Optional[uuid.UUID] = None,
    team_id: Optional[uuid.UUID] = None,
    notes: Optional[str] = None,
) -> ActivityLog:
    """
    Point a job or task at one vendor, worker or team and record it.

    The new assignee is notified when it resolves to a user account;
    otherwise the record is kept as history only.

    Raises:
        ValueError: not exactly one target given, or a team target on a team task
        NotFoundError: the entity or the target does not exist
        PermissionDeniedError: the actor is outside the entity's company
    """
    kind, target = _pick_target(vendor_id, worker_id, team_id)
    item = directory.get_work_item(db, entity_type, entity_id)
    company_id = directory.entity_company_id(db, entity_type, item.id)
    ensure_company_member(db, actor_id, company_id)
    name = _assignee_name(db, kind, target)
    previous = _previous_assignee(item)

    if isinstance(item, TeamTask):
        # A team task stays with its team; only the worker inside it changes
        if kind != "worker":
            raise ValueError("Team tasks can only be assigned to a worker")
        item.assigned_to_worker_id = target
    else:
        item.assigned_to_vendor_id = target if kind == "vendor" else None
        item.assigned_to_worker_id = target if kind == "worker" else None
        item.assigned_to_team_id = target if kind == "team" else None
    now = utcnow()
    item.assigned_at = now
    item.assigned_by = actor_id
    item.updated_at = now
    db.flush()

    resolution = assignment.resolve(db, entity_type, item.id)
    if not resolution.ok:
        log.info("assignment_recipient_unresolved", entity_type=entity_type, entity_id=str(item.id), reason=str(resolution.error))

    record = ledger.append(
        db,
        entity_type,
        item.id,
        AssignmentPayload(
            assignee_kind=kind,
            previous_assignee_id=previous,
            assignee_id=target,
            assignee_name=name,
            notes=notes or f"Assigned to {name}",
        ),
        actor_user_id=actor_id,
        recipient_user_id=resolution.user_id if resolution.ok else None,
        company_id=company_id,
    )
    db.commit()
    log.info("work_item_assigned", entity_type=entity_type, entity_id=str(item.id), assignee_kind=kind, assignee_id=str(target))
    return record


def change_status(
    db: Session,
    entity_type: str,
    entity_id,
    actor_id: uuid.UUID,
    new_status: str,
    notes: Optional[str] = None,
) -> ActivityLog:
    item = directory.get_work_item(db, entity_type, entity_id)
    company_id = directory.entity_company_id(db, entity_type, item.id)
    ensure_company_member(db, actor_id, company_id)

    old_status = item.status
    item.status = new_status
    item.updated_at = utcnow()
    if new_status == "completed" and isinstance(item, (JobTask, TeamTask)):
        item.progress_percentage = 100
    db.flush()

    resolution = assignment.resolve(db, entity_type, item.id)
    recipient = resolution.user_id if resolution.ok else None
    if recipient == actor_id:
        recipient = None

    record = ledger.append(
        db,
        entity_type,
        item.id,
        StatusChangePayload(old_status=old_status, new_status=new_status, notes=notes),
        actor_user_id=actor_id,
        recipient_user_id=recipient,
        company_id=company_id,
    )
    db.commit()
    log.info("work_item_status_changed", entity_type=entity_type, entity_id=str(item.id), old_status=old_status, new_status=new_status)
    return record


