"""
Recipient resolution over the assignment hierarchy.

company -> vendor | worker | team -> team head -> linked user account.

One canonical precedence is used everywhere: vendor, then worker, then
team. Tasks consult their own assignment first and fall back to the owning
job only when none of their assignment fields is set.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from ..errors import JobSyncError, NotFoundError, UnresolvedRecipientError
from . import directory


log = structlog.get_logger(__name__)

PRECEDENCE = ("vendor", "worker", "team")


@dataclass(frozen=True)
class Resolution:
    entity_type: str
    entity_id: uuid.UUID
    user_id: Optional[uuid.UUID] = None
    via: Optional[str] = None  # vendor|worker|team, or job:<level> after fallback
    error: Optional[JobSyncError] = None

    @property
    def ok(self) -> bool:
        return self.user_id is not None and self.error is None

    def unwrap(self) -> uuid.UUID:
        """Return the user id or raise the recorded failure."""
        if self.error is not None:
            raise self.error
        return self.user_id  # type: ignore[return-value]


def _user_for_level(db: Session, level: str, target_id: uuid.UUID) -> uuid.UUID:
    if level == "vendor":
        found = directory.get_vendor_user(db, target_id)
        if found.user_id is None:
            raise UnresolvedRecipientError(f"Vendor {found.name} has no linked user account", entity_type="vendor", entity_id=target_id)
        return found.user_id
    if level == "worker":
        found = directory.get_worker_user(db, target_id)
        if found.user_id is None:
            raise UnresolvedRecipientError(f"Worker {found.name} has no linked user account", entity_type="worker", entity_id=target_id)
        return found.user_id
    head_id = directory.get_team_head(db, target_id)
    if head_id is None:
        raise UnresolvedRecipientError("Team has no team head", entity_type="team", entity_id=target_id)
    head = directory.get_worker_user(db, head_id)
    if head.user_id is None:
        raise UnresolvedRecipientError(f"Team head {head.name} has no linked user account", entity_type="team", entity_id=target_id)
    return head.user_id


def _pick(assignment: directory.Assignment) -> Optional[Tuple[str, uuid.UUID]]:
    for level in PRECEDENCE:
        target = getattr(assignment, f"{level}_id")
        if target:
            return level, target
    return None


def resolve(db: Session, entity_type: str, entity_id) -> Resolution:
    """Resolve the single user to notify about an entity.

    Never raises for missing rows or missing accounts; the failure is carried
    on the returned `Resolution` so callers decide whether to abort or skip.
    """
    try:
        eid = uuid.UUID(str(entity_id))
    except (TypeError, ValueError):
        return Resolution(entity_type, uuid.UUID(int=0), error=NotFoundError("Invalid entity id", entity_type=entity_type, entity_id=entity_id))

    try:
        assignment = directory.get_assignment(db, entity_type, eid)
        prefix = ""
        if assignment.is_empty and assignment.parent_job_id:
            assignment = directory.get_assignment(db, "job", assignment.parent_job_id)
            prefix = "job:"
        if assignment.fields_set() > 1:
            log.warning(
                "multiple_assignments",
                entity_type=entity_type,
                entity_id=str(eid),
                vendor_id=str(assignment.vendor_id) if assignment.vendor_id else None,
                worker_id=str(assignment.worker_id) if assignment.worker_id else None,
                team_id=str(assignment.team_id) if assignment.team_id else None,
            )
        picked = _pick(assignment)
        if picked is None:
            raise UnresolvedRecipientError(f"No assignee found for this {entity_type}", entity_type=entity_type, entity_id=eid)
        level, target = picked
        user_id = _user_for_level(db, level, target)
    except (NotFoundError, UnresolvedRecipientError) as exc:
        return Resolution(entity_type, eid, error=exc)
    return Resolution(entity_type, eid, user_id=user_id, via=f"{prefix}{level}")


def resolve_many(db: Session, refs: Iterable[Tuple[str, uuid.UUID]]) -> List[Resolution]:
    return [resolve(db, entity_type, entity_id) for entity_type, entity_id in refs]
