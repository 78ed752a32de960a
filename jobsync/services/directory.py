"""
Read-only lookups into the vendor/worker/team/job tables.

These are the only queries the notification engine makes against the
CRUD side of the system: who a work item is assigned to, which user
account backs a vendor or worker, who heads a team, and which company
owns an entity.
"""
import uuid
from dataclasses import dataclass
from typing import Optional, Set, Tuple, Union

from sqlalchemy.orm import Session

from ..errors import NotFoundError
from ..models.models import (
    ChatRoom,
    Job,
    JobTask,
    Team,
    TeamTask,
    User,
    UserRole,
    Vendor,
    Worker,
)


WorkItem = Union[Job, JobTask, TeamTask]

_WORK_ITEM_MODELS = {
    "job": Job,
    "job_task": JobTask,
    "team_task": TeamTask,
}


@dataclass(frozen=True)
class Assignment:
    vendor_id: Optional[uuid.UUID] = None
    worker_id: Optional[uuid.UUID] = None
    team_id: Optional[uuid.UUID] = None
    # Owning job of a task, consulted when the task itself is unassigned
    parent_job_id: Optional[uuid.UUID] = None
    # Team tasks always carry their team; it only counts when no worker is set
    team_is_owner: bool = False

    @property
    def is_empty(self) -> bool:
        return not (self.vendor_id or self.worker_id or self.team_id)

    def fields_set(self) -> int:
        fields = (self.vendor_id, self.worker_id) if self.team_is_owner else (self.vendor_id, self.worker_id, self.team_id)
        return sum(1 for v in fields if v)


@dataclass(frozen=True)
class DirectoryUser:
    user_id: Optional[uuid.UUID]
    name: str


def _as_uuid(value) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise NotFoundError(f"Invalid id {value!r}")


def get_work_item(db: Session, entity_type: str, entity_id) -> WorkItem:
    model = _WORK_ITEM_MODELS.get(entity_type)
    if model is None:
        raise NotFoundError(f"Unsupported entity type {entity_type}", entity_type=entity_type, entity_id=entity_id)
    item = db.query(model).filter(model.id == _as_uuid(entity_id)).first()
    if item is None:
        raise NotFoundError(f"{entity_type} not found", entity_type=entity_type, entity_id=entity_id)
    return item


def get_assignment(db: Session, entity_type: str, entity_id) -> Assignment:
    item = get_work_item(db, entity_type, entity_id)
    if isinstance(item, Job):
        return Assignment(
            vendor_id=item.assigned_to_vendor_id,
            worker_id=item.assigned_to_worker_id,
            team_id=item.assigned_to_team_id,
        )
    if isinstance(item, JobTask):
        return Assignment(
            vendor_id=item.assigned_to_vendor_id,
            worker_id=item.assigned_to_worker_id,
            team_id=item.assigned_to_team_id,
            parent_job_id=item.job_id,
        )
    # A team task belongs to its team; an explicit worker narrows it down
    return Assignment(
        worker_id=item.assigned_to_worker_id,
        team_id=item.team_id,
        parent_job_id=item.job_id,
        team_is_owner=True,
    )


def get_vendor_user(db: Session, vendor_id) -> DirectoryUser:
    vendor = db.query(Vendor).filter(Vendor.id == _as_uuid(vendor_id)).first()
    if vendor is None:
        raise NotFoundError("Vendor not found", entity_type="vendor", entity_id=vendor_id)
    return DirectoryUser(user_id=vendor.user_id, name=vendor.name)


def get_worker_user(db: Session, worker_id) -> DirectoryUser:
    worker = db.query(Worker).filter(Worker.id == _as_uuid(worker_id)).first()
    if worker is None:
        raise NotFoundError("Worker not found", entity_type="worker", entity_id=worker_id)
    return DirectoryUser(user_id=worker.user_id, name=worker.name)


def get_team_head(db: Session, team_id) -> Optional[uuid.UUID]:
    team = db.query(Team).filter(Team.id == _as_uuid(team_id)).first()
    if team is None:
        raise NotFoundError("Team not found", entity_type="team", entity_id=team_id)
    return team.team_head_id


def get_team_name(db: Session, team_id) -> Optional[str]:
    team = db.query(Team).filter(Team.id == _as_uuid(team_id)).first()
    return team.name if team else None


def entity_company_id(db: Session, entity_type: str, entity_id) -> Optional[uuid.UUID]:
    """Owning company of a ledger entity, or None when it cannot be determined."""
    try:
        eid = _as_uuid(entity_id)
    except NotFoundError:
        return None
    if entity_type == "job":
        row = db.query(Job.company_id).filter(Job.id == eid).first()
    elif entity_type == "job_task":
        row = db.query(Job.company_id).join(JobTask, JobTask.job_id == Job.id).filter(JobTask.id == eid).first()
    elif entity_type == "team_task":
        row = db.query(Team.company_id).join(TeamTask, TeamTask.team_id == Team.id).filter(TeamTask.id == eid).first()
    elif entity_type == "chat":
        row = db.query(ChatRoom.company_id).filter(ChatRoom.id == eid).first()
    else:
        return None
    return row[0] if row else None


def entity_title(db: Session, entity_type: str, entity_id) -> str:
    try:
        item = get_work_item(db, entity_type, entity_id)
    except NotFoundError:
        return ""
    return item.title or ""


def company_entity_ids(db: Session, company_id) -> Set[uuid.UUID]:
    """Every ledger entity id owned by a company: jobs, their tasks, team tasks and chat rooms."""
    cid = _as_uuid(company_id)
    ids: Set[uuid.UUID] = set()
    ids.update(r[0] for r in db.query(Job.id).filter(Job.company_id == cid).all())
    ids.update(
        r[0]
        for r in db.query(JobTask.id).join(Job, Job.id == JobTask.job_id).filter(Job.company_id == cid).all()
    )
    ids.update(
        r[0]
        for r in db.query(TeamTask.id).join(Team, Team.id == TeamTask.team_id).filter(Team.company_id == cid).all()
    )
    ids.update(r[0] for r in db.query(ChatRoom.id).filter(ChatRoom.company_id == cid).all())
    return ids


def job_entity_ids(db: Session, job_id) -> Set[uuid.UUID]:
    jid = _as_uuid(job_id)
    ids: Set[uuid.UUID] = {jid}
    ids.update(r[0] for r in db.query(JobTask.id).filter(JobTask.job_id == jid).all())
    ids.update(r[0] for r in db.query(TeamTask.id).filter(TeamTask.job_id == jid).all())
    return ids


def user_company_ids(db: Session, user_id) -> Set[uuid.UUID]:
    rows = db.query(UserRole.company_id).filter(UserRole.user_id == _as_uuid(user_id)).all()
    return {r[0] for r in rows}


def user_display(db: Session, user_id: Optional[uuid.UUID]) -> Tuple[str, str]:
    """(display name, role) as shown next to chat messages and status responses."""
    if not user_id:
        return "System", "system"
    vendor = db.query(Vendor).filter(Vendor.user_id == user_id).first()
    if vendor:
        return vendor.name, "vendor"
    worker = db.query(Worker).filter(Worker.user_id == user_id).first()
    if worker:
        return worker.name, "worker"
    user = db.query(User).filter(User.id == user_id).first()
    if user:
        return user.email or "Company Admin", "company"
    return "Unknown User", "unknown"
