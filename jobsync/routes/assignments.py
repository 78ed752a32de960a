import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth.security import ensure_company_member, get_current_user
from ..db import get_db
from ..errors import UnresolvedRecipientError
from ..models.models import User
from ..schemas.activity import ActivityRecordOut, AssignmentUpdate, RecipientOut, StatusUpdate
from ..services import assignment, directory, work_items


router = APIRouter(prefix="/assignments", tags=["assignments"])


@router.get("/{entity_type}/{entity_id}/recipient", response_model=RecipientOut)
def get_recipient(
    entity_type: str,
    entity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Who would be notified about this job or task right now."""
    item = directory.get_work_item(db, entity_type, entity_id)
    ensure_company_member(db, user.id, directory.entity_company_id(db, entity_type, item.id))
    resolution = assignment.resolve(db, entity_type, item.id)
    if resolution.ok:
        return {"user_id": resolution.user_id, "via": resolution.via}
    detail = str(resolution.error)
    if isinstance(resolution.error, UnresolvedRecipientError):
        detail = f"cannot notify: {detail}"
    return {"error": type(resolution.error).__name__, "detail": detail}


@router.post("/{entity_type}/{entity_id}", response_model=ActivityRecordOut)
def assign_work_item(
    entity_type: str,
    entity_id: uuid.UUID,
    body: AssignmentUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    try:
        return work_items.assign(
            db,
            entity_type,
            entity_id,
            user.id,
            vendor_id=body.vendor_id,
            worker_id=body.worker_id,
            team_id=body.team_id,
            notes=body.notes,
        )
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/{entity_type}/{entity_id}/status", response_model=ActivityRecordOut)
def change_work_item_status(
    entity_type: str,
    entity_id: uuid.UUID,
    body: StatusUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return work_items.change_status(db, entity_type, entity_id, user.id, body.status, notes=body.notes)
