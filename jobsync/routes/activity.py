import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth.security import ensure_company_member, get_current_user
from ..config import settings
from ..db import get_db
from ..models.models import User
from ..schemas.activity import ActivityFilter, ActivityRecordOut
from ..services import directory, ledger


router = APIRouter(prefix="/activity", tags=["activity"])


@router.get("", response_model=List[ActivityRecordOut])
def activity_feed(
    entity_type: Optional[str] = None,
    entity_id: Optional[uuid.UUID] = None,
    recipient_id: Optional[uuid.UUID] = None,
    actor_id: Optional[uuid.UUID] = None,
    action_type: Optional[str] = None,
    company_id: Optional[uuid.UUID] = None,
    unread_only: bool = False,
    before: Optional[datetime] = None,
    limit: Optional[int] = None,
    order: str = "desc",
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """
    Activity feed. Scoped to one company unless the query is about the
    current user's own records (as recipient or actor).
    """
    own = recipient_id == user.id or actor_id == user.id
    if company_id is not None:
        ensure_company_member(db, user.id, company_id)
    elif not own:
        companies = directory.user_company_ids(db, user.id)
        if len(companies) != 1:
            raise HTTPException(status_code=400, detail="company_id is required")
        company_id = next(iter(companies))

    try:
        filt = ActivityFilter(
            entity_type=entity_type,
            entity_id=entity_id,
            recipient_id=recipient_id,
            actor_id=actor_id,
            action_type=action_type,
            company_id=company_id,
            unread_only=unread_only,
            before=before,
            limit=limit or settings.feed_page_size,
            newest_first=order != "asc",
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ledger.query(db, filt)


@router.get("/jobs/{job_id}/history", response_model=List[ActivityRecordOut])
def job_history(job_id: uuid.UUID, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    job = directory.get_work_item(db, "job", job_id)
    ensure_company_member(db, user.id, job.company_id)
    return ledger.job_history(db, job.id)
