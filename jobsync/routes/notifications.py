import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_current_user
from ..config import settings
from ..db import get_db
from ..models.models import User
from ..schemas.activity import ActivityFilter, ActivityRecordOut, UnreadCount
from ..services import ledger


router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=List[ActivityRecordOut])
def list_notifications(
    limit: Optional[int] = None,
    unread_only: Optional[bool] = False,
    before: Optional[datetime] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """
    Records addressed to the current user, newest first.
    """
    filt = ActivityFilter(
        recipient_id=user.id,
        unread_only=bool(unread_only),
        before=before,
        limit=max(1, min(500, limit or settings.notifications_page_size)),
    )
    return ledger.query(db, filt)


@router.get("/unread_count", response_model=UnreadCount)
def get_unread_count(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return {"total": ledger.unread_count(db, user.id)}


@router.post("/read_all")
def mark_all_as_read(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    updated_count = ledger.mark_all_read(db, user.id)
    db.commit()
    return {"success": True, "updated_count": updated_count}


@router.post("/{notification_id}/read")
def mark_notification_as_read(
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    record = ledger.mark_read(db, notification_id, user_id=user.id)
    db.commit()
    return {"success": True, "id": str(record.id)}
