import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from ..auth.security import get_current_user
from ..db import get_db
from ..models.models import User
from ..schemas.activity import ActivityRecordOut, StatusExchanges, StatusRequestCreate, StatusResponseCreate
from ..services import status_requests


router = APIRouter(prefix="/status-requests", tags=["status-requests"])


@router.get("", response_model=StatusExchanges)
def list_status_exchanges(limit: int = 100, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return status_requests.list_exchanges(db, user.id, limit=max(1, min(500, limit)))


@router.post("", response_model=ActivityRecordOut, status_code=status.HTTP_201_CREATED)
def create_status_request(
    body: StatusRequestCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return status_requests.request(db, body.entity_type, body.entity_id, user.id, notes=body.notes)


@router.post("/{request_id}/respond", response_model=ActivityRecordOut, status_code=status.HTTP_201_CREATED)
def respond_to_status_request(
    request_id: uuid.UUID,
    body: StatusResponseCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return status_requests.respond(
        db,
        request_id,
        user.id,
        body.notes,
        progress_percentage=body.progress_percentage,
    )
