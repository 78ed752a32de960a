import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import ensure_company_admin, get_current_user
from ..db import get_db, get_session_factory
from ..models.models import User
from ..schemas.activity import ScanReportOut
from ..services.deadlines import DeadlineScanner


router = APIRouter(prefix="/deadlines", tags=["deadlines"])


@router.post("/scan", response_model=ScanReportOut)
def run_deadline_scan(
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
    user: User = Depends(get_current_user),
):
    """
    Run one deadline scan now over the admin's own company.
    Uses the configured lookahead; each entity is alerted at most once, so
    an early trigger never duplicates the scheduled run.
    """
    ensure_company_admin(db, user.id, company_id)
    scanner = DeadlineScanner(session_factory, company_id=company_id)
    report = scanner.run_once()
    return {
        "scanned": report.scanned,
        "emitted": report.emitted,
        "suppressed": report.suppressed,
        "skipped": report.skipped,
    }
