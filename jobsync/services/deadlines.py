"""
Deadline alerts.

`DeadlineScanner.run_once` finds open jobs and tasks whose deadline falls in
the lookahead window and emits one `deadline_approaching` record per entity,
addressed to the resolved assignee. Each claim is its own transaction; the
partial unique index on the ledger makes the claim atomic, so concurrent
scanners cannot both emit. `DeadlineScheduler` runs the scan on startup and
then on a fixed interval inside the server process.
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

import anyio
import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..db import utcnow
from ..errors import DuplicateSuppressed
from ..models.models import TERMINAL_STATUSES, ActivityLog, Job, JobTask, Team, TeamTask
from ..schemas.activity import DeadlineApproachingPayload
from . import assignment, ledger


log = structlog.get_logger(__name__)

EMITTED = "emitted"
SUPPRESSED = "suppressed"
SKIPPED = "skipped"


@dataclass
class Candidate:
    entity_type: str
    entity_id: uuid.UUID
    title: str
    deadline: datetime


@dataclass
class ScanReport:
    scanned: int = 0
    emitted: int = 0
    suppressed: int = 0
    skipped: int = 0
    record_ids: List[str] = field(default_factory=list)


def already_notified(db: Session, entity_type: str, entity_id: uuid.UUID) -> bool:
    return (
        db.query(ActivityLog.id)
        .filter(
            ActivityLog.entity_type == entity_type,
            ActivityLog.entity_id == entity_id,
            ActivityLog.action_type == "deadline_approaching",
            ActivityLog.deadline_notified.is_(True),
        )
        .first()
        is not None
    )


class DeadlineScanner:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        lookahead_hours: Optional[int] = None,
        company_id: Optional[uuid.UUID] = None,
    ) -> None:
        self.session_factory = session_factory
        self.lookahead_hours = lookahead_hours or settings.deadline_lookahead_hours
        # None scans every company
        self.company_id = company_id

    def _scoped(self, q, model):
        if self.company_id is None:
            return q
        if model is Job:
            return q.filter(Job.company_id == self.company_id)
        if model is JobTask:
            return q.join(Job, Job.id == JobTask.job_id).filter(Job.company_id == self.company_id)
        return q.join(Team, Team.id == TeamTask.team_id).filter(Team.company_id == self.company_id)

    def candidates(self, db: Session, now: datetime) -> List[Candidate]:
        window_end = now + timedelta(hours=self.lookahead_hours)
        found: List[Candidate] = []
        for entity_type, model in (("job", Job), ("job_task", JobTask), ("team_task", TeamTask)):
            q = self._scoped(db.query(model.id, model.title, model.deadline), model)
            rows = (
                q.filter(
                    model.status.notin_(TERMINAL_STATUSES),
                    model.deadline.isnot(None),
                    model.deadline >= now,
                    model.deadline <= window_end,
                )
                .order_by(model.deadline.asc())
                .all()
            )
            found.extend(Candidate(entity_type, r[0], r[1], r[2]) for r in rows)
        return found

    def claim(self, candidate: Candidate) -> ActivityLog:
        """
        Emit the deadline alert for one entity in its own transaction.

        Raises:
            DuplicateSuppressed: the alert already exists (pre-check or unique index)
            UnresolvedRecipientError / NotFoundError: nobody to notify
        """
        db = self.session_factory()
        try:
            if already_notified(db, candidate.entity_type, candidate.entity_id):
                raise DuplicateSuppressed("Deadline alert already sent", entity_type=candidate.entity_type, entity_id=candidate.entity_id)
            recipient = assignment.resolve(db, candidate.entity_type, candidate.entity_id).unwrap()
            try:
                record = ledger.append(
                    db,
                    candidate.entity_type,
                    candidate.entity_id,
                    DeadlineApproachingPayload(
                        title=candidate.title,
                        deadline=candidate.deadline,
                        lookahead_hours=self.lookahead_hours,
                    ),
                    actor_user_id=None,
                    recipient_user_id=recipient,
                    deadline_notified=True,
                )
                db.commit()
            except IntegrityError:
                # Lost the race against another scanner
                db.rollback()
                raise DuplicateSuppressed("Deadline alert claimed concurrently", entity_type=candidate.entity_type, entity_id=candidate.entity_id)
            db.refresh(record)
            db.expunge(record)
            return record
        finally:
            db.close()

    def run_once(self, now: Optional[datetime] = None) -> ScanReport:
        now = now or utcnow()
        report = ScanReport()
        db = self.session_factory()
        try:
            candidates = self.candidates(db, now)
        finally:
            db.close()

        for candidate in candidates:
            report.scanned += 1
            outcome, record_id = self._process(candidate)
            if outcome == EMITTED:
                report.emitted += 1
                report.record_ids.append(record_id)
            elif outcome == SUPPRESSED:
                report.suppressed += 1
            else:
                report.skipped += 1
        return report

    def _process(self, candidate: Candidate) -> Tuple[str, Optional[str]]:
        ctx = {"entity_type": candidate.entity_type, "entity_id": str(candidate.entity_id)}
        try:
            record = self.claim(candidate)
        except DuplicateSuppressed:
            return SUPPRESSED, None
        except Exception as exc:
            # One bad entity never stops the scan of the others
            log.warning("deadline_scan_skipped", reason=str(exc), error=type(exc).__name__, **ctx)
            return SKIPPED, None
        log.info("deadline_alert_emitted", record_id=str(record.id), recipient=str(record.recipient_user_id), **ctx)
        return EMITTED, str(record.id)


class DeadlineScheduler:
    """Single server-side loop: scan now, then every `interval_seconds`."""

    def __init__(self, scanner: DeadlineScanner, interval_seconds: Optional[int] = None) -> None:
        self.scanner = scanner
        self.interval_seconds = interval_seconds or settings.deadline_scan_interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self) -> None:
        while True:
            try:
                report = await anyio.to_thread.run_sync(self.scanner.run_once)
                log.info("deadline_scan_completed", **{k: v for k, v in asdict(report).items() if k != "record_ids"})
            except Exception:
                log.exception("deadline_scan_failed")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
