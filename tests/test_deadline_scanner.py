# tests/test_deadline_scanner.py
"""
Tests for deadline alerts:
- window and status selection
- one alert per entity, across repeated and concurrent scans
- unresolved recipients are skipped, not fatal
- scheduler loop start/stop
"""
import asyncio
from datetime import timedelta

import pytest

from jobsync.db import utcnow
from jobsync.errors import DuplicateSuppressed
from jobsync.models.models import ActivityLog
from jobsync.services import deadlines
from jobsync.services.deadlines import Candidate, DeadlineScanner, DeadlineScheduler, ScanReport


def _alerts(db):
    db.expire_all()
    return db.query(ActivityLog).filter(ActivityLog.action_type == "deadline_approaching").all()


class TestScan:
    def test_emits_alert_to_assignee(self, db, session_factory, world, make_job):
        job = make_job(title="Roof inspection", deadline_in=timedelta(hours=5), assigned_to_worker_id=world.worker.id)
        report = DeadlineScanner(session_factory).run_once()

        assert (report.scanned, report.emitted, report.suppressed, report.skipped) == (1, 1, 0, 0)
        [alert] = _alerts(db)
        assert alert.entity_id == job.id
        assert alert.recipient_user_id == world.worker_user.id
        assert alert.actor_user_id is None
        assert alert.deadline_notified is True
        assert alert.notification_type == "deadline"
        assert alert.notes == 'Job "Roof inspection" deadline is approaching in less than 24 hours'
        assert report.record_ids == [str(alert.id)]

    def test_second_scan_is_suppressed(self, db, session_factory, world, make_job):
        make_job(deadline_in=timedelta(hours=2), assigned_to_vendor_id=world.vendor.id)
        scanner = DeadlineScanner(session_factory)
        scanner.run_once()
        report = scanner.run_once()
        assert (report.emitted, report.suppressed) == (0, 1)
        assert len(_alerts(db)) == 1

    def test_window_and_status_selection(self, db, session_factory, world, make_job):
        make_job(title="past", deadline_in=timedelta(hours=-1), assigned_to_worker_id=world.worker.id)
        make_job(title="far", deadline_in=timedelta(hours=30), assigned_to_worker_id=world.worker.id)
        make_job(title="done", deadline_in=timedelta(hours=3), status="completed", assigned_to_worker_id=world.worker.id)
        make_job(title="cancelled", deadline_in=timedelta(hours=3), status="cancelled", assigned_to_worker_id=world.worker.id)
        make_job(title="no deadline", assigned_to_worker_id=world.worker.id)
        soon = make_job(title="soon", deadline_in=timedelta(hours=3), assigned_to_worker_id=world.worker.id)

        report = DeadlineScanner(session_factory).run_once()
        assert report.scanned == 1
        assert [a.entity_id for a in _alerts(db)] == [soon.id]

    def test_custom_lookahead(self, db, session_factory, world, make_job):
        make_job(deadline_in=timedelta(hours=30), assigned_to_worker_id=world.worker.id)
        assert DeadlineScanner(session_factory, lookahead_hours=48).run_once().emitted == 1

    def test_tasks_and_team_tasks_are_scanned(self, db, session_factory, world, make_job_task, make_team_task):
        task = make_job_task(world.job, deadline_in=timedelta(hours=4), assigned_to_worker_id=world.worker.id)
        team_task = make_team_task(deadline_in=timedelta(hours=4))
        report = DeadlineScanner(session_factory).run_once()
        assert report.emitted == 2
        by_entity = {a.entity_id: a for a in _alerts(db)}
        assert by_entity[task.id].recipient_user_id == world.worker_user.id
        assert by_entity[team_task.id].recipient_user_id == world.head_user.id
        assert by_entity[team_task.id].company_id == world.company.id

    def test_company_scope_covers_tasks_through_job_and_team(self, db, session_factory, world, make_job_task, make_team_task):
        make_job_task(world.job, deadline_in=timedelta(hours=4), assigned_to_worker_id=world.worker.id)
        make_team_task(deadline_in=timedelta(hours=4))
        assert DeadlineScanner(session_factory, company_id=world.other_company.id).run_once().scanned == 0
        assert _alerts(db) == []
        report = DeadlineScanner(session_factory, company_id=world.company.id).run_once()
        assert (report.scanned, report.emitted) == (2, 2)

    def test_unresolved_is_skipped_and_scan_continues(self, db, session_factory, world, make_job):
        make_job(title="orphan", deadline_in=timedelta(hours=1))
        ok = make_job(title="assigned", deadline_in=timedelta(hours=2), assigned_to_worker_id=world.worker.id)
        report = DeadlineScanner(session_factory).run_once()
        assert (report.emitted, report.skipped) == (1, 1)
        assert [a.entity_id for a in _alerts(db)] == [ok.id]


class TestClaim:
    def test_unique_index_suppresses_concurrent_claim(self, db, session_factory, world, make_job, monkeypatch):
        job = make_job(title="Race", deadline_in=timedelta(hours=3), assigned_to_worker_id=world.worker.id)
        scanner = DeadlineScanner(session_factory)
        candidate = Candidate("job", job.id, job.title, job.deadline)
        scanner.claim(candidate)

        # Second scanner that missed the pre-check, as if both read before either wrote
        monkeypatch.setattr(deadlines, "already_notified", lambda *a, **kw: False)
        with pytest.raises(DuplicateSuppressed):
            scanner.claim(candidate)
        assert len(_alerts(db)) == 1

    def test_claimed_record_is_usable_after_session_closes(self, db, session_factory, world, make_job):
        job = make_job(deadline_in=timedelta(hours=3), assigned_to_worker_id=world.worker.id)
        record = DeadlineScanner(session_factory).claim(Candidate("job", job.id, job.title, job.deadline))
        assert record.entity_id == job.id
        assert record.created_at <= utcnow()


class _CountingScanner:
    def __init__(self):
        self.calls = 0

    def run_once(self):
        self.calls += 1
        return ScanReport()


class TestScheduler:
    @pytest.mark.asyncio
    async def test_scans_on_start_and_stops(self):
        scanner = _CountingScanner()
        scheduler = DeadlineScheduler(scanner, interval_seconds=3600)
        scheduler.start()
        for _ in range(50):
            if scanner.calls:
                break
            await asyncio.sleep(0.01)
        assert scanner.calls == 1
        assert scheduler.running
        await scheduler.stop()
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_short_interval_repeats(self):
        scanner = _CountingScanner()
        scheduler = DeadlineScheduler(scanner, interval_seconds=1)
        scheduler.interval_seconds = 0.01
        scheduler.start()
        for _ in range(100):
            if scanner.calls >= 3:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()
        assert scanner.calls >= 3
