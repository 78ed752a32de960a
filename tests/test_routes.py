# tests/test_routes.py
"""
End-to-end tests over the HTTP and WebSocket surfaces.
"""
import uuid
from datetime import timedelta

import pytest
from starlette.websockets import WebSocketDisconnect

from jobsync.auth.security import create_access_token
from jobsync.db import utcnow
from jobsync.models.models import ActivityLog, Job


def _request_status(client, auth, user, entity_id, entity_type="job", notes=None):
    body = {"entity_type": entity_type, "entity_id": str(entity_id)}
    if notes:
        body["notes"] = notes
    return client.post("/status-requests", json=body, headers=auth(user))


class TestAuth:
    def test_missing_token(self, client, world):
        assert client.get("/notifications").status_code == 401

    def test_garbage_token(self, client, world):
        r = client.get("/notifications", headers={"Authorization": "Bearer not-a-jwt"})
        assert r.status_code == 401


class TestStatusExchange:
    def test_full_round_trip(self, client, auth, world, make_job):
        job = make_job(assigned_to_worker_id=world.worker.id)

        r = _request_status(client, auth, world.admin, job.id, notes="Where are we?")
        assert r.status_code == 201
        request_id = r.json()["id"]
        assert r.json()["recipient_user_id"] == str(world.worker_user.id)

        inbox = client.get("/notifications", headers=auth(world.worker_user)).json()
        assert [n["id"] for n in inbox] == [request_id]
        assert client.get("/notifications/unread_count", headers=auth(world.worker_user)).json() == {"total": 1}

        r = client.post(
            f"/status-requests/{request_id}/respond",
            json={"notes": "Cabinets in, counters Friday"},
            headers=auth(world.worker_user),
        )
        assert r.status_code == 201
        assert r.json()["in_reply_to_id"] == request_id
        assert r.json()["recipient_user_id"] == str(world.admin.id)

        # Answering marks the request read
        assert client.get("/notifications/unread_count", headers=auth(world.worker_user)).json() == {"total": 0}
        assert client.get("/notifications/unread_count", headers=auth(world.admin)).json() == {"total": 1}

        exchanges = client.get("/status-requests", headers=auth(world.admin)).json()
        assert [r["id"] for r in exchanges["sent_requests"]] == [request_id]
        assert len(exchanges["responses"]) == 1

    def test_unresolved_is_422_cannot_notify(self, client, auth, world, db):
        r = _request_status(client, auth, world.admin, world.job.id)
        assert r.status_code == 422
        assert r.json()["detail"].startswith("cannot notify: ")
        assert db.query(ActivityLog).count() == 0

    def test_outsider_is_403(self, client, auth, world, make_job):
        job = make_job(assigned_to_worker_id=world.worker.id)
        assert _request_status(client, auth, world.outsider, job.id).status_code == 403

    def test_missing_job_is_404(self, client, auth, world):
        assert _request_status(client, auth, world.admin, uuid.uuid4()).status_code == 404

    def test_only_recipient_responds(self, client, auth, world, make_job):
        job = make_job(assigned_to_worker_id=world.worker.id)
        request_id = _request_status(client, auth, world.admin, job.id).json()["id"]
        r = client.post(f"/status-requests/{request_id}/respond", json={"notes": "me?"}, headers=auth(world.vendor_user))
        assert r.status_code == 403

    def test_progress_out_of_range_is_rejected(self, client, auth, world, make_job):
        job = make_job(assigned_to_worker_id=world.worker.id)
        request_id = _request_status(client, auth, world.admin, job.id).json()["id"]
        r = client.post(
            f"/status-requests/{request_id}/respond",
            json={"notes": "x", "progress_percentage": 150},
            headers=auth(world.worker_user),
        )
        assert r.status_code == 422


class TestNotifications:
    def test_mark_read_and_read_all(self, client, auth, world, make_job):
        job = make_job(assigned_to_worker_id=world.worker.id)
        ids = [_request_status(client, auth, world.admin, job.id).json()["id"] for _ in range(3)]

        r = client.post(f"/notifications/{ids[0]}/read", headers=auth(world.worker_user))
        assert r.json() == {"success": True, "id": ids[0]}
        unread = client.get("/notifications", params={"unread_only": True}, headers=auth(world.worker_user)).json()
        assert {n["id"] for n in unread} == set(ids[1:])

        r = client.post("/notifications/read_all", headers=auth(world.worker_user))
        assert r.json() == {"success": True, "updated_count": 2}

    def test_cannot_mark_someone_elses(self, client, auth, world, make_job):
        job = make_job(assigned_to_worker_id=world.worker.id)
        request_id = _request_status(client, auth, world.admin, job.id).json()["id"]
        assert client.post(f"/notifications/{request_id}/read", headers=auth(world.vendor_user)).status_code == 403


class TestActivity:
    def test_feed_defaults_to_users_company(self, client, auth, world, make_job):
        job = make_job(assigned_to_worker_id=world.worker.id)
        _request_status(client, auth, world.admin, job.id)
        feed = client.get("/activity", headers=auth(world.admin)).json()
        assert len(feed) == 1
        assert feed[0]["entity_id"] == str(job.id)

        assert client.get("/activity", headers=auth(world.outsider)).json() == []

    def test_foreign_company_filter_is_403(self, client, auth, world):
        r = client.get("/activity", params={"company_id": str(world.company.id)}, headers=auth(world.outsider))
        assert r.status_code == 403

    def test_job_history(self, client, auth, world, make_job_task):
        task = make_job_task(world.job, assigned_to_worker_id=world.worker.id)
        _request_status(client, auth, world.admin, task.id, entity_type="job_task")
        client.post(
            f"/assignments/job/{world.job.id}",
            json={"vendor_id": str(world.vendor.id)},
            headers=auth(world.admin),
        )
        history = client.get(f"/activity/jobs/{world.job.id}/history", headers=auth(world.admin)).json()
        assert [h["action_type"] for h in history] == ["status_request", "assignment"]


class TestAssignments:
    def test_recipient_preview(self, client, auth, world, make_job):
        job = make_job(assigned_to_team_id=world.team.id)
        r = client.get(f"/assignments/job/{job.id}/recipient", headers=auth(world.admin)).json()
        assert r["user_id"] == str(world.head_user.id)
        assert r["via"] == "team"

        unassigned = client.get(f"/assignments/job/{world.job.id}/recipient", headers=auth(world.admin)).json()
        assert unassigned["user_id"] is None
        assert unassigned["detail"].startswith("cannot notify: ")

    def test_assign_and_change_status(self, client, auth, world):
        r = client.post(
            f"/assignments/job/{world.job.id}",
            json={"worker_id": str(world.worker.id)},
            headers=auth(world.admin),
        )
        assert r.status_code == 200
        assert r.json()["recipient_user_id"] == str(world.worker_user.id)

        r = client.post(
            f"/assignments/job/{world.job.id}/status",
            json={"status": "in_progress"},
            headers=auth(world.admin),
        )
        assert r.json()["old_value"] == "pending"
        assert r.json()["new_value"] == "in_progress"

    def test_two_targets_is_400(self, client, auth, world):
        r = client.post(
            f"/assignments/job/{world.job.id}",
            json={"worker_id": str(world.worker.id), "vendor_id": str(world.vendor.id)},
            headers=auth(world.admin),
        )
        assert r.status_code == 400


class TestChat:
    def test_room_flow(self, client, auth, world):
        r = client.post(
            "/chat/rooms",
            json={"entity_id": str(world.job.id), "room_type": "public"},
            headers=auth(world.admin),
        )
        assert r.status_code == 201
        room_id = r.json()["id"]

        again = client.post(
            "/chat/rooms",
            json={"entity_id": str(world.job.id), "room_type": "public"},
            headers=auth(world.worker_user),
        )
        assert again.status_code == 200
        assert again.json()["id"] == room_id

        r = client.post(f"/chat/rooms/{room_id}/messages", json={"message": "Hi all"}, headers=auth(world.worker_user))
        assert r.status_code == 201
        assert r.json()["sender_name"] == "Dana Reyes"

        # Not yet a member
        assert client.get(f"/chat/rooms/{room_id}/messages", headers=auth(world.vendor_user)).status_code == 403
        assert client.post(f"/chat/rooms/{room_id}/join", headers=auth(world.vendor_user)).status_code == 200
        msgs = client.get(f"/chat/rooms/{room_id}/messages", headers=auth(world.vendor_user)).json()
        assert [m["message"] for m in msgs] == ["Hi all"]

        rooms = client.get("/chat/rooms", params={"entity_id": str(world.job.id)}, headers=auth(world.admin)).json()
        assert [rm["name"] for rm in rooms] == ["Public Discussion"]

    def test_private_room_requires_counterpart(self, client, auth, world):
        r = client.post(
            "/chat/rooms",
            json={"entity_id": str(world.job.id), "room_type": "private"},
            headers=auth(world.admin),
        )
        assert r.status_code == 400

    def test_private_room_is_closed_to_others(self, client, auth, world):
        r = client.post(
            "/chat/rooms",
            json={"entity_id": str(world.job.id), "room_type": "private", "participant_user_id": str(world.worker_user.id)},
            headers=auth(world.admin),
        )
        assert r.json()["name"] == "Chat with Dana Reyes"
        room_id = r.json()["id"]
        assert client.post(f"/chat/rooms/{room_id}/join", headers=auth(world.vendor_user)).status_code == 403

    def test_vendor_team_room_is_for_vendors_and_workers(self, client, auth, world):
        body = {"entity_id": str(world.job.id), "room_type": "vendor_workers"}
        assert client.post("/chat/rooms", json=body, headers=auth(world.admin)).status_code == 403

        r = client.post("/chat/rooms", json=body, headers=auth(world.vendor_user))
        assert r.status_code == 201
        assert r.json()["name"] == "Vendor Team Chat"
        room_id = r.json()["id"]

        assert client.post(f"/chat/rooms/{room_id}/join", headers=auth(world.worker_user)).status_code == 200
        assert client.post(f"/chat/rooms/{room_id}/join", headers=auth(world.admin)).status_code == 403

    def test_outsider_cannot_open_rooms(self, client, auth, world):
        r = client.post(
            "/chat/rooms",
            json={"entity_id": str(world.job.id), "room_type": "public"},
            headers=auth(world.outsider),
        )
        assert r.status_code == 403


class TestDeadlineScanRoute:
    def test_admin_triggers_scan(self, client, auth, world, make_job):
        make_job(deadline_in=timedelta(hours=3), assigned_to_worker_id=world.worker.id)
        r = client.post("/deadlines/scan", params={"company_id": str(world.company.id)}, headers=auth(world.admin))
        assert r.status_code == 200
        assert r.json() == {"scanned": 1, "emitted": 1, "suppressed": 0, "skipped": 0}

        r = client.post("/deadlines/scan", params={"company_id": str(world.company.id)}, headers=auth(world.admin))
        assert r.json()["suppressed"] == 1

    def test_scan_stays_inside_admins_company(self, client, auth, world, db):
        foreign = Job(company_id=world.other_company.id, title="Far job", deadline=utcnow() + timedelta(days=10))
        nearby = Job(company_id=world.other_company.id, title="Due soon", deadline=utcnow() + timedelta(hours=2))
        db.add_all([foreign, nearby])
        db.commit()

        # A caller-supplied lookahead is not honoured
        r = client.post(
            "/deadlines/scan",
            params={"company_id": str(world.company.id), "lookahead_hours": 100000},
            headers=auth(world.admin),
        )
        assert r.status_code == 200
        assert r.json()["scanned"] == 0
        assert db.query(ActivityLog).filter(ActivityLog.action_type == "deadline_approaching").count() == 0

    def test_worker_cannot_trigger(self, client, auth, world):
        r = client.post("/deadlines/scan", params={"company_id": str(world.company.id)}, headers=auth(world.worker_user))
        assert r.status_code == 403


class TestEventsSocket:
    def test_rejects_missing_token(self, client, world):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws/events") as ws:
                ws.receive_json()

    def test_rejects_only_foreign_topics(self, client, world):
        token = create_access_token(str(world.outsider.id))
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(f"/ws/events?token={token}&topics=company:{world.company.id}") as ws:
                ws.receive_json()

    def test_live_notification_and_ping(self, client, auth, world, make_job):
        job = make_job(assigned_to_worker_id=world.worker.id)
        token = create_access_token(str(world.worker_user.id))
        topics = f"user:{world.worker_user.id},company:{world.other_company.id}"
        with client.websocket_connect(f"/ws/events?token={token}&topics={topics}") as ws:
            hello = ws.receive_json()
            assert hello["event"] == "subscribed"
            assert hello["data"]["topics"] == [f"user:{world.worker_user.id}"]
            assert hello["data"]["denied"] == [f"company:{world.other_company.id}"]

            ws.send_text("ping")
            assert ws.receive_text() == "pong"

            r = _request_status(client, auth, world.admin, job.id)
            first = ws.receive_json()
            assert first["event"] == "activity.inserted"
            assert first["data"]["id"] == r.json()["id"]
            assert ws.receive_json()["event"] == "alert"
