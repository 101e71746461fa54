import os

import pytest
from fastapi.testclient import TestClient

from campus_config import Settings


@pytest.fixture()
def client():
    # Ensure memory backend for tests
    os.environ["DB_BACKEND"] = "memory"
    import server as srv

    srv.services = srv.build_services(Settings())  # reset state per test
    with TestClient(srv.app) as c:
        yield c


def create_event(client, **kwargs):
    payload = {
        "event_id": "E101",
        "title": "AI Workshop",
        "organizer_id": "T01",
        "registration_deadline": "2099-09-20T10:00:00Z",
        "max_participants": 50,
        "status": "approved",
    }
    payload.update(kwargs)
    r = client.post("/api/events", json=payload)
    assert r.status_code == 201, r.text


def as_user(user_id):
    return {"X-User-Id": user_id}


def test_registration_waitlist_and_promotion(client: TestClient):
    create_event(client, event_id="E201", title="Tiny Session", max_participants=2)

    r = client.post("/api/events/E201/register", headers=as_user("A"))
    assert r.status_code == 201
    assert r.json()["status"] == "registered"
    assert client.post("/api/events/E201/register", headers=as_user("B")).json()["status"] == "registered"

    r = client.post("/api/events/E201/register", headers=as_user("C"))
    assert r.status_code == 201
    assert r.json()["status"] == "waitlisted"
    assert r.json()["waitlist_position"] == 1

    r = client.get("/api/events/E201/registration", headers=as_user("C"))
    assert r.json() == {"registered": False, "waitlisted": True, "waitlist_position": 1}

    r = client.delete("/api/events/E201/unregister", headers=as_user("A"))
    assert r.status_code == 200
    assert r.json()["promoted_user_id"] == "C"

    ev = client.get("/api/events/E201").json()
    assert [reg["user_id"] for reg in ev["registrations"]] == ["B", "C"]
    assert ev["waitlist"] == []
    assert ev["available_spots"] == 0
    assert ev["is_full"] is True

    notes = client.get("/api/notifications", headers=as_user("C")).json()
    assert [n["type"] for n in notes] == ["waitlist_promotion"]
    assert notes[0]["related_event_id"] == "E201"


def test_rejection_codes(client: TestClient):
    create_event(client, event_id="E301", status="pending")
    create_event(client, event_id="E302", registration_deadline="2020-01-01T00:00:00Z")
    create_event(client, event_id="E303")

    r = client.post("/api/events/E301/register", headers=as_user("A"))
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "event_not_approved"

    r = client.post("/api/events/E302/register", headers=as_user("A"))
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "deadline_passed"

    client.post("/api/events/E303/register", headers=as_user("A"))
    r = client.post("/api/events/E303/register", headers=as_user("A"))
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "already_registered"

    r = client.delete("/api/events/E303/unregister", headers=as_user("B"))
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "not_registered"

    r = client.post("/api/events/NOPE/register", headers=as_user("A"))
    assert r.status_code == 404
    assert r.json()["detail"]["code"] == "not_found"


def test_register_requires_user_header(client: TestClient):
    create_event(client)
    r = client.post("/api/events/E101/register")
    assert r.status_code == 422


def test_review_and_notification_read_state(client: TestClient):
    create_event(client, event_id="E401", organizer_id="T09", status="pending")

    r = client.put("/api/events/E401/status", json={"status": "approved"}, headers=as_user("ADMIN"))
    assert r.status_code == 200
    assert r.json()["status"] == "approved"

    # Already reviewed
    r = client.put("/api/events/E401/status", json={"status": "rejected"}, headers=as_user("ADMIN"))
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "invalid_status_transition"

    assert client.get("/api/notifications/unread-count", headers=as_user("T09")).json() == {"count": 1}
    note = client.get("/api/notifications", headers=as_user("T09")).json()[0]
    assert note["type"] == "event_approved"
    assert note["priority"] == "high"

    r = client.put(f"/api/notifications/{note['notification_id']}/read", headers=as_user("someone-else"))
    assert r.status_code == 404
    r = client.put(f"/api/notifications/{note['notification_id']}/read", headers=as_user("T09"))
    assert r.status_code == 200
    assert client.get("/api/notifications/unread-count", headers=as_user("T09")).json() == {"count": 0}


def test_mark_all_read(client: TestClient):
    create_event(client, event_id="E1")
    create_event(client, event_id="E2")
    client.post("/api/events/E1/register", headers=as_user("A"))
    client.post("/api/events/E2/register", headers=as_user("A"))

    r = client.put("/api/notifications/mark-all-read", headers=as_user("A"))
    assert r.json() == {"updated": 2}
    assert client.get("/api/notifications/unread-count", headers=as_user("A")).json() == {"count": 0}


def test_feedback_flow(client: TestClient):
    create_event(client, event_id="E501")
    client.post("/api/events/E501/register", headers=as_user("A"))

    r = client.post("/api/events/E501/feedback", json={"rating": 5}, headers=as_user("A"))
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "feedback_not_allowed"

    r = client.post("/api/events/E501/attendance/A")
    assert r.status_code == 200
    assert r.json()["attended"] is True

    r = client.post("/api/events/E501/feedback", json={"rating": 4, "comment": "Good"}, headers=as_user("A"))
    assert r.status_code == 201
    assert r.json()["average_rating"] == 4.0

    r = client.post("/api/events/E501/feedback", json={"rating": 9}, headers=as_user("A"))
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "invalid_rating"


def test_duplicate_event_returns_400(client: TestClient):
    create_event(client, event_id="E999")
    r = client.post("/api/events", json={
        "event_id": "E999",
        "title": "Dup",
        "organizer_id": "T01",
        "registration_deadline": "2099-09-20T10:00:00",
        "max_participants": 10,
    })
    assert r.status_code == 400


def test_invalid_event_payload_returns_422(client: TestClient):
    r = client.post("/api/events", json={
        "event_id": "E998",
        "title": "Bad",
        "organizer_id": "T01",
        "registration_deadline": "not a date",
        "max_participants": 0,
    })
    assert r.status_code == 422


def test_role_decides_status_of_new_events(client: TestClient):
    import server as srv

    srv.services.admin_ids = ["A01"]
    payload = {
        "title": "Robotics Demo",
        "registration_deadline": "2099-09-20T10:00:00Z",
        "max_participants": 10,
    }

    r = client.post("/api/events", json={**payload, "event_id": "E601", "organizer_id": "A01"},
                    headers={"X-User-Role": "admin"})
    assert r.status_code == 201
    assert r.json()["status"] == "approved"

    r = client.post("/api/events", json={**payload, "event_id": "E602", "organizer_id": "T01", "status": "approved"},
                    headers={"X-User-Role": "teacher"})
    assert r.status_code == 201
    assert r.json()["status"] == "pending"
    notes = client.get("/api/notifications", headers=as_user("A01")).json()
    assert [(n["type"], n["related_event_id"]) for n in notes] == [("new_event", "E602")]

    r = client.post("/api/events", json={**payload, "event_id": "E603", "organizer_id": "S01"},
                    headers={"X-User-Role": "student"})
    assert r.status_code == 403
    assert r.json()["detail"]["code"] == "forbidden"


def test_update_event(client: TestClient):
    create_event(client, event_id="E701", max_participants=1)
    client.post("/api/events/E701/register", headers=as_user("A"))
    client.post("/api/events/E701/register", headers=as_user("B"))

    r = client.put("/api/events/E701", json={"title": "Bigger Room", "max_participants": 2}, headers=as_user("T01"))
    assert r.status_code == 200
    ev = r.json()
    assert ev["title"] == "Bigger Room"
    assert [reg["user_id"] for reg in ev["registrations"]] == ["A", "B"]
    assert ev["waitlist"] == []

    assert {n["type"] for n in client.get("/api/notifications", headers=as_user("A")).json()} == {
        "registration_confirmed",
        "event_updated",
    }
    assert [n["type"] for n in client.get("/api/notifications", headers=as_user("B")).json()] == ["waitlist_promotion"]

    r = client.put("/api/events/E701", json={"title": "Mine now"}, headers=as_user("T99"))
    assert r.status_code == 403

    r = client.put("/api/events/E701", json={"title": "Admin edit"},
                   headers={"X-User-Id": "A01", "X-User-Role": "admin"})
    assert r.status_code == 200
    assert r.json()["title"] == "Admin edit"

    r = client.put("/api/events/E701", json={"max_participants": 1}, headers=as_user("T01"))
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "invalid_update"


def test_update_cancelled_event_is_refused(client: TestClient):
    create_event(client, event_id="E702", status="cancelled")
    r = client.put("/api/events/E702", json={"title": "Back on"}, headers=as_user("T01"))
    assert r.status_code == 400
    assert r.json()["detail"] == {"code": "event_locked", "message": "Cannot update cancelled event"}


def test_conflicting_save_returns_409(client: TestClient, monkeypatch):
    import server as srv
    from campus_events import ConcurrentModification

    create_event(client, event_id="E801")

    def busy(event):
        raise ConcurrentModification("Event E801 changed since version 0")

    monkeypatch.setattr(srv.services.store, "save_event", busy)
    r = client.post("/api/events/E801/register", headers=as_user("A"))
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "conflict"


def test_storage_failure_returns_503(client: TestClient, monkeypatch):
    import server as srv
    from campus_events import StorageError

    create_event(client, event_id="E802")

    def down(event):
        raise StorageError("database unavailable")

    monkeypatch.setattr(srv.services.store, "save_event", down)
    r = client.post("/api/events/E802/register", headers=as_user("A"))
    assert r.status_code == 503
    assert r.json()["detail"] == {"code": "storage_error", "message": "database unavailable"}


def test_attendance_without_check_in_time(client: TestClient):
    import server as srv

    create_event(client, event_id="E803")
    client.post("/api/events/E803/register", headers=as_user("A"))
    # Imported records can carry the flag without a check-in time
    ev = srv.services.store.load_event("E803")
    ev.registrations[0].attended = True
    srv.services.store.save_event(ev)

    r = client.post("/api/events/E803/attendance/A")
    assert r.status_code == 200
    assert r.json() == {"user_id": "A", "attended": True, "check_in_time": None}
