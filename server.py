"""FastAPI server exposing event registration, review, feedback and notifications.

Run locally:
  uvicorn server:app --reload

Configuration comes from the environment (see campus_config.py). The caller's
identity is read from the X-User-Id header; token handling lives in front
of this service. X-User-Role (student, teacher or admin) gates event creation
and edits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, field_validator

from campus_events import (
    EVENT_STATUSES,
    ConcurrentModification,
    Event,
    EventEditor,
    EventNotFound,
    EventReviewer,
    EventStore,
    NotificationSink,
    PermissionDenied,
    RegistrationError,
    RegistrationManager,
    StorageError,
    parse_timestamp,
)
from campus_config import Settings, build_backend, configure_logging, load_settings

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: EventStore
    notifications: NotificationSink
    manager: RegistrationManager
    reviewer: EventReviewer
    editor: EventEditor
    admin_ids: List[str] = field(default_factory=list)


def build_services(settings: Settings) -> Services:
    store, notifications = build_backend(settings)
    return Services(
        store=store,
        notifications=notifications,
        manager=RegistrationManager(store, notifications, max_attempts=settings.max_attempts),
        reviewer=EventReviewer(store, notifications, max_attempts=settings.max_attempts),
        editor=EventEditor(store, notifications, max_attempts=settings.max_attempts),
        admin_ids=list(settings.admin_ids),
    )


settings = load_settings()
configure_logging(settings)
services = build_services(settings)

app = FastAPI(title="Campus Event Registration")

# Enable CORS for local dev if needed
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------- Pydantic Schemas ----------


class EventIn(BaseModel):
    event_id: str
    title: str
    organizer_id: str
    registration_deadline: str  # ISO 8601
    max_participants: int = Field(ge=1)
    status: str = "pending"

    @field_validator("registration_deadline")
    @classmethod
    def check_deadline(cls, v: str) -> str:
        parse_timestamp(v)
        return v

    @field_validator("status")
    @classmethod
    def check_status(cls, v: str) -> str:
        if v not in EVENT_STATUSES:
            raise ValueError(f"status must be one of {', '.join(EVENT_STATUSES)}")
        return v


class EventUpdateIn(BaseModel):
    title: Optional[str] = None
    registration_deadline: Optional[str] = None  # ISO 8601
    max_participants: Optional[int] = Field(default=None, ge=1)

    @field_validator("registration_deadline")
    @classmethod
    def check_deadline(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            parse_timestamp(v)
        return v


class ReviewIn(BaseModel):
    status: str
    rejection_reason: Optional[str] = None


class FeedbackIn(BaseModel):
    rating: int
    comment: Optional[str] = ""


# ---------- Helpers ----------


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, EventNotFound):
        status = 404
    elif isinstance(e, PermissionDenied):
        status = 403
    elif isinstance(e, ConcurrentModification):
        status = 409
    elif isinstance(e, StorageError):
        logger.error("Storage failure: %s", e)
        status = 503
    else:
        status = 400
    return HTTPException(status_code=status, detail={"code": e.code, "message": e.message})


def _load(event_id: str) -> Event:
    try:
        return services.store.load_event(event_id)
    except (EventNotFound, StorageError) as e:
        raise _http_error(e)


def _event_view(e: Event) -> dict:
    return {
        "event_id": e.event_id,
        "title": e.title,
        "organizer_id": e.organizer_id,
        "status": e.status,
        "registration_deadline": e.registration_deadline.isoformat(),
        "max_participants": e.max_participants,
        "registration_count": e.registration_count,
        "waitlist_count": e.waitlist_count,
        "available_spots": e.available_spots,
        "is_full": e.is_full,
        "average_rating": e.average_rating,
        "registrations": [
            {"user_id": r.user_id, "registered_at": r.registered_at.isoformat(), "attended": r.attended}
            for r in e.registrations
        ],
        "waitlist": [{"user_id": w.user_id, "added_at": w.added_at.isoformat()} for w in e.waitlist],
        "rejection_reason": e.rejection_reason,
    }


# ---------- Routes ----------


@app.get("/api/events")
def list_events():
    try:
        return [_event_view(e) for e in services.store.list_events()]
    except StorageError as e:
        raise _http_error(e)


@app.post("/api/events", status_code=201)
def create_event(payload: EventIn, role: Optional[str] = Header(None, alias="X-User-Role")):
    """Create an event.

    With an ``X-User-Role`` header the creator's role decides the status: an
    admin's event is approved immediately, a teacher's waits for review and
    admins are notified. Without it the payload status is stored as given,
    which is how seed data gets in.
    """
    ev = Event(
        event_id=payload.event_id,
        title=payload.title,
        organizer_id=payload.organizer_id,
        registration_deadline=parse_timestamp(payload.registration_deadline),
        max_participants=payload.max_participants,
        status=payload.status,
    )
    try:
        if role is None:
            services.store.add_event(ev)
        else:
            services.editor.create(ev, role.lower(), admin_ids=services.admin_ids)
    except (RegistrationError, StorageError) as e:
        raise _http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"code": "duplicate_event", "message": str(e)})
    return {"ok": True, "status": ev.status}


@app.get("/api/events/{event_id}")
def get_event(event_id: str):
    return _event_view(_load(event_id))


@app.put("/api/events/{event_id}")
def update_event(
    event_id: str,
    payload: EventUpdateIn,
    user_id: str = Header(..., alias="X-User-Id"),
    role: Optional[str] = Header(None, alias="X-User-Role"),
):
    changes = payload.model_dump(exclude_none=True)
    if "registration_deadline" in changes:
        changes["registration_deadline"] = parse_timestamp(changes["registration_deadline"])
    event = _load(event_id)
    try:
        services.editor.update(event, changes, user_id, is_admin=(role or "").lower() == "admin")
    except (RegistrationError, StorageError, EventNotFound) as e:
        raise _http_error(e)
    return _event_view(event)


@app.post("/api/events/{event_id}/register", status_code=201)
def register_for_event(event_id: str, user_id: str = Header(..., alias="X-User-Id")):
    event = _load(event_id)
    try:
        result = services.manager.register(event, user_id)
    except (RegistrationError, StorageError, EventNotFound) as e:
        raise _http_error(e)
    return {
        "event_id": result.event_id,
        "user_id": result.user_id,
        "status": result.status,
        "waitlist_position": result.waitlist_position,
    }


@app.delete("/api/events/{event_id}/unregister")
def unregister_from_event(event_id: str, user_id: str = Header(..., alias="X-User-Id")):
    event = _load(event_id)
    try:
        result = services.manager.unregister(event, user_id)
    except (RegistrationError, StorageError, EventNotFound) as e:
        raise _http_error(e)
    return {"ok": True, "promoted_user_id": result.promoted_user_id}


@app.get("/api/events/{event_id}/registration")
def registration_status(event_id: str, user_id: str = Header(..., alias="X-User-Id")):
    event = _load(event_id)
    position = next((i for i, w in enumerate(event.waitlist, start=1) if w.user_id == user_id), None)
    return {
        "registered": RegistrationManager.is_registered(event, user_id),
        "waitlisted": position is not None,
        "waitlist_position": position,
    }


@app.put("/api/events/{event_id}/status")
def review_event(event_id: str, payload: ReviewIn, user_id: str = Header(..., alias="X-User-Id")):
    event = _load(event_id)
    try:
        services.reviewer.review(event, payload.status, user_id, rejection_reason=payload.rejection_reason)
    except (RegistrationError, StorageError, EventNotFound) as e:
        raise _http_error(e)
    return _event_view(event)


@app.post("/api/events/{event_id}/attendance/{attendee_id}")
def mark_attendance(event_id: str, attendee_id: str):
    event = _load(event_id)
    try:
        entry = services.manager.mark_attended(event, attendee_id)
    except (RegistrationError, StorageError, EventNotFound) as e:
        raise _http_error(e)
    return {
        "user_id": entry.user_id,
        "attended": entry.attended,
        "check_in_time": entry.check_in_time.isoformat() if entry.check_in_time else None,
    }


@app.post("/api/events/{event_id}/feedback", status_code=201)
def submit_feedback(event_id: str, payload: FeedbackIn, user_id: str = Header(..., alias="X-User-Id")):
    event = _load(event_id)
    try:
        services.manager.submit_feedback(event, user_id, payload.rating, payload.comment or "")
    except (RegistrationError, StorageError, EventNotFound) as e:
        raise _http_error(e)
    return {"ok": True, "average_rating": event.average_rating}


@app.get("/api/notifications")
def list_notifications(user_id: str = Header(..., alias="X-User-Id")):
    try:
        items = services.notifications.list_for(user_id)
    except StorageError as e:
        raise _http_error(e)
    return [
        {
            "notification_id": n.notification_id,
            "type": n.type,
            "title": n.title,
            "message": n.message,
            "related_event_id": n.related_event_id,
            "priority": n.priority,
            "is_read": n.is_read,
            "created_at": n.created_at.isoformat(),
        }
        for n in items
    ]


@app.get("/api/notifications/unread-count")
def unread_count(user_id: str = Header(..., alias="X-User-Id")):
    try:
        return {"count": services.notifications.unread_count(user_id)}
    except StorageError as e:
        raise _http_error(e)


@app.put("/api/notifications/mark-all-read")
def mark_all_read(user_id: str = Header(..., alias="X-User-Id")):
    try:
        return {"updated": services.notifications.mark_all_read(user_id)}
    except StorageError as e:
        raise _http_error(e)


@app.put("/api/notifications/{notification_id}/read")
def mark_read(notification_id: str, user_id: str = Header(..., alias="X-User-Id")):
    try:
        found = services.notifications.mark_read(notification_id, user_id)
    except StorageError as e:
        raise _http_error(e)
    if not found:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Notification not found"})
    return {"ok": True}
