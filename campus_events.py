"""
Campus Event Registration

Implements:
- Event registration with capacity enforcement and a FIFO waitlist
- Waitlist promotion when a registered attendee drops out
- Event creation by teachers and admins, edits with registrant notices
- Event review (approve/reject) for pending events
- Attendance tracking and post-event feedback
- Notification side effects through a pluggable sink

Events are whole documents: every mutation is load -> mutate -> save, and the
save is version-checked so two concurrent writers cannot both fill the last seat.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Tuple, runtime_checkable

from pymongo import ASCENDING, DESCENDING
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

logger = logging.getLogger(__name__)


EVENT_STATUSES = ("pending", "approved", "rejected", "cancelled", "completed")

# Roles allowed to create events; students only register.
CREATOR_ROLES = ("teacher", "admin")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes; aware values pass through unchanged."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# -----------------------------
# Errors
# -----------------------------


class RegistrationError(ValueError):
    """A precondition failed; nothing was changed.

    Each subclass carries a stable ``code`` so callers can map it to a
    distinct rejection reason.
    """

    code = "registration_error"
    default_message = "Registration request rejected"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class EventNotApproved(RegistrationError):
    code = "event_not_approved"
    default_message = "Cannot register for unapproved event"


class DeadlinePassed(RegistrationError):
    code = "deadline_passed"
    default_message = "Registration deadline has passed"


class AlreadyRegistered(RegistrationError):
    code = "already_registered"
    default_message = "You are already registered for this event"


class NotRegistered(RegistrationError):
    code = "not_registered"
    default_message = "You are not registered for this event"


class InvalidStatusTransition(RegistrationError):
    code = "invalid_status_transition"
    default_message = "Only pending events can be approved or rejected"


class InvalidRating(RegistrationError):
    code = "invalid_rating"
    default_message = "Rating must be an integer between 1 and 5"


class FeedbackNotAllowed(RegistrationError):
    code = "feedback_not_allowed"
    default_message = "You must attend the event to provide feedback"


class FeedbackAlreadySubmitted(RegistrationError):
    code = "feedback_already_submitted"
    default_message = "You have already submitted feedback for this event"


class PermissionDenied(RegistrationError):
    code = "forbidden"
    default_message = "You do not have permission to update this event"


class EventLocked(RegistrationError):
    code = "event_locked"
    default_message = "Cannot update a completed or cancelled event"


class InvalidUpdate(RegistrationError):
    code = "invalid_update"
    default_message = "Invalid event update"


class EventNotFound(KeyError):
    code = "not_found"

    def __init__(self, event_id: str) -> None:
        super().__init__(event_id)
        self.event_id = event_id
        self.message = f"Unknown event: {event_id}"

    def __str__(self) -> str:
        return self.message


class StorageError(RuntimeError):
    """The event store could not persist or load a document."""

    code = "storage_error"

    @property
    def message(self) -> str:
        return str(self)


class ConcurrentModification(StorageError):
    """The stored event changed between load and save."""

    code = "conflict"


# -----------------------------
# Data Models
# -----------------------------


@dataclass
class RegistrationEntry:
    """An occupied seat. Order in ``Event.registrations`` is registration order."""

    user_id: str
    registered_at: datetime
    attended: bool = False
    check_in_time: Optional[datetime] = None


@dataclass
class WaitlistEntry:
    user_id: str
    added_at: datetime


@dataclass
class FeedbackEntry:
    user_id: str
    rating: int
    comment: str = ""
    submitted_at: datetime = field(default_factory=utcnow)


@dataclass
class Event:
    """An event document with capacity-bounded registration.

    Invariants kept by ``RegistrationManager``:
    - a user is in at most one of ``registrations`` / ``waitlist``, at most once
    - ``len(registrations) <= max_participants`` after every successful save
    - ``version`` grows by one on every successful save
    """

    event_id: str
    title: str
    organizer_id: str
    registration_deadline: datetime
    max_participants: int
    status: str = "pending"
    registrations: List[RegistrationEntry] = field(default_factory=list)
    waitlist: List[WaitlistEntry] = field(default_factory=list)
    feedback: List[FeedbackEntry] = field(default_factory=list)
    rejection_reason: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    version: int = 0

    def __post_init__(self) -> None:
        if isinstance(self.max_participants, bool) or not isinstance(self.max_participants, int):
            raise ValueError("max_participants must be an integer")
        if self.max_participants < 1:
            raise ValueError("max_participants must be at least 1")
        self.registration_deadline = as_utc(self.registration_deadline)
        if self.approved_at is not None:
            self.approved_at = as_utc(self.approved_at)

    @property
    def registration_count(self) -> int:
        return len(self.registrations)

    @property
    def waitlist_count(self) -> int:
        return len(self.waitlist)

    @property
    def available_spots(self) -> int:
        return max(0, self.max_participants - len(self.registrations))

    @property
    def is_full(self) -> bool:
        return self.available_spots <= 0

    @property
    def average_rating(self) -> float:
        if not self.feedback:
            return 0.0
        return round(sum(f.rating for f in self.feedback) / len(self.feedback), 1)


@dataclass
class Notification:
    """A user-facing notification addressed to one recipient."""

    recipient_id: str
    type: str
    title: str
    message: str
    related_event_id: Optional[str] = None
    priority: str = "medium"
    notification_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    is_read: bool = False
    read_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RegistrationResult:
    """Outcome of ``register``: status is "registered" or "waitlisted"."""

    event_id: str
    user_id: str
    status: str
    waitlist_position: Optional[int] = None


@dataclass
class UnregisterResult:
    event_id: str
    user_id: str
    promoted_user_id: Optional[str] = None


# -----------------------------
# Notification templates
# -----------------------------


_TITLES = {
    "event_approved": "Event Approved",
    "event_rejected": "Event Rejected",
    "event_updated": "Event Updated",
    "registration_confirmed": "Registration Confirmed",
    "new_event": "New Event Available",
    "waitlist_promotion": "Spot Available",
}

_MESSAGES = {
    "event_approved": 'Your event "{title}" has been approved.',
    "event_rejected": 'Your event "{title}" has been rejected. Reason: {reason}',
    "event_updated": 'The event "{title}" has been updated.',
    "registration_confirmed": 'You have successfully registered for "{title}"',
    "new_event": 'New event "{title}" is waiting for review.',
    "waitlist_promotion": 'A spot has become available for "{title}". You have been registered!',
}

_PRIORITIES = {
    "event_approved": "high",
    "event_rejected": "high",
    "waitlist_promotion": "high",
}


def build_notification(event: Event, type: str, recipient_id: str) -> Notification:
    """Fill title, message and priority for ``type`` from the templates above.

    Unknown types fall back to a generic title and message with medium priority.
    """
    template = _MESSAGES.get(type)
    if template is None:
        message = "You have a new notification."
    else:
        message = template.format(
            title=event.title, reason=event.rejection_reason or "No reason provided"
        )
    return Notification(
        recipient_id=recipient_id,
        type=type,
        title=_TITLES.get(type, "Notification"),
        message=message,
        related_event_id=event.event_id,
        priority=_PRIORITIES.get(type, "medium"),
    )


# -----------------------------
# Storage interfaces
# -----------------------------


@runtime_checkable
class EventStore(Protocol):
    def add_event(self, event: Event) -> None: ...
    def load_event(self, event_id: str) -> Event: ...
    def save_event(self, event: Event) -> Event: ...
    def list_events(self) -> Iterable[Event]: ...


@runtime_checkable
class NotificationSink(Protocol):
    def emit(self, notification: Notification) -> None: ...
    def list_for(self, recipient_id: str) -> List[Notification]: ...
    def unread_count(self, recipient_id: str) -> int: ...
    def mark_read(self, notification_id: str, recipient_id: str) -> bool: ...
    def mark_all_read(self, recipient_id: str) -> int: ...


# -----------------------------
# Core Managers
# -----------------------------


Mutation = Callable[[Event], Tuple[object, List[Notification]]]


class _EventMutator:
    """Shared load -> mutate -> save cycle with optimistic retry.

    A mutation receives a private copy of the event and returns its result
    plus the notifications to send once the save has gone through. The
    caller's event object is only updated after a successful save.
    """

    def __init__(
        self,
        store: EventStore,
        notifications: NotificationSink,
        max_attempts: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.notifications = notifications
        self.max_attempts = max_attempts
        self.clock = clock

    def _mutate(self, event: Event, mutation: Mutation):
        current = event
        attempt = 1
        while True:
            working = copy.deepcopy(current)
            result, outbox = mutation(working)
            try:
                saved = self.store.save_event(working)
                break
            except ConcurrentModification:
                if attempt >= self.max_attempts:
                    logger.warning(
                        "Giving up on event %s after %d conflicting saves",
                        event.event_id,
                        attempt,
                    )
                    raise
                logger.info(
                    "Event %s changed during update, retrying (%d/%d)",
                    event.event_id,
                    attempt,
                    self.max_attempts,
                )
            attempt += 1
            current = self.store.load_event(event.event_id)

        for f in fields(Event):
            setattr(event, f.name, getattr(saved, f.name))
        for notification in outbox:
            self._emit(notification)
        return result

    def _emit(self, notification: Notification) -> None:
        try:
            self.notifications.emit(notification)
        except Exception:
            logger.exception(
                "Dropping %s notification for %s",
                notification.type,
                notification.recipient_id,
            )


class RegistrationManager(_EventMutator):
    """Owns an event's registration list and waitlist.

    Responsibilities:
    - Seat allocation first-come-first-serve until capacity, then waitlist
    - FIFO promotion from the waitlist when a seat frees up
    - Attendance and feedback on registrations
    - Confirmation and promotion notifications

    The event status is a precondition gate here; it is never changed.
    """

    @staticmethod
    def is_registered(event: Event, user_id: str) -> bool:
        return any(r.user_id == user_id for r in event.registrations)

    @staticmethod
    def is_waitlisted(event: Event, user_id: str) -> bool:
        return any(w.user_id == user_id for w in event.waitlist)

    def register(self, event: Event, user_id: str, now: Optional[datetime] = None) -> RegistrationResult:
        """Register ``user_id`` or add them to the waitlist when the event is full.

        Checks, in order: event approved, deadline not passed, user not already
        registered or waitlisted. A waitlisted result carries the 1-based
        position; only direct registrations are notified.
        """
        now = as_utc(now or self.clock())

        def mutation(ev: Event):
            if ev.status != "approved":
                raise EventNotApproved()
            if now > ev.registration_deadline:
                raise DeadlinePassed()
            if self.is_registered(ev, user_id) or self.is_waitlisted(ev, user_id):
                raise AlreadyRegistered()

            if len(ev.registrations) < ev.max_participants:
                ev.registrations.append(RegistrationEntry(user_id=user_id, registered_at=now))
                result = RegistrationResult(ev.event_id, user_id, "registered")
                return result, [build_notification(ev, "registration_confirmed", user_id)]

            ev.waitlist.append(WaitlistEntry(user_id=user_id, added_at=now))
            result = RegistrationResult(ev.event_id, user_id, "waitlisted", len(ev.waitlist))
            return result, []

        result = self._mutate(event, mutation)
        logger.info("User %s %s for event %s", user_id, result.status, event.event_id)
        return result

    def unregister(self, event: Event, user_id: str, now: Optional[datetime] = None) -> UnregisterResult:
        """Release ``user_id``'s seat and promote the head of the waitlist into it."""
        now = now or self.clock()

        def mutation(ev: Event):
            if not self.is_registered(ev, user_id):
                raise NotRegistered()
            ev.registrations = [r for r in ev.registrations if r.user_id != user_id]

            result = UnregisterResult(ev.event_id, user_id)
            if not ev.waitlist:
                return result, []
            promoted = ev.waitlist.pop(0)
            ev.registrations.append(RegistrationEntry(user_id=promoted.user_id, registered_at=now))
            result.promoted_user_id = promoted.user_id
            return result, [build_notification(ev, "waitlist_promotion", promoted.user_id)]

        result = self._mutate(event, mutation)
        if result.promoted_user_id:
            logger.info(
                "User %s left event %s; promoted %s from waitlist",
                user_id,
                event.event_id,
                result.promoted_user_id,
            )
        else:
            logger.info("User %s left event %s", user_id, event.event_id)
        return result

    def mark_attended(self, event: Event, user_id: str, now: Optional[datetime] = None) -> RegistrationEntry:
        """Record that a registered user showed up."""
        now = now or self.clock()

        def mutation(ev: Event):
            entry = next((r for r in ev.registrations if r.user_id == user_id), None)
            if entry is None:
                raise NotRegistered()
            if not entry.attended:
                entry.attended = True
                entry.check_in_time = now
            return copy.deepcopy(entry), []

        return self._mutate(event, mutation)

    def submit_feedback(
        self,
        event: Event,
        user_id: str,
        rating: int,
        comment: str = "",
        now: Optional[datetime] = None,
    ) -> FeedbackEntry:
        """Attach a 1-5 rating from an attendee. One submission per user."""
        now = now or self.clock()
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise InvalidRating()

        def mutation(ev: Event):
            attended = any(r.user_id == user_id and r.attended for r in ev.registrations)
            if not attended:
                raise FeedbackNotAllowed()
            if any(f.user_id == user_id for f in ev.feedback):
                raise FeedbackAlreadySubmitted()
            entry = FeedbackEntry(user_id=user_id, rating=rating, comment=comment, submitted_at=now)
            ev.feedback.append(entry)
            return copy.deepcopy(entry), []

        return self._mutate(event, mutation)


class EventReviewer(_EventMutator):
    """Admin approval gate: pending -> approved | rejected, organizer notified."""

    def review(
        self,
        event: Event,
        status: str,
        reviewer_id: str,
        rejection_reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Event:
        now = now or self.clock()
        if status not in ("approved", "rejected"):
            raise InvalidStatusTransition("Invalid status. Must be approved or rejected")

        def mutation(ev: Event):
            if ev.status != "pending":
                raise InvalidStatusTransition()
            ev.status = status
            if status == "approved":
                ev.approved_by = reviewer_id
                ev.approved_at = now
                kind = "event_approved"
            else:
                ev.rejection_reason = rejection_reason or "No reason provided"
                kind = "event_rejected"
            return None, [build_notification(ev, kind, ev.organizer_id)]

        self._mutate(event, mutation)
        logger.info("Event %s %s by %s", event.event_id, status, reviewer_id)
        return event


class EventEditor(_EventMutator):
    """Creation and edits of event details by organizers and admins.

    Only the fields in ``EDITABLE_FIELDS`` can change. ``organizer_id`` and
    ``status`` are silently kept as they are; status moves through
    ``EventReviewer``. Registrations, waitlist and feedback belong to
    ``RegistrationManager``.
    """

    EDITABLE_FIELDS = ("title", "registration_deadline", "max_participants")
    IGNORED_FIELDS = ("organizer_id", "status")

    def create(
        self,
        event: Event,
        creator_role: str,
        admin_ids: Iterable[str] = (),
        now: Optional[datetime] = None,
    ) -> Event:
        """Store a new event organized by ``event.organizer_id``.

        Admin-created events are approved on the spot. Teacher-created events
        wait for review and every id in ``admin_ids`` gets a ``new_event``
        notification.
        """
        now = now or self.clock()
        if creator_role not in CREATOR_ROLES:
            raise PermissionDenied("Only teachers and admins can create events")

        if creator_role == "admin":
            event.status = "approved"
            event.approved_by = event.organizer_id
            event.approved_at = now
        else:
            event.status = "pending"
        self.store.add_event(event)
        logger.info("Event %s created by %s %s", event.event_id, creator_role, event.organizer_id)

        if creator_role == "teacher":
            for admin_id in admin_ids:
                self._emit(build_notification(event, "new_event", admin_id))
        return event

    def update(
        self,
        event: Event,
        changes: Dict[str, object],
        editor_id: str,
        is_admin: bool = False,
    ) -> Event:
        """Apply ``changes`` and tell everyone holding a seat.

        Raising capacity pulls waitlisted users into the new seats in FIFO
        order; lowering it below the current registration count is refused.
        """
        unknown = sorted(set(changes) - set(self.EDITABLE_FIELDS) - set(self.IGNORED_FIELDS))
        if unknown:
            raise InvalidUpdate(f"Fields cannot be updated: {', '.join(unknown)}")

        def mutation(ev: Event):
            if not is_admin and ev.organizer_id != editor_id:
                raise PermissionDenied()
            if ev.status in ("completed", "cancelled"):
                raise EventLocked(f"Cannot update {ev.status} event")

            if "title" in changes:
                title = changes["title"]
                if not isinstance(title, str) or not title.strip():
                    raise InvalidUpdate("title must be a non-empty string")
                ev.title = title
            if "registration_deadline" in changes:
                deadline = changes["registration_deadline"]
                if not isinstance(deadline, datetime):
                    raise InvalidUpdate("registration_deadline must be a datetime")
                ev.registration_deadline = as_utc(deadline)
            if "max_participants" in changes:
                capacity = changes["max_participants"]
                if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity < 1:
                    raise InvalidUpdate("max_participants must be a positive integer")
                if capacity < len(ev.registrations):
                    raise InvalidUpdate(
                        f"max_participants cannot be lower than the {len(ev.registrations)} current registrations"
                    )
                ev.max_participants = capacity

            outbox = [build_notification(ev, "event_updated", r.user_id) for r in ev.registrations]
            promoted_at = self.clock()
            while ev.waitlist and len(ev.registrations) < ev.max_participants:
                promoted = ev.waitlist.pop(0)
                ev.registrations.append(RegistrationEntry(user_id=promoted.user_id, registered_at=promoted_at))
                outbox.append(build_notification(ev, "waitlist_promotion", promoted.user_id))
            return None, outbox

        self._mutate(event, mutation)
        logger.info("Event %s updated by %s", event.event_id, editor_id)
        return event


# -----------------------------
# Storage backends
# -----------------------------


class InMemoryEventStore:
    """Default in-memory store.

    Documents are copied on the way in and out so callers never share state
    with the store, which is what makes the version check meaningful.
    """

    def __init__(self) -> None:
        self.events: Dict[str, Event] = {}
        self._lock = threading.Lock()

    def add_event(self, event: Event) -> None:
        with self._lock:
            if event.event_id in self.events:
                raise ValueError(f"Event ID already exists: {event.event_id}")
            self.events[event.event_id] = copy.deepcopy(event)

    def load_event(self, event_id: str) -> Event:
        with self._lock:
            event = self.events.get(event_id)
            if event is None:
                raise EventNotFound(event_id)
            return copy.deepcopy(event)

    def save_event(self, event: Event) -> Event:
        with self._lock:
            stored = self.events.get(event.event_id)
            if stored is None:
                raise EventNotFound(event.event_id)
            if stored.version != event.version:
                raise ConcurrentModification(
                    f"Event {event.event_id} is at version {stored.version}, not {event.version}"
                )
            saved = copy.deepcopy(event)
            saved.version = event.version + 1
            self.events[event.event_id] = saved
            return copy.deepcopy(saved)

    def list_events(self) -> Iterable[Event]:
        with self._lock:
            return [copy.deepcopy(e) for e in self.events.values()]


class InMemoryNotificationSink:
    def __init__(self) -> None:
        self.notifications: List[Notification] = []
        self._lock = threading.Lock()

    def emit(self, notification: Notification) -> None:
        with self._lock:
            self.notifications.append(notification)

    def list_for(self, recipient_id: str) -> List[Notification]:
        with self._lock:
            mine = [n for n in self.notifications if n.recipient_id == recipient_id]
        return sorted(mine, key=lambda n: n.created_at, reverse=True)

    def unread_count(self, recipient_id: str) -> int:
        with self._lock:
            return sum(1 for n in self.notifications if n.recipient_id == recipient_id and not n.is_read)

    def mark_read(self, notification_id: str, recipient_id: str) -> bool:
        with self._lock:
            for n in self.notifications:
                if n.notification_id == notification_id and n.recipient_id == recipient_id:
                    if not n.is_read:
                        n.is_read = True
                        n.read_at = utcnow()
                    return True
        return False

    def mark_all_read(self, recipient_id: str) -> int:
        now = utcnow()
        updated = 0
        with self._lock:
            for n in self.notifications:
                if n.recipient_id == recipient_id and not n.is_read:
                    n.is_read = True
                    n.read_at = now
                    updated += 1
        return updated


class MongoEventStore:
    """MongoDB-backed event store using PyMongo.

    One document per event with registrations, waitlist and feedback
    embedded. ``save_event`` only matches the document at the version the
    caller loaded, so a concurrent writer turns into ``ConcurrentModification``
    instead of a lost update.
    """

    def __init__(self, db: Database, collection_prefix: str = "") -> None:
        self.c_events: Collection = db[f"{collection_prefix}events"]
        self._ensure_indexes()

    def _ensure_indexes(self) -> None:
        self.c_events.create_index("event_id", unique=True)
        self.c_events.create_index([("status", ASCENDING), ("registration_deadline", ASCENDING)])
        self.c_events.create_index("registrations.user_id")

    @staticmethod
    def _event_doc(ev: Event) -> dict:
        return {
            "event_id": ev.event_id,
            "title": ev.title,
            "organizer_id": ev.organizer_id,
            "status": ev.status,
            "registration_deadline": ev.registration_deadline,
            "max_participants": ev.max_participants,
            "registrations": [asdict(r) for r in ev.registrations],
            "waitlist": [asdict(w) for w in ev.waitlist],
            "feedback": [asdict(f) for f in ev.feedback],
            "rejection_reason": ev.rejection_reason,
            "approved_by": ev.approved_by,
            "approved_at": ev.approved_at,
            "version": ev.version,
            "updated_at": utcnow(),
        }

    @staticmethod
    def _event_from(doc: dict) -> Event:
        return Event(
            event_id=doc["event_id"],
            title=doc["title"],
            organizer_id=doc["organizer_id"],
            registration_deadline=doc["registration_deadline"],
            max_participants=int(doc["max_participants"]),
            status=doc.get("status", "pending"),
            registrations=[
                RegistrationEntry(
                    user_id=r["user_id"],
                    registered_at=as_utc(r["registered_at"]),
                    attended=bool(r.get("attended", False)),
                    check_in_time=as_utc(r["check_in_time"]) if r.get("check_in_time") else None,
                )
                for r in doc.get("registrations", [])
            ],
            waitlist=[WaitlistEntry(user_id=w["user_id"], added_at=as_utc(w["added_at"])) for w in doc.get("waitlist", [])],
            feedback=[
                FeedbackEntry(
                    user_id=f["user_id"],
                    rating=int(f["rating"]),
                    comment=f.get("comment", ""),
                    submitted_at=as_utc(f["submitted_at"]),
                )
                for f in doc.get("feedback", [])
            ],
            rejection_reason=doc.get("rejection_reason"),
            approved_by=doc.get("approved_by"),
            approved_at=doc.get("approved_at"),
            version=int(doc.get("version", 0)),
        )

    def add_event(self, event: Event) -> None:
        doc = self._event_doc(event)
        doc["created_at"] = utcnow()
        try:
            self.c_events.insert_one(doc)
        except DuplicateKeyError as e:
            raise ValueError(f"Event ID already exists: {event.event_id}") from e
        except PyMongoError as e:
            raise StorageError(f"Failed to insert event {event.event_id}: {e}") from e

    def load_event(self, event_id: str) -> Event:
        try:
            doc = self.c_events.find_one({"event_id": event_id})
        except PyMongoError as e:
            raise StorageError(f"Failed to load event {event_id}: {e}") from e
        if not doc:
            raise EventNotFound(event_id)
        return self._event_from(doc)

    def save_event(self, event: Event) -> Event:
        doc = self._event_doc(event)
        doc["version"] = event.version + 1
        try:
            res = self.c_events.update_one(
                {"event_id": event.event_id, "version": event.version},
                {"$set": doc},
            )
            if res.matched_count == 0:
                exists = self.c_events.count_documents({"event_id": event.event_id}, limit=1) == 1
            else:
                exists = True
        except PyMongoError as e:
            raise StorageError(f"Failed to save event {event.event_id}: {e}") from e

        if res.matched_count == 0:
            if not exists:
                raise EventNotFound(event.event_id)
            raise ConcurrentModification(f"Event {event.event_id} changed since version {event.version}")
        return self._event_from(doc)

    def list_events(self) -> Iterable[Event]:
        try:
            docs = list(self.c_events.find({}, sort=[("created_at", ASCENDING)]))
        except PyMongoError as e:
            raise StorageError(f"Failed to list events: {e}") from e
        return [self._event_from(d) for d in docs]


class MongoNotificationSink:
    """Notifications collection. ``emit`` never raises: failures are logged."""

    def __init__(self, db: Database, collection_prefix: str = "") -> None:
        self.c_notifications: Collection = db[f"{collection_prefix}notifications"]
        self._ensure_indexes()

    def _ensure_indexes(self) -> None:
        self.c_notifications.create_index("notification_id", unique=True)
        self.c_notifications.create_index([("recipient_id", ASCENDING), ("is_read", ASCENDING)])
        self.c_notifications.create_index([("created_at", DESCENDING)])
        self.c_notifications.create_index("related_event_id")

    @staticmethod
    def _notification_from(doc: dict) -> Notification:
        return Notification(
            recipient_id=doc["recipient_id"],
            type=doc["type"],
            title=doc["title"],
            message=doc["message"],
            related_event_id=doc.get("related_event_id"),
            priority=doc.get("priority", "medium"),
            notification_id=doc["notification_id"],
            is_read=bool(doc.get("is_read", False)),
            read_at=doc.get("read_at"),
            created_at=doc["created_at"],
        )

    def emit(self, notification: Notification) -> None:
        try:
            self.c_notifications.insert_one(asdict(notification))
        except PyMongoError:
            logger.exception(
                "Failed to store %s notification for %s",
                notification.type,
                notification.recipient_id,
            )

    def list_for(self, recipient_id: str) -> List[Notification]:
        try:
            docs = list(self.c_notifications.find({"recipient_id": recipient_id}, sort=[("created_at", DESCENDING)]))
        except PyMongoError as e:
            raise StorageError(f"Failed to list notifications: {e}") from e
        return [self._notification_from(d) for d in docs]

    def unread_count(self, recipient_id: str) -> int:
        try:
            return self.c_notifications.count_documents({"recipient_id": recipient_id, "is_read": False})
        except PyMongoError as e:
            raise StorageError(f"Failed to count notifications: {e}") from e

    def mark_read(self, notification_id: str, recipient_id: str) -> bool:
        try:
            res = self.c_notifications.update_one(
                {"notification_id": notification_id, "recipient_id": recipient_id},
                {"$set": {"is_read": True, "read_at": utcnow()}},
            )
        except PyMongoError as e:
            raise StorageError(f"Failed to update notification {notification_id}: {e}") from e
        return res.matched_count == 1

    def mark_all_read(self, recipient_id: str) -> int:
        try:
            res = self.c_notifications.update_many(
                {"recipient_id": recipient_id, "is_read": False},
                {"$set": {"is_read": True, "read_at": utcnow()}},
            )
        except PyMongoError as e:
            raise StorageError(f"Failed to update notifications: {e}") from e
        return res.modified_count


# -----------------------------
# Utility helpers
# -----------------------------


def parse_timestamp(s: str) -> datetime:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC."""
    return as_utc(datetime.fromisoformat(s.strip().replace("Z", "+00:00")))
