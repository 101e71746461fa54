"""Demo script walking through registration, waitlist promotion, review and edits.

Run: python demo.py

Supports two backends:
- In-memory (default)
- MongoDB (set DB_BACKEND=mongodb and MONGODB_URI in .env)
"""

from datetime import timedelta

from campus_events import (
    Event,
    EventEditor,
    EventReviewer,
    NotificationSink,
    RegistrationError,
    RegistrationManager,
    utcnow,
)
from campus_config import build_backend, configure_logging, load_settings


def seed_sample_data(store) -> None:
    deadline = utcnow() + timedelta(days=7)

    def safe_add_event(e: Event):
        try:
            store.add_event(e)
        except ValueError:
            pass  # already exists

    safe_add_event(Event("E101", "AI Workshop", "T01", deadline, max_participants=50, status="approved"))
    # Tiny capacity to demonstrate the waitlist
    safe_add_event(Event("E201", "Tiny Session", "T02", deadline, max_participants=2, status="approved"))
    safe_add_event(Event("E301", "Drama Night", "T03", deadline, max_participants=100))


def print_event_summary(store, event_id: str) -> None:
    ev = store.load_event(event_id)
    print(f"Event Summary ({ev.event_id} - {ev.title}):")
    print(f"Status: {ev.status}")
    print(f"Seats: {ev.max_participants} | Registered: {ev.registration_count} | Waitlisted: {ev.waitlist_count}")
    print(f"Registrations: {', '.join(r.user_id for r in ev.registrations) or 'None'}")
    print(f"Waitlist: {', '.join(w.user_id for w in ev.waitlist) or 'None'}")
    print()


def print_notifications(notifications: NotificationSink, user_id: str) -> None:
    print(f"Notifications for {user_id} ({notifications.unread_count(user_id)} unread):")
    for n in notifications.list_for(user_id):
        print(f"- [{n.priority}] {n.title}: {n.message}")
    print()


def main() -> None:
    settings = load_settings()
    configure_logging(settings)
    store, notifications = build_backend(settings)
    manager = RegistrationManager(store, notifications, max_attempts=settings.max_attempts)
    reviewer = EventReviewer(store, notifications, max_attempts=settings.max_attempts)
    editor = EventEditor(store, notifications, max_attempts=settings.max_attempts)

    seed_sample_data(store)

    # A and B take the two seats, C lands on the waitlist
    for user_id in ("S01", "S02", "S03"):
        try:
            result = manager.register(store.load_event("E201"), user_id)
        except RegistrationError as e:
            print(f"{user_id}: {e.message}")  # seeded by an earlier run
            continue
        if result.status == "waitlisted":
            print(f"{user_id}: waitlisted at position {result.waitlist_position}")
        else:
            print(f"{user_id}: registered")
    print()
    print_event_summary(store, "E201")

    # A drops out; C is promoted
    try:
        result = manager.unregister(store.load_event("E201"), "S01")
        print(f"S01 unregistered, promoted: {result.promoted_user_id}")
    except RegistrationError as e:
        print(f"S01: {e.message}")
    print()
    print_event_summary(store, "E201")
    print_notifications(notifications, "S03")

    # Pending event gets approved and the organizer hears about it
    try:
        reviewer.review(store.load_event("E301"), "approved", reviewer_id="A01")
    except RegistrationError as e:
        print(f"E301: {e.message}")
    print_event_summary(store, "E301")
    print_notifications(notifications, "T03")

    # A teacher proposes an event; admins are asked to review it
    admin_ids = settings.admin_ids or ["A01"]
    try:
        editor.create(
            Event("E401", "Hackathon Kickoff", "T04", utcnow() + timedelta(days=10), max_participants=30),
            "teacher",
            admin_ids=admin_ids,
        )
    except ValueError:
        pass  # already exists
    print_notifications(notifications, admin_ids[0])

    # The organizer of E201 opens one more seat
    editor.update(store.load_event("E201"), {"max_participants": 3}, editor_id="T02")
    print_event_summary(store, "E201")
    print_notifications(notifications, "S02")


if __name__ == "__main__":
    main()
