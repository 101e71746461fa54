"""Runtime configuration and backend wiring.

Environment:
  DB_BACKEND=memory|mongodb
  MONGODB_URI=... (when DB_BACKEND=mongodb)
  DB_NAME=campus_events
  COLLECTION_PREFIX=dev_
  LOG_LEVEL=INFO
  REGISTRATION_MAX_ATTEMPTS=3
  ADMIN_USER_IDS=A01,A02 (notified when a teacher creates an event)

Values may also come from a local .env file.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from dotenv import load_dotenv
from pymongo import MongoClient

from campus_events import (
    EventStore,
    InMemoryEventStore,
    InMemoryNotificationSink,
    MongoEventStore,
    MongoNotificationSink,
    NotificationSink,
)

DEFAULT_DB_NAME = "campus_events"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_MAX_ATTEMPTS = 3


class ConfigError(Exception):
    """Raised when the environment describes an unusable configuration."""


@dataclass
class Settings:
    backend: str = "memory"
    mongodb_uri: Optional[str] = None
    db_name: str = DEFAULT_DB_NAME
    collection_prefix: str = ""
    log_level: str = DEFAULT_LOG_LEVEL
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    admin_ids: List[str] = field(default_factory=list)


def load_settings(dotenv: bool = True) -> Settings:
    if dotenv:
        load_dotenv()

    backend = os.getenv("DB_BACKEND", "memory").lower()
    if backend not in ("memory", "mongodb"):
        raise ConfigError(f"Unsupported DB_BACKEND: {backend}")

    raw_attempts = os.getenv("REGISTRATION_MAX_ATTEMPTS", str(DEFAULT_MAX_ATTEMPTS))
    try:
        max_attempts = int(raw_attempts)
    except ValueError as e:
        raise ConfigError(f"REGISTRATION_MAX_ATTEMPTS must be an integer, got {raw_attempts!r}") from e
    if max_attempts < 1:
        raise ConfigError("REGISTRATION_MAX_ATTEMPTS must be at least 1")

    settings = Settings(
        backend=backend,
        mongodb_uri=os.getenv("MONGODB_URI"),
        db_name=os.getenv("DB_NAME", DEFAULT_DB_NAME),
        collection_prefix=os.getenv("COLLECTION_PREFIX", ""),
        log_level=os.getenv("LOG_LEVEL", DEFAULT_LOG_LEVEL).upper(),
        max_attempts=max_attempts,
        admin_ids=[a.strip() for a in os.getenv("ADMIN_USER_IDS", "").split(",") if a.strip()],
    )
    if settings.backend == "mongodb" and not settings.mongodb_uri:
        raise ConfigError("DB_BACKEND=mongodb requires MONGODB_URI")
    return settings


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def build_backend(settings: Settings) -> Tuple[EventStore, NotificationSink]:
    """Create the event store and notification sink for ``settings.backend``."""
    if settings.backend == "mongodb":
        client = MongoClient(settings.mongodb_uri, tz_aware=True)
        db = client[settings.db_name]
        return (
            MongoEventStore(db, collection_prefix=settings.collection_prefix),
            MongoNotificationSink(db, collection_prefix=settings.collection_prefix),
        )
    return InMemoryEventStore(), InMemoryNotificationSink()
