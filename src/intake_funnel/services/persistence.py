"""Namespaced, expiring snapshot persistence for flow facts."""

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Protocol

from pydantic import TypeAdapter, ValidationError

from intake_funnel.domain.questions import Question
from intake_funnel.domain.session import (
    IMAGE_SENTINEL,
    Demographics,
    SessionContext,
    SessionRecord,
    UserData,
)

_logger = logging.getLogger(__name__)

_QUESTIONS = TypeAdapter(list[Question])

STEP_ID = "step_id"
SESSION = "session"
EMAIL = "email"
LEAD_CACHE = "lead_cache"
READING_LEAD_ID = "reading_lead_id"
READING_TOKEN = "reading_token"
READING_LOADED = "reading_loaded"
READING_TYPE = "reading_type"
EXISTING_READING_ID = "existing_reading_id"
LOOP_GUARD = "loop_guard"
PAYWALL_REDIRECT = "paywall_redirect"
PAYWALL_RETURN_URL = "paywall_return_url"

READING_KEYS = (READING_LOADED, READING_LEAD_ID, READING_TOKEN, EXISTING_READING_ID)

_FLAG_FIELDS = (
    "otp_sent",
    "otp_verified",
    "image_uploaded",
    "quiz_saved",
    "reading_generated",
)


@dataclass(frozen=True)
class SnapshotEntry:
    """A stored value with its write timestamp."""

    value: object
    written_at: datetime


class SnapshotStore(Protocol):
    """Backing key/value storage for snapshots."""

    def read(self, namespace: str, key: str) -> SnapshotEntry | None:
        """Return the entry for a key, if present."""

    def write(self, namespace: str, key: str, entry: SnapshotEntry) -> None:
        """Store an entry."""

    def delete(self, namespace: str, key: str) -> None:
        """Remove a key."""

    def delete_namespace(self, namespace: str) -> None:
        """Remove every key of a namespace."""


@dataclass
class InMemorySnapshotStore(SnapshotStore):
    """In-memory store, the analogue of browser session storage."""

    _entries: dict[tuple[str, str], SnapshotEntry] = field(default_factory=dict)

    def read(self, namespace: str, key: str) -> SnapshotEntry | None:
        return self._entries.get((namespace, key))

    def write(self, namespace: str, key: str, entry: SnapshotEntry) -> None:
        self._entries[(namespace, key)] = entry

    def delete(self, namespace: str, key: str) -> None:
        self._entries.pop((namespace, key), None)

    def delete_namespace(self, namespace: str) -> None:
        for stored_namespace, key in list(self._entries):
            if stored_namespace == namespace:
                self._entries.pop((stored_namespace, key), None)

    def keys(self, namespace: str) -> list[str]:
        """Return the keys stored under a namespace."""
        return [key for stored, key in self._entries if stored == namespace]


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class PersistenceAdapter:
    """Key/value snapshot scoped to one session context."""

    store: SnapshotStore
    context: SessionContext = SessionContext.GUEST
    ttl_seconds: int = 86400
    clock: Callable[[], datetime] = _utcnow
    prefix: str = "sm"

    @property
    def namespace(self) -> str:
        return f"{self.prefix}:{self.context.value}"

    def get(self, key: str) -> object | None:
        """Return a value unless it is missing or stale."""
        entry = self.store.read(self.namespace, key)
        if entry is None:
            return None
        if self.clock() - entry.written_at >= timedelta(seconds=self.ttl_seconds):
            _logger.info("Dropping stale snapshot key %s in %s", key, self.namespace)
            self.store.delete(self.namespace, key)
            return None
        return entry.value

    def set(self, key: str, value: object) -> None:
        """Store a value, replacing image payloads with a marker."""
        self.store.write(
            self.namespace,
            key,
            SnapshotEntry(value=_strip_payloads(value), written_at=self.clock()),
        )

    def remove(self, key: str) -> None:
        self.store.delete(self.namespace, key)

    def clear(self) -> None:
        """Forget everything stored for this session context."""
        self.store.delete_namespace(self.namespace)

    def for_context(self, context: SessionContext) -> "PersistenceAdapter":
        """Return an adapter bound to another session context."""
        return PersistenceAdapter(
            store=self.store,
            context=context,
            ttl_seconds=self.ttl_seconds,
            clock=self.clock,
            prefix=self.prefix,
        )

    def get_str(self, key: str) -> str | None:
        value = self.get(key)
        return value if isinstance(value, str) and value else None

    def get_flag(self, key: str) -> bool:
        return self.get(key) is True

    def save_session(self, record: SessionRecord) -> None:
        """Mirror the session flags and captured fields."""
        snapshot: dict[str, object] = {
            "lead_id": record.lead_id,
            "demographics": asdict(record.demographics),
            "user": asdict(record.user),
            "answers": dict(record.answers),
            "questions": [question.model_dump() for question in record.questions],
            "image_reference": record.image_reference,
        }
        for name in _FLAG_FIELDS:
            snapshot[name] = getattr(record, name)
        self.set(SESSION, snapshot)

    def load_session(self) -> SessionRecord | None:
        """Rebuild a session record from its mirror, if fresh and well formed."""
        snapshot = self.get(SESSION)
        if not isinstance(snapshot, dict):
            return None
        try:
            record = SessionRecord(
                lead_id=snapshot.get("lead_id") or None,
                demographics=Demographics(**snapshot.get("demographics", {})),
                user=UserData(**snapshot.get("user", {})),
                answers=dict(snapshot.get("answers", {})),
                questions=_QUESTIONS.validate_python(snapshot.get("questions", [])),
                image_reference=snapshot.get("image_reference"),
            )
        except (TypeError, ValidationError) as exc:
            _logger.warning("Discarding malformed session snapshot: %s", exc)
            self.remove(SESSION)
            return None
        for name in _FLAG_FIELDS:
            setattr(record, name, snapshot.get(name) is True)
        return record


def _strip_payloads(value: object) -> object:
    if isinstance(value, bytes | bytearray):
        return IMAGE_SENTINEL
    if isinstance(value, dict):
        cleaned: dict[object, object] = {}
        for key, item in value.items():
            if key == "image" and item:
                cleaned[key] = IMAGE_SENTINEL
            else:
                cleaned[key] = _strip_payloads(item)
        return cleaned
    if isinstance(value, list):
        return [_strip_payloads(item) for item in value]
    return value
