"""
Session management for the voice relay.

Two stores live here:

- SessionStore: per-connection/per-user state (history, voice settings,
  metrics) with a 24h TTL swept hourly.
- ConversationStore: chat context handed to the dialogue model, keyed by a
  caller-supplied id, with a system prompt plus a bounded number of turns
  and a shorter TTL.

Every mutation is synchronous, so within one event loop no operation can
interleave with another.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from errors import InvalidInput, NotFound

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE = "sk-SK"
DEFAULT_VOICE = "default"
DEFAULT_SPEED = 1.0

# Primary language subtag -> canonical tag with region
_LANGUAGE_REGIONS = {
    "sk": "sk-SK",
    "en": "en-US",
    "cs": "cs-CZ",
    "de": "de-DE",
    "fr": "fr-FR",
    "es": "es-ES",
}


def normalize_language(code: str) -> str:
    """Map "sk", "sk_sk", "SK-sk" and friends onto the canonical "sk-SK"."""
    if not isinstance(code, str) or not code.strip():
        raise InvalidInput("language must be a non-empty string")
    parts = code.strip().replace("_", "-").split("-")
    primary = parts[0].lower()
    if len(parts) == 1:
        return _LANGUAGE_REGIONS.get(primary, primary)
    return f"{primary}-{parts[1].upper()}"


@dataclass
class VoiceSettings:
    language: str = DEFAULT_LANGUAGE
    voice: str = DEFAULT_VOICE
    speed: float = DEFAULT_SPEED


@dataclass
class SessionMetrics:
    request_count: int = 0
    total_audio_duration: float = 0.0
    last_activity: float = 0.0


@dataclass
class HistoryEntry:
    type: str
    content: Any
    timestamp: float


@dataclass
class Session:
    """State for one logical client interaction."""
    id: str
    created_at: float
    last_access: float
    conversation_history: List[HistoryEntry] = field(default_factory=list)
    voice_settings: VoiceSettings = field(default_factory=VoiceSettings)
    metrics: SessionMetrics = field(default_factory=SessionMetrics)
    data: Dict[str, Any] = field(default_factory=dict)

    def touch(self, now: float):
        # last_access never moves backwards, even with a skewed clock
        self.last_access = max(self.last_access, now)
        self.metrics.last_activity = self.last_access

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SessionStats:
    total_sessions: int = 0
    active_sessions: int = 0
    oldest_created_at: Optional[float] = None
    newest_created_at: Optional[float] = None
    total_requests: int = 0
    total_audio_duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class InMemorySessionBackend:
    """Single-writer map behind SessionStore.

    A durable or shared store can replace it as long as it offers the same
    five methods.
    """

    def __init__(self):
        self._items: Dict[str, Session] = {}

    def get(self, session_id: str) -> Optional[Session]:
        return self._items.get(session_id)

    def set(self, session: Session):
        self._items[session.id] = session

    def delete(self, session_id: str) -> bool:
        return self._items.pop(session_id, None) is not None

    def delete_if(self, session_id: str, predicate: Callable[[Session], bool]) -> bool:
        """Delete the session only if it still satisfies predicate."""
        session = self._items.get(session_id)
        if session is None or not predicate(session):
            return False
        del self._items[session_id]
        return True

    def values(self) -> List[Session]:
        return list(self._items.values())

    def __len__(self):
        return len(self._items)

    def __contains__(self, session_id: str):
        return session_id in self._items


class SessionStore:
    """Maps opaque session ids to mutable Session state with TTL expiry."""

    def __init__(
        self,
        backend: Optional[InMemorySessionBackend] = None,
        max_age: float = 24 * 60 * 60,
        max_history: int = 50,
        active_window: float = 5 * 60,
        clock: Callable[[], float] = time.time,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        self.backend = backend if backend is not None else InMemorySessionBackend()
        self.max_age = max_age
        self.max_history = max_history
        self.active_window = active_window
        self._clock = clock
        self._new_id = id_factory

    def _allocate_id(self) -> str:
        # uuid4 ids are never reissued in practice; live ids are checked anyway
        session_id = self._new_id()
        while session_id in self.backend:
            session_id = self._new_id()
        return session_id

    def get_or_create(self, session_id: Optional[str] = None) -> Session:
        """Return the session for session_id, creating a fresh one if unknown."""
        now = self._clock()
        session = self.backend.get(session_id) if session_id else None

        if session is None:
            session = Session(
                id=self._allocate_id(),
                created_at=now,
                last_access=now,
                metrics=SessionMetrics(last_activity=now),
            )
            self.backend.set(session)
            logger.info(f"Created new session: {session.id}")
        else:
            session.metrics.request_count += 1

        session.touch(now)
        return session

    def get(self, session_id: str) -> Optional[Session]:
        """Look up a session without touching it."""
        return self.backend.get(session_id)

    def require(self, session_id: str) -> Session:
        session = self.backend.get(session_id)
        if session is None:
            raise NotFound(f"session not found: {session_id}")
        return session

    def all(self) -> List[Session]:
        return self.backend.values()

    def append_history(self, session: Session, entry_type: str, content: Any) -> HistoryEntry:
        entry = HistoryEntry(type=entry_type, content=content, timestamp=self._clock())
        history = session.conversation_history
        history.append(entry)
        if len(history) > self.max_history:
            del history[: len(history) - self.max_history]
        return entry

    def update_voice_settings(self, session: Session, partial: Mapping[str, Any]) -> VoiceSettings:
        """Overlay partial onto the session's voice settings."""
        updates = dict(partial)
        if "voiceId" in updates:
            updates.setdefault("voice", updates.pop("voiceId"))

        unknown = set(updates) - {"language", "voice", "speed"}
        if unknown:
            raise InvalidInput(f"unknown voice settings: {', '.join(sorted(unknown))}")

        if "language" in updates:
            updates["language"] = normalize_language(updates["language"])
        if "voice" in updates:
            voice = updates["voice"]
            if not isinstance(voice, str) or not voice.strip():
                raise InvalidInput("voice must be a non-empty string")
        if "speed" in updates:
            speed = updates["speed"]
            if isinstance(speed, bool) or not isinstance(speed, (int, float)) or speed <= 0:
                raise InvalidInput("speed must be a positive number")
            updates["speed"] = float(speed)

        settings = session.voice_settings
        for key, value in updates.items():
            setattr(settings, key, value)
        return settings

    def update_metrics(self, session: Session, **fields) -> SessionMetrics:
        unknown = set(fields) - set(SessionMetrics.__dataclass_fields__)
        if unknown:
            raise InvalidInput(f"unknown metrics: {', '.join(sorted(unknown))}")
        for key, value in fields.items():
            setattr(session.metrics, key, value)
        return session.metrics

    def add_audio_duration(self, session: Session, seconds: float):
        session.metrics.total_audio_duration += max(0.0, seconds)

    def destroy(self, session_id: str) -> bool:
        """Remove a session. Unknown ids are a no-op."""
        return self.backend.delete(session_id)

    def sweep_expired(self, now: Optional[float] = None, max_age: Optional[float] = None) -> int:
        """Remove every session idle for longer than max_age. Returns the count."""
        now = self._clock() if now is None else now
        max_age = self.max_age if max_age is None else max_age

        def expired(session: Session) -> bool:
            return now - session.last_access > max_age

        removed = 0
        for session in self.backend.values():
            if self.backend.delete_if(session.id, expired):
                removed += 1
        return removed

    def stats(self, now: Optional[float] = None) -> SessionStats:
        now = self._clock() if now is None else now
        stats = SessionStats()
        for session in self.backend.values():
            stats.total_sessions += 1
            if now - session.last_access < self.active_window:
                stats.active_sessions += 1
            if stats.oldest_created_at is None or session.created_at < stats.oldest_created_at:
                stats.oldest_created_at = session.created_at
            if stats.newest_created_at is None or session.created_at > stats.newest_created_at:
                stats.newest_created_at = session.created_at
            stats.total_requests += session.metrics.request_count
            stats.total_audio_duration += session.metrics.total_audio_duration
        return stats

    def __len__(self):
        return len(self.backend)

    def __contains__(self, session_id: str):
        return session_id in self.backend


@dataclass
class ConversationSession:
    """Chat context for one caller-supplied session id."""
    session_id: str
    messages: List[Dict[str, str]]
    last_activity: float
    message_count: int = 0


class ConversationStore:
    """Bounded dialogue history: the system prompt plus the latest turns."""

    def __init__(
        self,
        system_prompt: str,
        max_turns: int = 20,
        ttl: float = 30 * 60,
        clock: Callable[[], float] = time.time,
    ):
        if max_turns < 1:
            raise ValueError(f"max_turns must be at least 1, got {max_turns}")
        self.system_prompt = system_prompt
        self.max_turns = max_turns
        self.ttl = ttl
        self._clock = clock
        self._conversations: Dict[str, ConversationSession] = {}

    def get_or_create(self, session_id: str) -> ConversationSession:
        if not session_id:
            raise InvalidInput("session_id is required")
        now = self._clock()
        conversation = self._conversations.get(session_id)
        if conversation is None:
            conversation = ConversationSession(
                session_id=session_id,
                messages=[{"role": "system", "content": self.system_prompt}],
                last_activity=now,
            )
            self._conversations[session_id] = conversation
        conversation.last_activity = max(conversation.last_activity, now)
        return conversation

    def get(self, session_id: str) -> Optional[ConversationSession]:
        return self._conversations.get(session_id)

    def trim(self, messages: List[Dict[str, str]]) -> List[Dict[str, str]]:
        """Keep messages[0] (the system prompt) plus the last max_turns entries."""
        if len(messages) <= self.max_turns + 1:
            return messages
        return [messages[0]] + messages[len(messages) - self.max_turns:]

    def add_message(self, conversation: ConversationSession, role: str, content: str):
        conversation.messages.append({"role": role, "content": content})
        if role == "user":
            conversation.message_count += 1
        conversation.messages = self.trim(conversation.messages)

    def clear(self, session_id: str) -> bool:
        return self._conversations.pop(session_id, None) is not None

    def clear_or_raise(self, session_id: str):
        if not self.clear(session_id):
            raise NotFound(f"conversation not found: {session_id}")

    def sweep_expired(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        expired = [
            key for key, conv in self._conversations.items()
            if now - conv.last_activity > self.ttl
        ]
        for key in expired:
            del self._conversations[key]
            logger.info(f"Cleaned old conversation: {key}")
        return len(expired)

    @property
    def active_conversations(self) -> int:
        return len(self._conversations)

    def __len__(self):
        return len(self._conversations)

    def __contains__(self, session_id: str):
        return session_id in self._conversations


async def run_periodic(name: str, interval: float, sweep: Callable[[], int]):
    """Call sweep every interval seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            removed = sweep()
        except Exception as e:
            logger.error(f"{name} sweep failed: {e}")
            continue
        if removed:
            logger.info(f"Cleaned up {removed} expired {name}")
