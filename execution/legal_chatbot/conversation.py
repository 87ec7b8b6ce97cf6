"""
Conversation Store

Token-addressed conversation history with a sliding expiry window. A
conversation is not tied to a cookie or server session: the client keeps
the opaque token returned in every answer and sends it back to continue.

Rules:
- A live token is extended by the expiry window on every resolve.
- An expired or unknown token silently yields a brand new conversation.
- Turns are appended under a per-token lock, so two concurrent requests on
  the same conversation never interleave their messages.
- At most `max_messages` messages are kept (oldest dropped first) and the
  10 most recently cited identifiers are remembered for follow-ups.
"""

import re
import logging
import secrets
import weakref
import threading
from typing import Callable, Optional
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field

from .language_config import LanguageConfig, DEFAULT_LANGUAGE
from .language_patterns import (
    FOLLOWUP_MAX_WORDS,
    COMPILED_FOLLOWUP_PATTERNS,
    TOPIC_WORD_MIN_LENGTH,
    TOPIC_WORDS_MAX,
)

logger = logging.getLogger(__name__)

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"

TOKEN_BYTES = 32
MAX_CONTEXT_IDENTIFIERS = 10
TRANSCRIPT_MESSAGES = 6
TRANSCRIPT_CONTENT_CHARS = 500

_WORD_RE = re.compile(r"\w+", re.UNICODE)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Message:
    """One message of a conversation."""
    role: str
    content: str
    referenced_identifiers: list[str] = field(default_factory=list)
    timestamp: Optional[datetime] = None

    def to_record(self) -> dict:
        return {
            "role": self.role,
            "content": self.content,
            "referenced_identifiers": list(self.referenced_identifiers),
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    @classmethod
    def from_record(cls, data: dict) -> "Message":
        timestamp = data.get("timestamp")
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls(
            role=data["role"],
            content=data.get("content") or "",
            referenced_identifiers=list(data.get("referenced_identifiers") or []),
            timestamp=timestamp,
        )


@dataclass
class Conversation:
    """A conversation addressed by its token."""
    token: str
    language: str
    created_at: datetime
    expires_at: datetime
    messages: list[Message] = field(default_factory=list)
    context_identifiers: list[str] = field(default_factory=list)
    last_question: Optional[str] = None
    user_id: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or _utcnow())

    def to_record(self) -> dict:
        return {
            "token": self.token,
            "language": self.language,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "messages": [m.to_record() for m in self.messages],
            "context_identifiers": list(self.context_identifiers),
            "last_question": self.last_question,
            "user_id": self.user_id,
        }

    @classmethod
    def from_record(cls, data: dict) -> "Conversation":
        return cls(
            token=data["token"],
            language=data.get("language") or DEFAULT_LANGUAGE,
            created_at=data["created_at"],
            expires_at=data["expires_at"],
            messages=[Message.from_record(m) for m in data.get("messages") or []],
            context_identifiers=list(data.get("context_identifiers") or []),
            last_question=data.get("last_question"),
            user_id=data.get("user_id"),
        )


@dataclass(frozen=True)
class ConversationContext:
    """What adapters get to know about earlier turns."""
    token: str
    transcript: str = ""
    context_identifiers: tuple[str, ...] = ()
    last_question: Optional[str] = None
    effective_question: str = ""
    is_followup: bool = False

    def to_dict(self) -> dict:
        return {
            "token": self.token,
            "transcript": self.transcript,
            "context_identifiers": list(self.context_identifiers),
            "last_question": self.last_question,
            "effective_question": self.effective_question,
            "is_followup": self.is_followup,
        }


# =============================================================================
# Follow-up detection
# =============================================================================

def is_followup_question(question: str) -> bool:
    """
    Detect vague questions that only make sense with the previous turn.

    Short questions ("en in Brussel?") and questions built on pronouns or
    anaphora ("wat zijn die voorwaarden?") count as follow-ups.
    """
    text = (question or "").strip()
    if not text:
        return False
    if len(text.split()) <= FOLLOWUP_MAX_WORDS:
        return True
    return any(pattern.search(text) for pattern in COMPILED_FOLLOWUP_PATTERNS)


def topic_words(question: str) -> list[str]:
    """Longer words of a question, in order, used to carry its topic forward."""
    words = []
    for word in _WORD_RE.findall(question or ""):
        if len(word) >= TOPIC_WORD_MIN_LENGTH and word.lower() not in (w.lower() for w in words):
            words.append(word)
        if len(words) >= TOPIC_WORDS_MAX:
            break
    return words


def expand_followup(question: str, previous_question: Optional[str]) -> str:
    """Append the previous question's topic words to a follow-up question."""
    words = topic_words(previous_question or "")
    if not words:
        return question
    return f"{question} (context: {' '.join(words)})"


def build_transcript(messages: list[Message], language: str) -> str:
    lang_config = LanguageConfig.for_language(language)
    labels = {
        ROLE_USER: lang_config.label("role_user"),
        ROLE_ASSISTANT: lang_config.label("role_assistant"),
    }
    lines = []
    for message in messages[-TRANSCRIPT_MESSAGES:]:
        content = message.content
        if len(content) > TRANSCRIPT_CONTENT_CHARS:
            content = content[:TRANSCRIPT_CONTENT_CHARS] + "..."
        lines.append(f"{labels.get(message.role, message.role)}: {content}")
    return "\n".join(lines)


# =============================================================================
# Store
# =============================================================================

class ConversationStore:
    """
    Resolves tokens to conversations and appends turns.

    Usage:
        conversations = ConversationStore(InMemoryStore())
        conversation = conversations.resolve(token, language="nl")
        context = conversations.context_for(conversation, question)
        ...
        conversations.append_turn(conversation, question, envelope)
    """

    def __init__(
        self,
        backend,
        ttl_hours: float = 24.0,
        max_messages: int = 20,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.backend = backend
        self.ttl = timedelta(hours=ttl_hours)
        self.max_messages = max_messages
        self._clock = clock or _utcnow
        # A token's lock lives as long as some request holds it
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _lock_for(self, token: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(token)
            if lock is None:
                lock = threading.Lock()
                self._locks[token] = lock
            return lock

    def get(self, token: str) -> Optional[Conversation]:
        """Look up a live conversation without extending it."""
        record = self.backend.get_conversation(token)
        if record is None:
            return None
        conversation = Conversation.from_record(record)
        if conversation.is_expired(self._clock()):
            return None
        return conversation

    def resolve(
        self,
        token: Optional[str] = None,
        language: str = DEFAULT_LANGUAGE,
        user_id: Optional[str] = None,
    ) -> Conversation:
        """
        Return the live conversation for `token`, or start a new one.

        Args:
            token: Token sent by the client, if any
            language: Language for a newly created conversation
            user_id: Authenticated owner, recorded on new conversations

        Returns:
            Conversation whose expiry has been pushed out by the window
        """
        if token:
            with self._lock_for(token):
                conversation = self.get(token)
                if conversation is not None:
                    conversation.expires_at = self._clock() + self.ttl
                    self.backend.touch_conversation(token, conversation.expires_at)
                    return conversation
            logger.debug("Conversation token unknown or expired, starting a new conversation")

        return self._create(language, user_id)

    def _create(self, language: str, user_id: Optional[str]) -> Conversation:
        now = self._clock()
        while True:
            conversation = Conversation(
                token=secrets.token_urlsafe(TOKEN_BYTES),
                language=language,
                created_at=now,
                expires_at=now + self.ttl,
                user_id=user_id,
            )
            if self.backend.insert_conversation(conversation.to_record()):
                logger.info(f"Started conversation {conversation.token[:8]}... ({language})")
                return conversation
            logger.warning("Conversation token collision, generating a new token")

    def context_for(self, conversation: Conversation, question: str) -> ConversationContext:
        """Build the adapter-facing context for a question in this conversation."""
        followup = bool(conversation.last_question) and is_followup_question(question)
        effective = expand_followup(question, conversation.last_question) if followup else question
        return ConversationContext(
            token=conversation.token,
            transcript=build_transcript(conversation.messages, conversation.language),
            context_identifiers=tuple(conversation.context_identifiers),
            last_question=conversation.last_question,
            effective_question=effective,
            is_followup=followup,
        )

    def append_turn(self, conversation: Conversation, question: str, envelope=None) -> Conversation:
        """
        Record one question/answer turn.

        A `user` message is always appended; an `assistant` message only when
        the envelope carries answer text. Only the user message references
        the identifiers of the envelope's citations.

        Returns:
            The updated conversation (also written back into `conversation`)
        """
        identifiers = list(envelope.identifiers) if envelope is not None else []
        answer = (envelope.answer or "").strip() if envelope is not None else ""

        with self._lock_for(conversation.token):
            record = self.backend.get_conversation(conversation.token)
            current = Conversation.from_record(record) if record else conversation

            now = self._clock()
            current.messages.append(Message(ROLE_USER, question, list(identifiers), now))
            if answer:
                current.messages.append(Message(ROLE_ASSISTANT, answer, [], now))
            if len(current.messages) > self.max_messages:
                current.messages = current.messages[-self.max_messages:]

            merged = []
            for identifier in identifiers + current.context_identifiers:
                if identifier not in merged:
                    merged.append(identifier)
            current.context_identifiers = merged[:MAX_CONTEXT_IDENTIFIERS]
            current.last_question = question
            current.expires_at = now + self.ttl

            if record is None:
                self.backend.insert_conversation(current.to_record())
            else:
                self.backend.save_conversation(current.to_record())

        conversation.messages = current.messages
        conversation.context_identifiers = current.context_identifiers
        conversation.last_question = current.last_question
        conversation.expires_at = current.expires_at
        return conversation

    def cleanup_expired(self) -> int:
        """Delete expired conversations. Returns how many were removed."""
        now = self._clock()
        deleted = self.backend.delete_expired_conversations(now)
        if deleted:
            logger.info(f"Removed {deleted} expired conversations")
        return deleted
