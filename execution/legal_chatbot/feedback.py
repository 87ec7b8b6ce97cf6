"""
Feedback & Saved Answers

Thumbs up/down feedback on answers, and answers users keep in their
profile. Both payloads mirror the answer envelope (question, answer,
sources, language). Saved answers are always scoped to their owner.
"""

import hashlib
import logging
from typing import Any, Optional

from .exceptions import RecordValidationError, RecordNotFound

logger = logging.getLogger(__name__)

FEEDBACK_TYPES = ("positive", "negative")
MAX_SAVED_QUESTION_LENGTH = 1000
LIST_ANSWER_PREVIEW_CHARS = 500
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


def hash_ip(ip: Optional[str], salt: str = "") -> Optional[str]:
    """One-way hash of a client IP; the raw address is never stored."""
    if not ip:
        return None
    return hashlib.sha256(f"{ip}{salt}".encode("utf-8")).hexdigest()


def _text(payload: dict, key: str) -> str:
    value = payload.get(key)
    return str(value).strip() if value is not None else ""


def validate_feedback(payload: dict) -> list[str]:
    errors = []
    if not _text(payload, "question"):
        errors.append("Question can't be blank")
    if not _text(payload, "answer"):
        errors.append("Answer can't be blank")
    feedback_type = _text(payload, "feedback_type")
    if not feedback_type:
        errors.append("Feedback type can't be blank")
    elif feedback_type not in FEEDBACK_TYPES:
        errors.append("Feedback type is not included in the list")
    return errors


def validate_saved_answer(payload: dict) -> list[str]:
    errors = []
    question = _text(payload, "question")
    if not question:
        errors.append("Question can't be blank")
    elif len(question) > MAX_SAVED_QUESTION_LENGTH:
        errors.append(f"Question is too long (maximum is {MAX_SAVED_QUESTION_LENGTH} characters)")
    if not _text(payload, "answer"):
        errors.append("Answer can't be blank")
    sources = payload.get("sources")
    if sources is not None and not isinstance(sources, list):
        errors.append("Sources must be a list")
    return errors


def parse_page_size(raw: Any) -> int:
    """Listing page size: default 50, clamped to 1..100."""
    if raw in (None, ""):
        return DEFAULT_PAGE_SIZE
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return DEFAULT_PAGE_SIZE
    return max(1, min(value, MAX_PAGE_SIZE))


def _serialize_saved(record: dict) -> dict:
    answer = record.get("answer") or ""
    created_at = record.get("created_at")
    return {
        "id": str(record["id"]),
        "question": record.get("question"),
        "answer": answer[:LIST_ANSWER_PREVIEW_CHARS],
        "sources": record.get("sources"),
        "language": record.get("language"),
        "title": record.get("title"),
        "category": record.get("category"),
        "created_at": created_at.isoformat() if hasattr(created_at, "isoformat") else created_at,
    }


class FeedbackService:
    """
    Create/list/delete operations for feedback and saved answers.

    Usage:
        service = FeedbackService(store, ip_salt=config.feedback_ip_salt)
        service.add_feedback(payload, client_ip="203.0.113.7")
        answer_id = service.save_answer(caller.user_id, payload)
    """

    def __init__(self, store, ip_salt: str = ""):
        self.store = store
        self._ip_salt = ip_salt

    def add_feedback(self, payload: dict, client_ip: Optional[str] = None, user_id: Optional[str] = None) -> str:
        """
        Persist a feedback record.

        Raises:
            RecordValidationError: When required fields are missing or invalid
        """
        errors = validate_feedback(payload)
        if errors:
            raise RecordValidationError(errors)

        record = {
            "question": _text(payload, "question"),
            "answer": _text(payload, "answer"),
            "feedback_type": _text(payload, "feedback_type"),
            "language": _text(payload, "language") or None,
            "source": _text(payload, "source") or None,
            "user_id": user_id,
            "ip_hash": hash_ip(client_ip, self._ip_salt),
        }
        feedback_id = self.store.add_feedback(record)
        logger.info(f"Recorded {record['feedback_type']} feedback ({record['language'] or '-'})")
        return feedback_id

    def save_answer(self, owner_id: str, payload: dict) -> str:
        """
        Save an answer to the owner's profile.

        Raises:
            RecordValidationError: When required fields are missing or invalid
        """
        errors = validate_saved_answer(payload)
        if errors:
            raise RecordValidationError(errors)

        record = {
            "question": _text(payload, "question"),
            "answer": _text(payload, "answer"),
            "sources": payload.get("sources"),
            "language": _text(payload, "language") or "nl",
            "title": _text(payload, "title") or None,
            "category": _text(payload, "category") or None,
        }
        return self.store.create_saved_answer(owner_id, record)

    def list_saved(self, owner_id: str, category: Optional[str] = None, limit: Any = None) -> dict:
        """Newest-first saved answers plus the owner's categories."""
        rows = self.store.list_saved_answers(owner_id, category=category or None, limit=parse_page_size(limit))
        return {
            "answers": [_serialize_saved(row) for row in rows],
            "categories": self.store.saved_answer_categories(owner_id),
        }

    def delete_saved(self, owner_id: str, answer_id: str) -> None:
        """
        Delete one of the owner's saved answers.

        Raises:
            RecordNotFound: When the answer does not exist or belongs to someone else
        """
        if not self.store.delete_saved_answer(owner_id, answer_id):
            raise RecordNotFound("Answer not found")
