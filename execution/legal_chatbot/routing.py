"""
Query Router

Turns the raw parameters of an ask request into a validated QueryRequest
and a SourcePlan. The plan is resolved once here; nothing downstream looks
at the raw `source` / `sources[]` parameters again.

Source resolution:
- `sources[]` with one recognized name      -> Single(name)
- `sources[]` with two or more names         -> Custom(names)
- `sources[]` containing "all"               -> All
- `sources[]` with no recognized names       -> Single(legislation)
- `source` = "all"                           -> All
- `source` = a recognized name               -> Single(name)
- nothing given                              -> Single(legislation)
- `source` = anything else                   -> validation error
"""

from enum import Enum
from typing import Any, Mapping, Optional
from dataclasses import dataclass

from .exceptions import QueryValidationError
from .language_config import LanguageConfig, is_supported_language, DEFAULT_LANGUAGE

# Named sources in merge priority order
SOURCE_PRIORITY = ("legislation", "jurisprudence", "parliamentary")
KNOWN_SOURCES = frozenset(SOURCE_PRIORITY)
ALL_KEYWORD = "all"
DEFAULT_SOURCE = "legislation"

MAX_QUESTION_LENGTH = 500

_TRUTHY = {"true", "1", "yes", "on"}


class PlanKind(str, Enum):
    SINGLE = "single"
    ALL = "all"
    CUSTOM = "custom"


@dataclass(frozen=True)
class SourcePlan:
    """Which sources a request fans out to."""
    kind: PlanKind
    sources: tuple[str, ...]

    @classmethod
    def single(cls, source: str) -> "SourcePlan":
        if source not in KNOWN_SOURCES:
            raise ValueError(f"Unknown source: {source}")
        return cls(PlanKind.SINGLE, (source,))

    @classmethod
    def all(cls) -> "SourcePlan":
        return cls(PlanKind.ALL, SOURCE_PRIORITY)

    @classmethod
    def custom(cls, sources) -> "SourcePlan":
        ordered = tuple(s for s in SOURCE_PRIORITY if s in set(sources))
        if len(ordered) < 2:
            raise ValueError("A custom plan needs at least two known sources")
        return cls(PlanKind.CUSTOM, ordered)

    @property
    def is_multi(self) -> bool:
        return self.kind is not PlanKind.SINGLE

    @property
    def label(self) -> str:
        """Compact name used in logs and metrics."""
        if self.kind is PlanKind.SINGLE:
            return self.sources[0]
        if self.kind is PlanKind.ALL:
            return ALL_KEYWORD
        return "custom:" + "+".join(self.sources)


@dataclass(frozen=True)
class QueryRequest:
    """A validated ask request."""
    question: str
    language: str
    sources: tuple[str, ...]
    stream: bool = False
    conversation_token: Optional[str] = None


def _as_list(value: Any) -> Optional[list[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        return [part for part in value.split(",") if part.strip()]
    if isinstance(value, (list, tuple, set, frozenset)):
        return [str(v) for v in value]
    return [str(value)]


def parse_stream_flag(value: Any) -> bool:
    """Interpret the `stream` parameter the way browsers and JSON clients send it."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in _TRUTHY


def resolve_sources(
    sources: Optional[list[str]] = None,
    source: Optional[str] = None,
) -> SourcePlan:
    """
    Resolve the source parameters into a SourcePlan.

    Args:
        sources: Explicit list of source names (checkbox UI)
        source: Single source name or "all" (dropdown UI)

    Returns:
        SourcePlan

    Raises:
        QueryValidationError: If a single `source` value is not recognized
    """
    if sources:
        names = [s.strip().lower() for s in sources if s and s.strip()]
        if ALL_KEYWORD in names:
            return SourcePlan.all()
        valid = [s for s in SOURCE_PRIORITY if s in names]
        if len(valid) == 1:
            return SourcePlan.single(valid[0])
        if len(valid) > 1:
            return SourcePlan.custom(valid)
        # Nothing recognizable: fall back to the cheapest source
        return SourcePlan.single(DEFAULT_SOURCE)

    name = (source or "").strip().lower()
    if not name:
        return SourcePlan.single(DEFAULT_SOURCE)
    if name == ALL_KEYWORD:
        return SourcePlan.all()
    if name in KNOWN_SOURCES:
        return SourcePlan.single(name)
    raise QueryValidationError([LanguageConfig.for_language(DEFAULT_LANGUAGE).label("error_source")])


def route(params: Mapping[str, Any]) -> tuple[QueryRequest, SourcePlan]:
    """
    Validate raw request parameters and build the query plan.

    All problems are collected and reported together; nothing is
    dispatched for an invalid request.

    Raises:
        QueryValidationError: With every validation message found
    """
    errors = []

    raw_language = params.get("language")
    language = str(raw_language).strip().lower() if raw_language not in (None, "") else DEFAULT_LANGUAGE
    language_ok = is_supported_language(language)
    labels = LanguageConfig.for_language(language if language_ok else DEFAULT_LANGUAGE)

    question = str(params.get("question") or "").strip()
    if not question:
        errors.append(labels.label("error_question_required"))
    elif len(question) > MAX_QUESTION_LENGTH:
        errors.append(labels.label("error_question_too_long", limit=MAX_QUESTION_LENGTH))

    if not language_ok:
        errors.append(labels.label("error_language"))

    raw_sources = params.get("sources")
    if raw_sources is None:
        raw_sources = params.get("sources[]")
    plan = None
    try:
        plan = resolve_sources(_as_list(raw_sources), params.get("source"))
    except QueryValidationError:
        errors.append(labels.label("error_source"))

    if errors:
        raise QueryValidationError(errors)

    token = params.get("conversation_token") or params.get("conversation_id")
    token = str(token).strip() if token else None

    request = QueryRequest(
        question=question,
        language=language,
        sources=(ALL_KEYWORD,) if plan.kind is PlanKind.ALL else plan.sources,
        stream=parse_stream_flag(params.get("stream")),
        conversation_token=token or None,
    )
    return request, plan
