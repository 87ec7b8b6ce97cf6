"""
Result Aggregator

Merges per-source results into one AnswerEnvelope. This module is pure:
it never calls adapters or touches shared state, so concurrent adapters
only hand over finished SourceResult objects.

Policy:
- Single plan: the sole result passes through; its failure is the error.
- All / Custom plans: citations are merged in source priority order
  (legislation, jurisprudence, parliamentary), deduplicated by identifier
  (first occurrence wins) and capped per source. Answer fragments are
  joined under source headings unless an adapter already synthesized
  across sources. Only a total failure sets a top-level error.
"""

import logging
from typing import Optional
from dataclasses import dataclass, field, replace

from .adapters import Citation, SourceResult
from .language_config import LanguageConfig
from .routing import SourcePlan, SOURCE_PRIORITY

logger = logging.getLogger(__name__)

FRAGMENT_DELIMITER = "\n\n---\n\n"


@dataclass
class AnswerEnvelope:
    """The answer returned to the client, streamed or not."""
    answer: str = ""
    sources: list[Citation] = field(default_factory=list)
    response_time: float = 0.0
    conversation_token: Optional[str] = None
    error: Optional[str] = None
    language: str = "nl"
    failed_sources: list[str] = field(default_factory=list)
    # Set when orchestration itself failed; never serialized
    internal_error: bool = False

    @classmethod
    def internal(cls, language: str = "nl", conversation_token: Optional[str] = None) -> "AnswerEnvelope":
        """Error-shaped envelope for an unexpected orchestration fault."""
        lang_config = LanguageConfig.for_language(language)
        return cls(
            language=lang_config.language,
            conversation_token=conversation_token,
            error=lang_config.label("error_internal"),
            internal_error=True,
        )

    @property
    def status_code(self) -> int:
        """HTTP status for a non-streamed response."""
        if self.internal_error:
            return 500
        if self.error:
            return 503
        return 200

    @property
    def identifiers(self) -> list[str]:
        """Cross-reference identifiers of the cited passages, in order."""
        return [c.identifier for c in self.sources]

    def to_dict(self) -> dict:
        data = {
            "answer": self.answer,
            "sources": [c.to_dict() for c in self.sources],
            "response_time": self.response_time,
            "conversation_token": self.conversation_token,
            "language": self.language,
        }
        if self.error:
            data["error"] = self.error
        if self.failed_sources:
            data["failed_sources"] = list(self.failed_sources)
        return data


def _priority(source: str) -> int:
    try:
        return SOURCE_PRIORITY.index(source)
    except ValueError:
        return len(SOURCE_PRIORITY)


def merge_citations(results: list[SourceResult], max_per_source: int) -> list[Citation]:
    """
    Merge citations from successful results.

    Citations are grouped by the source they came from (a combined adapter
    may return citations of several sources), ordered by source priority,
    deduplicated by identifier and truncated to `max_per_source` each.
    """
    grouped: dict[str, list[Citation]] = {}
    for result in results:
        if not result.ok:
            continue
        for citation in result.citations:
            if not citation.source:
                citation = replace(citation, source=result.source_name)
            grouped.setdefault(citation.source, []).append(citation)

    # Deduplicate across every source before capping, so an identifier cut
    # from a higher-priority source never reappears from a lower one
    seen = set()
    deduped: dict[str, list[Citation]] = {}
    for source in sorted(grouped, key=_priority):
        unique = deduped.setdefault(source, [])
        for citation in grouped[source]:
            if citation.identifier in seen:
                continue
            seen.add(citation.identifier)
            unique.append(citation)

    merged = []
    for source, citations in deduped.items():
        merged.extend(citations[:max_per_source])
    return merged


def join_fragments(results: list[SourceResult], lang_config: LanguageConfig) -> str:
    """Combine answer fragments, labelling each with its source."""
    successful = [r for r in results if r.ok and r.answer_fragment]
    if not successful:
        return ""

    joint = [r for r in successful if r.joint]
    if joint:
        # Already synthesized across sources
        return joint[0].answer_fragment

    parts = []
    for result in sorted(successful, key=lambda r: _priority(r.source_name)):
        heading = lang_config.source_label(result.source_name)
        parts.append(f"**{heading}**\n\n{result.answer_fragment.strip()}")
    return FRAGMENT_DELIMITER.join(parts)


def describe_failures(results: list[SourceResult]) -> str:
    return ", ".join(r.failure.describe() for r in results if r.failure is not None)


def aggregate(
    plan: SourcePlan,
    results: list[SourceResult],
    max_per_source: int = 10,
    language: str = "nl",
    response_time: float = 0.0,
) -> AnswerEnvelope:
    """
    Merge per-source results according to the plan.

    Args:
        plan: The SourcePlan the results were produced for
        results: One SourceResult per dispatched adapter
        max_per_source: Maximum citations kept per source
        language: Answer language, used for labels and messages
        response_time: Wall-clock seconds from dispatch to now

    Returns:
        AnswerEnvelope without a conversation token
    """
    lang_config = LanguageConfig.for_language(language)
    envelope = AnswerEnvelope(language=lang_config.language, response_time=round(response_time, 2))

    if not plan.is_multi:
        result = results[0] if results else None
        if result is None:
            return AnswerEnvelope.internal(lang_config.language)
        if result.failure is not None:
            envelope.error = result.failure.describe()
            envelope.failed_sources = [result.source_name]
            return envelope
        envelope.sources = merge_citations([result], max_per_source)
        envelope.answer = (result.answer_fragment or "").strip()
        return envelope

    failed = [r for r in results if not r.ok]
    envelope.failed_sources = [r.source_name for r in failed]

    if results and len(failed) == len(results):
        envelope.error = lang_config.label("error_all_failed", details=describe_failures(results))
        logger.warning(f"All sources failed for plan {plan.label}: {describe_failures(results)}")
        return envelope

    if failed:
        logger.info(f"Partial result for plan {plan.label}: {describe_failures(failed)}")

    envelope.sources = merge_citations(results, max_per_source)
    envelope.answer = join_fragments(results, lang_config)
    return envelope
