"""
Backend Adapters

A backend adapter is the retrieval + synthesis capability for one legal
source (legislation, jurisprudence, parliamentary) or for all of them at
once. The orchestrator only depends on the contract defined here:

    adapter.invoke(question, language, conversation_context, progress_sink)
        -> SourceResult

Adapters report problems by raising BackendFailure with one of the kinds
Timeout / BackendUnavailable / SynthesisFailed. They may call the progress
sink while running, never after they return.

HttpBackendAdapter talks to a retrieval service over HTTP; tests and local
development plug in their own BackendAdapter subclasses.
"""

import time
import logging
import threading
from typing import Callable, Optional
from dataclasses import dataclass, field

import requests

from .exceptions import (
    BackendFailure,
    TIMEOUT,
    BACKEND_UNAVAILABLE,
    SYNTHESIS_FAILED,
)
from .routing import SourcePlan, PlanKind, ALL_KEYWORD, SOURCE_PRIORITY

logger = logging.getLogger(__name__)

# progress_sink(percent, message)
ProgressSink = Callable[[int, str], None]


@dataclass
class Citation:
    """A reference to a retrieved legal passage."""
    identifier: str
    title: str
    excerpt: str = ""
    url: Optional[str] = None
    source: str = ""
    relevance: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "identifier": self.identifier,
            "title": self.title,
            "excerpt": self.excerpt,
            "url": self.url,
            "source": self.source,
            "relevance": self.relevance,
        }

    @classmethod
    def from_dict(cls, data: dict, source: str = "") -> "Citation":
        identifier = data.get("identifier") or data.get("id")
        if not identifier:
            raise ValueError("citation without identifier")
        relevance = data.get("relevance")
        return cls(
            identifier=str(identifier),
            title=str(data.get("title") or ""),
            excerpt=str(data.get("excerpt") or ""),
            url=data.get("url"),
            source=data.get("source") or source,
            relevance=round(float(relevance), 3) if relevance is not None else None,
        )


@dataclass
class SourceResult:
    """One adapter's output for one request."""
    source_name: str
    citations: list[Citation] = field(default_factory=list)
    answer_fragment: Optional[str] = None
    elapsed_time: float = 0.0
    failure: Optional[BackendFailure] = None
    # True when the adapter already synthesized across several sources
    joint: bool = False

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def failed(cls, source_name: str, failure: BackendFailure, elapsed_time: float = 0.0) -> "SourceResult":
        return cls(source_name=source_name, failure=failure, elapsed_time=elapsed_time)


class ScopedProgressSink:
    """
    Progress sink handed to a single adapter invocation.

    Once closed (the adapter returned or its deadline passed) further calls
    are dropped, so a late adapter can never write into a finished stream.
    """

    def __init__(self, sink: Optional[ProgressSink], source_name: str):
        self._sink = sink
        self._source_name = source_name
        self._closed = False
        self._lock = threading.Lock()

    def __call__(self, percent: int, message: str) -> None:
        with self._lock:
            if self._closed:
                logger.debug(f"Dropped late progress from {self._source_name}: {percent}%")
                return
            sink = self._sink
        if sink is not None:
            sink(percent, message)

    def close(self) -> None:
        with self._lock:
            self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed


class BackendAdapter:
    """Base class for per-source retrieval + synthesis backends."""

    name: str = ""
    timeout: float = 30.0
    # Set on the combined adapter that synthesizes across all sources
    joint: bool = False

    def invoke(
        self,
        question: str,
        language: str,
        conversation_context=None,
        progress_sink: Optional[ProgressSink] = None,
        request_context=None,
    ) -> SourceResult:
        """Answer `question` from this source. Must raise BackendFailure on error."""
        raise NotImplementedError(f"{type(self).__name__}.invoke must be implemented")

    def corpus_size(self) -> Optional[int]:
        """Number of indexed documents, or None when unknown."""
        return None


class HttpBackendAdapter(BackendAdapter):
    """
    Adapter for a retrieval/synthesis service reachable over HTTP.

    The service receives:
        POST {base_url}/ask
        {"question", "effective_question", "language", "context", "request_id"}

    and answers with:
        {"answer": str | null, "sources": [{"identifier", "title", "excerpt", "url", "relevance"}]}
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        joint: bool = False,
    ):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.joint = joint
        self._session = session or requests.Session()

    def invoke(
        self,
        question: str,
        language: str,
        conversation_context=None,
        progress_sink: Optional[ProgressSink] = None,
        request_context=None,
    ) -> SourceResult:
        start = time.time()
        request_id = getattr(request_context, "request_id", None)

        payload = {
            "question": question,
            "effective_question": getattr(conversation_context, "effective_question", None) or question,
            "language": language,
            "context": conversation_context.to_dict() if conversation_context is not None else None,
            "request_id": request_id,
        }

        if progress_sink:
            progress_sink(10, f"{self.name}: request sent")

        try:
            response = self._session.post(
                f"{self.base_url}/ask",
                json=payload,
                timeout=self.timeout,
                headers={"X-Request-Id": request_id} if request_id else None,
            )
        except requests.Timeout as e:
            raise BackendFailure(TIMEOUT, self.name, f"no response within {self.timeout}s") from e
        except requests.RequestException as e:
            raise BackendFailure(BACKEND_UNAVAILABLE, self.name, str(e)) from e

        if response.status_code >= 500:
            raise BackendFailure(BACKEND_UNAVAILABLE, self.name, f"HTTP {response.status_code}")
        if response.status_code >= 400:
            raise BackendFailure(SYNTHESIS_FAILED, self.name, f"HTTP {response.status_code}")

        try:
            data = response.json()
            raw_sources = data.get("sources") or []
            citations = []
            for item in raw_sources:
                try:
                    citations.append(Citation.from_dict(item, source=self.name))
                except ValueError as e:
                    logger.warning(f"{self.name}: skipping malformed citation: {e}")
            answer = data.get("answer")
        except (ValueError, AttributeError, TypeError) as e:
            raise BackendFailure(SYNTHESIS_FAILED, self.name, f"malformed response: {e}") from e

        if progress_sink:
            progress_sink(100, f"{self.name}: {len(citations)} sources")

        return SourceResult(
            source_name=self.name,
            citations=citations,
            answer_fragment=answer if isinstance(answer, str) and answer.strip() else None,
            elapsed_time=round(time.time() - start, 2),
            joint=self.joint,
        )

    def corpus_size(self) -> Optional[int]:
        try:
            response = self._session.get(f"{self.base_url}/health", timeout=5)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Health probe for {self.name} failed: {e}")
            return None
        count = data.get("documents", data.get("embeddings_count"))
        return int(count) if isinstance(count, (int, float)) else None


class AdapterRegistry:
    """Adapters keyed by source name, plus an optional combined `all` adapter."""

    def __init__(self, adapters: Optional[list[BackendAdapter]] = None):
        self._adapters: dict[str, BackendAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: BackendAdapter) -> None:
        if adapter.name not in SOURCE_PRIORITY and adapter.name != ALL_KEYWORD:
            raise ValueError(f"Unknown source name for adapter: {adapter.name}")
        self._adapters[adapter.name] = adapter

    def get(self, name: str) -> Optional[BackendAdapter]:
        return self._adapters.get(name)

    @property
    def joint(self) -> Optional[BackendAdapter]:
        return self._adapters.get(ALL_KEYWORD)

    def names(self) -> list[str]:
        return sorted(self._adapters)

    def adapters_for(self, plan: SourcePlan) -> list[tuple[str, Optional[BackendAdapter]]]:
        """
        The (source name, adapter) pairs a plan dispatches to.

        An `All` plan goes to the combined adapter when one is registered,
        otherwise to every named source. A missing adapter is returned as
        None so the orchestrator can report it as an unavailable backend.
        """
        if plan.kind is PlanKind.ALL and self.joint is not None:
            return [(ALL_KEYWORD, self.joint)]
        return [(name, self._adapters.get(name)) for name in plan.sources]

    def corpus_size(self) -> Optional[int]:
        sizes = [a.corpus_size() for a in self._adapters.values()]
        known = [s for s in sizes if s is not None]
        return sum(known) if known else None

    @classmethod
    def from_urls(cls, urls: dict[str, str], timeout: float = 30.0) -> "AdapterRegistry":
        """Build HTTP adapters from a {source name: base url} mapping."""
        registry = cls()
        session = requests.Session()
        for name, url in urls.items():
            registry.register(HttpBackendAdapter(
                name=name,
                base_url=url,
                timeout=timeout,
                session=session,
                joint=(name == ALL_KEYWORD),
            ))
            logger.info(f"Registered HTTP backend for {name}: {url}")
        return registry
