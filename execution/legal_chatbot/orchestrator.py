"""
Chatbot Orchestrator

Runs one validated ask request end to end:

    resolve conversation -> dispatch adapters -> aggregate -> append turn

Multi-source plans fan out over a thread pool. Every adapter gets its own
deadline; the terminal answer waits until each adapter has either returned
or timed out. A timed-out adapter keeps running in the background, but its
progress sink is closed and its result is discarded.

Overall progress reported to the stream:
    5        request accepted
    10-90    average progress of the dispatched adapters
    95       merging results
"""

import re
import json
import time
import uuid
import logging
import threading
from typing import Optional
from datetime import datetime, timezone
from dataclasses import dataclass
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout

from .adapters import AdapterRegistry, BackendAdapter, ScopedProgressSink, SourceResult, ProgressSink
from .aggregator import AnswerEnvelope, aggregate
from .conversation import ConversationStore, ConversationContext
from .exceptions import BackendFailure, TIMEOUT, BACKEND_UNAVAILABLE, SYNTHESIS_FAILED
from .language_config import LanguageConfig, DEFAULT_LANGUAGE
from .metrics import MetricsCollector, get_metrics_collector
from .routing import QueryRequest, SourcePlan
from .streaming import StreamEmitter

logger = logging.getLogger(__name__)

PROGRESS_START = 5
PROGRESS_DISPATCH_FLOOR = 10
PROGRESS_DISPATCH_CEIL = 90
PROGRESS_MERGE = 95

LOG_QUESTION_CHARS = 500
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]+")


@dataclass(frozen=True)
class RequestContext:
    """Request-scoped identifiers passed explicitly to every component."""
    request_id: str
    client_ip: Optional[str] = None
    language: str = DEFAULT_LANGUAGE

    @classmethod
    def new(cls, client_ip: Optional[str] = None, language: str = DEFAULT_LANGUAGE) -> "RequestContext":
        return cls(request_id=uuid.uuid4().hex[:12], client_ip=client_ip, language=language)


def sanitize_for_log(text: str, limit: int = LOG_QUESTION_CHARS) -> str:
    """Collapse control characters so user input cannot forge log lines."""
    return _CONTROL_CHARS.sub(" ", text or "")[:limit]


class ProgressTracker:
    """Maps per-adapter percentages onto the request's overall progress."""

    def __init__(self, emit: Optional[ProgressSink], sources: list[str]):
        self._emit = emit
        self._lock = threading.Lock()
        self._per_source = {source: 0 for source in sources}

    def report(self, percent: int, message: str) -> None:
        if self._emit is None:
            return
        with self._lock:
            self._emit(percent, message)

    def sink_for(self, source: str) -> Optional[ProgressSink]:
        if self._emit is None:
            return None

        def sink(percent: int, message: str) -> None:
            with self._lock:
                current = max(0, min(100, int(percent)))
                self._per_source[source] = max(self._per_source[source], current)
                average = sum(self._per_source.values()) / len(self._per_source)
                span = PROGRESS_DISPATCH_CEIL - PROGRESS_DISPATCH_FLOOR
                self._emit(PROGRESS_DISPATCH_FLOOR + int(average * span / 100), message)

        return sink


class ChatbotOrchestrator:
    """
    Coordinates adapters, aggregation and conversation history.

    Usage:
        orchestrator = ChatbotOrchestrator(registry, ConversationStore(store))
        request, plan = route(params)
        envelope = orchestrator.answer(request, plan, RequestContext.new())
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        conversations: ConversationStore,
        max_citations_per_source: int = 10,
        adapter_timeout: Optional[float] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.registry = registry
        self.conversations = conversations
        self.max_citations_per_source = max_citations_per_source
        self.adapter_timeout = adapter_timeout
        self.metrics = metrics or get_metrics_collector()

    def _timeout_for(self, adapter: BackendAdapter) -> float:
        if self.adapter_timeout is not None:
            return self.adapter_timeout
        return adapter.timeout

    # =========================================================================
    # Dispatch
    # =========================================================================

    def _invoke(
        self,
        name: str,
        adapter: BackendAdapter,
        question: str,
        conversation_context: Optional[ConversationContext],
        request_context: RequestContext,
        sink: ScopedProgressSink,
    ) -> SourceResult:
        """Run one adapter, turning any exception into a per-source failure."""
        start = time.time()
        try:
            result = adapter.invoke(
                question,
                request_context.language,
                conversation_context,
                sink,
                request_context,
            )
            if not isinstance(result, SourceResult):
                raise BackendFailure(SYNTHESIS_FAILED, name, f"adapter returned {type(result).__name__}")
            return result
        except BackendFailure as e:
            logger.warning(f"[{request_context.request_id}] {e.describe()}: {e.message}")
            return SourceResult.failed(name, e, round(time.time() - start, 2))
        except Exception as e:
            logger.exception(f"[{request_context.request_id}] Adapter {name} raised unexpectedly")
            failure = BackendFailure(SYNTHESIS_FAILED, name, f"{type(e).__name__}: {e}")
            return SourceResult.failed(name, failure, round(time.time() - start, 2))
        finally:
            sink.close()

    def dispatch(
        self,
        plan: SourcePlan,
        question: str,
        conversation_context: Optional[ConversationContext],
        request_context: RequestContext,
        tracker: Optional[ProgressTracker] = None,
    ) -> list[SourceResult]:
        """
        Invoke every adapter of the plan and wait for all of them to settle.

        Returns:
            One SourceResult per dispatched source, in dispatch order
        """
        pairs = self.registry.adapters_for(plan)
        tracker = tracker or ProgressTracker(None, [name for name, _ in pairs])
        results: dict[str, SourceResult] = {}
        pending = {}

        executor = ThreadPoolExecutor(
            max_workers=max(1, len(pairs)),
            thread_name_prefix=f"chatbot-{request_context.request_id}",
        )
        try:
            dispatched_at = time.time()
            for name, adapter in pairs:
                if adapter is None:
                    failure = BackendFailure(BACKEND_UNAVAILABLE, name, "no backend configured")
                    logger.warning(f"[{request_context.request_id}] {failure.describe()}: not configured")
                    results[name] = SourceResult.failed(name, failure)
                    continue
                sink = ScopedProgressSink(tracker.sink_for(name), name)
                future = executor.submit(
                    self._invoke, name, adapter, question, conversation_context, request_context, sink,
                )
                pending[name] = (future, sink, self._timeout_for(adapter))

            for name, (future, sink, timeout) in pending.items():
                remaining = max(0.0, dispatched_at + timeout - time.time())
                try:
                    results[name] = future.result(timeout=remaining)
                except FuturesTimeout:
                    sink.close()
                    future.cancel()
                    failure = BackendFailure(TIMEOUT, name, f"no result within {timeout}s")
                    logger.warning(f"[{request_context.request_id}] {failure.describe()} after {timeout}s")
                    results[name] = SourceResult.failed(name, failure, round(time.time() - dispatched_at, 2))
        finally:
            # Timed-out adapters finish in the background
            executor.shutdown(wait=False)

        return [results[name] for name, _ in pairs]

    # =========================================================================
    # Request handling
    # =========================================================================

    def answer(
        self,
        request: QueryRequest,
        plan: SourcePlan,
        request_context: RequestContext,
        user_id: Optional[str] = None,
        progress: Optional[ProgressSink] = None,
    ) -> AnswerEnvelope:
        """
        Answer a validated request.

        Never raises: unexpected faults are logged and returned as an
        error-shaped envelope, carrying the conversation token when one was
        already resolved.
        """
        rid = request_context.request_id
        lang_config = LanguageConfig.for_language(request.language)
        conversation = None
        envelope = None
        failures = []

        with self.metrics.track_query(
            rid, plan.label, request.language, request.question, streamed=progress is not None,
        ) as tracker:
            try:
                conversation = self.conversations.resolve(
                    request.conversation_token, language=request.language, user_id=user_id,
                )
                context = self.conversations.context_for(conversation, request.question)
                if context.is_followup:
                    logger.info(f"[{rid}] Follow-up expanded to: {context.effective_question[:120]}")

                pairs = self.registry.adapters_for(plan)
                progress_tracker = ProgressTracker(progress, [name for name, _ in pairs])
                progress_tracker.report(PROGRESS_START, lang_config.label("progress_start"))
                source_names = ", ".join(lang_config.source_label(name) for name, _ in pairs)
                progress_tracker.report(
                    PROGRESS_DISPATCH_FLOOR,
                    lang_config.label("progress_searching", sources=source_names),
                )

                start = time.time()
                results = self.dispatch(plan, request.question, context, request_context, progress_tracker)
                failures = [r.failure for r in results if r.failure is not None]

                progress_tracker.report(PROGRESS_MERGE, lang_config.label("progress_merging"))
                envelope = aggregate(
                    plan,
                    results,
                    max_per_source=self.max_citations_per_source,
                    language=request.language,
                    response_time=time.time() - start,
                )
                envelope.conversation_token = conversation.token

                self.conversations.append_turn(conversation, request.question, envelope)
            except Exception:
                logger.exception(f"[{rid}] Orchestration failed")
                envelope = AnswerEnvelope.internal(
                    request.language,
                    conversation.token if conversation is not None else None,
                )

            tracker.set_result(envelope, failures)

        log_question(request, plan, envelope, request_context)
        return envelope

    def stream(
        self,
        request: QueryRequest,
        plan: SourcePlan,
        request_context: RequestContext,
        user_id: Optional[str] = None,
    ) -> StreamEmitter:
        """
        Answer a request on a background thread, streaming its progress.

        The returned emitter always ends with exactly one result frame.
        """
        emitter = StreamEmitter()
        emitter.start()

        def _run():
            envelope = None
            try:
                envelope = self.answer(request, plan, request_context, user_id, progress=emitter.progress)
            except Exception:
                logger.exception(f"[{request_context.request_id}] Streaming orchestration failed")
            finally:
                emitter.finish(envelope or AnswerEnvelope.internal(request.language))

        thread = threading.Thread(
            target=_run,
            name=f"chatbot-stream-{request_context.request_id}",
            daemon=True,
        )
        thread.start()
        return emitter


def log_question(
    request: QueryRequest,
    plan: SourcePlan,
    envelope: AnswerEnvelope,
    request_context: RequestContext,
) -> None:
    """Emit the one structured log line recorded per answered question."""
    entry = {
        "event": "chatbot_question",
        "request_id": request_context.request_id,
        "question": sanitize_for_log(request.question),
        "language": request.language,
        "plan": plan.label,
        "sources_count": len(envelope.sources),
        "failed_sources": envelope.failed_sources,
        "response_time": envelope.response_time,
        "streamed": request.stream,
        "has_error": bool(envelope.error),
        "ip": request_context.client_ip,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    logger.info(json.dumps(entry, ensure_ascii=False))
