"""
FastAPI Backend for the Legal Chatbot

Endpoints under /api/chatbot: ask (JSON or SSE), health, feedback, saved
answers and operator metrics.

Run with: uvicorn execution.legal_chatbot.api:app --host 0.0.0.0 --port 8000
"""

import os
import json
import time
import logging
from typing import Optional
from collections import defaultdict

from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

from . import __version__
from .access import AccessGate, AccessDecision, Caller, bearer_token
from .adapters import AdapterRegistry
from .aggregator import AnswerEnvelope
from .api_models import (
    AnswerResponse, ErrorResponse, HealthResponse,
    FeedbackRequest, SaveAnswerRequest, SuccessResponse, SavedAnswersResponse,
)
from .config import ChatbotConfig
from .conversation import ConversationStore
from .exceptions import AccessDenied, QueryValidationError, RecordValidationError, RecordNotFound
from .feedback import FeedbackService
from .metrics import get_metrics_collector
from .orchestrator import ChatbotOrchestrator, RequestContext
from .routing import route
from .store import InMemoryStore, create_store
from .streaming import SSE_HEADERS, SSE_MEDIA_TYPE

# Load environment variables
load_dotenv()
logger = logging.getLogger(__name__)

CONVERSATION_CLEANUP_INTERVAL = 3600  # seconds

app = FastAPI(
    title="Legal Chatbot API",
    description="Question answering over legislation, case law and parliamentary records",
    version=__version__,
)

# Configure CORS: use CORS_ORIGINS env var (comma-separated) or default to localhost
app.add_middleware(
    CORSMiddleware,
    allow_origins=ChatbotConfig.from_env().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Rate Limiting
# =============================================================================

class RateLimiter:
    """Simple in-memory rate limiter using sliding window."""

    def __init__(self, max_requests: int = 60, window_seconds: int = 60):
        self._max_requests = max_requests
        self._window = window_seconds
        self._requests: dict[str, list[float]] = defaultdict(list)

    def is_allowed(self, key: str) -> bool:
        """Check if request is allowed for the given key."""
        now = time.time()
        window_start = now - self._window

        # Clean old entries
        self._requests[key] = [t for t in self._requests[key] if t > window_start]

        if len(self._requests[key]) >= self._max_requests:
            return False

        self._requests[key].append(now)
        return True


# =============================================================================
# Service Container
# =============================================================================

class ServiceContainer:
    """Builds the chatbot services once and hands them to the endpoints."""

    def __init__(self):
        self._config: Optional[ChatbotConfig] = None
        self._store = None
        self._registry: Optional[AdapterRegistry] = None
        self._conversations: Optional[ConversationStore] = None
        self._orchestrator: Optional[ChatbotOrchestrator] = None
        self._gate: Optional[AccessGate] = None
        self._feedback: Optional[FeedbackService] = None
        self._rate_limiter: Optional[RateLimiter] = None
        self._last_cleanup = time.time()

    def configure(self, config: Optional[ChatbotConfig] = None, store=None, registry: Optional[AdapterRegistry] = None):
        """(Re)build all services. Called lazily, or directly by tests."""
        self._config = config or ChatbotConfig.from_env()
        self._store = store if store is not None else create_store(self._config.database_url)
        self._registry = registry if registry is not None else AdapterRegistry.from_urls(
            self._config.backend_urls, timeout=self._config.adapter_timeout_seconds,
        )
        self._conversations = ConversationStore(
            self._store,
            ttl_hours=self._config.conversation_ttl_hours,
            max_messages=self._config.max_conversation_messages,
        )
        self._orchestrator = ChatbotOrchestrator(
            self._registry,
            self._conversations,
            max_citations_per_source=self._config.max_citations_per_source,
        )
        self._gate = AccessGate(self._config.passphrase, self._config.jwt_secret, self._store)
        self._feedback = FeedbackService(self._store, ip_salt=self._config.feedback_ip_salt)
        self._rate_limiter = RateLimiter(max_requests=self._config.rate_limit_rpm, window_seconds=60)
        self._last_cleanup = time.time()
        if not self._registry.names():
            logger.warning("No chatbot backends configured; every question will fail as BackendUnavailable")

    def _ensure(self):
        if self._config is None:
            self.configure()

    def get_config(self) -> ChatbotConfig:
        self._ensure()
        return self._config

    def get_store(self):
        self._ensure()
        return self._store

    def get_registry(self) -> AdapterRegistry:
        self._ensure()
        return self._registry

    def get_orchestrator(self) -> ChatbotOrchestrator:
        self._ensure()
        return self._orchestrator

    def get_gate(self) -> AccessGate:
        self._ensure()
        return self._gate

    def get_feedback_service(self) -> FeedbackService:
        self._ensure()
        return self._feedback

    def get_rate_limiter(self) -> RateLimiter:
        self._ensure()
        return self._rate_limiter

    def maybe_cleanup_conversations(self) -> None:
        """Drop expired conversations at most once per cleanup interval."""
        if time.time() - self._last_cleanup < CONVERSATION_CLEANUP_INTERVAL:
            return
        self._last_cleanup = time.time()
        try:
            self._conversations.cleanup_expired()
        except Exception as e:
            logger.warning(f"Conversation cleanup failed: {e}")


_container = ServiceContainer()


# =============================================================================
# Request helpers & dependencies
# =============================================================================

def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def check_rate_limit(request: Request):
    """FastAPI dependency that enforces rate limiting per client IP."""
    key = _client_ip(request) or "unknown"
    if not _container.get_rate_limiter().is_allowed(key):
        raise HTTPException(status_code=429, detail="Rate limit exceeded. Try again later.")


def _collect(multi_dict) -> dict:
    """Flatten query/form parameters; `[]` keys stay lists, others keep the last value."""
    params = {}
    for key in multi_dict.keys():
        values = multi_dict.getlist(key)
        params[key] = values if key.endswith("[]") else values[-1]
    return params


async def _request_params(request: Request) -> dict:
    """Merge the query string with a JSON or form body."""
    params = _collect(request.query_params)
    if request.method == "GET":
        return params

    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        raw = await request.body()
        if raw.strip():
            try:
                body = json.loads(raw)
            except ValueError:
                raise QueryValidationError(["Request body is not valid JSON"])
            if not isinstance(body, dict):
                raise QueryValidationError(["Request body must be a JSON object"])
            params.update(body)
    elif "form" in content_type:
        form = await request.form()
        params.update(_collect(form))
    return params


def _as_passphrase(value) -> Optional[str]:
    # JSON bodies may carry numbers or lists; anything but text counts as absent
    if isinstance(value, list):
        value = next((v for v in value if isinstance(v, str)), None)
    return value if isinstance(value, str) and value else None


def _check_access(request: Request, params: Optional[dict] = None) -> AccessDecision:
    passphrase = (
        _as_passphrase(request.headers.get("x-chatbot-passphrase"))
        or _as_passphrase((params or {}).get("pass"))
        or _as_passphrase(request.query_params.get("pass"))
    )
    bearer = bearer_token(request.headers.get("authorization"))
    return _container.get_gate().check(passphrase=passphrase, bearer=bearer)


def _denied_response(reason: str) -> JSONResponse:
    denial = AccessDenied(reason)
    return JSONResponse(
        status_code=denial.status_code,
        content={"error": denial.message, "reason": denial.reason},
    )


async def get_authenticated_caller(authorization: Optional[str] = Header(None)) -> Caller:
    """Owner-scoped endpoints require a logged-in user."""
    try:
        return _container.get_gate().require_caller(bearer_token(authorization))
    except AccessDenied:
        raise HTTPException(status_code=401, detail="Login required")


# =============================================================================
# Endpoints
# =============================================================================

@app.api_route(
    "/api/chatbot/ask",
    methods=["GET", "POST"],
    dependencies=[Depends(check_rate_limit)],
    responses={200: {"model": AnswerResponse}, 400: {"model": ErrorResponse}},
)
async def ask(request: Request):
    """Answer a legal question.

    Parameters (query string, JSON or form body):
      question, language (nl|fr), source or sources[], stream, conversation_token

    With stream=true the response is an SSE stream of
    {"type": "progress", ...} frames followed by one {"type": "result", ...}.
    """
    try:
        try:
            params = await _request_params(request)
        except QueryValidationError as e:
            # Unreadable body: decide access from the headers and query string alone
            decision = _check_access(request)
            if not decision.authorized:
                return _denied_response(decision.reason)
            return JSONResponse(status_code=400, content={"error": "; ".join(e.errors), "errors": e.errors})

        decision = _check_access(request, params)
        if not decision.authorized:
            return _denied_response(decision.reason)

        try:
            query, plan = route(params)
        except QueryValidationError as e:
            return JSONResponse(status_code=400, content={"error": "; ".join(e.errors), "errors": e.errors})

        _container.maybe_cleanup_conversations()
        context = RequestContext.new(client_ip=_client_ip(request), language=query.language)
        user_id = decision.caller.user_id if decision.caller else None
        orchestrator = _container.get_orchestrator()
        logger.info(f"[{context.request_id}] ask plan={plan.label} lang={query.language} stream={query.stream}")

        if query.stream:
            emitter = orchestrator.stream(query, plan, context, user_id=user_id)
            return StreamingResponse(
                emitter.frames(),
                media_type=SSE_MEDIA_TYPE,
                headers=SSE_HEADERS,
            )

        envelope = await run_in_threadpool(orchestrator.answer, query, plan, context, user_id)
        return JSONResponse(status_code=envelope.status_code, content=envelope.to_dict())
    except Exception:
        logger.exception("Chatbot ask failed")
        return JSONResponse(status_code=500, content=AnswerEnvelope.internal().to_dict())


@app.get("/api/chatbot/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    db_status = "unknown"
    try:
        store = _container.get_store()
        db_status = "memory" if isinstance(store, InMemoryStore) else "connected"
    except Exception as e:
        logger.warning(f"Health check: database disconnected: {e}")
        db_status = "disconnected"

    corpus_size = None
    sources = []
    if db_status != "disconnected":
        registry = _container.get_registry()
        sources = registry.names()
        corpus_size = await run_in_threadpool(registry.corpus_size)

    return HealthResponse(
        status="ok",
        version=__version__,
        corpus_size=corpus_size,
        database=db_status,
        sources=sources,
    )


@app.post("/api/chatbot/feedback", response_model=SuccessResponse)
async def submit_feedback(request: Request, body: FeedbackRequest):
    """Store thumbs up/down feedback on an answer."""
    decision = _check_access(request)
    if not decision.authorized:
        return _denied_response(decision.reason)

    try:
        feedback_id = _container.get_feedback_service().add_feedback(
            body.model_dump(),
            client_ip=_client_ip(request),
            user_id=decision.caller.user_id if decision.caller else None,
        )
    except RecordValidationError as e:
        return JSONResponse(status_code=422, content={"error": ", ".join(e.errors), "errors": e.errors})
    return SuccessResponse(id=feedback_id)


@app.post("/api/chatbot/save", response_model=SuccessResponse)
async def save_answer(
    body: SaveAnswerRequest,
    caller: Caller = Depends(get_authenticated_caller),
):
    """Save an answer to the caller's profile."""
    try:
        answer_id = _container.get_feedback_service().save_answer(caller.user_id, body.model_dump())
    except RecordValidationError as e:
        return JSONResponse(status_code=422, content={"error": ", ".join(e.errors), "errors": e.errors})
    return SuccessResponse(id=answer_id)


@app.get("/api/chatbot/saved", response_model=SavedAnswersResponse)
async def list_saved_answers(
    category: Optional[str] = None,
    limit: Optional[int] = None,
    caller: Caller = Depends(get_authenticated_caller),
):
    """List the caller's saved answers, newest first."""
    return _container.get_feedback_service().list_saved(caller.user_id, category=category, limit=limit)


@app.delete("/api/chatbot/saved/{answer_id}", response_model=SuccessResponse)
async def delete_saved_answer(
    answer_id: str,
    caller: Caller = Depends(get_authenticated_caller),
):
    """Delete one of the caller's saved answers."""
    try:
        _container.get_feedback_service().delete_saved(caller.user_id, answer_id)
    except RecordNotFound:
        raise HTTPException(status_code=404, detail="Answer not found")
    return SuccessResponse()


@app.get("/api/chatbot/metrics")
async def get_metrics(request: Request):
    """Operator view of request volume, latency and backend failures."""
    decision = _check_access(request)
    if not decision.authorized:
        return _denied_response(decision.reason)
    return get_metrics_collector().get_metrics_dict()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
