"""
Shared fixtures and test utilities for Legal Chatbot tests.

Provides fake backend adapters, an in-memory store, a controllable clock
and a configured API client so that all tests run without databases or
network access.
"""

import sys
import time
from pathlib import Path
from datetime import datetime, timedelta, timezone

import pytest
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")

TEST_PASSPHRASE = "test-passphrase"
TEST_JWT_SECRET = "test-jwt-secret"


# ---------------------------------------------------------------------------
# Fake backend adapter
# ---------------------------------------------------------------------------

def _fake_adapter_class():
    from execution.legal_chatbot.adapters import BackendAdapter, Citation, SourceResult
    from execution.legal_chatbot.exceptions import BackendFailure

    class FakeAdapter(BackendAdapter):
        """Deterministic adapter -- never calls external services."""

        def __init__(
            self,
            name,
            identifiers=None,
            answer=None,
            failure=None,
            error=None,
            delay=0.0,
            progress=(50, 100),
            late_progress=(),
            joint=False,
            timeout=5.0,
            documents=None,
        ):
            self.name = name
            self.identifiers = list(identifiers if identifiers is not None else [f"{name}-1", f"{name}-2"])
            self.answer = answer if answer is not None else f"Antwoord uit {name}."
            self.failure = failure
            self.error = error
            self.delay = delay
            self.progress = progress
            self.late_progress = late_progress
            self.joint = joint
            self.timeout = timeout
            self.documents = documents
            self.calls = []

        def invoke(self, question, language, conversation_context=None, progress_sink=None, request_context=None):
            self.calls.append({
                "question": question,
                "language": language,
                "context": conversation_context,
                "request_context": request_context,
            })
            for percent in self.progress:
                if progress_sink:
                    progress_sink(percent, f"{self.name} {percent}%")
            if self.delay:
                time.sleep(self.delay)
            for percent in self.late_progress:
                if progress_sink:
                    progress_sink(percent, f"{self.name} late {percent}%")
            if self.error is not None:
                raise self.error
            if self.failure is not None:
                raise BackendFailure(self.failure, self.name, "fake failure")
            return SourceResult(
                source_name=self.name,
                citations=[
                    Citation(identifier=i, title=f"Titel {i}", excerpt=f"Uittreksel {i}", source=self.name)
                    for i in self.identifiers
                ],
                answer_fragment=self.answer,
                joint=self.joint,
            )

        def corpus_size(self):
            return self.documents

    return FakeAdapter


@pytest.fixture
def make_adapter():
    """Factory for FakeAdapter instances."""
    return _fake_adapter_class()


@pytest.fixture
def fake_adapters(make_adapter):
    """One fake adapter per named source."""
    return {
        "legislation": make_adapter("legislation", documents=100),
        "jurisprudence": make_adapter("jurisprudence", documents=200),
        "parliamentary": make_adapter("parliamentary", documents=None),
    }


@pytest.fixture
def registry(fake_adapters):
    from execution.legal_chatbot.adapters import AdapterRegistry
    return AdapterRegistry(list(fake_adapters.values()))


# ---------------------------------------------------------------------------
# Store, clock and conversations
# ---------------------------------------------------------------------------

@pytest.fixture
def memory_store():
    from execution.legal_chatbot.store import InMemoryStore
    return InMemoryStore()


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def conversations(memory_store, clock):
    from execution.legal_chatbot.conversation import ConversationStore
    return ConversationStore(memory_store, ttl_hours=24, max_messages=20, clock=clock)


@pytest.fixture
def orchestrator(registry, conversations):
    from execution.legal_chatbot.orchestrator import ChatbotOrchestrator
    return ChatbotOrchestrator(registry, conversations, max_citations_per_source=10)


@pytest.fixture
def request_context():
    from execution.legal_chatbot.orchestrator import RequestContext
    return RequestContext(request_id="req-test", client_ip="203.0.113.7", language="nl")


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------

@pytest.fixture
def chatbot_config():
    from execution.legal_chatbot.config import ChatbotConfig
    return ChatbotConfig(
        passphrase=TEST_PASSPHRASE,
        jwt_secret=TEST_JWT_SECRET,
        rate_limit_rpm=1000,
        feedback_ip_salt="salt",
    )


@pytest.fixture
def api_client(chatbot_config, memory_store, registry):
    """TestClient backed by fake adapters and the in-memory store."""
    from fastapi.testclient import TestClient
    from execution.legal_chatbot import api

    api._container.configure(config=chatbot_config, store=memory_store, registry=registry)
    return TestClient(api.app)


@pytest.fixture
def user_token():
    from execution.legal_chatbot.access import create_session_jwt
    return create_session_jwt("user-1", "jan@example.be", "Jan", secret=TEST_JWT_SECRET, expiry_hours=1)


# ---------------------------------------------------------------------------
# Singleton resets between tests
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def reset_metrics_singleton():
    """Reset the MetricsCollector singleton between tests."""
    import execution.legal_chatbot.metrics as metrics_mod
    metrics_mod.MetricsCollector._instance = None
    metrics_mod._collector = None
    yield
    metrics_mod.MetricsCollector._instance = None
    metrics_mod._collector = None
