"""
Legal Chatbot - query orchestration and streaming for legal Q&A

This module coordinates question answering over Belgian legal sources:
- Access gating (shared passphrase or subscriber entitlement)
- Source routing (legislation, jurisprudence, parliamentary, or all)
- Concurrent fan-out to retrieval backends with per-source failures
- Citation merging and deduplication across sources
- Server-Sent Events progress streaming
- Token-addressed conversations with sliding expiry

Retrieval and answer synthesis live behind backend adapters; this package
only orchestrates them.
"""

__version__ = "1.0.0"

from .routing import route, SourcePlan, QueryRequest
from .adapters import BackendAdapter, HttpBackendAdapter, AdapterRegistry, Citation, SourceResult
from .aggregator import AnswerEnvelope, aggregate
from .conversation import ConversationStore
from .orchestrator import ChatbotOrchestrator, RequestContext
from .streaming import StreamEmitter
from .store import InMemoryStore, PostgresStore

__all__ = [
    "route",
    "SourcePlan",
    "QueryRequest",
    "BackendAdapter",
    "HttpBackendAdapter",
    "AdapterRegistry",
    "Citation",
    "SourceResult",
    "AnswerEnvelope",
    "aggregate",
    "ConversationStore",
    "ChatbotOrchestrator",
    "RequestContext",
    "StreamEmitter",
    "InMemoryStore",
    "PostgresStore",
]
