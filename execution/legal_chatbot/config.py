"""
Runtime configuration for the Legal Chatbot.

All settings come from environment variables (optionally loaded from a
.env file by the API module) so deployments can tune them without code
changes.
"""

import os
from typing import Optional
from dataclasses import dataclass, field


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        return int(raw) if raw.strip() else default
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    try:
        return float(raw) if raw.strip() else default
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


@dataclass
class ChatbotConfig:
    """Configuration for the orchestration layer."""
    # Access
    passphrase: Optional[str] = None
    jwt_secret: Optional[str] = None
    jwt_expiry_hours: int = 168  # 7 days

    # Conversations
    conversation_ttl_hours: float = 24.0
    max_conversation_messages: int = 20

    # Aggregation
    max_citations_per_source: int = 10

    # Backends
    adapter_timeout_seconds: float = 30.0
    backend_urls: dict[str, str] = field(default_factory=dict)

    # Persistence (None selects the in-memory store)
    database_url: Optional[str] = None

    # HTTP
    rate_limit_rpm: int = 60
    cors_origins: list[str] = field(
        default_factory=lambda: ["http://localhost:5173", "http://localhost:3000"]
    )
    feedback_ip_salt: str = ""

    @classmethod
    def from_env(cls) -> "ChatbotConfig":
        """Build a configuration from the current environment."""
        backend_urls = {}
        for source in ("legislation", "jurisprudence", "parliamentary", "all"):
            url = os.getenv(f"{source.upper()}_BACKEND_URL", "").strip()
            if url:
                backend_urls[source] = url

        cors = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000")

        return cls(
            passphrase=os.getenv("CHATBOT_PASSPHRASE") or None,
            jwt_secret=os.getenv("JWT_SECRET") or None,
            jwt_expiry_hours=_env_int("JWT_EXPIRY_HOURS", 168),
            conversation_ttl_hours=_env_float("CONVERSATION_TTL_HOURS", 24.0),
            max_conversation_messages=_env_int("MAX_CONVERSATION_MESSAGES", 20),
            max_citations_per_source=_env_int("MAX_CITATIONS_PER_SOURCE", 10),
            adapter_timeout_seconds=_env_float("ADAPTER_TIMEOUT_SECONDS", 30.0),
            backend_urls=backend_urls,
            database_url=os.getenv("DATABASE_URL") or os.getenv("POSTGRES_URL") or None,
            rate_limit_rpm=_env_int("RATE_LIMIT_RPM", 60),
            cors_origins=[o.strip() for o in cors.split(",") if o.strip()],
            feedback_ip_salt=os.getenv("FEEDBACK_IP_SALT", ""),
        )
