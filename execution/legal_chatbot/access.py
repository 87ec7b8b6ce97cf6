"""
Access Gate

Decides whether a request may use the chatbot before any work is done.
Two paths, checked in this order:

1. Shared passphrase: the request carries the configured passphrase
   (constant-time comparison). Grants access regardless of identity.
2. Subscriber: the request carries a valid session JWT and the user holds
   an active "chatbot" entitlement.

Denials distinguish "log in" (AuthenticationRequired, 401) from "upgrade"
(EntitlementRequired, 402).
"""

import os
import hmac
import logging
from typing import Optional
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass

import jwt

from .exceptions import AccessDenied, AUTHENTICATION_REQUIRED, ENTITLEMENT_REQUIRED

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
CHATBOT_ENTITLEMENT = "chatbot"


def _get_jwt_secret(secret: Optional[str] = None) -> str:
    val = secret or os.getenv("JWT_SECRET", "")
    if not val:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate a random secret string and set it in .env or as an environment variable."
        )
    return val


def _get_jwt_expiry_hours() -> int:
    return int(os.getenv("JWT_EXPIRY_HOURS", "168"))  # 7 days default


def create_session_jwt(
    user_id: str,
    email: str = "",
    name: str = "",
    secret: Optional[str] = None,
    expiry_hours: Optional[int] = None,
) -> str:
    """
    Create a JWT for session authentication.

    Args:
        user_id: The internal user id
        email: User's email
        name: User's display name
        secret: Signing secret (defaults to JWT_SECRET)
        expiry_hours: Lifetime (defaults to JWT_EXPIRY_HOURS)

    Returns:
        Encoded JWT string
    """
    now = datetime.now(timezone.utc)
    hours = expiry_hours if expiry_hours is not None else _get_jwt_expiry_hours()
    payload = {
        "sub": user_id,
        "email": email,
        "name": name,
        "iat": now,
        "exp": now + timedelta(hours=hours),
    }
    return jwt.encode(payload, _get_jwt_secret(secret), algorithm=JWT_ALGORITHM)


def verify_session_jwt(token: str, secret: Optional[str] = None) -> Optional[dict]:
    """
    Verify a session JWT and extract user info.

    Returns:
        Dict with user_id, email, name if valid; None if invalid/expired
    """
    try:
        payload = jwt.decode(token, _get_jwt_secret(secret), algorithms=[JWT_ALGORITHM])
        return {
            "user_id": payload["sub"],
            "email": payload.get("email", ""),
            "name": payload.get("name", ""),
        }
    except jwt.ExpiredSignatureError:
        logger.debug("JWT expired")
        return None
    except (jwt.InvalidTokenError, KeyError) as e:
        logger.debug(f"JWT invalid: {e}")
        return None


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an `Authorization: Bearer ...` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


@dataclass(frozen=True)
class Caller:
    """An authenticated user."""
    user_id: str
    email: str = ""
    name: str = ""


@dataclass(frozen=True)
class AccessDecision:
    authorized: bool
    reason: Optional[str] = None
    caller: Optional[Caller] = None
    via_passphrase: bool = False

    def raise_for_denial(self) -> None:
        if not self.authorized:
            raise AccessDenied(self.reason)


class AccessGate:
    """
    Authorizes chatbot requests.

    Usage:
        gate = AccessGate(passphrase, jwt_secret, store)
        decision = gate.check(passphrase=header_value, bearer=token)
        decision.raise_for_denial()
    """

    def __init__(self, passphrase: Optional[str], jwt_secret: Optional[str], store):
        self._passphrase = passphrase or ""
        self._jwt_secret = jwt_secret
        self.store = store

    def passphrase_matches(self, candidate: Optional[str]) -> bool:
        # An unconfigured passphrase never matches
        if not self._passphrase or not isinstance(candidate, str) or not candidate:
            return False
        return hmac.compare_digest(candidate.encode("utf-8"), self._passphrase.encode("utf-8"))

    def authenticate(self, bearer: Optional[str]) -> Optional[Caller]:
        """Resolve a bearer token to a Caller, or None."""
        if not bearer or not self._jwt_secret:
            return None
        info = verify_session_jwt(bearer, secret=self._jwt_secret)
        if info is None:
            return None
        return Caller(user_id=str(info["user_id"]), email=info["email"], name=info["name"])

    def check(self, passphrase: Optional[str] = None, bearer: Optional[str] = None) -> AccessDecision:
        """
        Decide whether the request may use the chatbot.

        Has no side effects; the caller is resolved even on the passphrase
        path so owner-scoped records can still be attributed.
        """
        caller = self.authenticate(bearer)

        if self.passphrase_matches(passphrase):
            return AccessDecision(True, caller=caller, via_passphrase=True)

        if caller is None:
            return AccessDecision(False, reason=AUTHENTICATION_REQUIRED)

        if self.store.has_entitlement(caller.user_id, CHATBOT_ENTITLEMENT):
            return AccessDecision(True, caller=caller)

        logger.info(f"User {caller.user_id} has no active {CHATBOT_ENTITLEMENT} entitlement")
        return AccessDecision(False, reason=ENTITLEMENT_REQUIRED, caller=caller)

    def require_caller(self, bearer: Optional[str]) -> Caller:
        """Owner-scoped endpoints need an authenticated caller."""
        caller = self.authenticate(bearer)
        if caller is None:
            raise AccessDenied(AUTHENTICATION_REQUIRED)
        return caller
