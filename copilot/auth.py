"""Bearer token verification for the API service."""

from __future__ import annotations

import base64
import json
import logging
from typing import Dict, Optional

from copilot.config import Config

logger = logging.getLogger(__name__)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an `Authorization: Bearer <token>` header."""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization[len("Bearer "):].strip()
    return token or None


def dev_decode_uid(token: str) -> Optional[str]:
    """
    Read a uid from an unverified JWT payload.
    Development convenience only; callers must not use it in production.
    """
    parts = token.split(".")
    if len(parts) != 3:
        return None
    payload_b64 = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(payload_b64).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    candidate = payload.get("uid") or payload.get("user_id") or payload.get("sub") or payload.get("email")
    return str(candidate) if candidate else None


class TokenVerifier:
    """Maps bearer tokens to user ids.

    Verified tokens come from a static token -> uid map. Outside production
    an unverified JWT payload is accepted as a fallback.
    """

    def __init__(self, tokens: Optional[Dict[str, str]] = None, allow_unverified: Optional[bool] = None):
        self.tokens = dict(tokens) if tokens is not None else Config.api_tokens()
        self.allow_unverified = (not Config.is_production()) if allow_unverified is None else allow_unverified

    def verify(self, authorization: Optional[str]) -> Optional[str]:
        """Return the uid for a valid Authorization header, else None."""
        token = bearer_token(authorization)
        if token is None:
            return None

        uid = self.tokens.get(token)
        if uid:
            return uid

        if self.allow_unverified:
            uid = dev_decode_uid(token)
            if uid:
                logger.warning("[AUTH] DEV ONLY: using uid from unverified token payload: %s", uid)
                return uid
        return None
