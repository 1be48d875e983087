"""
Session token verifier for the external identity provider.

The identity provider signs session JWTs (HS256) with a shared project
secret. This module only establishes WHO the caller is:
- sub is the provider user id (external_id)
- email is used to link local users created before their first login

SECURITY:
- Role claims embedded in the token are ignored; roles are loaded from the
  local users table by IdentityResolver
- Tokens are never logged
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any

import jwt
from jwt.exceptions import (
    InvalidTokenError,
    ExpiredSignatureError,
    InvalidAudienceError,
)

from bookgate.errors import NotConfigured, Unauthenticated

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """Authenticated caller as reported by the identity provider."""
    external_id: str
    email: Optional[str]


class SessionVerifier:
    """
    Verifies identity provider session JWTs.

    Usage:
        verifier = SessionVerifier()
        principal = verifier.verify(request.headers["Authorization"])
    """

    ALGORITHMS = ["HS256"]

    # Clock skew tolerance in seconds (for exp/iat validation)
    CLOCK_SKEW_SECONDS = 30

    def __init__(self, secret: Optional[str] = None, audience: Optional[str] = None):
        self._secret = secret or os.getenv("SESSION_JWT_SECRET")
        self._audience = audience or os.getenv("SESSION_JWT_AUDIENCE", "authenticated")

        if not self._secret:
            logger.error("SESSION_JWT_SECRET not configured")
            raise NotConfigured(
                "Session verification not configured",
                setting="SESSION_JWT_SECRET",
            )

    def decode(self, token: str) -> Dict[str, Any]:
        """Verify signature, expiry and audience; return the claims."""
        if not token:
            raise Unauthenticated("Session token is required", reason="missing_token")

        if token.startswith("Bearer "):
            token = token[7:]

        try:
            return jwt.decode(
                token,
                self._secret,
                algorithms=self.ALGORITHMS,
                audience=self._audience,
                options={"require": ["sub", "exp"]},
                leeway=self.CLOCK_SKEW_SECONDS,
            )
        except ExpiredSignatureError:
            logger.warning("Session token has expired")
            raise Unauthenticated("Session has expired", reason="token_expired")
        except InvalidAudienceError:
            logger.warning("Invalid session token audience")
            raise Unauthenticated("Invalid session token", reason="invalid_audience")
        except InvalidTokenError as e:
            logger.warning("Invalid session token", extra={"error": str(e)})
            raise Unauthenticated("Invalid session token", reason="invalid_token")

    def verify(self, token: str) -> Principal:
        claims = self.decode(token)
        principal = Principal(external_id=claims["sub"], email=claims.get("email"))
        logger.debug("Session verified", extra={"external_id": principal.external_id})
        return principal
