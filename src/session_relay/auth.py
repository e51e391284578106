"""Shared-password authentication for REST and WebSocket clients."""

import hmac
import logging
from typing import Optional

from fastapi import Request

from .exceptions import AuthenticationError

logger = logging.getLogger(__name__)


class TokenAuthenticator:
    """Compares client tokens against the configured API password."""

    def __init__(self, password: Optional[str]) -> None:
        self._password = password or ""

    @property
    def enabled(self) -> bool:
        return bool(self._password)

    def check_token(self, token: Optional[str]) -> bool:
        if not self._password or not isinstance(token, str):
            return False
        return hmac.compare_digest(token.encode("utf-8"), self._password.encode("utf-8"))

    def check_header(self, authorization: Optional[str]) -> bool:
        if not authorization or not authorization.startswith("Bearer "):
            return False
        return self.check_token(authorization[len("Bearer "):])


async def require_auth(request: Request) -> None:
    """FastAPI dependency: reject requests without a valid bearer token."""
    authenticator: TokenAuthenticator = request.app.state.authenticator
    if not authenticator.check_header(request.headers.get("authorization")):
        logger.warning(f"[AUTH] Rejected {request.method} {request.url.path}")
        raise AuthenticationError()
