"""HTTP Basic auth for the dashboard API — one shared credential pair."""

from __future__ import annotations

import base64
import binascii
import logging
import secrets

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from ..config import DashboardConfig

logger = logging.getLogger(__name__)


def parse_basic_auth(header: str) -> tuple[str, str] | None:
    """Decode an ``Authorization: Basic ...`` header into (user, password)."""
    scheme, _, encoded = header.partition(" ")
    if scheme.lower() != "basic" or not encoded:
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    user, sep, password = decoded.partition(":")
    if not sep:
        return None
    return user, password


def credentials_match(config: DashboardConfig, user: str, password: str) -> bool:
    # Evaluate both comparisons so timing does not reveal which one failed
    user_ok = secrets.compare_digest(user.encode(), config.username.encode())
    password_ok = secrets.compare_digest(password.encode(), config.password.encode())
    return user_ok and password_ok


class BasicAuthMiddleware(BaseHTTPMiddleware):
    """Reject API requests without valid dashboard credentials."""

    def __init__(self, app, config: DashboardConfig) -> None:
        super().__init__(app)
        self.config = config

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if not self.config.auth_enabled:
            return await call_next(request)

        creds = parse_basic_auth(request.headers.get("Authorization", ""))
        if creds is None or not credentials_match(self.config, *creds):
            logger.warning("Rejected dashboard request to %s", request.url.path)
            return JSONResponse(
                status_code=401,
                content={"detail": "Authentication required"},
                headers={"WWW-Authenticate": 'Basic realm="Monitoring Dashboard"'},
            )

        request.state.user = creds[0]
        return await call_next(request)
