"""MedStock — JWT auth middleware: decodes the bearer token and sets request.state.user."""
import logging
from typing import Callable
from uuid import UUID

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from medstock.api.deps import CurrentUser
from medstock.core.security import decode_token

logger = logging.getLogger(__name__)


class JWTAuthMiddleware(BaseHTTPMiddleware):
    """Extract JWT from the Authorization header and populate request.state.user."""

    PUBLIC_PATHS = {
        "/health",
        "/api/v1/docs",
        "/api/v1/redoc",
        "/api/v1/openapi.json",
    }

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request.state.user = None

        path = request.url.path
        if path in self.PUBLIC_PATHS or path.startswith("/api/v1/docs") or path.startswith("/api/v1/redoc"):
            return await call_next(request)

        auth = request.headers.get("Authorization", "")
        if auth.startswith("Bearer "):
            payload = decode_token(auth[7:].strip())
            if payload and payload.get("type") == "access":
                sub = payload.get("sub")
                try:
                    user_id = UUID(sub) if sub else None
                except ValueError:
                    logger.warning("Rejected token with malformed subject %r", sub)
                    user_id = None
                if user_id:
                    request.state.user = CurrentUser(
                        id=user_id,
                        username=payload.get("username") or sub,
                        role=payload.get("role", "PHARMACY_STAFF"),
                    )
        return await call_next(request)
