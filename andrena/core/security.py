"""API key authentication middleware."""
from __future__ import annotations

import hmac

from fastapi import FastAPI, status
from fastapi.requests import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from andrena.core.config import Settings


class APIKeyAuthMiddleware(BaseHTTPMiddleware):
    """Reject requests lacking the correct API key header."""

    header_name: str = "X-API-KEY"
    public_paths: tuple[str, ...] = ("/health", "/docs", "/openapi.json", "/redoc")

    def __init__(self, app: ASGIApp, api_key: str) -> None:
        super().__init__(app)
        self._api_key = api_key

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        if request.url.path in self.public_paths:
            return await call_next(request)

        provided_key = request.headers.get(self.header_name)
        if not provided_key:
            return self._unauthorized_response("Missing API key header.")

        if not hmac.compare_digest(provided_key.encode(), self._api_key.encode()):
            return self._unauthorized_response("Invalid API key.")

        return await call_next(request)

    @staticmethod
    def _unauthorized_response(detail: str) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={
                "error": {
                    "type": "UNAUTHORIZED",
                    "detail": detail,
                }
            },
            headers={"WWW-Authenticate": "API-Key"},
        )


def register_security(app: FastAPI, settings: Settings) -> bool:
    """Attach authentication middleware when an API key is configured."""

    if not settings.api_key:
        return False
    app.add_middleware(APIKeyAuthMiddleware, api_key=settings.api_key)
    return True
