import secrets
from typing import Iterable

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = structlog.get_logger()

PUBLIC_PATHS = frozenset({"/", "/health", "/metrics"})


def _unauthorized(message: str, code: str) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={"error": {"message": message, "type": "invalid_request_error", "code": code}},
    )


class BearerAuthMiddleware(BaseHTTPMiddleware):
    """Requires ``Authorization: Bearer <token>`` on every non-public path.

    An empty token turns authentication off.
    """

    def __init__(self, app, token: str = "", public_paths: Iterable[str] = PUBLIC_PATHS):
        super().__init__(app)
        self.token = token
        self.public_paths = frozenset(public_paths)

    async def dispatch(self, request: Request, call_next):
        if not self.token or request.url.path in self.public_paths:
            return await call_next(request)

        header = request.headers.get("Authorization")
        if not header:
            logger.warning("Missing authorization header")
            return _unauthorized("Missing authorization header", "missing_authorization")

        parts = header.split(" ")
        if len(parts) != 2 or parts[0] != "Bearer":
            logger.warning("Invalid authorization header format")
            return _unauthorized(
                "Invalid authorization header format. Expected: Bearer <token>",
                "invalid_authorization_format",
            )

        if not secrets.compare_digest(parts[1], self.token):
            logger.warning("Invalid authentication token")
            return _unauthorized("Invalid authentication token", "invalid_token")

        request.state.api_key = parts[1]
        return await call_next(request)
