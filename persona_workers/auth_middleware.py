"""
Shared-secret authentication for the worker's job endpoints.

Every /webhook/* request must carry an X-Worker-Secret header equal to
WORKER_SHARED_SECRET. The API server attaches it when enqueueing or
cancelling jobs.
"""

import os
import secrets

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

SECRET_HEADER = "X-Worker-Secret"


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests to /webhook/* endpoints."""

    PUBLIC_PATHS = {"/health", "/docs", "/openapi.json", "/redoc"}

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path in self.PUBLIC_PATHS or not path.startswith("/webhook"):
            return await call_next(request)

        secret = os.environ.get("WORKER_SHARED_SECRET", "")
        if not secret:
            # Development without a configured secret: allow all traffic
            if os.environ.get("ENVIRONMENT", "development") == "development":
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": "WORKER_SHARED_SECRET not configured"})

        provided = request.headers.get(SECRET_HEADER, "")
        if not secrets.compare_digest(provided, secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing worker secret"})

        return await call_next(request)
