"""
Shared-secret authentication middleware for the control surface.

All /projects/* and /batch/* endpoints require a valid X-Worker-Secret
header matching WORKER_SHARED_SECRET. The dashboard attaches this header
when it drives the worker.
"""

import secrets
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .config import RuntimeConfig, config as default_config

PROTECTED_PREFIXES = ("/projects", "/batch")


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests to the control endpoints."""

    # Paths that are always public (health checks, etc.)
    PUBLIC_PATHS = {"/health", "/metrics", "/docs", "/openapi.json", "/redoc"}

    def __init__(self, app, config: Optional[RuntimeConfig] = None):
        super().__init__(app)
        self.config = config or default_config

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if path in self.PUBLIC_PATHS or not path.startswith(PROTECTED_PREFIXES):
            return await call_next(request)

        secret = self.config.worker_secret
        if not secret:
            # In development without the secret set, allow all traffic
            if self.config.environment == "development":
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": "WORKER_SHARED_SECRET not configured"})

        # Constant-time compare avoids timing attacks
        provided = request.headers.get("X-Worker-Secret", "")
        if not secrets.compare_digest(provided, secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing worker secret"})

        return await call_next(request)
