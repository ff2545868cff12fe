"""
Request guard middleware
Derives the caller identity, opens the visitor session and adds security headers
"""

import logging
import time
from typing import Callable

from fastapi import Request, Response

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
}


class GuardMiddleware:
    """
    Per-request wiring of the access-control services.

    Expects `identity_resolver` and `session_manager` on app.state. Puts
    `identity` and `session` on request.state for the endpoints.
    """

    def __init__(self, slow_request_threshold: float = 1.0):
        self.slow_request_threshold = slow_request_threshold

    async def __call__(self, request: Request, call_next: Callable) -> Response:
        state = request.app.state

        # 1. Identity, derived exactly once per request
        identity = state.identity_resolver.resolve(request, getattr(request.state, "user_id", None))
        request.state.identity = identity

        # 2. Session (lazy: the store is only touched if an endpoint uses it)
        manager = state.session_manager
        session = manager.open(
            request.cookies.get(manager.cookie_name),
            identity,
            user_agent=request.headers.get("user-agent", ""),
            is_secure=request.url.scheme == "https",
        )
        request.state.session = session

        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time

        # 3. Session cookie changes
        if session.started:
            session.apply_cookie(response)

        # 4. Security headers
        for name, value in SECURITY_HEADERS.items():
            response.headers[name] = value
        if session.is_secure:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["X-Process-Time"] = str(process_time)

        if process_time > self.slow_request_threshold:
            logger.warning(f"Slow request: {request.url.path} took {process_time:.2f}s")

        return response
