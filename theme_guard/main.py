# theme_guard/main.py
"""
FastAPI application exposing the guarded AJAX endpoints of the theme.

Every endpoint that could be abused (search, pagination, share tracking,
view counting) runs behind the rate limiter; state-changing endpoints also
require the anti-forgery token of the visitor session.

Run with:
    uvicorn theme_guard.main:create_app --factory
"""

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from theme_guard import __version__
from theme_guard.core.config import Settings, validate_required_settings
from theme_guard.core.exceptions import (
    RateLimitExceededError,
    SecurityError,
    StoreUnavailableError,
    security_error,
)
from theme_guard.core.identity import IdentityResolver
from theme_guard.core.logging_config import setup_logging
from theme_guard.core.security import SecureSession, SessionManager
from theme_guard.middleware.guard_middleware import GuardMiddleware
from theme_guard.services.audit_log import AuditLog
from theme_guard.services.kv_store import InMemoryKVStore, KVStore
from theme_guard.services.rate_limiter import RateLimiter
from theme_guard.services.redis_service import RedisStore, create_redis_store

logger = logging.getLogger(__name__)

TOKEN_HEADER = "X-CSRF-Token"
SEARCH_MIN_LENGTH = 3
SEARCH_MAX_LENGTH = 100
SEARCH_RESULTS = 5
POSTS_PER_PAGE = 10
SHARE_TYPES = ("twitter", "facebook", "line", "copy")
COUNTER_TTL = 30 * 24 * 3600


# API Models
class ShareRequest(BaseModel):
    post_id: str
    type: str


def get_session(request: Request) -> SecureSession:
    return request.state.session


def rate_limited(action: str) -> Callable:
    """Dependency factory: count the request against the limits of `action`"""

    async def dependency(request: Request) -> None:
        limiter: RateLimiter = request.app.state.rate_limiter
        await limiter.enforce(action, None, request.state.identity)

    return dependency


async def require_token(
    session: SecureSession = Depends(get_session),
    token: Optional[str] = Header(default=None, alias=TOKEN_HEADER),
) -> None:
    """Reject state-changing requests without the session's anti-forgery token"""
    if not await session.verify_token(token):
        raise security_error("Anti-forgery token missing or invalid", "token")


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[KVStore] = None,
    clock: Callable[[], float] = time.time,
    posts: Optional[List[Dict[str, Any]]] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings (read from the environment if omitted)
        store: Shared TTL store; Redis when configured, else in-memory
        clock: Time source shared by all services
        posts: Published posts served by the search and pagination endpoints
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """FastAPI lifespan event handler for startup/shutdown"""
        setup_logging()
        logger.info(f"Starting {settings.APP_NAME} {__version__}")

        # Warn but don't fail
        validate_required_settings(settings)

        audit_log = AuditLog(settings, clock=clock)

        owned_store = None
        active_store = store
        if active_store is None:
            redis_url = settings.resolve_redis_url()
            if redis_url:
                owned_store = await create_redis_store(
                    redis_url,
                    key_prefix=settings.REDIS_KEY_PREFIX,
                    socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
                )
                if not owned_store.is_connected():
                    logger.error("Redis unreachable at startup: store operations will report StoreUnavailable")
                active_store = owned_store
            else:
                logger.warning("Using in-memory store: limits and sessions are per process")
                active_store = InMemoryKVStore(clock=clock)

        app.state.settings = settings
        app.state.audit_log = audit_log
        app.state.store = active_store
        app.state.identity_resolver = IdentityResolver(settings.IDENTITY_SALT, settings.TRUST_PROXY_HEADERS)
        app.state.rate_limiter = RateLimiter(active_store, audit_log, settings, clock=clock)
        app.state.session_manager = SessionManager(active_store, audit_log, settings, clock=clock)
        app.state.posts = list(posts or [])

        logger.info(f"Store: {type(active_store).__name__}")

        yield

        logger.info("Shutting down...")
        if owned_store is not None:
            await owned_store.shutdown()
        audit_log.close()

    app = FastAPI(
        title="Theme Guard API",
        description="Rate limiting, secure sessions and audit logging for theme AJAX endpoints",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url=None,
    )

    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_handler(request: Request, exc: RateLimitExceededError):
        """Too many requests, with a retry hint"""
        response = PlainTextResponse(content=exc.message, status_code=429)
        response.headers["Retry-After"] = str(exc.retry_after)
        if exc.limit is not None:
            response.headers["X-RateLimit-Limit"] = str(exc.limit)
        return response

    @app.exception_handler(SecurityError)
    async def security_handler(request: Request, exc: SecurityError):
        """Generic message only; the reason stays in the logs"""
        logger.info(f"Security check failed on {request.url.path}: {exc.error_type}")
        return JSONResponse(status_code=403, content={"detail": SecurityError.public_message})

    app.middleware("http")(GuardMiddleware())

    if settings.CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.CORS_ORIGINS,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type", TOKEN_HEADER],
        )

    @app.get("/health", status_code=200)
    async def health(request: Request):
        """Health check with store status"""
        active_store = request.app.state.store
        if isinstance(active_store, RedisStore):
            store_health = await active_store.health_check()
        else:
            store_health = {"healthy": True, "status": "in_memory"}

        return {
            "status": "healthy",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "store": store_health,
            "audit_log_degraded": request.app.state.audit_log.degraded,
        }

    @app.get("/search", dependencies=[Depends(rate_limited("search"))])
    async def search(request: Request, q: str = Query(default="")):
        """Instant search over published post titles and excerpts"""
        query = q.strip()[:SEARCH_MAX_LENGTH]
        if len(query) < SEARCH_MIN_LENGTH:
            raise HTTPException(
                status_code=400,
                detail=f"Search terms must be at least {SEARCH_MIN_LENGTH} characters",
            )

        needle = query.lower()
        results = [
            post for post in request.app.state.posts
            if needle in post.get("title", "").lower() or needle in post.get("excerpt", "").lower()
        ]
        return {"query": query, "results": results[:SEARCH_RESULTS]}

    @app.get("/posts", dependencies=[Depends(rate_limited("pagination"))])
    async def load_more_posts(
        request: Request,
        page: int = Query(default=1, ge=1),
        category: Optional[str] = Query(default=None),
    ):
        """Next page of posts for the "load more" button"""
        posts = request.app.state.posts
        if category and category != "all":
            posts = [post for post in posts if post.get("category") == category]

        max_pages = (len(posts) + POSTS_PER_PAGE - 1) // POSTS_PER_PAGE
        page_posts = posts[(page - 1) * POSTS_PER_PAGE:page * POSTS_PER_PAGE]
        if not page_posts:
            raise HTTPException(status_code=404, detail="No more posts")

        return {
            "posts": page_posts,
            "current_page": page,
            "max_pages": max_pages,
            "posts_count": len(page_posts),
        }

    @app.post("/posts/{post_id}/view", dependencies=[Depends(rate_limited("post_view")), Depends(require_token)])
    async def count_view(request: Request, post_id: str, session: SecureSession = Depends(get_session)):
        """Count a post view once per session"""
        if not any(str(post.get("id")) == post_id for post in request.app.state.posts):
            raise HTTPException(status_code=404, detail="Post not found")

        viewed = await session.get("viewed_posts", [])
        if post_id in viewed:
            return {"post_id": post_id, "counted": False}

        try:
            views = await request.app.state.store.atomic_increment(f"views:{post_id}", COUNTER_TTL)
        except StoreUnavailableError:
            logger.error("View counter unavailable")
            return {"post_id": post_id, "counted": False}

        await session.set("viewed_posts", viewed + [post_id])
        return {"post_id": post_id, "counted": True, "views": views}

    @app.post("/share", dependencies=[Depends(rate_limited("share_tracking")), Depends(require_token)])
    async def track_share(request: Request, req: ShareRequest):
        """Record a share button click"""
        if req.type not in SHARE_TYPES:
            raise HTTPException(status_code=400, detail="Invalid share type")

        try:
            shares = await request.app.state.store.atomic_increment(f"shares:{req.post_id}:{req.type}", COUNTER_TTL)
        except StoreUnavailableError:
            logger.error("Share counter unavailable")
            return {"tracked": False}

        return {"tracked": True, "shares": shares}

    @app.get("/session/token", dependencies=[Depends(rate_limited("session_create"))])
    async def session_token(session: SecureSession = Depends(get_session)):
        """Anti-forgery token the page scripts send back in the X-CSRF-Token header"""
        token = await session.get_token()
        if token is None:
            raise HTTPException(status_code=503, detail="Session unavailable. Please try again later.")
        return {"token": token, "header": TOKEN_HEADER}

    @app.get("/session/info")
    async def session_info(session: SecureSession = Depends(get_session)):
        """Diagnostic snapshot of the visitor session (no ids or tokens)"""
        return await session.get_session_info()

    return app


# Main entry point
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "theme_guard.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        log_level="info",
    )
