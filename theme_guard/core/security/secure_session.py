"""
Cache-backed visitor sessions.

Session state lives in the shared TTL store under an opaque id carried by a
single HttpOnly cookie, so concurrent requests of one visitor never queue on
a session file lock. Design decisions:
1. Lazy start - nothing touches the store until the first session call of a request
2. Fail open for reads, fail closed for writes when the store is unreachable
3. Boolean results instead of exceptions for protected keys and token mismatches
4. Protected keys are written only at creation (or regeneration)
5. Reads only slide the TTL; writes re-read the record and change one key,
   so concurrent requests of a visitor do not overwrite each other
"""

import json
import logging
import platform
import re
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError as PydanticValidationError
from starlette.responses import Response

from theme_guard.core.config import Settings
from theme_guard.core.exceptions import StoreUnavailableError
from theme_guard.core.identity import RequestIdentity
from theme_guard.models.session_record import PROTECTED_KEYS, SessionRecord
from theme_guard.services.audit_log import AuditLog
from theme_guard.services.kv_store import KVStore

logger = logging.getLogger(__name__)

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{20,128}$")
MAX_USER_AGENT_LENGTH = 255


def _iso(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


class SessionManager:
    """
    Application-level session service. Opens one SecureSession per request.

    Usage:
        manager = SessionManager(store, audit_log, settings)
        session = manager.open(request.cookies.get(settings.SESSION_COOKIE_NAME), identity,
                               user_agent=request.headers.get("user-agent", ""),
                               is_secure=request.url.scheme == "https")
    """

    def __init__(
        self,
        store: KVStore,
        audit_log: AuditLog,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.audit_log = audit_log
        self.settings = settings
        self.clock = clock

    @property
    def cookie_name(self) -> str:
        return self.settings.SESSION_COOKIE_NAME

    def open(
        self,
        cookie_value: Optional[str],
        identity: RequestIdentity,
        user_agent: str = "",
        is_secure: bool = False,
    ) -> "SecureSession":
        return SecureSession(self, cookie_value, identity, user_agent, is_secure)

    @staticmethod
    def _record_key(session_id: str) -> str:
        return f"session:{session_id}"

    async def load_record(self, session_id: str) -> Optional[SessionRecord]:
        raw = await self.store.get(self._record_key(session_id))
        if not raw:
            return None
        try:
            return SessionRecord.model_validate_json(raw)
        except PydanticValidationError:
            logger.warning("Discarding unreadable session record")
            return None

    async def save_record(self, session_id: str, record: SessionRecord) -> bool:
        return await self.store.set(
            self._record_key(session_id),
            record.model_dump_json().encode(),
            self.settings.SESSION_TTL,
        )

    async def touch_record(self, session_id: str) -> bool:
        """Slide the TTL of a record without rewriting its data"""
        return await self.store.touch(self._record_key(session_id), self.settings.SESSION_TTL)

    async def delete_record(self, session_id: str) -> bool:
        return await self.store.delete(self._record_key(session_id))

    def report_store_failure(self, operation: str, error: StoreUnavailableError) -> None:
        self.audit_log.error("store_unavailable", f"Session store unreachable during {operation}", {
            "operation": error.operation or operation,
            "store": error.service_name,
        })


class SecureSession:
    """
    Session of the current request.

    All public operations are async because the first one loads or creates
    the backing record.
    """

    def __init__(
        self,
        manager: SessionManager,
        cookie_value: Optional[str],
        identity: RequestIdentity,
        user_agent: str = "",
        is_secure: bool = False,
    ):
        self._manager = manager
        self._cookie_value = cookie_value
        self._identity = identity
        self._user_agent = (user_agent or "")[:MAX_USER_AGENT_LENGTH]
        self.is_secure = is_secure

        self._started = False
        self._session_id: Optional[str] = None
        self._record: Optional[SessionRecord] = None

        # Cookie changes to write onto the response
        self._cookie_to_set: Optional[str] = None
        self._clear_cookie = False

    @property
    def _settings(self) -> Settings:
        return self._manager.settings

    @property
    def _audit(self) -> AuditLog:
        return self._manager.audit_log

    @property
    def is_active(self) -> bool:
        return self._record is not None

    @property
    def session_id(self) -> Optional[str]:
        """Opaque id carried by the cookie (never log it)"""
        return self._session_id

    @property
    def started(self) -> bool:
        return self._started

    async def _ensure_started(self) -> None:
        if self._started:
            return
        self._started = True

        try:
            await self._start()
        except StoreUnavailableError as e:
            self._manager.report_store_failure("start", e)
            self._session_id = None
            self._record = None

    async def _start(self) -> None:
        now = self._manager.clock()
        cookie = self._cookie_value

        if cookie and SESSION_ID_PATTERN.match(cookie):
            record = await self._manager.load_record(cookie)
            if record is not None:
                if not self._is_valid(record, now):
                    await self._manager.delete_record(cookie)
                elif await self._manager.touch_record(cookie):
                    record.last_activity = now
                    self._session_id = cookie
                    self._record = record
                    return
            # Stale or rejected id: the browser gets a fresh one below
            self._clear_cookie = True
        elif cookie:
            self._clear_cookie = True

        await self._create(now)

    def _is_valid(self, record: SessionRecord, now: float) -> bool:
        if now - record.session_start_time > self._settings.SESSION_ABSOLUTE_TIMEOUT:
            self._audit.info("session_expired", "Session exceeded its absolute lifetime", {
                "age_seconds": int(now - record.session_start_time),
            })
            return False

        if self._settings.SESSION_BIND_CLIENT:
            if (record.data.get("user_agent") != self._user_agent
                    or record.data.get("ip_address") != self._identity.address_hash):
                self._audit.warning("session_hijack_suspected", "Session presented by a different client", {
                    "user_agent_changed": record.data.get("user_agent") != self._user_agent,
                    "address_changed": record.data.get("ip_address") != self._identity.address_hash,
                })
                return False

        return True

    async def _create(self, now: float, data: Optional[Dict[str, Any]] = None) -> bool:
        session_id = secrets.token_urlsafe(32)
        record = SessionRecord(
            created_at=now,
            last_activity=now,
            data={
                **(data or {}),
                "session_token": secrets.token_urlsafe(32),
                "session_start_time": now,
                "user_agent": self._user_agent,
                "ip_address": self._identity.address_hash,
            },
        )

        if not await self._manager.save_record(session_id, record):
            logger.warning("Session record was not stored")
            return False

        self._session_id = session_id
        self._record = record
        self._cookie_to_set = session_id
        self._clear_cookie = False
        return True

    async def _update(self, operation: str, change: Callable[[Dict[str, Any]], bool]) -> bool:
        """
        Apply `change` to the latest stored data and write it back.

        The record is re-read first so that writes made by concurrent requests
        of the same visitor are kept. `change` returns False to skip the write.
        """
        try:
            latest = await self._manager.load_record(self._session_id)
            if latest is None:
                return False
            if not change(latest.data):
                self._record = latest
                return False
            latest.last_activity = self._manager.clock()
            if not await self._manager.save_record(self._session_id, latest):
                return False
        except StoreUnavailableError as e:
            self._manager.report_store_failure(operation, e)
            return False

        self._record = latest
        return True

    async def get(self, key: str, default: Any = None) -> Any:
        """Stored value or `default`. Reading counts as activity."""
        await self._ensure_started()
        if self._record is None:
            return default

        try:
            if not await self._manager.touch_record(self._session_id):
                return default
        except StoreUnavailableError as e:
            self._manager.report_store_failure("get", e)
            return default
        return self._record.data.get(key, default)

    async def set(self, key: str, value: Any) -> bool:
        """Store a JSON-serializable value; protected keys are refused"""
        if key in PROTECTED_KEYS:
            self._audit.warning("protected_session_key", "Attempt to modify protected session key", {"key": key})
            return False

        await self._ensure_started()
        if self._record is None:
            return False

        try:
            json.dumps(value)
        except (TypeError, ValueError):
            logger.warning(f"Refusing non-serializable session value for key '{key}'")
            return False

        def change(data: Dict[str, Any]) -> bool:
            data[key] = value
            return True

        return await self._update("set", change)

    async def remove(self, key: str) -> bool:
        """Delete a non-protected key; True if something was deleted"""
        if key in PROTECTED_KEYS:
            self._audit.warning("protected_session_key", "Attempt to remove protected session key", {"key": key})
            return False

        await self._ensure_started()
        if self._record is None:
            return False

        def change(data: Dict[str, Any]) -> bool:
            if key not in data:
                return False
            del data[key]
            return True

        return await self._update("remove", change)

    async def get_token(self) -> Optional[str]:
        """Anti-forgery token of this session, fixed at creation"""
        await self._ensure_started()
        if self._record is None:
            return None
        return self._record.session_token or None

    async def verify_token(self, candidate: Optional[str]) -> bool:
        """Constant-time comparison against the session token"""
        await self._ensure_started()
        if self._record is None or not isinstance(candidate, str):
            return False

        token = self._record.session_token
        if not token:
            return False

        valid = secrets.compare_digest(token.encode("utf-8"), candidate.encode("utf-8"))
        if not valid:
            self._audit.warning("token_mismatch", "Anti-forgery token verification failed", {
                "candidate_length": len(candidate),
            })
        return valid

    async def regenerate(self) -> bool:
        """
        Move the session data to a fresh id with a fresh token, e.g. after a
        privilege change. The old record is deleted.
        """
        await self._ensure_started()
        if self._record is None:
            return False

        old_id = self._session_id
        data = {k: v for k, v in self._record.data.items() if k not in PROTECTED_KEYS}
        now = self._manager.clock()

        try:
            if not await self._create(now, data):
                return False
            await self._manager.delete_record(old_id)
        except StoreUnavailableError as e:
            self._manager.report_store_failure("regenerate", e)
            return False

        self._audit.info("session_regenerated", "Session id and token regenerated")
        return True

    async def destroy_session(self) -> None:
        """Delete the backing record and clear the cookie"""
        if not self._started and not self._cookie_value:
            # Nothing to destroy; do not create a record just to delete it
            self._started = True
            return

        await self._ensure_started()

        if self._session_id is not None:
            try:
                await self._manager.delete_record(self._session_id)
            except StoreUnavailableError as e:
                self._manager.report_store_failure("destroy", e)

        self._session_id = None
        self._record = None
        self._cookie_to_set = None
        self._clear_cookie = True

    async def get_session_info(self) -> Dict[str, Any]:
        """Diagnostic snapshot without ids or tokens"""
        await self._ensure_started()
        record = self._record
        return {
            "session_active": record is not None,
            "created_at": _iso(record.created_at) if record else None,
            "last_activity": _iso(record.last_activity) if record else None,
            "is_encrypted_connection": self.is_secure,
            "python_version": platform.python_version(),
            "cookie_name": self._settings.SESSION_COOKIE_NAME,
            "ttl_seconds": self._settings.SESSION_TTL,
        }

    def apply_cookie(self, response: Response) -> None:
        """Write pending cookie changes onto the response"""
        settings = self._settings

        if self._cookie_to_set:
            response.set_cookie(
                key=settings.SESSION_COOKIE_NAME,
                value=self._cookie_to_set,
                path=settings.SESSION_COOKIE_PATH,
                domain=settings.SESSION_COOKIE_DOMAIN,
                secure=self.is_secure,
                httponly=True,
                samesite="lax",
            )
        elif self._clear_cookie:
            response.delete_cookie(
                key=settings.SESSION_COOKIE_NAME,
                path=settings.SESSION_COOKIE_PATH,
                domain=settings.SESSION_COOKIE_DOMAIN,
                secure=self.is_secure,
                httponly=True,
                samesite="lax",
            )
