# theme_guard/models/session_record.py

from typing import Any, Dict
from pydantic import BaseModel, Field

# Written once at session creation, never through SecureSession.set()/remove()
PROTECTED_KEYS = frozenset({"user_agent", "ip_address", "session_token", "session_start_time"})


class SessionRecord(BaseModel):
    """
    Server-side state of one visitor session, stored as JSON in the TTL store.
    The cookie carries only the opaque id the record is keyed by.
    """
    created_at: float
    last_activity: float
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def session_token(self) -> str:
        return self.data.get("session_token", "")

    @property
    def session_start_time(self) -> float:
        return float(self.data.get("session_start_time", self.created_at))
