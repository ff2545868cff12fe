# theme_guard/models/rate_window.py

import math
from typing import Annotated, Any, Literal, Mapping, Optional, Union
from pydantic import BaseModel, Field

from theme_guard.core.exceptions import config_error


class RateLimitRule(BaseModel):
    """`limit` requests per `window` seconds"""
    limit: int
    window: int

    @classmethod
    def from_config(cls, config: Union["RateLimitRule", Mapping[str, Any]]) -> "RateLimitRule":
        """
        Accepts a rule or a {"limit": ..., "window": ...} mapping.

        Raises:
            ConfigurationError: If limit or window is missing, not an integer or not positive
        """
        if isinstance(config, cls):
            limit, window = config.limit, config.window
        elif isinstance(config, Mapping):
            limit, window = config.get("limit"), config.get("window")
        else:
            raise config_error(f"Unsupported rate limit config type: {type(config).__name__}", "rate_limiter")

        for name, value in (("limit", limit), ("window", window)):
            if isinstance(value, bool) or not isinstance(value, int):
                raise config_error(f"Rate limit '{name}' must be an integer, got {value!r}", "rate_limiter")
            if value <= 0:
                raise config_error(f"Rate limit '{name}' must be positive, got {value}", "rate_limiter")

        return cls(limit=limit, window=window)


class Open(BaseModel):
    """Below the limit"""
    kind: Literal["open"] = "open"


class Throttled(BaseModel):
    """At the limit; the next request starts a block"""
    kind: Literal["throttled"] = "throttled"


class Blocked(BaseModel):
    kind: Literal["blocked"] = "blocked"
    until: float


WindowState = Annotated[Union[Open, Throttled, Blocked], Field(discriminator="kind")]


class PenaltyState(BaseModel):
    """
    Block and violation bookkeeping of one (action, identifier) pair.

    Stored separately from the counter so that window resets never touch it.
    """
    blocked_until: Optional[float] = None
    violation_count: int = 0
    last_violation_at: Optional[float] = None

    def is_blocked(self, now: float) -> bool:
        return self.blocked_until is not None and now < self.blocked_until

    def effective_violations(self, now: float, decay: int) -> int:
        """Violations still counting towards escalation"""
        if self.last_violation_at is None or now - self.last_violation_at >= decay:
            return 0
        return self.violation_count


class RateWindow(BaseModel):
    """Snapshot of the request window for one (action, identifier) pair"""
    action: str
    identifier: str
    count: int = 0
    window_start: Optional[float] = None
    window_length: int
    blocked_until: Optional[float] = None
    violation_count: int = 0

    def state(self, now: float, limit: int) -> WindowState:
        if self.blocked_until is not None and now < self.blocked_until:
            return Blocked(until=self.blocked_until)
        if self.count >= limit:
            return Throttled()
        return Open()


class RateLimitStats(BaseModel):
    action: str
    current_count: int
    limit: int
    remaining: int
    is_blocked: bool
    blocked_until: Optional[float] = None
    violations: int = 0
    window_start: Optional[float] = None
    reset_at: Optional[float] = None
    state: WindowState

    def retry_after(self, now: float) -> int:
        """Whole seconds until the caller may retry, 0 when not blocked"""
        if not self.is_blocked or self.blocked_until is None:
            return 0
        return max(0, math.ceil(self.blocked_until - now))
