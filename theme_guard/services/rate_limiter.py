# theme_guard/services/rate_limiter.py
"""
Fixed-window rate limiter with escalating blocks.

Per (action, identifier) the store holds three keys:
- `<base>:count`   atomic counter, TTL = window + 1 ms (an expired counter is a new window)
- `<base>:window`  start of the current window, written by the request that saw count == 1
- `<base>:penalty` JSON PenaltyState (blocked_until, violation_count, last_violation_at)

A window covers `window_start <= now <= window_start + window`: the counter is
still live at exactly `window_start + window` and gone one millisecond later,
the resolution of Redis key expiry.

Only the counter is contended on every request, and it is only ever changed
through the store's atomic increment or pinned while a block is active.

Runtime limit overrides (set_action_limits) live under `rl_settings:<action>`.
"""
import json
import logging
import time
from typing import Any, Callable, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from theme_guard.core.config import Settings
from theme_guard.core.exceptions import ConfigurationError, RateLimitExceededError, StoreUnavailableError
from theme_guard.core.identity import RequestIdentity
from theme_guard.core.rate_limit_config import get_action_rule, get_rate_limit_message, merge_rule
from theme_guard.models.rate_window import PenaltyState, RateLimitRule, RateLimitStats, RateWindow
from theme_guard.services.audit_log import AuditLog
from theme_guard.services.kv_store import KVStore

logger = logging.getLogger(__name__)

# Keeps the counter live at the exact end of its window
WINDOW_BOUNDARY = 0.001

# Runtime overrides of action limits outlive any window or block
ACTION_SETTINGS_TTL = 365 * 24 * 3600

RuleConfig = Union[RateLimitRule, Mapping[str, Any]]


class RateLimiter:
    """
    Tracks request counts per (action, caller) and blocks repeat offenders
    for exponentially growing periods.

    Usage:
        limiter = RateLimiter(store, audit_log, settings)
        if not await limiter.check("search", {"limit": 30, "window": 60}, identity):
            ...  # answer 429
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
        self._clock = clock

    def _identifier(self, identity: RequestIdentity) -> str:
        return identity.rate_limit_identifier(self.settings.RATE_LIMIT_INCLUDE_USER_ID)

    @staticmethod
    def _key_base(action: str, identifier: str) -> str:
        return f"rl:{action}:{identifier}"

    def block_duration(self, violations: int) -> int:
        """base × 2^violations, capped at the maximum block"""
        max_block = self.settings.RATE_LIMIT_MAX_BLOCK
        # Past this exponent the cap always wins; avoids huge integers
        if violations >= max_block.bit_length():
            return max_block
        return min(self.settings.RATE_LIMIT_BASE_BLOCK * (2 ** violations), max_block)

    @staticmethod
    def _action_settings_key(action: str) -> str:
        return f"rl_settings:{action}"

    async def action_rule(self, action: str) -> RateLimitRule:
        """
        Effective rule of an action: the configured rule with any runtime
        override from set_action_limits() merged on top.
        """
        rule = get_action_rule(action, self.settings)
        try:
            raw = await self.store.get(self._action_settings_key(action))
        except StoreUnavailableError:
            # check() reports the outage
            return rule
        if not raw:
            return rule

        try:
            return merge_rule(rule, json.loads(raw))
        except (ValueError, ConfigurationError):
            logger.warning(f"Ignoring unreadable limit override for action: {action}")
            return rule

    async def set_action_limits(self, action: str, config: Mapping[str, Any]) -> bool:
        """
        Override the limits of an action for every worker sharing the store.

        `config` may be partial ({"limit": 50}); it is merged over the
        configured rule on every read.

        Returns:
            True if the override was stored

        Raises:
            ConfigurationError: If the merged rule is invalid
        """
        rule = merge_rule(get_action_rule(action, self.settings), config)
        override = {name: config[name] for name in ("limit", "window") if name in config}

        try:
            stored = await self.store.set(
                self._action_settings_key(action), json.dumps(override).encode(), ACTION_SETTINGS_TTL
            )
        except StoreUnavailableError as e:
            self._report_store_failure("set_action_limits", action, e)
            return False

        if stored:
            self.audit_log.info("rate_limit_settings_changed", f"Rate limits changed for action: {action}", {
                "action": action,
                "limit": rule.limit,
                "window": rule.window,
            })
        return stored

    async def clear_action_limits(self, action: str) -> bool:
        """Drop the runtime override of an action; True if one existed"""
        try:
            return await self.store.delete(self._action_settings_key(action))
        except StoreUnavailableError as e:
            self._report_store_failure("clear_action_limits", action, e)
            return False

    async def check(self, action: str, config: RuleConfig, identity: RequestIdentity) -> bool:
        """
        Count one request and decide whether it may proceed.

        Args:
            action: Endpoint/action name, e.g. "search"
            config: RateLimitRule or {"limit": int, "window": seconds}
            identity: Caller identity of the current request

        Returns:
            True if the request is within the limit

        Raises:
            ConfigurationError: If limit or window is not a positive integer
        """
        rule = RateLimitRule.from_config(config)
        identifier = self._identifier(identity)
        base = self._key_base(action, identifier)
        now = self._clock()

        try:
            penalty = await self._load_penalty(base)
            if penalty.is_blocked(now):
                self.audit_log.debug("rate_limit_blocked", f"Blocked request for action: {action}", {
                    "action": action,
                    "identifier_hash": identifier[:16],
                    "blocked_until": penalty.blocked_until,
                })
                return False

            count = await self.store.atomic_increment(f"{base}:count", rule.window + WINDOW_BOUNDARY)
            if count == 1:
                await self.store.set(f"{base}:window", repr(now).encode(), rule.window + 1)

            if count <= rule.limit:
                return True

            await self._start_block(action, identifier, base, rule, penalty, now)
            return False

        except StoreUnavailableError as e:
            self._report_store_failure("check", action, e)
            return self.settings.RATE_LIMIT_FAIL_OPEN

    async def enforce(self, action: str, config: Optional[RuleConfig], identity: RequestIdentity) -> None:
        """
        Like check(), but raises RateLimitExceededError carrying a retry hint.

        `config` defaults to the configured limits of the action.
        """
        rule = RateLimitRule.from_config(config) if config is not None else await self.action_rule(action)
        if await self.check(action, rule, identity):
            return

        stats = await self.get_stats(action, identity, rule)
        retry_after = stats.retry_after(self._clock()) or rule.window
        raise RateLimitExceededError(
            get_rate_limit_message(action),
            action=action,
            retry_after=retry_after,
            limit=rule.limit,
        )

    async def _start_block(
        self,
        action: str,
        identifier: str,
        base: str,
        rule: RateLimitRule,
        penalty: PenaltyState,
        now: float,
    ) -> None:
        decay = self.settings.RATE_LIMIT_VIOLATION_DECAY
        violations = penalty.effective_violations(now, decay)
        duration = self.block_duration(violations)

        updated = PenaltyState(
            blocked_until=now + duration,
            violation_count=violations + 1,
            last_violation_at=now,
        )
        await self.store.set(f"{base}:penalty", updated.model_dump_json().encode(), max(decay, duration))

        # The denied request is not counted: pin the counter at the limit and let
        # the window lapse together with the block.
        await self.store.set(f"{base}:count", str(rule.limit).encode(), duration)
        window_start = await self.store.get(f"{base}:window")
        await self.store.set(f"{base}:window", window_start or repr(now).encode(), duration)

        self.audit_log.warning("rate_limit_exceeded", f"Rate limit exceeded for action: {action}", {
            "action": action,
            "identifier_hash": identifier[:16],
            "limit": rule.limit,
            "window": rule.window,
            "block_duration": duration,
            "total_violations": updated.violation_count,
        })

    async def _load_penalty(self, base: str) -> PenaltyState:
        raw = await self.store.get(f"{base}:penalty")
        if not raw:
            return PenaltyState()
        try:
            return PenaltyState.model_validate_json(raw)
        except PydanticValidationError:
            logger.warning("Discarding unreadable penalty record")
            return PenaltyState()

    async def load_window(self, action: str, identity: RequestIdentity, rule: RateLimitRule) -> RateWindow:
        """Read the current window without changing it"""
        identifier = self._identifier(identity)
        base = self._key_base(action, identifier)

        raw_count = await self.store.get(f"{base}:count")
        raw_start = await self.store.get(f"{base}:window")
        penalty = await self._load_penalty(base)

        now = self._clock()
        blocked_until = penalty.blocked_until if penalty.is_blocked(now) else None

        return RateWindow(
            action=action,
            identifier=identifier,
            count=max(0, int(raw_count)) if raw_count else 0,
            window_start=float(raw_start) if raw_start else None,
            window_length=rule.window,
            blocked_until=blocked_until,
            violation_count=penalty.effective_violations(now, self.settings.RATE_LIMIT_VIOLATION_DECAY),
        )

    async def get_stats(
        self,
        action: str,
        identity: RequestIdentity,
        config: Optional[RuleConfig] = None,
    ) -> RateLimitStats:
        """
        Read-only view of the caller's window for an action.

        `config` defaults to the configured limits of the action.
        """
        rule = RateLimitRule.from_config(config) if config is not None else await self.action_rule(action)
        now = self._clock()

        try:
            window = await self.load_window(action, identity, rule)
        except StoreUnavailableError as e:
            self._report_store_failure("get_stats", action, e)
            window = RateWindow(action=action, identifier="", window_length=rule.window)

        if window.blocked_until is not None:
            reset_at = window.blocked_until
        elif window.window_start is not None:
            reset_at = window.window_start + rule.window
        else:
            reset_at = None

        return RateLimitStats(
            action=action,
            current_count=window.count,
            limit=rule.limit,
            remaining=max(0, rule.limit - window.count),
            is_blocked=window.blocked_until is not None,
            blocked_until=window.blocked_until,
            violations=window.violation_count,
            window_start=window.window_start,
            reset_at=reset_at,
            state=window.state(now, rule.limit),
        )

    async def reset(self, action: str, identity: RequestIdentity) -> None:
        """Clear window, block and violations of the caller (admin/testing)"""
        identifier = self._identifier(identity)
        base = self._key_base(action, identifier)

        try:
            for suffix in ("count", "window", "penalty"):
                await self.store.delete(f"{base}:{suffix}")
        except StoreUnavailableError as e:
            self._report_store_failure("reset", action, e)
            return

        self.audit_log.info("rate_limit_reset", f"Rate limit reset for action: {action}", {
            "action": action,
            "identifier_hash": identifier[:16],
        })

    def _report_store_failure(self, operation: str, action: str, error: StoreUnavailableError) -> None:
        self.audit_log.error("store_unavailable", f"Rate limiter could not reach the store during {operation}", {
            "action": action,
            "operation": error.operation or operation,
            "store": error.service_name,
            "fail_open": self.settings.RATE_LIMIT_FAIL_OPEN,
        })
