"""
Rate limiting configuration for the public theme endpoints
"""

from typing import Any, Dict, Mapping, Optional

from theme_guard.core.config import Settings
from theme_guard.core.exceptions import config_error
from theme_guard.models.rate_window import RateLimitRule

# Limits per action (requests / window seconds)
ACTION_LIMITS: Dict[str, RateLimitRule] = {
    "search": RateLimitRule(limit=30, window=60),          # instant search, frequent by nature
    "pagination": RateLimitRule(limit=15, window=60),      # "load more" posts
    "share_tracking": RateLimitRule(limit=10, window=60),  # share button pings
    "post_view": RateLimitRule(limit=60, window=60),       # view counter
    "session_create": RateLimitRule(limit=20, window=3600),
}

# Custom error messages
RATE_LIMIT_MESSAGES = {
    "default": "Too many requests. Please wait a moment and try again.",
    "search": "Too many search requests. Please wait a moment before searching again.",
    "pagination": "Too many page requests. Please slow down a little.",
    "share_tracking": "Share tracking is temporarily limited.",
}


def get_rate_limit_message(action: str) -> str:
    """Get custom error message for a rate limited action"""
    return RATE_LIMIT_MESSAGES.get(action, RATE_LIMIT_MESSAGES["default"])


def get_action_rule(action: str, settings: Optional[Settings] = None) -> RateLimitRule:
    """
    Configured rule of an action: the built-in limits (or the default rule for
    unknown actions), with RATE_LIMIT_ACTION_OVERRIDES merged on top.
    """
    settings = settings or Settings()
    rule = ACTION_LIMITS.get(action)
    if rule is None:
        rule = RateLimitRule(limit=settings.RATE_LIMIT_DEFAULT_LIMIT, window=settings.RATE_LIMIT_DEFAULT_WINDOW)
    override = settings.RATE_LIMIT_ACTION_OVERRIDES.get(action)
    if override:
        rule = merge_rule(rule, override)
    return rule


def merge_rule(rule: RateLimitRule, override: Mapping[str, Any]) -> RateLimitRule:
    """
    Apply a partial override such as {"limit": 50} to a rule.

    Raises:
        ConfigurationError: If the override names no limit or window, or the result is invalid
    """
    if not isinstance(override, Mapping):
        raise config_error(f"Unsupported rate limit override type: {type(override).__name__}", "rate_limiter")
    values = {name: override[name] for name in ("limit", "window") if name in override}
    if not values:
        raise config_error(f"Rate limit override needs 'limit' or 'window', got {dict(override)!r}", "rate_limiter")
    return RateLimitRule.from_config({**rule.model_dump(), **values})
