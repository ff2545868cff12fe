# theme_guard/core/config.py
import os
import logging
from typing import Dict, List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

# Priority order for Redis URLs (managed hosting providers expose several)
REDIS_URL_ENV_VARS = [
    "REDIS_DIRECT_URI",
    "REDIS_DIRECT_URL",
    "REDIS_URL",
    "REDIS_TLS_URL",
]


class Settings(BaseSettings):
    """Application settings for the access-control layer"""
    APP_NAME: str = "theme-guard"
    DEBUG: bool = False

    # Origins allowed to call the AJAX endpoints from the browser
    CORS_ORIGINS: List[str] = Field(default_factory=list)

    # Shared TTL store
    REDIS_URL: Optional[str] = Field(default=None)
    REDIS_SOCKET_TIMEOUT: float = 2.0
    REDIS_KEY_PREFIX: str = "theme_guard:"

    # Caller identity
    IDENTITY_SALT: Optional[str] = Field(default=None)
    TRUST_PROXY_HEADERS: bool = True

    # Rate limiting
    RATE_LIMIT_DEFAULT_LIMIT: int = 10
    RATE_LIMIT_DEFAULT_WINDOW: int = 60
    RATE_LIMIT_BASE_BLOCK: int = 300          # first block: 5 minutes
    RATE_LIMIT_MAX_BLOCK: int = 86400         # never longer than a day
    RATE_LIMIT_VIOLATION_DECAY: int = 86400   # violations forgotten after a quiet day
    RATE_LIMIT_INCLUDE_USER_ID: bool = False
    RATE_LIMIT_FAIL_OPEN: bool = True
    # Per-action overrides merged over the built-in limits, e.g. {"search": {"limit": 50}}
    RATE_LIMIT_ACTION_OVERRIDES: Dict[str, Dict[str, int]] = Field(default_factory=dict)

    # Sessions
    SESSION_COOKIE_NAME: str = "theme_session"
    SESSION_COOKIE_PATH: str = "/"
    SESSION_COOKIE_DOMAIN: Optional[str] = None
    SESSION_TTL: int = 1440                   # 24 minutes, sliding
    SESSION_ABSOLUTE_TIMEOUT: int = 3600
    SESSION_BIND_CLIENT: bool = True

    # Audit log
    AUDIT_LOG_DIR: str = "logs"
    AUDIT_LOG_FILE: str = "security.log"
    AUDIT_LOG_MAX_BYTES: int = 10 * 1024 * 1024
    AUDIT_LOG_MIN_LEVEL: str = "INFO"
    AUDIT_LOG_RETENTION_DAYS: int = 30
    AUDIT_CONTEXT_MAX_LENGTH: int = 255
    AUDIT_PATH_PREFIXES: Dict[str, str] = Field(default_factory=dict)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore"
    }

    def resolve_redis_url(self) -> Optional[str]:
        """Explicit REDIS_URL wins, then the provider-specific variables."""
        if self.REDIS_URL:
            return self.REDIS_URL
        for var in REDIS_URL_ENV_VARS:
            if url := os.environ.get(var):
                logger.info(f"Using Redis URL from {var}")
                return url
        return None

    def path_prefixes(self) -> Dict[str, str]:
        """Absolute path prefixes that must never reach the audit log."""
        prefixes = dict(self.AUDIT_PATH_PREFIXES)
        prefixes.setdefault(os.path.abspath(self.AUDIT_LOG_DIR), "[LOG_DIR]")
        prefixes.setdefault(os.getcwd(), "[PROJECT_ROOT]")
        prefixes.setdefault(os.path.expanduser("~"), "[HOME]")
        return prefixes


def validate_required_settings(settings: Settings) -> List[str]:
    """Returns a list of warnings for settings that are unsafe in production"""
    warnings = []

    if not settings.IDENTITY_SALT:
        warnings.append("IDENTITY_SALT not set - caller hashes change on every restart")

    if not settings.resolve_redis_url():
        warnings.append("No Redis URL configured - falling back to a per-process in-memory store")

    if settings.RATE_LIMIT_BASE_BLOCK > settings.RATE_LIMIT_MAX_BLOCK:
        warnings.append("RATE_LIMIT_BASE_BLOCK exceeds RATE_LIMIT_MAX_BLOCK")

    for warning in warnings:
        logger.warning(warning)

    return warnings
