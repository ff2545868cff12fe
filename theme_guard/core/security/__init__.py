"""
Security module.

Centralizes the visitor-facing security functionality:
- Cache-backed sessions with protected keys
- Anti-forgery tokens

Rate limiting lives in theme_guard.services.rate_limiter; both are wired
into requests by theme_guard.middleware.guard_middleware.
"""

from .secure_session import (
    SecureSession,
    SessionManager,
)

__all__ = [
    'SecureSession',
    'SessionManager',
]
