# tests/conftest.py
"""
Shared fixtures: a controllable clock, an in-memory store and an audit log
writing into the test's temporary directory.
"""

import pytest

from theme_guard.core.config import Settings
from theme_guard.core.identity import RequestIdentity
from theme_guard.core.security import SessionManager
from theme_guard.services.audit_log import AuditLog
from theme_guard.services.kv_store import InMemoryKVStore
from theme_guard.services.rate_limiter import RateLimiter


class FakeClock:
    """Callable time source that only moves when told to"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "AUDIT_LOG_DIR": str(tmp_path / "logs"),
        "AUDIT_LOG_MIN_LEVEL": "DEBUG",
        "IDENTITY_SALT": "test-salt",
        "REDIS_URL": None,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings_factory(tmp_path):
    """Settings with overrides, for tests that need a different policy"""
    def factory(**overrides):
        return make_settings(tmp_path, **overrides)
    return factory


@pytest.fixture
def settings(settings_factory):
    return settings_factory()


@pytest.fixture
def store(clock):
    return InMemoryKVStore(clock=clock)


@pytest.fixture
def audit_log(settings, clock):
    log = AuditLog(settings, clock=clock)
    yield log
    log.close()


@pytest.fixture
def rate_limiter(store, audit_log, settings, clock):
    return RateLimiter(store, audit_log, settings, clock=clock)


@pytest.fixture
def session_manager(store, audit_log, settings, clock):
    return SessionManager(store, audit_log, settings, clock=clock)


@pytest.fixture
def identity():
    return RequestIdentity(address_hash="a" * 64)


@pytest.fixture
def other_identity():
    return RequestIdentity(address_hash="b" * 64)
