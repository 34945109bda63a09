"""
tests/helpers.py -- Plain helpers shared by conftest.py and the test modules.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from core.config import Settings

TEST_SECRET = "test-secret-key-that-is-at-least-32-characters"
STRONG_PASSWORD = "Str0ng!Pass1"
OTHER_PASSWORD = "Tr0ub4dor&3xtra!"


class FakeClock:
    """Callable clock that only moves when a test tells it to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_settings(**overrides) -> Settings:
    values = {"debug": True, "secret_key": TEST_SECRET, "auth_backend": "memory", "email_backend": "memory"}
    values.update(overrides)
    return Settings(**values)
