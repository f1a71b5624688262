"""Shared fixtures for the mailsync test suite."""

from __future__ import annotations

from typing import List

import pytest
from cryptography.fernet import Fernet

from mailsync.core.config import Config
from mailsync.utils.retry import RetryPolicy

from tests.gmail_fixtures import gmail_service  # noqa: F401
from tests.jmap_fixtures import jmap_server  # noqa: F401


@pytest.fixture(autouse=True)
def encryption_key(monkeypatch: pytest.MonkeyPatch) -> str:
    """Provide a fresh Fernet key for every test."""
    key = Fernet.generate_key().decode()
    monkeypatch.setenv("EMAIL_ENCRYPTION_KEY", key)
    return key


@pytest.fixture
def config() -> Config:
    return Config(
        GOOGLE_OAUTH_CLIENT_ID="client-id",
        GOOGLE_OAUTH_CLIENT_SECRET="client-secret",
        GOOGLE_OAUTH_REDIRECT_URI="https://archive.example.com/oauth/callback",
        RETRY_MAX_ATTEMPTS=5,
        GMAIL_PAGE_SIZE=10,
        JMAP_BATCH_SIZE=2,
    )


class RecordingSleep:
    """Zero-delay replacement for ``asyncio.sleep`` that remembers delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleeps() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def retry_policy(sleeps: RecordingSleep) -> RetryPolicy:
    """Five attempts, no real waiting, deterministic jitter."""
    return RetryPolicy(max_attempts=5, base_delay=1.0, max_jitter=1.0, sleep=sleeps, rng=lambda: 0.5)
