"""
Shared fixtures for server tests.

Each test that needs the store gets its own temporary SQLite database
(aiosqlite) with the full schema; the API fixture routes the app's session,
clock and delivery dependencies to it. Redis is patched out.
"""

import os
import tempfile
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

# Settings are read once at import time, so configure them before importing app.*
_db_fd, _DEFAULT_DB_PATH = tempfile.mkstemp(suffix=".db")
os.close(_db_fd)
os.environ.setdefault("ATOM_DATABASE_URL", f"sqlite+aiosqlite:///{_DEFAULT_DB_PATH}")
os.environ.setdefault("ATOM_SECRET_KEY", "test-secret-key-with-enough-length-for-hs256")
os.environ.setdefault("ATOM_SCHEDULER_TOKEN", "test-scheduler-token")
os.environ.setdefault("ATOM_MAIL_API_KEY", "")
os.environ.setdefault("ATOM_LOG_FORMAT", "text")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

import app.models  # noqa: F401
from app.core.auth import create_session_token, hash_password
from app.core.clock import FixedClock, get_clock
from app.core.database import get_session
from app.core.delivery import DeliveryResult, get_delivery_channel
from app.main import app as fastapi_app
from app.models.profile import Profile

SCHEDULER_TOKEN = os.environ["ATOM_SCHEDULER_TOKEN"]
NOW = datetime(2024, 3, 10, 9, 0, tzinfo=timezone.utc)


class RecordingChannel:
    """Delivery channel double that records what would have been sent."""

    def __init__(self, fail_with: str | None = None):
        self.fail_with = fail_with
        self.sent: list[tuple[str, str, str]] = []

    async def send(self, to: str, subject: str, text: str) -> DeliveryResult:
        if self.fail_with:
            return DeliveryResult(ok=False, error=self.fail_with)
        self.sent.append((to, subject, text))
        return DeliveryResult(ok=True, provider_id=f"msg_{len(self.sent)}")

    async def close(self) -> None:
        pass


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'atom.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory
    await engine.dispose()


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def make_profile(session_factory):
    """Factory: persist a profile and return it."""

    async def _make(
        role: str = "member",
        email: str | None = None,
        password: str | None = None,
        **fields,
    ) -> Profile:
        profile = Profile(
            role=role,
            email=email,
            password_hash=hash_password(password) if password else None,
            **fields,
        )
        async with session_factory() as s:
            s.add(profile)
            await s.commit()
        return profile

    return _make


def _bearer(profile: Profile) -> dict:
    token, _ = create_session_token(profile.id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers():
    """Bearer headers carrying a fresh session token for a profile."""
    return _bearer


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
async def client(session_factory, clock):
    """API client bound to the per-test database, fixed clock and no delivery provider."""

    async def _get_session():
        async with session_factory() as s:
            try:
                yield s
                await s.commit()
            except Exception:
                await s.rollback()
                raise

    fastapi_app.dependency_overrides[get_session] = _get_session
    fastapi_app.dependency_overrides[get_clock] = lambda: clock
    fastapi_app.dependency_overrides[get_delivery_channel] = lambda: None

    with patch("app.core.auth.is_session_revoked", new=AsyncMock(return_value=False)):
        async with AsyncClient(
            transport=ASGITransport(app=fastapi_app), base_url="https://test"
        ) as ac:
            yield ac

    fastapi_app.dependency_overrides.clear()
