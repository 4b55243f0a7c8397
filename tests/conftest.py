"""Shared fixtures: in-memory SQLite store, recording notifier, fake user directory."""

from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field

os.environ.setdefault("JWT_SECRET_KEY", "test-secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import pytest  # noqa: E402
from sqlalchemy import select  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.models import group, group_member, notification  # noqa: E402,F401
from app.models.base import Base  # noqa: E402
from app.models.group_member import GroupMember  # noqa: E402
from app.models.notification import NotificationType  # noqa: E402
from app.services.group_service import GroupService  # noqa: E402
from app.services.membership_service import MembershipService  # noqa: E402


@dataclass
class SentNotification:
    user_id: uuid.UUID
    type: NotificationType
    title: str
    message: str
    metadata: dict = field(default_factory=dict)


class RecordingNotifier:
    def __init__(self):
        self.sent: list[SentNotification] = []

    def notify(self, user_id, type, title, message, metadata=None):
        self.sent.append(SentNotification(user_id, type, title, message, dict(metadata or {})))

    def of_type(self, type: NotificationType) -> list[SentNotification]:
        return [n for n in self.sent if n.type == type]

    def recipients(self, type: NotificationType) -> set[uuid.UUID]:
        return {n.user_id for n in self.of_type(type)}


class FakeDirectory:
    def __init__(self):
        self.names: dict[uuid.UUID, str] = {}

    async def get_display_name(self, user_id: uuid.UUID) -> str:
        return self.names.get(user_id, f"user-{str(user_id)[:8]}")


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
def memberships(notifier, directory):
    return MembershipService(notifier, directory)


@pytest.fixture
def groups(memberships):
    return GroupService(memberships)


@pytest.fixture
def owner():
    return uuid.uuid4()


@pytest.fixture
def alice():
    return uuid.uuid4()


@pytest.fixture
def bob():
    return uuid.uuid4()


@pytest.fixture
def carol():
    return uuid.uuid4()


async def membership_rows(db: AsyncSession, group_id: uuid.UUID) -> dict[uuid.UUID, tuple[str, str, bool]]:
    """Current rows read straight from the table, bypassing the identity map."""
    result = await db.execute(
        select(
            GroupMember.user_id,
            GroupMember.role,
            GroupMember.status,
            GroupMember.can_manage_members,
        ).where(GroupMember.group_id == group_id)
    )
    return {user_id: (role, status, can_manage) for user_id, role, status, can_manage in result.all()}
