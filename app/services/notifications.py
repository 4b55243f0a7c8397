"""Notification sink: durable per-user records plus a best-effort push.

Membership operations call ``notify`` after their own commit. ``notify``
only enqueues; a single worker task persists each notification in its own
session and then pushes it to every bound channel. Delivery failures are
logged and never reach the caller.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Protocol, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import NotificationNotFoundError
from app.models.notification import Notification, NotificationType

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def notify(
        self,
        user_id: uuid.UUID,
        type: NotificationType,
        title: str,
        message: str,
        metadata: dict | None = None,
    ) -> None: ...


class PushChannel(Protocol):
    async def send_to_user(self, user_id: uuid.UUID, event_type: str, data: dict) -> None: ...


@dataclass(frozen=True)
class OutgoingNotification:
    user_id: uuid.UUID
    type: NotificationType
    title: str
    message: str
    metadata: dict = field(default_factory=dict)


def _notification_to_dict(notification: Notification) -> dict:
    return {
        "id": notification.id,
        "user_id": notification.user_id,
        "type": notification.type,
        "title": notification.title,
        "message": notification.message,
        "metadata": notification.extra_data or {},
        "read": notification.read,
        "created_at": notification.created_at,
    }


async def create_notification(db: AsyncSession, item: OutgoingNotification) -> Notification:
    notification = Notification(
        user_id=item.user_id,
        type=item.type.value,
        title=item.title,
        message=item.message,
        extra_data={k: str(v) if isinstance(v, uuid.UUID) else v for k, v in item.metadata.items()},
        read=False,
    )
    db.add(notification)
    await db.commit()
    await db.refresh(notification)
    return notification


async def list_notifications(db: AsyncSession, user_id: uuid.UUID, unread_only: bool = False) -> list[Notification]:
    query = select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        query = query.where(Notification.read.is_(False))
    result = await db.execute(query.order_by(Notification.created_at.desc()))
    return list(result.scalars().all())


async def mark_as_read(db: AsyncSession, notification_id: uuid.UUID, user_id: uuid.UUID) -> None:
    result = await db.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.user_id == user_id)
        .values(read=True)
    )
    if result.rowcount == 0:
        await db.rollback()
        raise NotificationNotFoundError()
    await db.commit()


async def mark_all_as_read(db: AsyncSession, user_id: uuid.UUID) -> int:
    result = await db.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.read.is_(False))
        .values(read=True)
    )
    await db.commit()
    return result.rowcount


class NotificationDispatcher:
    """Queue-backed ``NotificationSink`` with an explicit start/stop lifecycle."""

    def __init__(self, session_factory: async_sessionmaker, maxsize: int = 0):
        self._session_factory = session_factory
        self._queue: asyncio.Queue[OutgoingNotification] = asyncio.Queue(maxsize=maxsize)
        self._channels: tuple[PushChannel, ...] = ()
        self._worker: asyncio.Task | None = None
        self._accepting = False

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self, channels: Sequence[PushChannel] = ()) -> None:
        if self.running:
            return
        self._channels = tuple(channels)
        self._accepting = True
        self._worker = asyncio.create_task(self._run(), name="notification-dispatcher")
        logger.info(f"Notification dispatcher started with {len(self._channels)} push channel(s)")

    async def stop(self, timeout: float = 5.0) -> None:
        self._accepting = False
        if self._worker is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Dropping {self._queue.qsize()} undelivered notification(s) on shutdown")
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        self._channels = ()
        logger.info("Notification dispatcher stopped")

    async def drain(self) -> None:
        await self._queue.join()

    def notify(
        self,
        user_id: uuid.UUID,
        type: NotificationType,
        title: str,
        message: str,
        metadata: dict | None = None,
    ) -> None:
        if not self._accepting:
            logger.warning(f"Notification dispatcher not running, dropping {type.value} for {user_id}")
            return
        item = OutgoingNotification(user_id, type, title, message, dict(metadata or {}))
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.warning(f"Notification queue full, dropping {type.value} for {user_id}")

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self._deliver(item)
            except Exception:
                logger.exception(f"Failed to deliver {item.type.value} notification to {item.user_id}")
            finally:
                self._queue.task_done()

    async def _deliver(self, item: OutgoingNotification) -> None:
        async with self._session_factory() as db:
            notification = await create_notification(db, item)
        payload = _notification_to_dict(notification)

        for channel in self._channels:
            try:
                await channel.send_to_user(item.user_id, "notification", payload)
            except Exception:
                logger.warning(
                    f"Push via {type(channel).__name__} failed for user {item.user_id}",
                    exc_info=True,
                )
