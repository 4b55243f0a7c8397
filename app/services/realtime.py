import logging
import uuid
from datetime import datetime

from supabase import AsyncClient, acreate_client

from app.core.config import settings

logger = logging.getLogger(__name__)


def _serialize(obj):
    if isinstance(obj, uuid.UUID):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, dict):
        return _make_serializable(obj)
    return obj


def _make_serializable(data: dict) -> dict:
    return {k: _serialize(v) for k, v in data.items()}


class RealtimeService:
    """Broadcasts notification events on Supabase Realtime per-user channels."""

    def __init__(self, project_url: str | None = None, service_role_key: str | None = None):
        self._project_url = project_url or settings.SUPABASE_PROJECT_URL
        self._service_role_key = service_role_key or settings.SUPABASE_SERVICE_ROLE_KEY
        self._client: AsyncClient | None = None

    async def _get_client(self) -> AsyncClient:
        if self._client is None:
            self._client = await acreate_client(self._project_url, self._service_role_key)
        return self._client

    @staticmethod
    def _get_channel_name(user_id: uuid.UUID) -> str:
        return f"notifications:user:{user_id}"

    async def send_to_user(self, user_id: uuid.UUID, event_type: str, data: dict) -> None:
        client = await self._get_client()
        channel = client.channel(self._get_channel_name(user_id))
        try:
            await channel.subscribe()
            await channel.send_broadcast(event_type, _make_serializable(data))
        finally:
            await client.remove_channel(channel)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.remove_all_channels()
            self._client = None
