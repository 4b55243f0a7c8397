import logging
import uuid

import httpx

from app.core.config import settings

logger = logging.getLogger(__name__)

UNKNOWN_USER_NAME = "A user"


class UserDirectory:
    """Resolves display names through the API gateway's user endpoint."""

    def __init__(self, base_url: str | None = None, service_token: str | None = None):
        self._base_url = base_url or settings.API_GATEWAY_URL
        self._service_token = service_token or settings.GATEWAY_SERVICE_TOKEN
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {}
            if self._service_token:
                headers["Authorization"] = f"Bearer {self._service_token}"
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=headers,
                timeout=10.0,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def fetch_user_info(self, user_id: uuid.UUID) -> dict | None:
        client = await self._get_client()
        try:
            response = await client.get(f"/api/v1/users/{user_id}")
            if response.status_code == 200:
                return response.json()
            logger.info(f"Gateway returned {response.status_code} for user {user_id}")
        except httpx.HTTPError as exc:
            logger.warning(f"Gateway lookup for user {user_id} failed: {exc}")
        return None

    async def get_display_name(self, user_id: uuid.UUID) -> str:
        info = await self.fetch_user_info(user_id)
        if not info:
            return UNKNOWN_USER_NAME
        return info.get("display_name") or info.get("username") or info.get("email") or UNKNOWN_USER_NAME
