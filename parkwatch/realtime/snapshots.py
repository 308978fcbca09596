import logging
from typing import Any, Dict, Optional

import httpx

from parkwatch.core.config import settings
from parkwatch.core.errors import TransportError

logger = logging.getLogger(__name__)


class SnapshotClient:
    """HTTP client for the authoritative snapshot endpoints polled by the reconciler."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=base_url or settings.PUBLIC_BASE_URL, headers=headers, timeout=timeout
        )
        if client is not None and token:
            self.client.headers.update(headers)

    async def _get(self, path: str, **params: Any) -> Dict[str, Any]:
        params = {k: v for k, v in params.items() if v is not None}
        try:
            response = await self.client.get(f"/api/v1{path}", params=params)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransportError(f"Snapshot request {path} failed: {e}") from e
        return response.json()

    async def admin(self) -> Dict[str, Any]:
        return await self._get("/snapshots/admin")

    async def appeals(self, status: Optional[str] = None) -> Dict[str, Any]:
        return await self._get("/snapshots/appeals", status=status)

    async def owner(self) -> Dict[str, Any]:
        return await self._get("/snapshots/owner")

    async def notifications(self, page: int = 1, limit: int = 20, unread_only: bool = False) -> Dict[str, Any]:
        return await self._get("/notifications", page=page, limit=limit, unread_only=str(unread_only).lower())

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "SnapshotClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
