"""Model name → Dify app key registry.

Each configured app key is exposed as a model named after its Dify app
(``GET /info``).  Explicit ``upstream.models`` entries are always present.
Refreshes swap the whole mapping under an ``asyncio.Lock``; lookups read the
current mapping without locking.
"""

from __future__ import annotations

import asyncio
import logging
import time

import httpx

from ..types import ModelNotFoundError

logger = logging.getLogger(__name__)

MISS_REFRESH_INTERVAL = 30.0  # seconds between refreshes triggered by unknown models


def _key_prefix(api_key: str) -> str:
    return api_key[:8] + "..."


class ModelRegistry:
    def __init__(
        self,
        client: httpx.AsyncClient,
        api_base: str,
        api_keys: list[str],
        static_models: dict[str, str] | None = None,
    ) -> None:
        self._client = client
        self._api_base = api_base.rstrip("/")
        self._api_keys = [k for k in api_keys if k.strip()]
        self._static = dict(static_models or {})
        self._names: dict[str, str] = dict(self._static)
        self._lock = asyncio.Lock()
        self._last_refresh: float | None = None

    async def fetch_app_name(self, api_key: str) -> str | None:
        """Name of the Dify app behind *api_key*, or None on failure."""
        try:
            resp = await self._client.get(
                f"{self._api_base}/info",
                headers={"Authorization": f"Bearer {api_key}"},
            )
        except httpx.HTTPError as e:
            logger.error("App info request failed for key %s: %s", _key_prefix(api_key), e)
            return None
        if resp.status_code != 200:
            logger.error(
                "App info request for key %s returned %d",
                _key_prefix(api_key), resp.status_code,
            )
            return None
        try:
            name = resp.json().get("name")
        except (ValueError, AttributeError):
            logger.error("App info for key %s is not a JSON object", _key_prefix(api_key))
            return None
        return name.strip() if isinstance(name, str) and name.strip() else None

    async def refresh(self) -> dict[str, str]:
        """Re-fetch app names for every key and swap in the new mapping."""
        async with self._lock:
            names = await asyncio.gather(*(self.fetch_app_name(k) for k in self._api_keys))
            mapping = dict(self._static)
            for api_key, name in zip(self._api_keys, names):
                if name:
                    mapping[name] = api_key
                    logger.info("Mapped model '%s' to key %s", name, _key_prefix(api_key))
            self._names = mapping
            self._last_refresh = time.monotonic()
            logger.info("Model registry refreshed: %d models", len(mapping))
            return dict(mapping)

    def known_models(self) -> list[str]:
        return sorted(self._names)

    async def resolve(self, model: str) -> str:
        """App key for *model*; refreshes once on a miss before failing."""
        api_key = self._names.get(model)
        if api_key:
            return api_key
        stale = (
            self._last_refresh is None
            or time.monotonic() - self._last_refresh >= MISS_REFRESH_INTERVAL
        )
        if stale and self._api_keys:
            await self.refresh()
            api_key = self._names.get(model)
            if api_key:
                return api_key
        logger.warning("No app key for model '%s'", model)
        raise ModelNotFoundError(model, self.known_models())

    def list_models(self) -> list[dict]:
        created = int(time.time())
        return [
            {"id": name, "object": "model", "created": created, "owned_by": "dify"}
            for name in self.known_models()
        ]
