"""
MODULE OVERVIEW:
The pull channel: one-shot REST requests for snapshots and commands.

WHAT IS HAPPENING HERE:
We use HTTPX for plain request/response calls. Nothing in here retries;
the caller decides. Collection endpoints answer either with a bare JSON
array or with an object wrapping the array under a named field, so each
call names the field it expects. HTTP and network failures become
TransportError, bodies of the wrong shape become DecodeError.
"""
from typing import Any, Callable

import httpx
from loguru import logger

from mycelial_sync.shared.errors import DecodeError, TransportError


def extract_items(data: Any, field: str | None = None) -> list:
    """Pull the entity array out of a bare-array or wrapped-array body."""
    if isinstance(data, list):
        return data
    if field and isinstance(data, dict) and isinstance(data.get(field), list):
        return data[field]
    raise DecodeError(
        "response is neither an array nor an object holding one",
        field=field,
        kind=type(data).__name__,
    )


class SnapshotLoader:
    def __init__(
        self,
        base_url: str,
        timeout_s: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout_s)

    async def aclose(self) -> None:
        await self.client.aclose()

    def url_for(self, endpoint: str) -> str:
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    async def _request(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        url = self.url_for(endpoint)
        try:
            response = await self.client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"{method} {url} returned {e.response.status_code}",
                status_code=e.response.status_code,
                cause=e,
            )
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {url} failed", cause=e)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise DecodeError(f"{method} {url} returned a non-JSON body", cause=e)

    async def fetch_collection(
        self,
        endpoint: str,
        field: str | None = None,
        parse: Callable[[dict], Any] | None = None,
    ) -> list:
        data = await self._request("GET", endpoint)
        items = extract_items(data, field)
        if parse is None:
            return items

        entities = []
        for item in items:
            entity = parse(item) if isinstance(item, dict) else None
            if entity is None:
                logger.warning(f"endpoint={endpoint} event=snapshot_item_dropped item={str(item)[:60]}")
                continue
            entities.append(entity)
        logger.debug(f"endpoint={endpoint} event=snapshot items={len(items)} kept={len(entities)}")
        return entities

    async def fetch_document(self, endpoint: str, field: str | None = None) -> dict:
        data = await self._request("GET", endpoint)
        if not isinstance(data, dict):
            raise DecodeError(f"GET {endpoint} did not return an object", kind=type(data).__name__)
        if field and isinstance(data.get(field), dict):
            return data[field]
        return data

    async def post(self, endpoint: str, payload: Any = None) -> Any:
        if payload is None:
            return await self._request("POST", endpoint)
        return await self._request("POST", endpoint, json=payload)
