"""Client for the upstream springfiles catalog."""

from __future__ import annotations

import json

import httpx
import structlog
from pydantic import ValidationError

from .errors import BadGateway, InvalidUpstreamResponse, NotFound
from .schemas import AssetDescriptor


LOGGER = structlog.get_logger("springcache.catalog")


class UpstreamCatalogClient:
    """Resolves ``(category, springname)`` to exactly one authoritative descriptor.

    The catalog search is looser than an exact lookup, so the client insists
    on a single result whose springname matches the query byte for byte.
    Failures are raised once; retry policy belongs to the caller.
    """

    def __init__(self, http_client: httpx.AsyncClient, base_url: str) -> None:
        self._client = http_client
        self._base_url = base_url

    def search_url(self, category: str, springname: str) -> str:
        return str(httpx.URL(self._base_url, params={"category": category, "springname": springname}))

    async def resolve(self, category: str, springname: str) -> AssetDescriptor:
        try:
            response = await self._client.get(
                self._base_url,
                params={"category": category, "springname": springname},
            )
        except httpx.HTTPError as exc:
            LOGGER.warning("upstream_request_failed", category=category, springname=springname, error=str(exc))
            raise BadGateway("Fetch from springfiles failed") from exc

        if not response.is_success:
            raise BadGateway(f"Fetch from springfiles failed with {response.status_code}")
        try:
            results = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise BadGateway("Springfiles didn't return correct json") from exc
        if not isinstance(results, list):
            raise BadGateway("Springfiles didn't return correct json")

        if len(results) == 0:
            raise NotFound("File not found in springfiles")
        if len(results) > 1:
            raise InvalidUpstreamResponse("Query returned multiple results from springfiles")
        try:
            asset = AssetDescriptor.model_validate(results[0])
        except ValidationError as exc:
            raise BadGateway("Springfiles returned an incomplete asset") from exc
        if asset.springname != springname:
            raise InvalidUpstreamResponse("Non-deterministic springname requested")
        return asset
