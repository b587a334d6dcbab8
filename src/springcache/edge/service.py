"""Read path: metadata lookups and content reads."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import httpx
import structlog
from opentelemetry import trace
from pydantic import ValidationError

from ..common.catalog import UpstreamCatalogClient
from ..common.delivery import Publisher, build_publisher
from ..common.errors import InternalServerError
from ..common.index import MetadataIndex, TTLCachedIndex, build_index
from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.observability import request_context
from ..common.routing import BucketRouter, GeoPoint
from ..common.schemas import AssetDescriptor, SyncRequest, cache_key
from ..common.settings import EdgeSettings
from ..common.storage import RegionalStore, StoredObject, build_stores
from .background import BackgroundRunner
from .response_cache import ResponseCache


LOGGER = structlog.get_logger("springcache.edge")
TRACER = trace.get_tracer("springcache.edge")

INDEX_LOOKUPS = GLOBAL_REGISTRY.register(Counter("springcache_edge_index_lookups_total", "Metadata index lookups by outcome"))
SYNC_TRIGGERS = GLOBAL_REGISTRY.register(
    Counter("springcache_edge_sync_triggers_total", "Population triggers by outcome")
)
CONTENT_READS = GLOBAL_REGISTRY.register(Counter("springcache_edge_content_reads_total", "Content reads by outcome"))


@dataclass
class EdgeContext:
    """Everything the edge needs, built once at startup."""

    settings: EdgeSettings
    catalog: UpstreamCatalogClient
    index: MetadataIndex
    stores: dict[str, RegionalStore]
    router: BucketRouter
    publisher: Publisher
    background: BackgroundRunner
    response_cache: Optional[ResponseCache] = None
    http_client: Optional[httpx.AsyncClient] = field(default=None, repr=False)

    async def aclose(self) -> None:
        await self.background.drain()
        await self.index.aclose()
        if self.http_client is not None:
            await self.http_client.aclose()


def build_edge_context(settings: EdgeSettings, transport: Optional[httpx.AsyncBaseTransport] = None) -> EdgeContext:
    http_client = httpx.AsyncClient(timeout=httpx.Timeout(settings.upstream_timeout_seconds), transport=transport)
    stores = build_stores(settings)
    return EdgeContext(
        settings=settings,
        catalog=UpstreamCatalogClient(http_client, settings.upstream_url),
        index=TTLCachedIndex(build_index(settings, http_client), settings.index_cache_ttl_seconds),
        stores={store.name: store for store in stores},
        router=BucketRouter(settings.regions, GeoPoint(settings.default_latitude, settings.default_longitude)),
        publisher=build_publisher(settings, http_client),
        background=BackgroundRunner(settings.background_grace_seconds),
        response_cache=ResponseCache(settings.response_cache_path) if settings.response_cache_enabled else None,
        http_client=http_client,
    )


class EdgeLookupService:
    def __init__(self, context: EdgeContext) -> None:
        self._ctx = context

    async def find_asset(self, category: str, springname: str, origin: str) -> list[AssetDescriptor]:
        """Serve from the index, or answer from upstream and schedule population.

        A miss never waits for population. Concurrent misses for the same key
        each publish a trigger; the origin's idempotency check absorbs them.
        """
        key = cache_key(category, springname)
        with TRACER.start_as_current_span("edge.find") as span, request_context(cache_key=key):
            cached = await self._ctx.index.get(key)
            if cached is not None:
                try:
                    asset = AssetDescriptor.from_json(cached)
                except ValidationError as exc:
                    LOGGER.error("index_record_invalid", cache_key=key)
                    raise InternalServerError("Cached record is unreadable") from exc
                INDEX_LOOKUPS.inc(outcome="hit")
                span.set_attribute("springcache.index_hit", True)
                return [asset.with_absolute_mirrors(origin)]

            INDEX_LOOKUPS.inc(outcome="miss")
            span.set_attribute("springcache.index_hit", False)
            asset = await self._ctx.catalog.resolve(category, springname)
            self._ctx.background.spawn(
                self._trigger_population(SyncRequest(category=category, springname=springname)),
                name=f"sync:{key}",
            )
            return [asset]

    async def _trigger_population(self, request: SyncRequest) -> None:
        try:
            message_id = await self._ctx.publisher.publish_sync_request(request)
        except Exception as exc:  # noqa: BLE001 - the reader already has its answer
            SYNC_TRIGGERS.inc(outcome="failed")
            LOGGER.warning(
                "sync_request_publish_failed",
                category=request.category,
                springname=request.springname,
                error=str(exc),
            )
            return
        SYNC_TRIGGERS.inc(outcome="published")
        LOGGER.info("sync_request_published", message_id=message_id, springname=request.springname)

    async def read_content(
        self,
        content_hash: str,
        origin: Optional[GeoPoint],
        override: Optional[str] = None,
        *,
        use_response_cache: bool = True,
    ) -> tuple[Optional[StoredObject], str]:
        """Return the object and where it came from (``"cache"`` or a region name)."""
        response_cache = self._ctx.response_cache if use_response_cache else None
        with TRACER.start_as_current_span("edge.file") as span, request_context(content_hash=content_hash):
            if response_cache is not None:
                cached = await response_cache.get(content_hash)
                if cached is not None:
                    CONTENT_READS.inc(outcome="response_cache_hit")
                    span.set_attribute("springcache.source", "cache")
                    return cached, "cache"

            region = self._ctx.router.select(origin, override)
            with request_context(region=region.name):
                stored = await self._ctx.stores[region.name].get(content_hash)
                if stored is None:
                    CONTENT_READS.inc(outcome="miss")
                    LOGGER.info("content_miss")
                    return None, region.name

            CONTENT_READS.inc(outcome="hit")
            if self._ctx.response_cache is not None:
                stored.body = self._ctx.response_cache.tee(content_hash, stored.body, stored.size)
            return stored, region.name
