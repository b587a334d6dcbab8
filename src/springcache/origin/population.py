"""Write path: idempotent population of the regional stores and the metadata index."""

from __future__ import annotations

import hashlib
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

import httpx
import structlog
from opentelemetry import trace

from ..common.catalog import UpstreamCatalogClient
from ..common.errors import BadGateway
from ..common.index import MetadataIndex, build_index
from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.observability import request_context
from ..common.schemas import AssetDescriptor
from ..common.settings import OriginSettings
from ..common.storage import RegionalStore, build_stores, upload_to_all


# The catalog publishes md5 digests, whatever digest new uploads are keyed by.
CATALOG_DIGEST = "md5"

LOGGER = structlog.get_logger("springcache.origin")
TRACER = trace.get_tracer("springcache.origin")

POPULATIONS = GLOBAL_REGISTRY.register(Counter("springcache_origin_populations_total", "Population runs by outcome"))
BYTES_UPLOADED = GLOBAL_REGISTRY.register(
    Counter("springcache_origin_bytes_uploaded_total", "Bytes written across all regional stores")
)


@contextmanager
def staging_area(parent: Optional[Path] = None) -> Iterator[Path]:
    """Private scratch directory, removed whatever happens inside the block."""
    if parent is not None:
        Path(parent).mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix="asset-", dir=parent))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


def file_digest(path: Path, algorithm: str = "md5") -> str:
    hasher = hashlib.new(algorithm)
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            hasher.update(chunk)
    return hasher.hexdigest().lower()


@dataclass
class PopulationService:
    """Makes one asset visible in the cache, at most once.

    The metadata index entry is the commit record: it is written only after
    every regional store holds the bytes, and its presence is the sole
    de-duplication check for repeated deliveries.
    """

    catalog: UpstreamCatalogClient
    index: MetadataIndex
    stores: list[RegionalStore]
    http_client: httpx.AsyncClient
    staging_dir: Optional[Path] = None
    verify_mirror_digest: bool = True

    async def populate(self, category: str, springname: str) -> bool:
        """Cache ``(category, springname)``; False when it was already cached."""
        with TRACER.start_as_current_span("origin.populate") as span, request_context(
            category=category, springname=springname
        ):
            LOGGER.info("population_started")
            asset = await self.catalog.resolve(category, springname)
            if await self.already_cached(asset):
                span.set_attribute("springcache.skipped", True)
                return False
            if not asset.mirrors:
                raise BadGateway("Springfiles returned no mirrors")

            with staging_area(self.staging_dir) as staging:
                staged = staging / f"asset{Path(asset.filename).suffix}"
                await self.fetch_mirror(asset, staged)
                await self.commit(asset, staged)
            return True

    async def already_cached(self, asset: AssetDescriptor) -> bool:
        if await self.index.exists(asset.key):
            POPULATIONS.inc(outcome="skipped")
            LOGGER.info("population_skipped", cache_key=asset.key, reason="already_cached")
            return True
        return False

    async def fetch_mirror(self, asset: AssetDescriptor, destination: Path) -> None:
        """Stream the first mirror to ``destination``, checking the digest on the way."""
        url = asset.mirrors[0]
        hasher = hashlib.new(CATALOG_DIGEST)
        try:
            async with self.http_client.stream("GET", url) as response:
                if not response.is_success:
                    raise BadGateway(f"Fetch from springfiles failed with {response.status_code}")
                with destination.open("wb") as handle:
                    async for chunk in response.aiter_bytes():
                        handle.write(chunk)
                        hasher.update(chunk)
        except httpx.HTTPError as exc:
            raise BadGateway("Fetch from springfiles mirror failed") from exc

        digest = hasher.hexdigest().lower()
        if self.verify_mirror_digest and digest != asset.content_hash.lower():
            LOGGER.warning("mirror_digest_mismatch", url=url, expected=asset.content_hash, actual=digest)
            raise BadGateway("Mirror content does not match the catalog digest")

    async def commit(self, asset: AssetDescriptor, staged: Path) -> AssetDescriptor:
        """Upload to every region, then write the index record."""
        record = asset.index_record()
        size = staged.stat().st_size
        with TRACER.start_as_current_span(
            "origin.upload_regions",
            attributes={"springcache.content_hash": record.content_hash, "springcache.regions": len(self.stores)},
        ):
            try:
                await upload_to_all(self.stores, record.content_hash, staged)
            except Exception:
                POPULATIONS.inc(outcome="failed")
                raise
        BYTES_UPLOADED.inc(size * len(self.stores))
        await self.index.put(record.key, record.to_json())
        POPULATIONS.inc(outcome="committed")
        LOGGER.info(
            "population_committed",
            cache_key=record.key,
            content_hash=record.content_hash,
            bytes=size,
            regions=[store.name for store in self.stores],
        )
        return record


def build_population_service(settings: OriginSettings, http_client: httpx.AsyncClient) -> PopulationService:
    return PopulationService(
        catalog=UpstreamCatalogClient(http_client, settings.upstream_url),
        index=build_index(settings, http_client),
        stores=build_stores(settings),
        http_client=http_client,
        staging_dir=settings.staging_dir,
        verify_mirror_digest=settings.verify_mirror_digest,
    )
