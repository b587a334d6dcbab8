from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Optional

import httpx
import pytest
import pytest_asyncio

from springcache.common.catalog import UpstreamCatalogClient
from springcache.common.delivery import Publisher
from springcache.common.errors import InternalServerError
from springcache.common.index import SqlMetadataIndex
from springcache.common.settings import EdgeSettings, OriginSettings, RegionConfig
from springcache.common.storage import AbortSignal, LocalRegionalStore, RegionalStore
from springcache.origin.population import PopulationService


UPSTREAM_URL = "https://springfiles.test/json.php"
ORIGIN_PUSH_URL = "https://origin.test/cache"
MIRROR_URL = "https://mirror.test/files/maps/aberdeen3v3v3.sd7"

REGIONS = [
    RegionConfig(name="eu", bucket="springcache-eu", latitude=50.11, longitude=8.68),
    RegionConfig(name="us", bucket="springcache-us", latitude=39.04, longitude=-77.49),
    RegionConfig(name="ap", bucket="springcache-ap", latitude=1.35, longitude=103.82),
]

ABERDEEN_BYTES = b"SMF\x00aberdeen-3v3v3-heightmap" * 512
ABERDEEN_MD5 = hashlib.md5(ABERDEEN_BYTES).hexdigest()


def aberdeen_descriptor(**overrides) -> dict:
    payload = {
        "category": "map",
        "springname": "Aberdeen3v3v3",
        "filename": "aberdeen3v3v3.sd7",
        "md5": ABERDEEN_MD5.upper(),
        "size": len(ABERDEEN_BYTES),
        "timestamp": "2021-05-02T11:04:51",
        "path": "maps",
        "tags": ["3v3v3", "ffa"],
        "mirrors": [MIRROR_URL, "https://backup.test/maps/aberdeen3v3v3.sd7"],
        "name": "Aberdeen3v3v3",
        "description": "Three-way free for all on a frozen lake",
    }
    payload.update(overrides)
    return payload


class FakeUpstream:
    """Catalog, mirrors and origin push endpoint behind one MockTransport."""

    def __init__(self) -> None:
        self.catalog: dict[tuple[str, str], list[dict]] = {("map", "Aberdeen3v3v3"): [aberdeen_descriptor()]}
        self.files: dict[str, bytes] = {MIRROR_URL: ABERDEEN_BYTES}
        self.catalog_status = 200
        self.push_status = 200
        self.catalog_requests: list[httpx.Request] = []
        self.mirror_requests: list[httpx.Request] = []
        self.pushes: list[dict] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = request.url
        if url.host == "springfiles.test":
            self.catalog_requests.append(request)
            if self.catalog_status != 200:
                return httpx.Response(self.catalog_status, text="upstream unavailable")
            key = (url.params.get("category", ""), url.params.get("springname", ""))
            return httpx.Response(200, json=self.catalog.get(key, []))
        if url.host == "origin.test":
            self.pushes.append(json.loads(request.content))
            return httpx.Response(self.push_status, text="ok")
        self.mirror_requests.append(request)
        body = self.files.get(str(url))
        if body is None:
            return httpx.Response(404)
        return httpx.Response(200, content=body)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class RecordingPublisher(Publisher):
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.published: list[tuple[str, dict[str, str]]] = []

    async def publish(self, data: str, attributes: dict[str, str]) -> str:
        if self.fail:
            raise RuntimeError("queue unavailable")
        self.published.append((data, attributes))
        return f"msg-{len(self.published)}"


class FailingStore(RegionalStore):
    """Region whose uploads always fail."""

    def __init__(self, region: RegionConfig) -> None:
        super().__init__(region)
        self.attempts = 0

    async def get(self, key: str):
        return None

    async def put(self, key: str, source: Path, signal: Optional[AbortSignal] = None) -> None:
        self.attempts += 1
        raise InternalServerError(f"Upload to region {self.name} failed")

    def status(self) -> dict[str, object]:
        return {"region": self.name, "backend": "failing"}


async def read_all(body) -> bytes:
    return b"".join([chunk async for chunk in body])


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def index_url(tmp_path: Path) -> str:
    return f"sqlite+pysqlite:///{(tmp_path / 'index.db').as_posix()}"


@pytest.fixture
def edge_settings(tmp_path: Path, index_url: str) -> EdgeSettings:
    return EdgeSettings(
        regions=REGIONS,
        local_storage_path=tmp_path / "regions",
        index_database_url=index_url,
        upstream_url=UPSTREAM_URL,
        origin_push_url=ORIGIN_PUSH_URL,
        response_cache_path=tmp_path / "response-cache",
        background_grace_seconds=5.0,
    )


@pytest.fixture
def origin_settings(tmp_path: Path, index_url: str) -> OriginSettings:
    return OriginSettings(
        regions=REGIONS,
        local_storage_path=tmp_path / "regions",
        index_database_url=index_url,
        upstream_url=UPSTREAM_URL,
        staging_dir=tmp_path / "staging",
    )


@pytest.fixture
def index(index_url: str) -> SqlMetadataIndex:
    return SqlMetadataIndex(index_url)


@pytest.fixture
def stores(tmp_path: Path) -> list[RegionalStore]:
    return [LocalRegionalStore(region, tmp_path / "regions") for region in REGIONS]


@pytest_asyncio.fixture
async def http_client(upstream: FakeUpstream):
    client = httpx.AsyncClient(transport=upstream.transport())
    try:
        yield client
    finally:
        await client.aclose()


@pytest.fixture
def population(http_client, index, stores, tmp_path: Path) -> PopulationService:
    return PopulationService(
        catalog=UpstreamCatalogClient(http_client, UPSTREAM_URL),
        index=index,
        stores=stores,
        http_client=http_client,
        staging_dir=tmp_path / "staging",
    )
