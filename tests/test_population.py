from __future__ import annotations

import json
from pathlib import Path

import pytest

from springcache.common.errors import BadGateway, InternalServerError, InvalidUpstreamResponse, NotFound
from springcache.common.schemas import AssetDescriptor
from springcache.origin.population import (
    POPULATIONS,
    PopulationService,
    build_population_service,
    file_digest,
    staging_area,
)

from conftest import ABERDEEN_BYTES, ABERDEEN_MD5, MIRROR_URL, REGIONS, FailingStore, aberdeen_descriptor, read_all


ABERDEEN_KEY = "from_name/map/Aberdeen3v3v3"


@pytest.mark.asyncio
async def test_populate_commits_every_region_then_index(population: PopulationService, stores, index, upstream) -> None:
    assert await population.populate("map", "Aberdeen3v3v3") is True

    for store in stores:
        stored = await store.get(ABERDEEN_MD5)
        assert stored is not None, store.name
        assert await read_all(stored.body) == ABERDEEN_BYTES

    record = json.loads(await index.get(ABERDEEN_KEY))
    assert record["md5"] == ABERDEEN_MD5
    assert record["tags"] == []
    assert record["mirrors"] == [f"file/{ABERDEEN_MD5}/aberdeen3v3v3.sd7"]
    assert record["size"] == len(ABERDEEN_BYTES)
    assert "description" not in record
    assert [str(request.url) for request in upstream.mirror_requests] == [MIRROR_URL]


@pytest.mark.asyncio
async def test_second_populate_makes_no_writes(population: PopulationService, index, upstream, tmp_path: Path) -> None:
    await population.populate("map", "Aberdeen3v3v3")
    committed = await index.get(ABERDEEN_KEY)
    skipped_before = POPULATIONS.value(outcome="skipped")

    assert await population.populate("map", "Aberdeen3v3v3") is False

    assert await index.get(ABERDEEN_KEY) == committed
    assert len(upstream.mirror_requests) == 1
    assert POPULATIONS.value(outcome="skipped") == skipped_before + 1


@pytest.mark.asyncio
async def test_failed_region_leaves_no_index_entry(population: PopulationService, index, tmp_path: Path) -> None:
    population.stores = [population.stores[0], FailingStore(REGIONS[1]), population.stores[2]]

    with pytest.raises(InternalServerError):
        await population.populate("map", "Aberdeen3v3v3")

    assert await index.get(ABERDEEN_KEY) is None
    assert not any((tmp_path / "staging").iterdir())


@pytest.mark.asyncio
async def test_retry_after_failure_commits(population: PopulationService, stores, index) -> None:
    population.stores = [stores[0], FailingStore(REGIONS[1])]
    with pytest.raises(InternalServerError):
        await population.populate("map", "Aberdeen3v3v3")

    population.stores = stores
    assert await population.populate("map", "Aberdeen3v3v3") is True
    assert await index.exists(ABERDEEN_KEY)


@pytest.mark.asyncio
async def test_digest_mismatch_is_rejected(population: PopulationService, index, upstream) -> None:
    upstream.files[MIRROR_URL] = b"truncated download"

    with pytest.raises(BadGateway, match="catalog digest"):
        await population.populate("map", "Aberdeen3v3v3")

    assert await index.get(ABERDEEN_KEY) is None


@pytest.mark.asyncio
async def test_digest_check_can_be_disabled(population: PopulationService, index, upstream) -> None:
    upstream.files[MIRROR_URL] = b"repacked archive"
    population.verify_mirror_digest = False

    assert await population.populate("map", "Aberdeen3v3v3") is True
    assert await index.exists(ABERDEEN_KEY)


@pytest.mark.asyncio
async def test_missing_mirror_is_bad_gateway(population: PopulationService, index, upstream) -> None:
    del upstream.files[MIRROR_URL]

    with pytest.raises(BadGateway, match="failed with 404"):
        await population.populate("map", "Aberdeen3v3v3")

    assert await index.get(ABERDEEN_KEY) is None


@pytest.mark.asyncio
async def test_asset_without_mirrors_is_bad_gateway(population: PopulationService, upstream) -> None:
    upstream.catalog[("map", "Aberdeen3v3v3")] = [aberdeen_descriptor(mirrors=[])]
    with pytest.raises(BadGateway, match="no mirrors"):
        await population.populate("map", "Aberdeen3v3v3")


@pytest.mark.asyncio
async def test_upstream_contract_violation_never_caches(population: PopulationService, index, upstream) -> None:
    upstream.catalog[("map", "Aberdeen3v3v3")] = [aberdeen_descriptor(), aberdeen_descriptor()]

    with pytest.raises(InvalidUpstreamResponse):
        await population.populate("map", "Aberdeen3v3v3")

    assert await index.get(ABERDEEN_KEY) is None
    assert upstream.mirror_requests == []


@pytest.mark.asyncio
async def test_unknown_asset_is_not_found(population: PopulationService) -> None:
    with pytest.raises(NotFound):
        await population.populate("map", "Nowhere")


@pytest.mark.asyncio
async def test_commit_returns_index_record(population: PopulationService, tmp_path: Path) -> None:
    staged = tmp_path / "staged.sd7"
    staged.write_bytes(ABERDEEN_BYTES)
    asset = AssetDescriptor.model_validate(aberdeen_descriptor())

    record = await population.commit(asset, staged)

    assert record.key == ABERDEEN_KEY
    assert record.mirrors == [f"file/{ABERDEEN_MD5}/aberdeen3v3v3.sd7"]


def test_staging_area_is_removed_on_error(tmp_path: Path) -> None:
    with pytest.raises(RuntimeError):
        with staging_area(tmp_path / "staging") as staging:
            (staging / "partial.bin").write_bytes(b"x")
            raise RuntimeError("interrupted")
    assert list((tmp_path / "staging").iterdir()) == []


def test_file_digest(tmp_path: Path) -> None:
    path = tmp_path / "asset.sd7"
    path.write_bytes(ABERDEEN_BYTES)
    assert file_digest(path) == ABERDEEN_MD5
    assert len(file_digest(path, "sha256")) == 64


@pytest.mark.asyncio
async def test_mirror_check_uses_catalog_md5_whatever_upload_digest(origin_settings, http_client, index) -> None:
    settings = origin_settings.model_copy(update={"digest_algorithm": "sha256"})
    service = build_population_service(settings, http_client)

    assert await service.populate("map", "Aberdeen3v3v3") is True
    record = json.loads(await index.get(ABERDEEN_KEY))
    assert record["md5"] == ABERDEEN_MD5
