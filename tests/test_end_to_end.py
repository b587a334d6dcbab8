from __future__ import annotations

import hashlib

import pytest
from fastapi.testclient import TestClient

from springcache.common.errors import InternalServerError
from springcache.common.routing import BucketRouter, GeoPoint
from springcache.edge.app import create_app as create_edge_app
from springcache.edge.background import BackgroundRunner
from springcache.edge.service import EdgeContext, EdgeLookupService, build_edge_context
from springcache.origin.app import build_origin_context, create_app as create_origin_app

from conftest import ABERDEEN_BYTES, ABERDEEN_MD5, REGIONS, FailingStore, RecordingPublisher, read_all


QUERY = {"category": "map", "springname": "Aberdeen3v3v3"}


def test_aberdeen_miss_populates_and_serves_upstream_bytes(edge_settings, origin_settings, upstream) -> None:
    with TestClient(create_edge_app(context=build_edge_context(edge_settings, transport=upstream.transport()))) as edge:
        miss = edge.get("/find", params=QUERY)
    assert miss.status_code == 200
    assert miss.json()[0]["mirrors"][0].startswith("https://mirror.test/")
    (push,) = upstream.pushes

    origin_context = build_origin_context(origin_settings, transport=upstream.transport())
    with TestClient(create_origin_app(context=origin_context)) as origin:
        delivered = origin.post("/cache", json=push)
        redelivered = origin.post("/cache", json=push)
    assert delivered.text == redelivered.text == "ok"
    assert len(upstream.mirror_requests) == 1
    catalog_requests = len(upstream.catalog_requests)

    with TestClient(create_edge_app(context=build_edge_context(edge_settings, transport=upstream.transport()))) as edge:
        hit = edge.get("/find", params=QUERY)
        (asset,) = hit.json()
        mirror = asset["mirrors"][0]
        content = edge.get(mirror, headers={"cf-iplatitude": "40.71", "cf-iplongitude": "-74.01"})

    assert mirror == f"http://testserver/file/{ABERDEEN_MD5}/aberdeen3v3v3.sd7"
    assert asset["md5"] == ABERDEEN_MD5
    assert content.status_code == 200
    assert content.headers["x-springcache-source"] == "us"
    assert content.content == ABERDEEN_BYTES
    assert hashlib.md5(content.content).hexdigest() == asset["md5"]
    # The second edge lookup was served from the index, not upstream.
    assert len(upstream.catalog_requests) == catalog_requests


@pytest.mark.asyncio
async def test_lookup_service_round_trip(population, index, stores, edge_settings) -> None:
    publisher = RecordingPublisher()
    context = EdgeContext(
        settings=edge_settings,
        catalog=population.catalog,
        index=index,
        stores={store.name: store for store in stores},
        router=BucketRouter(REGIONS, GeoPoint(50.11, 8.68)),
        publisher=publisher,
        background=BackgroundRunner(grace_seconds=5),
    )
    service = EdgeLookupService(context)

    (upstream_answer,) = await service.find_asset("map", "Aberdeen3v3v3", "https://cdn.test")
    await context.background.drain()
    assert upstream_answer.mirrors[0].startswith("https://mirror.test/")
    assert len(publisher.published) == 1

    assert await population.populate("map", "Aberdeen3v3v3") is True

    (cached,) = await service.find_asset("map", "Aberdeen3v3v3", "https://cdn.test/")
    assert cached.mirrors == [f"https://cdn.test/file/{ABERDEEN_MD5}/aberdeen3v3v3.sd7"]
    assert cached.content_hash == upstream_answer.content_hash.lower()
    assert len(publisher.published) == 1

    stored, source = await service.read_content(cached.content_hash, GeoPoint(1.29, 103.85))
    assert source == "ap"
    assert await read_all(stored.body) == ABERDEEN_BYTES


@pytest.mark.asyncio
async def test_failed_population_keeps_missing(population, index, stores, edge_settings) -> None:
    publisher = RecordingPublisher()
    context = EdgeContext(
        settings=edge_settings,
        catalog=population.catalog,
        index=index,
        stores={store.name: store for store in stores},
        router=BucketRouter(REGIONS, GeoPoint(50.11, 8.68)),
        publisher=publisher,
        background=BackgroundRunner(grace_seconds=5),
    )
    service = EdgeLookupService(context)
    population.stores = [stores[0], FailingStore(REGIONS[2])]

    with pytest.raises(InternalServerError):
        await population.populate("map", "Aberdeen3v3v3")

    await service.find_asset("map", "Aberdeen3v3v3", "https://cdn.test")
    await context.background.drain()
    # Still a miss: answered from upstream with a fresh trigger.
    assert len(publisher.published) == 1
    assert await index.get("from_name/map/Aberdeen3v3v3") is None
