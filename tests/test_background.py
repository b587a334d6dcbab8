from __future__ import annotations

import asyncio
import errno
import shutil
from pathlib import Path

import pytest

from springcache.edge.background import BackgroundRunner
from springcache.edge.response_cache import ResponseCache, wants_fresh

from conftest import read_all


async def chunks(*parts: bytes):
    for part in parts:
        yield part


@pytest.mark.asyncio
async def test_background_tasks_outlive_their_caller() -> None:
    runner = BackgroundRunner(grace_seconds=5)
    done = asyncio.Event()

    async def work() -> None:
        await asyncio.sleep(0.05)
        done.set()

    runner.spawn(work(), name="sync:test")
    assert runner.pending == 1
    await runner.drain()
    assert done.is_set()
    assert runner.pending == 0


@pytest.mark.asyncio
async def test_drain_cancels_after_grace_period() -> None:
    runner = BackgroundRunner(grace_seconds=0.05)
    started = asyncio.Event()

    async def hang() -> None:
        started.set()
        await asyncio.sleep(60)

    task = runner.spawn(hang(), name="sync:hang")
    await started.wait()
    await runner.drain()
    assert task.cancelled()
    assert runner.pending == 0


@pytest.mark.asyncio
async def test_failed_task_does_not_break_runner() -> None:
    runner = BackgroundRunner()

    async def boom() -> None:
        raise RuntimeError("publish failed")

    task = runner.spawn(boom(), name="sync:boom")
    await asyncio.gather(task, return_exceptions=True)
    await runner.drain()
    assert runner.pending == 0


@pytest.mark.parametrize(
    ("headers", "expected"),
    [
        ({}, False),
        ({"cache-control": "max-age=0"}, False),
        ({"cache-control": "no-cache"}, True),
        ({"cache-control": "private, no-store"}, True),
        ({"pragma": "no-cache"}, True),
    ],
)
def test_wants_fresh(headers: dict[str, str], expected: bool) -> None:
    assert wants_fresh(headers) is expected


@pytest.mark.asyncio
async def test_response_cache_publishes_complete_bodies(tmp_path: Path) -> None:
    cache = ResponseCache(tmp_path)
    body = cache.tee("hash1", chunks(b"ab", b"cd"), expected_size=4)

    assert await read_all(body) == b"abcd"
    cached = await cache.get("hash1")
    assert cached is not None
    assert cached.size == 4
    assert await read_all(cached.body) == b"abcd"


@pytest.mark.asyncio
async def test_response_cache_discards_short_or_interrupted_bodies(tmp_path: Path) -> None:
    cache = ResponseCache(tmp_path)

    assert await read_all(cache.tee("short", chunks(b"ab"), expected_size=10)) == b"ab"
    assert await cache.get("short") is None

    interrupted = cache.tee("cut", chunks(b"ab", b"cd"), expected_size=4)
    assert await interrupted.__anext__() == b"ab"
    await interrupted.aclose()
    assert await cache.get("cut") is None
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_response_cache_failure_never_breaks_the_reader(tmp_path: Path) -> None:
    root = tmp_path / "rc"
    cache = ResponseCache(root)
    shutil.rmtree(root)

    body = cache.tee("hash1", chunks(b"abcd", b"efgh"), expected_size=8)

    assert await read_all(body) == b"abcdefgh"
    assert await cache.get("hash1") is None


class FullDiskHandle:
    def write(self, data: bytes) -> int:
        raise OSError(errno.ENOSPC, "No space left on device")

    def close(self) -> None:
        pass


@pytest.mark.asyncio
async def test_response_cache_stops_copying_when_the_disk_fills(tmp_path: Path, monkeypatch) -> None:
    cache = ResponseCache(tmp_path)
    real_open = Path.open

    def open_with_full_disk(self, mode="r", *args, **kwargs):
        if mode == "wb":
            return FullDiskHandle()
        return real_open(self, mode, *args, **kwargs)

    monkeypatch.setattr(Path, "open", open_with_full_disk)
    body = cache.tee("hash1", chunks(b"ab", b"cd", b"ef"), expected_size=6)

    assert await read_all(body) == b"abcdef"
    assert await cache.get("hash1") is None
    assert list(tmp_path.iterdir()) == []
