"""Shared response cache in front of the regional stores."""

from __future__ import annotations

import asyncio
import os
import uuid
from pathlib import Path
from typing import AsyncIterator, Optional

import structlog

from ..common.storage import CHUNK_SIZE, StoredObject, validate_object_key


LOGGER = structlog.get_logger("springcache.edge.response_cache")


def wants_fresh(headers) -> bool:
    """True when the client asked to skip intermediary caches."""
    cache_control = headers.get("cache-control", "").lower()
    directives = {part.strip().split("=", 1)[0] for part in cache_control.split(",")}
    return "no-cache" in directives or "no-store" in directives or headers.get("pragma", "").lower() == "no-cache"


class ResponseCache:
    """Content-addressed bodies on local disk, shared by every request of the process.

    Entries never need invalidation: a content hash always names the same bytes.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, content_hash: str) -> Path:
        return self._root / validate_object_key(content_hash)

    async def get(self, content_hash: str) -> Optional[StoredObject]:
        path = self._path(content_hash)
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return None
        return StoredObject(
            key=content_hash,
            size=size,
            etag=f'"{content_hash}-{size}"',
            content_type="application/octet-stream",
            body=self._read(path),
        )

    async def _read(self, path: Path) -> AsyncIterator[bytes]:
        handle = await asyncio.to_thread(path.open, "rb")
        try:
            while True:
                data = await asyncio.to_thread(handle.read, CHUNK_SIZE)
                if not data:
                    break
                yield data
        finally:
            handle.close()

    async def tee(self, content_hash: str, body: AsyncIterator[bytes], expected_size: int) -> AsyncIterator[bytes]:
        """Yield ``body`` unchanged while copying it into the cache.

        The entry only becomes visible once the full body was streamed; an
        interrupted or short response leaves nothing behind. Local disk errors
        stop the copy, never the response.
        """
        target = self._path(content_hash)
        partial = target.with_name(f".{content_hash}.{uuid.uuid4().hex}.partial")
        try:
            handle = await asyncio.to_thread(partial.open, "wb")
        except OSError as exc:
            self._write_failed(content_hash, partial, exc)
            handle = None
        written = 0
        complete = False
        try:
            async for chunk in body:
                yield chunk
                if handle is None:
                    continue
                try:
                    await asyncio.to_thread(handle.write, chunk)
                except OSError as exc:
                    self._write_failed(content_hash, partial, exc, handle)
                    handle = None
                    continue
                written += len(chunk)
            complete = True
        finally:
            if handle is not None and self._close(content_hash, partial, handle):
                if complete and (expected_size <= 0 or written == expected_size):
                    self._publish(content_hash, partial, target, written)
                else:
                    partial.unlink(missing_ok=True)

    def _publish(self, content_hash: str, partial: Path, target: Path, written: int) -> None:
        try:
            os.replace(partial, target)
        except OSError as exc:
            self._write_failed(content_hash, partial, exc)
            return
        LOGGER.debug("response_cached", content_hash=content_hash, bytes=written)

    def _close(self, content_hash: str, partial: Path, handle) -> bool:
        try:
            handle.close()
        except OSError as exc:
            self._write_failed(content_hash, partial, exc)
            return False
        return True

    @staticmethod
    def _write_failed(content_hash: str, partial: Path, exc: OSError, handle=None) -> None:
        if handle is not None:
            try:
                handle.close()
            except OSError:
                LOGGER.debug("response_cache_close_failed", path=str(partial))
        LOGGER.warning("response_cache_write_failed", content_hash=content_hash, error=str(exc))
        try:
            partial.unlink(missing_ok=True)
        except OSError:
            LOGGER.warning("response_cache_cleanup_failed", path=str(partial))
