"""Regional object stores holding asset bytes keyed by content hash."""

from __future__ import annotations

import asyncio
import os
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from .errors import BadRequest, InternalServerError
from .settings import RegionConfig, StorageSettings


LOGGER = structlog.get_logger("springcache.storage")

CHUNK_SIZE = 1024 * 1024
MIN_PART_SIZE = 5 * 1024 * 1024
MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


class UploadAborted(Exception):
    """Raised inside an upload once a sibling upload has failed."""


class AbortSignal:
    """Cancellation flag shared by the uploads of one population run.

    Uploads run in worker threads, which asyncio cancellation cannot reach,
    so they poll this flag between chunks and parts.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def abort(self) -> None:
        self._event.set()

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def raise_if_aborted(self) -> None:
        if self._event.is_set():
            raise UploadAborted()


@dataclass
class StoredObject:
    key: str
    size: int
    etag: str
    content_type: str
    body: AsyncIterator[bytes]


def validate_object_key(key: str) -> str:
    if not key or "/" in key or "\\" in key or key in {".", ".."}:
        raise BadRequest("Invalid object key")
    return key


class RegionalStore:
    def __init__(self, region: RegionConfig) -> None:
        self.region = region

    @property
    def name(self) -> str:
        return self.region.name

    async def get(self, key: str) -> Optional[StoredObject]:  # pragma: no cover - interface
        raise NotImplementedError

    async def put(self, key: str, source: Path, signal: Optional[AbortSignal] = None) -> None:  # pragma: no cover
        raise NotImplementedError

    def status(self) -> dict[str, object]:  # pragma: no cover - interface
        raise NotImplementedError


async def _iter_file(path: Path, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
    handle = await asyncio.to_thread(path.open, "rb")
    try:
        while True:
            data = await asyncio.to_thread(handle.read, chunk_size)
            if not data:
                break
            yield data
    finally:
        handle.close()


class LocalRegionalStore(RegionalStore):
    """Region backed by a directory, one file per content hash."""

    def __init__(self, region: RegionConfig, root: Path) -> None:
        super().__init__(region)
        self._root = Path(root) / region.bucket
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self._root / validate_object_key(key)

    async def get(self, key: str) -> Optional[StoredObject]:
        path = self._path(key)
        try:
            stat = path.stat()
        except FileNotFoundError:
            return None
        return StoredObject(
            key=key,
            size=stat.st_size,
            etag=f'"{key}-{stat.st_size}"',
            content_type="application/octet-stream",
            body=_iter_file(path),
        )

    async def put(self, key: str, source: Path, signal: Optional[AbortSignal] = None) -> None:
        target = self._path(key)
        signal = signal or AbortSignal()

        def _copy() -> None:
            partial = target.with_name(f".{key}.{uuid.uuid4().hex}.partial")
            try:
                with source.open("rb") as reader, partial.open("wb") as writer:
                    while True:
                        signal.raise_if_aborted()
                        data = reader.read(CHUNK_SIZE)
                        if not data:
                            break
                        writer.write(data)
                os.replace(partial, target)
            finally:
                partial.unlink(missing_ok=True)

        try:
            await asyncio.to_thread(_copy)
        except OSError as exc:
            raise InternalServerError(f"Upload to region {self.name} failed") from exc

    def status(self) -> dict[str, object]:
        return {
            "region": self.name,
            "backend": "local",
            "path": str(self._root),
            "writable": os.access(self._root, os.W_OK),
        }


class S3RegionalStore(RegionalStore):
    """Region backed by an S3-compatible bucket (R2 in production)."""

    def __init__(self, region: RegionConfig, settings: StorageSettings) -> None:
        super().__init__(region)
        session = boto3.session.Session()
        client_args: dict[str, Optional[str]] = {
            "endpoint_url": settings.s3_endpoint_url,
            "region_name": settings.s3_region,
            "aws_access_key_id": settings.s3_access_key_id,
            "aws_secret_access_key": (
                settings.s3_secret_access_key.get_secret_value() if settings.s3_secret_access_key else None
            ),
        }
        self._client = session.client("s3", **{k: v for k, v in client_args.items() if v})
        self._bucket = region.bucket
        self._endpoint = settings.s3_endpoint_url
        self._part_size = max(MIN_PART_SIZE, settings.s3_part_size_bytes)
        self._max_retries = max(0, settings.s3_max_retries)
        self._retry_base = max(0.0, settings.s3_retry_base_seconds)
        self._retry_max = max(self._retry_base, settings.s3_retry_max_seconds)

    async def get(self, key: str) -> Optional[StoredObject]:
        try:
            response = await self._call_with_retry(self._client.get_object, Bucket=self._bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code", "") in MISSING_CODES:
                return None
            raise InternalServerError(f"Read from region {self.name} failed") from exc
        except BotoCoreError as exc:
            raise InternalServerError(f"Read from region {self.name} failed") from exc
        body = response["Body"]
        return StoredObject(
            key=key,
            size=int(response.get("ContentLength", 0)),
            etag=str(response.get("ETag") or f'"{key}"'),
            content_type=str(response.get("ContentType") or "application/octet-stream"),
            body=self._iter_body(body),
        )

    async def _iter_body(self, body) -> AsyncIterator[bytes]:
        try:
            while True:
                data = await asyncio.to_thread(body.read, CHUNK_SIZE)
                if not data:
                    break
                yield data
        finally:
            body.close()

    async def put(self, key: str, source: Path, signal: Optional[AbortSignal] = None) -> None:
        signal = signal or AbortSignal()
        size = source.stat().st_size
        try:
            if size <= self._part_size:
                await asyncio.to_thread(self._put_single, key, source, signal)
            else:
                await asyncio.to_thread(self._put_multipart, key, source, signal)
        except (ClientError, BotoCoreError) as exc:
            raise InternalServerError(f"Upload to region {self.name} failed") from exc

    def _put_single(self, key: str, source: Path, signal: AbortSignal) -> None:
        signal.raise_if_aborted()
        with source.open("rb") as handle:
            self._client.put_object(Bucket=self._bucket, Key=key, Body=handle)

    def _put_multipart(self, key: str, source: Path, signal: AbortSignal) -> None:
        upload = self._client.create_multipart_upload(Bucket=self._bucket, Key=key)
        upload_id = upload["UploadId"]
        parts: list[dict[str, object]] = []
        try:
            with source.open("rb") as handle:
                part_number = 1
                while True:
                    signal.raise_if_aborted()
                    data = handle.read(self._part_size)
                    if not data:
                        break
                    result = self._client.upload_part(
                        Bucket=self._bucket,
                        Key=key,
                        UploadId=upload_id,
                        PartNumber=part_number,
                        Body=data,
                    )
                    parts.append({"ETag": result["ETag"], "PartNumber": part_number})
                    part_number += 1
            signal.raise_if_aborted()
            self._client.complete_multipart_upload(
                Bucket=self._bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )
        except BaseException:
            try:
                self._client.abort_multipart_upload(Bucket=self._bucket, Key=key, UploadId=upload_id)
            except (ClientError, BotoCoreError):
                LOGGER.warning("multipart_abort_failed", region=self.name, key=key, upload_id=upload_id)
            raise

    async def _call_with_retry(self, func: Callable[..., object], **kwargs):
        attempt = 0
        while True:
            try:
                return await asyncio.to_thread(func, **kwargs)
            except ClientError as exc:
                if exc.response.get("Error", {}).get("Code", "") in MISSING_CODES:
                    raise
                attempt += 1
                if attempt > self._max_retries:
                    raise
            except BotoCoreError:
                attempt += 1
                if attempt > self._max_retries:
                    raise
            delay = min(self._retry_base * (2 ** (attempt - 1)), self._retry_max)
            if delay:
                await asyncio.sleep(delay)

    def status(self) -> dict[str, object]:
        return {"region": self.name, "backend": "s3", "bucket": self._bucket, "endpoint": self._endpoint}


def build_stores(settings: StorageSettings) -> list[RegionalStore]:
    if not settings.regions:
        raise RuntimeError("At least one region must be configured")
    if settings.s3_endpoint_url:
        return [S3RegionalStore(region, settings) for region in settings.regions]
    return [LocalRegionalStore(region, settings.local_storage_path) for region in settings.regions]


async def upload_to_all(stores: list[RegionalStore], key: str, source: Path) -> None:
    """Upload ``source`` to every store, all or nothing.

    The first failure aborts the siblings through the shared signal and is
    re-raised. Objects already written by other regions stay behind
    unreferenced; they are harmless until an index entry points at them.
    """
    signal = AbortSignal()
    tasks = [asyncio.create_task(store.put(key, source, signal), name=f"upload:{store.name}") for store in stores]
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        signal.abort()
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for store, result in zip(stores, results):
            if isinstance(result, BaseException) and not isinstance(result, (UploadAborted, asyncio.CancelledError)):
                LOGGER.warning("region_upload_failed", region=store.name, key=key, error=str(result))
        raise
