"""Upload ingestion: assets dropped into the upload bucket enter the cache directly."""

from __future__ import annotations

import asyncio
import json
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Optional

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError
from opentelemetry import trace

from ..common.errors import BadGateway, BadRequest, InternalServerError
from ..common.schemas import AssetDescriptor, ObjectResource
from ..common.settings import OriginSettings
from .population import PopulationService, file_digest, staging_area


LOGGER = structlog.get_logger("springcache.origin.ingest")
TRACER = trace.get_tracer("springcache.origin")

MAX_FILENAME_LENGTH = 255
_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-z0-9_.-]")


def normalize_filename(springname: str, original_name: str) -> str:
    """Filename an uploaded asset is published under.

    >>> normalize_filename("Aberdeen 3v3v3", "uploads/Aberdeen.SD7")
    'aberdeen_3v3v3.SD7'
    """
    suffix = PurePosixPath(original_name).suffix
    stem = _UNSAFE_FILENAME_CHARS.sub("_", springname.lower())
    return f"{stem}{suffix}"[:MAX_FILENAME_LENGTH]


def upload_timestamp(now: Optional[datetime] = None) -> str:
    """UTC timestamp with millisecond precision and no zone suffix."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3]


async def extract_springname(path: Path, extractor: Path, timeout: float = 60.0) -> str:
    """Run the metadata extractor on ``path`` and return the reported springname."""
    try:
        process = await asyncio.create_subprocess_exec(
            str(extractor),
            str(path),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise InternalServerError("Metadata extractor could not be started") from exc
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        process.kill()
        await process.wait()
        raise InternalServerError("Metadata extractor timed out") from exc
    if process.returncode != 0:
        LOGGER.error("metadata_extractor_failed", returncode=process.returncode, stderr=stderr.decode(errors="replace"))
        raise InternalServerError("Metadata extractor failed")
    try:
        springname = json.loads(stdout.decode("utf-8"))["springname"]
    except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError) as exc:
        raise InternalServerError("Metadata extractor returned no springname") from exc
    if not isinstance(springname, str) or not springname:
        raise InternalServerError("Metadata extractor returned no springname")
    return springname


class UploadSource:
    """Where uploaded objects are fetched from."""

    async def download(self, obj: ObjectResource, destination: Path) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def status(self) -> dict[str, object]:  # pragma: no cover - interface
        raise NotImplementedError


class S3UploadSource(UploadSource):
    """Upload bucket reached through an S3-compatible API (GCS interoperability in production)."""

    def __init__(self, settings: OriginSettings) -> None:
        session = boto3.session.Session()
        client_args: dict[str, Optional[str]] = {
            "endpoint_url": settings.upload_endpoint_url,
            "aws_access_key_id": settings.upload_access_key_id,
            "aws_secret_access_key": (
                settings.upload_secret_access_key.get_secret_value() if settings.upload_secret_access_key else None
            ),
        }
        self._client = session.client("s3", **{k: v for k, v in client_args.items() if v})
        self._endpoint = settings.upload_endpoint_url

    async def download(self, obj: ObjectResource, destination: Path) -> None:
        try:
            await asyncio.to_thread(self._client.download_file, obj.bucket, obj.name, str(destination))
        except (ClientError, BotoCoreError) as exc:
            raise BadGateway(f"Download of {obj.name} from {obj.bucket} failed") from exc

    def status(self) -> dict[str, object]:
        return {"backend": "s3", "endpoint": self._endpoint}


class LocalUploadSource(UploadSource):
    """Upload buckets as directories below ``root``; used for local stacks."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root)

    def _path(self, obj: ObjectResource) -> Path:
        bucket = self._root / obj.bucket
        path = (bucket / obj.name).resolve()
        if bucket.resolve() not in path.parents:
            raise BadRequest("object name escapes the upload bucket")
        return path

    async def download(self, obj: ObjectResource, destination: Path) -> None:
        source = self._path(obj)
        if not source.is_file():
            raise BadGateway(f"Download of {obj.name} from {obj.bucket} failed")
        await asyncio.to_thread(shutil.copyfile, source, destination)

    def status(self) -> dict[str, object]:
        return {"backend": "local", "path": str(self._root)}


class UploadIngestService:
    """Turns an upload bucket object into a committed cache entry.

    The asset never had an upstream mirror: the descriptor is built from the
    staged bytes and committed through the same path as catalog populations.
    """

    def __init__(
        self,
        population: PopulationService,
        source: UploadSource,
        *,
        extractor: Optional[Path],
        extractor_timeout: float = 60.0,
        category: str = "map",
        path: str = "maps",
        digest_algorithm: str = "md5",
    ) -> None:
        self._population = population
        self._source = source
        self._extractor = extractor
        self._extractor_timeout = extractor_timeout
        self._category = category
        self._path = path
        self._digest_algorithm = digest_algorithm

    @property
    def source(self) -> UploadSource:
        return self._source

    async def ingest(self, obj: ObjectResource) -> bool:
        """Cache the uploaded object; False when its springname was already cached."""
        if self._extractor is None:
            raise InternalServerError("Metadata extractor is not configured")
        with TRACER.start_as_current_span(
            "origin.ingest_upload",
            attributes={"springcache.bucket": obj.bucket, "springcache.object": obj.name},
        ) as span:
            LOGGER.info("upload_received", bucket=obj.bucket, name=obj.name)
            with staging_area(self._population.staging_dir) as staging:
                staged = staging / f"upload{PurePosixPath(obj.name).suffix}"
                await self._source.download(obj, staged)
                springname = await extract_springname(staged, self._extractor, self._extractor_timeout)
                digest = await asyncio.to_thread(file_digest, staged, self._digest_algorithm)
                asset = AssetDescriptor(
                    category=self._category,
                    springname=springname,
                    filename=normalize_filename(springname, obj.name),
                    md5=digest,
                    size=staged.stat().st_size,
                    timestamp=upload_timestamp(),
                    path=self._path,
                    tags=[],
                    mirrors=[],
                )
                span.set_attribute("springcache.springname", springname)
                if await self._population.already_cached(asset):
                    return False
                await self._population.commit(asset, staged)
            return True


def build_upload_source(settings: OriginSettings) -> UploadSource:
    if settings.upload_access_key_id:
        return S3UploadSource(settings)
    return LocalUploadSource(settings.local_storage_path / "uploads")


def build_ingest_service(settings: OriginSettings, population: PopulationService) -> UploadIngestService:
    return UploadIngestService(
        population,
        build_upload_source(settings),
        extractor=settings.metadata_extractor_path,
        extractor_timeout=settings.metadata_extractor_timeout_seconds,
        category=settings.upload_category,
        path=settings.upload_path,
        digest_algorithm=settings.digest_algorithm,
    )
