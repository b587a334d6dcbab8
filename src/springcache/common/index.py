"""Metadata index backends mapping cache keys to serialized descriptors."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import quote

import httpx
import structlog
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import SQLAlchemyError

from .errors import InternalServerError
from .settings import IndexSettings


LOGGER = structlog.get_logger("springcache.index")


class MetadataIndex:
    """Key/value store where a present key means the asset is cached."""

    async def get(self, key: str) -> Optional[str]:  # pragma: no cover - interface
        raise NotImplementedError

    async def put(self, key: str, value: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    def status(self) -> dict[str, object]:  # pragma: no cover - interface
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class SqlMetadataIndex(MetadataIndex):
    """Index stored in a single SQL table, used for local stacks and tests."""

    def __init__(self, database_url: str):
        self._engine = self._create_engine(database_url)
        self._initialise()

    @staticmethod
    def _create_engine(database_url: str) -> Engine:
        url = make_url(database_url)
        if url.drivername.startswith("sqlite") and url.database:
            db_path = Path(url.database).expanduser()
            if not db_path.is_absolute():
                db_path = (Path.cwd() / db_path).resolve()
            db_path.parent.mkdir(parents=True, exist_ok=True)
            url = url.set(database=db_path.as_posix())
            database_url = url.render_as_string(hide_password=False)
        return create_engine(database_url, future=True, pool_pre_ping=True)

    def _initialise(self) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS asset_index (
                        cache_key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                    )
                    """
                )
            )

    def _get(self, key: str) -> Optional[str]:
        with self._engine.connect() as conn:
            result = conn.execute(
                text("SELECT value FROM asset_index WHERE cache_key = :cache_key"),
                {"cache_key": key},
            )
            row = result.fetchone()
        return str(row[0]) if row else None

    def _put(self, key: str, value: str) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO asset_index (cache_key, value, updated_at)
                    VALUES (:cache_key, :value, CURRENT_TIMESTAMP)
                    ON CONFLICT(cache_key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = CURRENT_TIMESTAMP
                    """
                ),
                {"cache_key": key, "value": value},
            )

    async def get(self, key: str) -> Optional[str]:
        try:
            return await asyncio.to_thread(self._get, key)
        except SQLAlchemyError as exc:
            LOGGER.error("index_get_failed", cache_key=key, error=str(exc))
            raise InternalServerError("Index key GET failed") from exc

    async def put(self, key: str, value: str) -> None:
        try:
            await asyncio.to_thread(self._put, key, value)
        except SQLAlchemyError as exc:
            LOGGER.error("index_put_failed", cache_key=key, error=str(exc))
            raise InternalServerError("Index key put failed") from exc

    def status(self) -> dict[str, object]:
        return {"backend": "sql", "dialect": self._engine.dialect.name}

    async def aclose(self) -> None:
        self._engine.dispose()


class CloudflareKVIndex(MetadataIndex):
    """Index stored in a Cloudflare Workers KV namespace via the REST API."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        account_id: str,
        namespace_id: str,
        api_token: str,
        base_url: str = "https://api.cloudflare.com/client/v4",
    ) -> None:
        self._client = http_client
        self._namespace_id = namespace_id
        self._values_url = f"{base_url.rstrip('/')}/accounts/{account_id}/storage/kv/namespaces/{namespace_id}/values"
        self._headers = {"Authorization": f"Bearer {api_token}"}

    def _url(self, key: str) -> str:
        return f"{self._values_url}/{quote(key, safe='')}"

    async def get(self, key: str) -> Optional[str]:
        try:
            response = await self._client.get(self._url(key), headers=self._headers)
        except httpx.HTTPError as exc:
            raise InternalServerError("Cloudflare key GET failed") from exc
        if response.status_code == 404:
            return None
        if not response.is_success:
            LOGGER.error("kv_get_failed", cache_key=key, status=response.status_code, body=response.text[:500])
            raise InternalServerError("Cloudflare key GET failed")
        return response.text

    async def put(self, key: str, value: str) -> None:
        try:
            response = await self._client.put(self._url(key), headers=self._headers, content=value.encode("utf-8"))
        except httpx.HTTPError as exc:
            raise InternalServerError("Cloudflare key put failed") from exc
        if not response.is_success:
            LOGGER.error("kv_put_failed", cache_key=key, status=response.status_code, body=response.text[:500])
            raise InternalServerError("Cloudflare key put failed")

    def status(self) -> dict[str, object]:
        return {"backend": "cloudflare_kv", "namespace": self._namespace_id}


class TTLCachedIndex(MetadataIndex):
    """Read-through memo of index hits for ``ttl_seconds``.

    Only hits are remembered: a miss must stay observable so that a freshly
    committed entry is served as soon as population finishes. Writes go
    straight to the wrapped index.
    """

    def __init__(
        self,
        inner: MetadataIndex,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 10_000,
    ) -> None:
        self._inner = inner
        self._ttl = max(0.0, ttl_seconds)
        self._clock = clock
        self._max_entries = max(1, max_entries)
        self._entries: dict[str, tuple[float, str]] = {}

    async def get(self, key: str) -> Optional[str]:
        now = self._clock()
        cached = self._entries.get(key)
        if cached is not None:
            expires_at, value = cached
            if now < expires_at:
                return value
            del self._entries[key]
        value = await self._inner.get(key)
        if value is not None and self._ttl > 0:
            if len(self._entries) >= self._max_entries:
                self._entries.pop(next(iter(self._entries)))
            self._entries[key] = (now + self._ttl, value)
        return value

    async def put(self, key: str, value: str) -> None:
        await self._inner.put(key, value)
        self._entries.pop(key, None)

    def status(self) -> dict[str, object]:
        payload = dict(self._inner.status())
        payload["ttl_seconds"] = self._ttl
        payload["memoized_entries"] = len(self._entries)
        return payload

    async def aclose(self) -> None:
        await self._inner.aclose()


def build_index(settings: IndexSettings, http_client: httpx.AsyncClient) -> MetadataIndex:
    if settings.cf_kv_namespace_id:
        if not settings.cf_account_id or settings.cf_kv_api_token is None:
            raise RuntimeError("Cloudflare KV configuration incomplete for metadata index")
        return CloudflareKVIndex(
            http_client,
            account_id=settings.cf_account_id,
            namespace_id=settings.cf_kv_namespace_id,
            api_token=settings.cf_kv_api_token.get_secret_value(),
            base_url=settings.cf_api_base_url,
        )
    return SqlMetadataIndex(settings.index_database_url)
