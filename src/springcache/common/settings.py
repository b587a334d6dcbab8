"""Application configuration models shared by the edge and origin services."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Annotated, Optional

import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_UPSTREAM_URL = "https://springfiles.springrts.com/json.php"


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


def _split_csv(value):
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class RegionConfig(BaseModel):
    """One regional object store and the coordinate it serves from."""

    name: str
    bucket: str
    latitude: float
    longitude: float


def load_regions_file(path: Path) -> list[RegionConfig]:
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    return [RegionConfig.model_validate(item) for item in data.get("regions", [])]


class CatalogSettings(BaseSettings):
    upstream_url: str = env_field(DEFAULT_UPSTREAM_URL, "SPRINGCACHE_UPSTREAM_URL")
    upstream_timeout_seconds: float = env_field(30.0, "SPRINGCACHE_UPSTREAM_TIMEOUT")


class IndexSettings(BaseSettings):
    cf_account_id: Optional[str] = env_field(None, "SPRINGCACHE_CF_ACCOUNT_ID")
    cf_kv_namespace_id: Optional[str] = env_field(None, "SPRINGCACHE_CF_KV_NAMESPACE_ID")
    cf_kv_api_token: Optional[SecretStr] = env_field(None, "SPRINGCACHE_CF_KV_API_TOKEN")
    cf_api_base_url: str = env_field("https://api.cloudflare.com/client/v4", "SPRINGCACHE_CF_API_BASE_URL")
    index_database_url: str = env_field("./springcache-index.db", "SPRINGCACHE_INDEX_DB")

    @field_validator("index_database_url", mode="before")
    @classmethod
    def _normalize_index_url(cls, value):
        if isinstance(value, Path):
            value = str(value)
        if isinstance(value, str) and "://" not in value:
            path = Path(value).expanduser().resolve()
            return f"sqlite+pysqlite:///{path.as_posix()}"
        return value


class StorageSettings(BaseSettings):
    regions: list[RegionConfig] = Field(default_factory=list, validation_alias="SPRINGCACHE_REGIONS")
    regions_file: Optional[Path] = env_field(None, "SPRINGCACHE_REGIONS_FILE")
    s3_endpoint_url: Optional[str] = env_field(None, "SPRINGCACHE_S3_ENDPOINT")
    s3_region: str = env_field("auto", "SPRINGCACHE_S3_REGION")
    s3_access_key_id: Optional[str] = env_field(None, "SPRINGCACHE_S3_ACCESS_KEY_ID")
    s3_secret_access_key: Optional[SecretStr] = env_field(None, "SPRINGCACHE_S3_SECRET_ACCESS_KEY")
    s3_max_retries: int = env_field(3, "SPRINGCACHE_S3_MAX_RETRIES")
    s3_retry_base_seconds: float = env_field(0.2, "SPRINGCACHE_S3_RETRY_BASE")
    s3_retry_max_seconds: float = env_field(2.0, "SPRINGCACHE_S3_RETRY_MAX")
    s3_part_size_bytes: int = env_field(8 * 1024 * 1024, "SPRINGCACHE_S3_PART_SIZE")
    local_storage_path: Path = env_field(Path("./regions"), "SPRINGCACHE_LOCAL_STORAGE_PATH")

    @model_validator(mode="after")
    def _load_regions(self):
        if not self.regions and self.regions_file is not None:
            self.regions = load_regions_file(self.regions_file)
        names = [region.name for region in self.regions]
        if len(names) != len(set(names)):
            raise ValueError("region names must be unique")
        return self


class EdgeSettings(CatalogSettings, IndexSettings, StorageSettings):
    """Runtime settings for the edge lookup service."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    allowed_categories: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["map"],
        validation_alias="SPRINGCACHE_ALLOWED_CATEGORIES",
    )
    max_springname_length: int = env_field(100, "SPRINGCACHE_MAX_SPRINGNAME_LENGTH")
    index_cache_ttl_seconds: int = env_field(8 * 60 * 60, "SPRINGCACHE_INDEX_CACHE_TTL")
    latitude_header: str = env_field("cf-iplatitude", "SPRINGCACHE_LATITUDE_HEADER")
    longitude_header: str = env_field("cf-iplongitude", "SPRINGCACHE_LONGITUDE_HEADER")
    default_latitude: float = env_field(50.11, "SPRINGCACHE_DEFAULT_LATITUDE")
    default_longitude: float = env_field(8.68, "SPRINGCACHE_DEFAULT_LONGITUDE")
    region_override_header: str = env_field("x-springcache-region", "SPRINGCACHE_REGION_OVERRIDE_HEADER")
    response_cache_enabled: bool = env_field(False, "SPRINGCACHE_RESPONSE_CACHE")
    response_cache_path: Path = env_field(Path("./response-cache"), "SPRINGCACHE_RESPONSE_CACHE_PATH")
    pubsub_topic: Optional[str] = env_field(None, "SPRINGCACHE_PUBSUB_TOPIC")
    pubsub_endpoint: str = env_field("https://pubsub.googleapis.com/v1", "SPRINGCACHE_PUBSUB_ENDPOINT")
    service_account_key: Optional[SecretStr] = env_field(None, "SPRINGCACHE_SERVICE_ACCOUNT_KEY")
    origin_push_url: Optional[str] = env_field(None, "SPRINGCACHE_ORIGIN_PUSH_URL")
    background_grace_seconds: float = env_field(30.0, "SPRINGCACHE_BACKGROUND_GRACE")
    dev_mode: bool = env_field(False, "SPRINGCACHE_DEV_MODE")
    host: str = env_field("0.0.0.0", "SPRINGCACHE_HOST")
    port: int = env_field(8080, "PORT")
    metrics_token: Optional[SecretStr] = env_field(None, "SPRINGCACHE_METRICS_TOKEN")
    log_level: str = env_field("INFO", "SPRINGCACHE_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "SPRINGCACHE_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "SPRINGCACHE_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "SPRINGCACHE_OTEL_SAMPLER_RATIO")

    @field_validator("allowed_categories", mode="before")
    @classmethod
    def _split_categories(cls, value):
        return _split_csv(value)


class OriginSettings(CatalogSettings, IndexSettings, StorageSettings):
    """Runtime settings for the origin population service."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    staging_dir: Optional[Path] = env_field(None, "SPRINGCACHE_STAGING_DIR")
    mirror_timeout_seconds: float = env_field(300.0, "SPRINGCACHE_MIRROR_TIMEOUT")
    digest_algorithm: str = env_field("md5", "SPRINGCACHE_DIGEST")
    verify_mirror_digest: bool = env_field(True, "SPRINGCACHE_VERIFY_MIRROR_DIGEST")
    metadata_extractor_path: Optional[Path] = env_field(None, "SPRINGCACHE_METADATA_EXTRACTOR")
    metadata_extractor_timeout_seconds: float = env_field(60.0, "SPRINGCACHE_METADATA_EXTRACTOR_TIMEOUT")
    upload_endpoint_url: str = env_field("https://storage.googleapis.com", "SPRINGCACHE_UPLOAD_ENDPOINT")
    upload_access_key_id: Optional[str] = env_field(None, "SPRINGCACHE_UPLOAD_ACCESS_KEY_ID")
    upload_secret_access_key: Optional[SecretStr] = env_field(None, "SPRINGCACHE_UPLOAD_SECRET_ACCESS_KEY")
    upload_category: str = env_field("map", "SPRINGCACHE_UPLOAD_CATEGORY")
    upload_path: str = env_field("maps", "SPRINGCACHE_UPLOAD_PATH")
    host: str = env_field("0.0.0.0", "SPRINGCACHE_HOST")
    port: int = env_field(8080, "PORT")
    metrics_token: Optional[SecretStr] = env_field(None, "SPRINGCACHE_METRICS_TOKEN")
    log_level: str = env_field("INFO", "SPRINGCACHE_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "SPRINGCACHE_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "SPRINGCACHE_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "SPRINGCACHE_OTEL_SAMPLER_RATIO")

    @field_validator("digest_algorithm")
    @classmethod
    def _known_digest(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in hashlib.algorithms_available:
            raise ValueError(f"unsupported digest algorithm: {value}")
        return normalized
