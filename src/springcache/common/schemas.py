"""Data models exchanged between the edge, the origin and the metadata index."""

from __future__ import annotations

import base64
import binascii
import json
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import BadRequest


def cache_key(category: str, springname: str) -> str:
    """Metadata index key for an asset, stable across restarts."""
    return f"from_name/{category}/{springname}"


def content_path(content_hash: str, filename: str) -> str:
    """Relative edge path serving the bytes of an asset."""
    return f"file/{content_hash}/{filename}"


class AssetDescriptor(BaseModel):
    """One cached file as described by the upstream catalog.

    Field aliases follow the upstream JSON (``md5``, ``size``) so descriptors
    round-trip through the catalog, the index and ``/find`` unchanged. Fields
    the cache does not know are kept, so a miss answers with the upstream
    record as published; ``index_record`` drops them.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    category: str
    springname: str
    filename: str
    content_hash: str = Field(alias="md5")
    size_bytes: int = Field(alias="size")
    timestamp: str
    path: str = ""
    tags: list[str] = Field(default_factory=list)
    mirrors: list[str] = Field(default_factory=list)
    name: Optional[str] = None
    sdp: Optional[str] = None
    version: Optional[str] = None

    @property
    def key(self) -> str:
        return cache_key(self.category, self.springname)

    def index_record(self) -> "AssetDescriptor":
        """Copy stored in the metadata index: no tags, one relative mirror."""
        return AssetDescriptor(
            category=self.category,
            springname=self.springname,
            filename=self.filename,
            md5=self.content_hash.lower(),
            size=self.size_bytes,
            timestamp=self.timestamp,
            path=self.path,
            tags=[],
            mirrors=[content_path(self.content_hash.lower(), self.filename)],
        )

    def with_absolute_mirrors(self, origin: str) -> "AssetDescriptor":
        base = origin.rstrip("/")
        return self.model_copy(update={"mirrors": [f"{base}/{mirror.lstrip('/')}" for mirror in self.mirrors]})

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "AssetDescriptor":
        return cls.model_validate_json(raw)


class SyncRequest(BaseModel):
    """Delivery payload asking the origin to populate one asset."""

    category: str
    springname: str


class ObjectResource(BaseModel):
    """Subset of the storage object resource sent with OBJECT_FINALIZE notifications."""

    model_config = ConfigDict(extra="ignore")

    bucket: str
    name: str


class PushMessage(BaseModel):
    attributes: dict[str, str] = Field(default_factory=dict)
    data: Optional[str] = None
    message_id: Optional[str] = Field(default=None, alias="messageId")
    publish_time: Optional[str] = Field(default=None, alias="publishTime")

    model_config = ConfigDict(populate_by_name=True)

    def decode_data(self, model: type[BaseModel]) -> BaseModel:
        """Decode the base64 JSON body into ``model``, mapping failures to 400."""
        if not self.data:
            raise BadRequest("message doesn't have data property")
        try:
            raw = base64.b64decode(self.data, validate=True)
            return model.model_validate(json.loads(raw.decode("utf-8")))
        except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
            raise BadRequest(f"message data is not a valid {model.__name__}") from exc


class PushRequest(BaseModel):
    """Envelope of a push subscription delivery."""

    message: PushMessage
    subscription: Optional[str] = None

    @classmethod
    def parse(cls, body: bytes) -> "PushRequest":
        try:
            return cls.model_validate_json(body)
        except ValidationError as exc:
            raise BadRequest("malformed push request") from exc

    @staticmethod
    def envelope(payload: str, attributes: dict[str, str], message_id: str = "local") -> dict:
        return {
            "message": {
                "attributes": attributes,
                "data": base64.b64encode(payload.encode("utf-8")).decode("ascii"),
                "messageId": message_id,
            },
            "subscription": "direct",
        }
