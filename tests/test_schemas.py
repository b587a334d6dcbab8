from __future__ import annotations

import json

import pytest

from springcache.common.errors import BadRequest
from springcache.common.schemas import AssetDescriptor, PushRequest, SyncRequest, cache_key, content_path

from conftest import ABERDEEN_MD5, aberdeen_descriptor


def test_keys_and_paths() -> None:
    assert cache_key("map", "Aberdeen3v3v3") == "from_name/map/Aberdeen3v3v3"
    assert content_path("abc", "aberdeen3v3v3.sd7") == "file/abc/aberdeen3v3v3.sd7"


def test_descriptor_keeps_upstream_field_names() -> None:
    asset = AssetDescriptor.model_validate(aberdeen_descriptor(version="1.0", sdp=None))
    payload = json.loads(asset.to_json())
    assert payload["md5"] == ABERDEEN_MD5.upper()
    assert payload["size"] == asset.size_bytes
    assert payload["version"] == "1.0"
    assert "sdp" not in payload
    assert payload["description"] == aberdeen_descriptor()["description"]


def test_index_record_is_normalized() -> None:
    record = AssetDescriptor.model_validate(aberdeen_descriptor()).index_record()
    assert record.content_hash == ABERDEEN_MD5
    assert record.tags == []
    assert record.mirrors == [f"file/{ABERDEEN_MD5}/aberdeen3v3v3.sd7"]
    assert record.name is None
    assert "description" not in record.to_payload()


def test_absolute_mirrors() -> None:
    record = AssetDescriptor.model_validate(aberdeen_descriptor()).index_record()
    assert record.with_absolute_mirrors("https://files.test/").mirrors == [
        f"https://files.test/file/{ABERDEEN_MD5}/aberdeen3v3v3.sd7"
    ]


def test_push_envelope_decodes() -> None:
    envelope = PushRequest.envelope(SyncRequest(category="map", springname="A").model_dump_json(), {"k": "v"}, "7")
    push = PushRequest.parse(json.dumps(envelope).encode())
    assert push.message.message_id == "7"
    assert push.message.decode_data(SyncRequest) == SyncRequest(category="map", springname="A")


def test_push_data_must_be_base64_json() -> None:
    push = PushRequest.parse(json.dumps({"message": {"data": "%%%"}}).encode())
    with pytest.raises(BadRequest):
        push.message.decode_data(SyncRequest)
