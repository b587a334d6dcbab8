"""Publishers that hand population triggers to the delivery queue."""

from __future__ import annotations

import base64
import json
import time
from typing import Optional

import httpx
import jwt
import structlog

from .errors import BadGateway
from .schemas import PushRequest, SyncRequest


LOGGER = structlog.get_logger("springcache.delivery")

PUBSUB_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
SYNC_REQUEST_ATTRIBUTES = {"requestType": "SyncRequest"}


class Publisher:
    async def publish(self, data: str, attributes: dict[str, str]) -> str:  # pragma: no cover - interface
        raise NotImplementedError

    async def publish_sync_request(self, request: SyncRequest) -> str:
        return await self.publish(request.model_dump_json(), dict(SYNC_REQUEST_ATTRIBUTES))


class ServiceAccountTokenSource:
    """Exchanges a signed service-account assertion for an OAuth2 access token."""

    def __init__(self, http_client: httpx.AsyncClient, service_account_key: str, clock=time.time) -> None:
        try:
            key = json.loads(service_account_key)
            self._client_email = key["client_email"]
            self._private_key = key["private_key"]
            self._token_uri = key["token_uri"]
        except (ValueError, KeyError) as exc:
            raise RuntimeError("Service account key is not valid JSON with client_email/private_key/token_uri") from exc
        self._private_key_id = key.get("private_key_id")
        self._client = http_client
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0

    def _assertion(self) -> str:
        now = int(self._clock())
        payload = {
            "iss": self._client_email,
            "scope": PUBSUB_SCOPE,
            "aud": self._token_uri,
            "iat": now,
            "exp": now + 300,
        }
        headers = {"kid": self._private_key_id} if self._private_key_id else None
        return jwt.encode(payload, self._private_key, algorithm="RS256", headers=headers)

    async def token(self) -> str:
        if self._token and self._clock() < self._expires_at:
            return self._token
        response = await self._client.post(
            self._token_uri,
            data={"grant_type": JWT_BEARER_GRANT, "assertion": self._assertion()},
        )
        if not response.is_success:
            raise BadGateway(f"Getting auth token failed with {response.status_code}")
        body = response.json()
        self._token = body["access_token"]
        # Refresh a minute before expiry.
        self._expires_at = self._clock() + max(0, int(body.get("expires_in", 3600)) - 60)
        return self._token


class PubSubPublisher(Publisher):
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        topic: str,
        token_source: ServiceAccountTokenSource,
        endpoint: str = "https://pubsub.googleapis.com/v1",
    ) -> None:
        self._client = http_client
        self._topic = topic
        self._tokens = token_source
        self._publish_url = f"{endpoint.rstrip('/')}/{topic}:publish"

    async def publish(self, data: str, attributes: dict[str, str]) -> str:
        token = await self._tokens.token()
        message = {
            "messages": [
                {"data": base64.b64encode(data.encode("utf-8")).decode("ascii"), "attributes": attributes},
            ]
        }
        response = await self._client.post(
            self._publish_url,
            json=message,
            headers={"Authorization": f"Bearer {token}"},
        )
        if not response.is_success:
            raise BadGateway(f"Push failed with {response.status_code}")
        message_ids = response.json().get("messageIds") or []
        if not message_ids:
            raise BadGateway("Publish response carried no message id")
        LOGGER.debug("message_published", topic=self._topic, message_id=message_ids[0])
        return str(message_ids[0])


class DirectPushPublisher(Publisher):
    """Delivers the push envelope straight to an origin service, for local stacks."""

    def __init__(self, http_client: httpx.AsyncClient, push_url: str) -> None:
        self._client = http_client
        self._push_url = push_url
        self._sequence = 0

    async def publish(self, data: str, attributes: dict[str, str]) -> str:
        self._sequence += 1
        message_id = f"direct-{self._sequence}"
        response = await self._client.post(
            self._push_url,
            json=PushRequest.envelope(data, attributes, message_id=message_id),
        )
        if not response.is_success:
            raise BadGateway(f"Push failed with {response.status_code}")
        return message_id


def build_publisher(settings, http_client: httpx.AsyncClient) -> Publisher:
    if settings.origin_push_url:
        return DirectPushPublisher(http_client, settings.origin_push_url)
    if not settings.pubsub_topic or settings.service_account_key is None:
        raise RuntimeError("Delivery queue configuration incomplete: set a Pub/Sub topic and service account key")
    token_source = ServiceAccountTokenSource(http_client, settings.service_account_key.get_secret_value())
    return PubSubPublisher(http_client, settings.pubsub_topic, token_source, endpoint=settings.pubsub_endpoint)
