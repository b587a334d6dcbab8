"""Classified errors shared by the edge and origin services."""

from __future__ import annotations

from typing import Optional

from fastapi import status


class CacheError(Exception):
    """Base class for errors that carry an HTTP status for callers."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "Internal Server Error"
    retryable: bool = True

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class BadRequest(CacheError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Bad Request"


class NotFound(CacheError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not Found"


class BadGateway(CacheError):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Bad Gateway"


class InternalServerError(CacheError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Internal Server Error"


class InvalidUpstreamResponse(BadRequest):
    """The upstream catalog broke its single, exact result contract.

    Redelivering the same request will produce the same answer, so the
    population path drops these instead of failing the delivery.
    """

    retryable = False

