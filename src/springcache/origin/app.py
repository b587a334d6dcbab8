"""Origin service receiving push deliveries on /cache and /upload."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional

import httpx
import structlog
from fastapi import Depends, FastAPI, Request, status
from fastapi.responses import PlainTextResponse

from ..common.errors import BadRequest, CacheError
from ..common.http_security import require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.schemas import ObjectResource, PushRequest, SyncRequest
from ..common.settings import OriginSettings
from .ingest import UploadIngestService, build_ingest_service
from .population import POPULATIONS, PopulationService, build_population_service


LOGGER = structlog.get_logger("springcache.origin")

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("springcache_origin_requests_total", "Total origin requests"))
LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "springcache_origin_request_latency_seconds",
        buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0],
        description="Origin request latency",
    )
)


@dataclass
class OriginContext:
    settings: OriginSettings
    population: PopulationService
    ingest: UploadIngestService
    http_client: Optional[httpx.AsyncClient] = field(default=None, repr=False)

    async def aclose(self) -> None:
        await self.population.index.aclose()
        if self.http_client is not None:
            await self.http_client.aclose()


def build_origin_context(
    settings: OriginSettings, transport: Optional[httpx.AsyncBaseTransport] = None
) -> OriginContext:
    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.mirror_timeout_seconds, connect=settings.upstream_timeout_seconds),
        follow_redirects=True,
        transport=transport,
    )
    population = build_population_service(settings, http_client)
    return OriginContext(
        settings=settings,
        population=population,
        ingest=build_ingest_service(settings, population),
        http_client=http_client,
    )


def get_context(request: Request) -> OriginContext:
    return request.app.state.origin  # type: ignore[attr-defined]


def require_attributes(push: PushRequest, expected: dict[str, str], message: str) -> None:
    attributes = push.message.attributes
    if any(attributes.get(name) != value for name, value in expected.items()):
        raise BadRequest(message)


def acknowledge_unretryable(exc: CacheError, **fields) -> PlainTextResponse:
    """Ack a delivery that can never succeed so the queue stops redelivering it."""
    POPULATIONS.inc(outcome="dropped")
    LOGGER.warning("population_dropped", error=exc.message, error_type=type(exc).__name__, **fields)
    return PlainTextResponse("ok")


def create_app(settings: Optional[OriginSettings] = None, context: Optional[OriginContext] = None) -> FastAPI:
    if context is not None:
        settings = context.settings
    settings = settings or OriginSettings()
    configure_logging("springcache.origin", settings.log_level)
    configure_tracing(
        service_name="springcache.origin",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )

    async def lifespan(app: FastAPI):
        origin = context or build_origin_context(settings)
        app.state.origin = origin
        LOGGER.info("origin_started", regions=[store.name for store in origin.population.stores])
        try:
            yield
        finally:
            await origin.aclose()

    app = FastAPI(lifespan=lifespan)
    instrument_fastapi_app(app)

    @app.exception_handler(CacheError)
    async def cache_error_handler(request: Request, exc: CacheError) -> PlainTextResponse:
        if exc.status_code >= 500:
            LOGGER.error("delivery_failed", path=request.url.path, error=exc.message, status=exc.status_code)
        return PlainTextResponse(exc.message, status_code=exc.status_code)

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        REQUEST_COUNTER.inc()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            LATENCY_HISTOGRAM.observe(duration)
            LOGGER.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            return PlainTextResponse("Internal Server Error", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

        duration = time.perf_counter() - start
        LATENCY_HISTOGRAM.observe(duration)
        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            LOGGER.error("http_request", **log_kwargs)
        else:
            LOGGER.info("http_request", **log_kwargs)
        return response

    @app.post("/cache", response_class=PlainTextResponse)
    async def handle_sync_request(request: Request, ctx: OriginContext = Depends(get_context)) -> PlainTextResponse:
        push = PushRequest.parse(await request.body())
        require_attributes(push, {"requestType": "SyncRequest"}, "expected requestType=SyncRequest attribute")
        sync = push.message.decode_data(SyncRequest)
        LOGGER.info("sync_request_received", message_id=push.message.message_id, springname=sync.springname)
        try:
            await ctx.population.populate(sync.category, sync.springname)
        except CacheError as exc:
            if exc.retryable:
                raise
            return acknowledge_unretryable(exc, category=sync.category, springname=sync.springname)
        return PlainTextResponse("ok")

    @app.post("/upload", response_class=PlainTextResponse)
    async def handle_upload(request: Request, ctx: OriginContext = Depends(get_context)) -> PlainTextResponse:
        push = PushRequest.parse(await request.body())
        require_attributes(
            push,
            {"eventType": "OBJECT_FINALIZE", "payloadFormat": "JSON_API_V1"},
            "expected OBJECT_FINALIZE with JSON_API_V1 payload",
        )
        obj = push.message.decode_data(ObjectResource)
        try:
            await ctx.ingest.ingest(obj)
        except CacheError as exc:
            if exc.retryable:
                raise
            return acknowledge_unretryable(exc, bucket=obj.bucket, name=obj.name)
        return PlainTextResponse("ok")

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, ctx: OriginContext = Depends(get_context)) -> PlainTextResponse:
        require_metrics_access(request, ctx.settings.metrics_token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.get("/healthz")
    async def health_check(ctx: OriginContext = Depends(get_context)) -> dict:
        return {
            "status": "healthy",
            "index": ctx.population.index.status(),
            "regions": [store.status() for store in ctx.population.stores],
            "upload_source": ctx.ingest.source.status(),
        }

    return app


def main() -> None:
    import uvicorn

    settings = OriginSettings()
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)
