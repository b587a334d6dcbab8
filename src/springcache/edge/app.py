"""Edge lookup service answering /find and /file requests."""

from __future__ import annotations

import tempfile
import time
from pathlib import Path
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, StreamingResponse

from ..common.errors import BadRequest, CacheError
from ..common.http_security import require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.routing import GeoPoint
from ..common.settings import EdgeSettings
from ..common.storage import upload_to_all
from .response_cache import wants_fresh
from .service import EdgeContext, EdgeLookupService, build_edge_context


LOGGER = structlog.get_logger("springcache.edge")

KNOWN_FIND_PARAMS = {"category", "springname"}
IMMUTABLE_CACHE_CONTROL = "public, max-age=31536000, immutable"

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("springcache_edge_requests_total", "Total edge requests"))
LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "springcache_edge_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0],
        description="Edge request latency",
    )
)


def get_context(request: Request) -> EdgeContext:
    return request.app.state.edge  # type: ignore[attr-defined]


def get_service(request: Request) -> EdgeLookupService:
    return EdgeLookupService(get_context(request))


def request_origin(request: Request) -> str:
    return str(request.base_url).rstrip("/")


def create_app(settings: Optional[EdgeSettings] = None, context: Optional[EdgeContext] = None) -> FastAPI:
    if context is not None:
        settings = context.settings
    settings = settings or EdgeSettings()
    configure_logging("springcache.edge", settings.log_level)
    configure_tracing(
        service_name="springcache.edge",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )

    async def lifespan(app: FastAPI):
        edge = context or build_edge_context(settings)
        app.state.edge = edge
        LOGGER.info("edge_started", regions=list(edge.stores), categories=settings.allowed_categories)
        try:
            yield
        finally:
            await edge.aclose()

    app = FastAPI(lifespan=lifespan)
    instrument_fastapi_app(app)

    @app.exception_handler(CacheError)
    async def cache_error_handler(request: Request, exc: CacheError) -> PlainTextResponse:
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
        elif duration >= 1.0:
            LOGGER.warning("http_request", **log_kwargs)
        else:
            LOGGER.info("http_request", **log_kwargs)
        return response

    @app.get("/find")
    async def find(
        request: Request,
        ctx: EdgeContext = Depends(get_context),
        service: EdgeLookupService = Depends(get_service),
    ) -> Response:
        params = request.query_params
        for key, value in params.multi_items():
            if key not in KNOWN_FIND_PARAMS:
                LOGGER.warning("unknown_query_param", param=key, value=value)
        category = params.get("category")
        springname = params.get("springname")
        if category is None:
            raise BadRequest("Missing category param")
        if springname is None:
            raise BadRequest("Missing springname param")
        if len(springname) > ctx.settings.max_springname_length:
            raise BadRequest("springname too long")
        if category not in ctx.settings.allowed_categories:
            return RedirectResponse(ctx.catalog.search_url(category, springname), status_code=status.HTTP_302_FOUND)

        assets = await service.find_asset(category, springname, request_origin(request))
        return JSONResponse([asset.to_payload() for asset in assets])

    @app.get("/file/{object_path:path}")
    async def read_file(
        object_path: str,
        request: Request,
        ctx: EdgeContext = Depends(get_context),
        service: EdgeLookupService = Depends(get_service),
    ) -> Response:
        parts = object_path.split("/")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise BadRequest("Incorrect request for file")
        content_hash = parts[0]
        origin = GeoPoint.from_headers(request.headers, ctx.settings.latitude_header, ctx.settings.longitude_header)
        override = request.headers.get(ctx.settings.region_override_header)
        stored, source = await service.read_content(
            content_hash,
            origin,
            override,
            use_response_cache=not wants_fresh(request.headers),
        )
        if stored is None:
            return PlainTextResponse("Object Not Found", status_code=status.HTTP_404_NOT_FOUND)
        headers = {
            "etag": stored.etag,
            "cache-control": IMMUTABLE_CACHE_CONTROL,
            "x-springcache-source": source,
        }
        if stored.size:
            headers["content-length"] = str(stored.size)
        return StreamingResponse(stored.body, media_type=stored.content_type, headers=headers)

    if settings.dev_mode:

        @app.put("/put_object")
        async def put_object(request: Request, ctx: EdgeContext = Depends(get_context)) -> PlainTextResponse:
            name = request.query_params.get("name")
            if not name:
                raise BadRequest()
            with tempfile.TemporaryDirectory(prefix="put-object-") as tmp:
                staged = Path(tmp) / "object"
                with staged.open("wb") as handle:
                    async for chunk in request.stream():
                        handle.write(chunk)
                await upload_to_all(list(ctx.stores.values()), name, staged)
            return PlainTextResponse("OK")

        @app.put("/put_kv")
        async def put_kv(request: Request, ctx: EdgeContext = Depends(get_context)) -> PlainTextResponse:
            key = request.query_params.get("key")
            body = await request.body()
            if not key or not body:
                raise BadRequest()
            await ctx.index.put(key, body.decode("utf-8"))
            return PlainTextResponse("OK")

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, ctx: EdgeContext = Depends(get_context)) -> PlainTextResponse:
        require_metrics_access(request, ctx.settings.metrics_token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.get("/healthz")
    async def health_check(ctx: EdgeContext = Depends(get_context)) -> dict:
        return {
            "status": "healthy",
            "index": ctx.index.status(),
            "regions": [store.status() for store in ctx.stores.values()],
            "pending_background_tasks": ctx.background.pending,
            "response_cache": ctx.response_cache is not None,
        }

    return app


def main() -> None:
    import uvicorn

    settings = EdgeSettings()
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)

