from contextlib import asynccontextmanager
from dataclasses import asdict
import time
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
import structlog

from cache.service import ExplorerCache
from config.logging import configure_logging
from config.settings import ExplorerSettings
from error_handling.errors import UpstreamError

logger = structlog.get_logger()

BLOCKS_PER_PAGE = 25

REQUEST_COUNT = Counter(
    'chainview_http_requests_total',
    'Total HTTP requests',
    ['endpoint', 'method', 'status']
)

REQUEST_LATENCY = Histogram(
    'chainview_http_request_duration_seconds',
    'HTTP request latency',
    ['endpoint', 'method']
)


async def _rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Handle rate limit exceeded errors."""
    return JSONResponse(
        status_code=429,
        content={
            "error": "Too many requests",
            "detail": str(exc.detail),
        }
    )


def create_app(settings: Optional[ExplorerSettings] = None,
               service: Optional[ExplorerCache] = None,
               start_updates: bool = True) -> FastAPI:
    """
    Build the JSON API around an explorer cache service.

    The service is opened on startup and closed on shutdown.
    """
    settings = settings or ExplorerSettings()
    service = service or ExplorerCache(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.open(start_updates=start_updates)
        try:
            yield
        finally:
            await service.close()

    app = FastAPI(
        title="Chainview Explorer",
        description="Cached blockchain dashboard API",
        version="0.1.0",
        lifespan=lifespan
    )
    app.state.service = service

    limiter = Limiter(key_func=get_remote_address)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    def clamp_days(days: int) -> int:
        return min(max(days, 1), settings.STATS_MAX_DAYS)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)
        route = request.scope.get("route")
        endpoint = getattr(route, "path", "unmatched")
        REQUEST_COUNT.labels(endpoint=endpoint, method=request.method,
                             status=response.status_code).inc()
        REQUEST_LATENCY.labels(endpoint=endpoint, method=request.method).observe(
            time.perf_counter() - start_time
        )
        return response

    @app.get("/api/dashboard")
    @limiter.limit("60/minute")
    async def dashboard(request: Request):
        """Live dashboard data from the cache."""
        snapshot = await service.dashboard_or_fallback()
        if snapshot is None:
            return JSONResponse(status_code=503,
                                content={"error": "Data not ready, please wait..."})
        data = snapshot.to_dict()
        data["isFresh"] = service.is_fresh()
        return data

    @app.get("/api/blocks/recent")
    @limiter.limit("60/minute")
    async def recent_blocks(request: Request, page: int = Query(1, ge=1)):
        """Recent blocks; page 1 comes from the live cache when it is warm."""
        if page == 1:
            blocks = service.get_blocks()
            tip_height = service.get_tip_height()
            if blocks and tip_height is not None:
                return {
                    "blocks": [block.to_dict() for block in blocks[:BLOCKS_PER_PAGE]],
                    "tipHeight": tip_height,
                    "currentPage": 1,
                    "totalPages": -(-(tip_height + 1) // BLOCKS_PER_PAGE),
                    "isFresh": service.is_fresh(),
                }

        try:
            tip_height = int(await service.fetch('/blocks/tip/height'))
            start_height = tip_height - (page - 1) * BLOCKS_PER_PAGE
            blocks = await service.fetch(f'/blocks/{start_height}')
        except (UpstreamError, ValueError, TypeError) as e:
            logger.error("recent_blocks_error", page=page, error=str(e))
            raise HTTPException(status_code=502, detail="Data unavailable")

        return {
            "blocks": blocks,
            "tipHeight": tip_height,
            "currentPage": page,
            "totalPages": -(-(tip_height + 1) // BLOCKS_PER_PAGE),
        }

    @app.get("/api/stats/daily")
    @limiter.limit("60/minute")
    def daily_stats(request: Request, days: int = 7):
        return [asdict(record) for record in service.get_daily_stats(clamp_days(days))]

    @app.get("/api/stats/daily-tx")
    @limiter.limit("60/minute")
    def daily_tx(request: Request, days: int = 7):
        return service.get_daily_tx_counts(clamp_days(days))

    @app.get("/api/stats/block-size")
    @limiter.limit("60/minute")
    def block_size(request: Request, days: int = 7):
        return service.get_daily_block_sizes(clamp_days(days))

    @app.get("/api/stats/block-reward")
    @limiter.limit("60/minute")
    async def block_reward(request: Request):
        return service.block_reward_info()

    @app.get("/api/stats/cache-info")
    async def cache_info(request: Request):
        return service.cache_info()

    @app.get("/api/tx/{txid}")
    @limiter.limit("60/minute")
    async def transaction(request: Request, txid: str):
        return await _fetch_object(f'/tx/{txid}')

    @app.get("/api/block/{block_hash}")
    @limiter.limit("60/minute")
    async def block(request: Request, block_hash: str):
        return await _fetch_object(f'/block/{block_hash}')

    async def _fetch_object(path: str):
        try:
            return await service.fetch(path)
        except UpstreamError as e:
            logger.error("object_fetch_error", path=path, error=e.message, status=e.status)
            if e.status == 404:
                raise HTTPException(status_code=404, detail="Not found")
            raise HTTPException(status_code=502, detail="Data unavailable")

    @app.get("/metrics")
    async def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


def main() -> None:
    import uvicorn

    settings = ExplorerSettings()
    configure_logging(settings.LOG_LEVEL)
    uvicorn.run(
        create_app(settings),
        host=settings.API_HOST,
        port=settings.API_PORT
    )


if __name__ == "__main__":
    main()
