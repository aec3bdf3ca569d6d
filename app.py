import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pricing_engine import ConfigurationError, PricingEngine, build_engine
from pricing_engine.orchestrator.resolver import coerce_priority

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
log = logging.getLogger("pe.api")

MAX_KEYS_PER_REQUEST = 50


def create_app(engine: Optional[PricingEngine] = None, start_scheduler: bool = True) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.engine = engine or build_engine()
        if start_scheduler:
            await app.state.engine.start()
        yield
        await app.state.engine.close()

    app = FastAPI(
        title="Card Price API",
        description="Card prices resolved through cache, store and provider by priority.",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ConfigurationError)
    async def configuration_error(request: Request, exc: ConfigurationError):
        log.error(f"Configuration error on {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"detail": f"Pricing misconfigured: {exc}"})

    def _engine(request: Request) -> PricingEngine:
        return request.app.state.engine

    def _priority(value: str):
        try:
            return coerce_priority(value)
        except ValueError as e:
            raise HTTPException(400, str(e))

    @app.get("/")
    async def root():
        return {"status": "ok", "docs": "/docs", "api": "/api/price/sv4-23?priority=balanced"}

    @app.get("/health")
    async def health(request: Request):
        engine = _engine(request)
        ping = getattr(engine.store, "ping", None)
        store_ok = await ping() if ping is not None else True
        return {
            "status":    "healthy" if store_ok else "degraded",
            "store":     engine.store.name if store_ok else f"{engine.store.name} unavailable (memory only)",
            "cached":    len(engine.cache),
            "scheduler": engine.scheduler.state.value,
            "timestamp": int(time.time()),
        }

    @app.get("/api/price/{item_key}", tags=["Prices"])
    async def get_single_price(
        request: Request,
        item_key: str,
        priority: str = Query("balanced", description="speed | balanced | freshness"),
    ):
        mode = _priority(priority)
        result = await _engine(request).orchestrator.resolve(item_key, mode)
        return result.to_dict()

    @app.get("/api/prices", tags=["Prices"])
    async def get_multiple_prices(
        request: Request,
        keys: str = Query(..., description="Comma-separated item keys e.g. sv4-23,base1-4"),
        priority: str = Query("balanced", description="speed | balanced | freshness"),
    ):
        raw = list(dict.fromkeys(k.strip() for k in keys.split(",") if k.strip()))
        if not raw:
            raise HTTPException(400, "No item keys provided")
        if len(raw) > MAX_KEYS_PER_REQUEST:
            raise HTTPException(400, f"Maximum {MAX_KEYS_PER_REQUEST} item keys per request")
        mode = _priority(priority)
        results = await _engine(request).orchestrator.resolve_many(raw, mode)
        return {
            "keys":      raw,
            "priority":  mode.value,
            "count":     len(results),
            "timestamp": int(time.time()),
            "data":      {k: r.to_dict() for k, r in results.items()},
        }

    @app.get("/api/pricing/stats", tags=["Admin"])
    async def pricing_stats(request: Request):
        return _engine(request).stats()

    @app.get("/api/pricing/scheduler", tags=["Admin"])
    async def scheduler_status(request: Request):
        return _engine(request).scheduler.status()

    @app.post("/api/pricing/sync", tags=["Admin"])
    async def trigger_sync(request: Request):
        return _engine(request).scheduler.trigger_now()

    @app.delete("/api/pricing/cache", tags=["Admin"])
    async def clear_cache(request: Request):
        cache = _engine(request).cache
        cleared = len(cache)
        cache.clear()
        log.info(f"Price cache cleared ({cleared} entries)")
        return {"cleared": cleared}

    @app.delete("/api/pricing/cache/{item_key}", tags=["Admin"])
    async def invalidate_key(request: Request, item_key: str):
        return {"item_key": item_key, "invalidated": _engine(request).cache.invalidate(item_key)}

    return app


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run("app:create_app", factory=True, host="0.0.0.0", port=port, reload=False, log_level="info")
