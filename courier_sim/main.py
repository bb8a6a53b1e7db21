from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import Response

from courier_sim.db import close_pool
from courier_sim.metrics import get_metrics_bytes, get_metrics_content_type
from courier_sim.redis_client import close_redis
from courier_sim.routes import admin, orders


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_redis()
    await close_pool()


app = FastAPI(title="Courier Simulator", lifespan=lifespan)
app.include_router(orders.router)
app.include_router(admin.router)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint: pull-mode ticks and notifications from this API process."""
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )
