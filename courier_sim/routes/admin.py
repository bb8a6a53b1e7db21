from dataclasses import asdict

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from courier_sim import db
from courier_sim.worker import SweepScheduler

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/sweep")
async def sweep_now() -> JSONResponse:
    """
    Run one sweep over all open orders right now, outside the worker's schedule.
    Goes through the same tick as the worker: takes the sweep lock and records sweep metrics.
    Returns the sweep report, or status "skipped" if the lock is held or orders could not be loaded.
    """
    pool = await db.get_pool()
    report = await SweepScheduler(pool).tick()
    if report is None:
        return JSONResponse(
            status_code=409,
            content={"status": "skipped"},
        )
    return JSONResponse(
        status_code=200,
        content={"status": "ok", **asdict(report)},
    )
