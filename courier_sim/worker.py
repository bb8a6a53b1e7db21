"""
Worker: sweep all open orders every tick_interval_seconds, one tick per order.
- Ticks run serially; an overrunning sweep skips the missed ticks instead of queueing them.
- Redis lock so only one worker process sweeps at a time.
- Prometheus /metrics on worker_metrics_port (worker metrics).
- Graceful shutdown on SIGTERM.
Run: python -m courier_sim.worker
"""
import asyncio
import logging
import signal
import socket
import sys
import threading
import time
import uuid

from courier_sim.config import settings
from courier_sim.db import close_pool, get_pool, init_schema
from courier_sim.metrics import sweep_duration_seconds, sweep_ticks_skipped_total, sweep_ticks_total
from courier_sim.redis_client import acquire_sweep_lock, close_redis, release_sweep_lock
from courier_sim.simulator import SweepReport, run_sweep

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(settings.worker_metrics_port)


class SweepScheduler:
    """
    Owns the sweep loop. tick() runs exactly one sweep, so tests (and /admin/sweep)
    can drive it by hand; run() repeats it until stop() or the shutdown event.
    """

    def __init__(
        self,
        pool,
        interval: float | None = None,
        step: float | None = None,
        use_lock: bool | None = None,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        self.pool = pool
        self.interval = settings.tick_interval_seconds if interval is None else interval
        self.step = settings.courier_speed if step is None else step
        self.use_lock = settings.sweep_lock_enabled if use_lock is None else use_lock
        self.owner = f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"
        self._stop_event = shutdown_event or asyncio.Event()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        self._stop_event.set()

    async def tick(self) -> SweepReport | None:
        """Run one sweep. Returns None if the tick was skipped or could not load orders."""
        if self.use_lock:
            try:
                acquired = await acquire_sweep_lock(self.owner, settings.sweep_lock_ttl_seconds)
            except Exception:
                sweep_ticks_skipped_total.labels(reason="lock_error").inc()
                logger.exception("Could not reach Redis for the sweep lock, skipping tick")
                return None
            if not acquired:
                sweep_ticks_skipped_total.labels(reason="lock_held").inc()
                logger.info("Another worker holds the sweep lock, skipping tick")
                return None

        started = time.monotonic()
        try:
            report = await run_sweep(self.pool, self.step)
        except Exception:
            logger.exception("Sweep failed to load open orders, will retry next tick")
            return None
        finally:
            sweep_duration_seconds.observe(time.monotonic() - started)
            if self.use_lock:
                try:
                    if not await release_sweep_lock(self.owner):
                        logger.warning("Sweep lock expired before the sweep finished (ttl=%ds)", settings.sweep_lock_ttl_seconds)
                except Exception:
                    logger.warning("Could not release sweep lock, it expires in %ds", settings.sweep_lock_ttl_seconds)

        sweep_ticks_total.inc()
        if report.processed:
            logger.info(
                "Sweep done: processed=%d advanced=%d skipped=%d failed=%d",
                report.processed,
                report.advanced,
                report.skipped,
                report.failed,
            )
        return report

    async def run(self) -> None:
        logger.info(
            "Sweeping every %.1fs (step=%.2f, lock=%s) ...",
            self.interval,
            self.step,
            "on" if self.use_lock else "off",
        )
        while not self.stopped:
            started = time.monotonic()
            await self.tick()
            elapsed = time.monotonic() - started
            if elapsed > self.interval:
                missed = int(elapsed // self.interval)
                sweep_ticks_skipped_total.labels(reason="overrun").inc(missed)
                logger.warning("Sweep took %.1fs, skipping %d tick(s)", elapsed, missed)
            delay = self.interval - (elapsed % self.interval)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass


async def run_worker(shutdown_event: asyncio.Event) -> None:
    pool = await get_pool()
    if settings.init_schema:
        await init_schema(pool)
    scheduler = SweepScheduler(pool, shutdown_event=shutdown_event)
    logger.info("Schema ready. Worker %s starting.", scheduler.owner)
    try:
        await scheduler.run()
    finally:
        await close_redis()
        await close_pool()
        logger.info("Worker stopped.")


def main() -> None:
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", settings.worker_metrics_port)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_worker(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
