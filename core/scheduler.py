"""
Dispatch Scheduler — cooperative timer that drives the dispatch cycle.

Runs as a background task inside the FastAPI lifespan.

States:
    stopped ──start()──▶ running ──pause()──▶ paused
       ▲                    │  ◀──resume()──    │
       └──────stop()────────┴───────────────────┘

Each tick waits `interval_ms`, then runs the callback unless paused.
A paused tick is skipped but the timer keeps going. Callback errors are
logged and the loop carries on. stop() never interrupts a cycle that is
already running; it waits for that cycle to finish and no further
tick happens.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

logger = structlog.get_logger()

MIN_INTERVAL_MS = 1000

CycleCallback = Callable[[], Awaitable[Any]]


class DispatchScheduler:
    """
    Usage:
        scheduler = DispatchScheduler(dispatcher.run_cycle, interval_ms=60000)
        await scheduler.start()
        await scheduler.force_cycle()    # manual trigger
        await scheduler.stop()
    """

    def __init__(self, callback: CycleCallback, interval_ms: int = 60000,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        _check_interval(interval_ms)
        self.callback = callback
        self.interval_ms = interval_ms
        self._sleep = sleep
        self._running = False
        self._paused = False
        self._in_cycle = False
        self._loop_in_cycle = False
        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._cycle_lock = asyncio.Lock()

        self.ticks = 0
        self.skipped_ticks = 0
        self.failed_cycles = 0
        self.last_error: str = ""
        self.last_cycle_at: Optional[datetime] = None

    @property
    def state(self) -> str:
        if not self._running:
            return "stopped"
        return "paused" if self._paused else "running"

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_paused(self) -> bool:
        return self._paused

    # ── Lifecycle ─────────────────────────────────────────

    async def start(self) -> None:
        """Arm the first tick one interval from now."""
        if self._running:
            logger.warning("scheduler_already_running")
            return
        self._running = True
        self._paused = False
        self._generation += 1
        self._task = asyncio.create_task(self._loop(self._generation), name="dispatch_scheduler")
        logger.info("scheduler_started", interval_ms=self.interval_ms)

    async def stop(self) -> None:
        """Cancel the pending tick. A cycle in flight is awaited, never cancelled."""
        if not self._running and self._task is None:
            return
        self._running = False
        self._paused = False
        self._generation += 1
        task, self._task = self._task, None
        if task and not task.done():
            if self._loop_in_cycle:
                logger.info("scheduler_stop_waiting_for_cycle")
                await task
            else:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        logger.info("scheduler_stopped")

    def pause(self) -> None:
        if self._running and not self._paused:
            self._paused = True
            logger.info("scheduler_paused")

    def resume(self) -> None:
        if self._running and self._paused:
            self._paused = False
            logger.info("scheduler_resumed")

    async def set_interval(self, interval_ms: int) -> None:
        """Change the tick interval; a running scheduler restarts with it."""
        _check_interval(interval_ms)
        self.interval_ms = interval_ms
        logger.info("scheduler_interval_changed", interval_ms=interval_ms)
        if self._running:
            await self.stop()
            await self.start()

    # ── Ticks ─────────────────────────────────────────────

    async def _loop(self, generation: int) -> None:
        """Main timer loop. Exits when its generation is superseded."""
        while True:
            await self._sleep(self.interval_ms / 1000)
            if generation != self._generation:
                return
            self.ticks += 1
            if self._paused:
                self.skipped_ticks += 1
                logger.debug("scheduler_tick_skipped")
                continue
            self._loop_in_cycle = True
            try:
                await self._run_guarded()
            finally:
                self._loop_in_cycle = False
            if generation != self._generation:
                return

    async def _run_guarded(self) -> None:
        try:
            await self._run_once()
        except Exception as e:
            self.failed_cycles += 1
            self.last_error = str(e)
            logger.error("scheduler_cycle_error", error=str(e))

    async def _run_once(self) -> Any:
        async with self._cycle_lock:
            self._in_cycle = True
            try:
                return await self.callback()
            finally:
                self._in_cycle = False
                self.last_cycle_at = datetime.now(timezone.utc)

    async def force_cycle(self) -> Any:
        """Run the callback once now, outside the timer. Errors propagate."""
        logger.info("scheduler_forced_cycle")
        return await self._run_once()

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "interval_ms": self.interval_ms,
            "in_cycle": self._in_cycle,
            "ticks": self.ticks,
            "skipped_ticks": self.skipped_ticks,
            "failed_cycles": self.failed_cycles,
            "last_error": self.last_error,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
        }


def _check_interval(interval_ms: int) -> None:
    if interval_ms < MIN_INTERVAL_MS:
        raise ValueError(f"interval_ms must be at least {MIN_INTERVAL_MS}, got {interval_ms}")
