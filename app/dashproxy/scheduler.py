from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional


logger = logging.getLogger("dashproxy.scheduler")


class RefreshScheduler:
    """Runs ``job`` every ``interval_seconds`` until stopped; failures are logged."""

    def __init__(
        self,
        name: str,
        job: Callable[[], Awaitable[None]],
        *,
        interval_seconds: float = 60,
        run_immediately: bool = False,
    ) -> None:
        self._name = name
        self._job = job
        self._interval_seconds = max(0.01, float(interval_seconds))
        self._run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "Scheduler '%s' started (interval=%ss)",
            self._name,
            self._interval_seconds,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Scheduler '%s' stopped", self._name)

    async def _run_loop(self) -> None:
        if self._run_immediately:
            await self._execute_once()
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self._interval_seconds,
                )
            except asyncio.TimeoutError:
                await self._execute_once()

    async def _execute_once(self) -> None:
        self.runs += 1
        try:
            await self._job()
        except Exception:  # noqa: BLE001
            logger.exception("Scheduled job '%s' failed", self._name)
