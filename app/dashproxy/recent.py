from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from dashproxy.clients.birdnet import BirdnetClient
from dashproxy.config import RecentConfig
from dashproxy.detections import filter_detections, sort_newest_first
from dashproxy.snapshots import SnapshotStore
from dashproxy.utils.timeutil import Clock, iso_from_ms, now_ms


__all__ = ["RecentSnapshot", "RecentSnapshotRefresher"]


logger = logging.getLogger("dashproxy.recent")


@dataclass(frozen=True)
class RecentSnapshot:
    generated_at_ms: int
    detections: List[Dict[str, Any]]


class RecentSnapshotRefresher:
    """
    Keeps a bounded newest-first copy of ``detections/recent`` on disk so the
    live detection endpoints have something to serve while upstream is down.
    """

    def __init__(
        self,
        client: BirdnetClient,
        store: SnapshotStore,
        config: RecentConfig,
        *,
        clock: Clock = now_ms,
    ) -> None:
        self._client = client
        self._store = store
        self._config = config
        self._clock = clock
        self._inflight: Optional[asyncio.Task] = None

    @property
    def refresh_interval_ms(self) -> int:
        return self._config.refresh_seconds * 1000

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def _run_refresh(self) -> int:
        try:
            detections = await self._client.fetch_recent(self._config.snapshot_limit)
            ordered = sort_newest_first(
                record for record in detections if isinstance(record, dict)
            )[: self._config.snapshot_limit]
            await self._store.save(
                {
                    "generated_at": iso_from_ms(self._clock()),
                    "detections": ordered,
                }
            )
        finally:
            self._inflight = None
        logger.info("Recent snapshot refreshed (%s detections)", len(ordered))
        return len(ordered)

    def start_refresh(self) -> "asyncio.Task[int]":
        if self._inflight is not None and not self._inflight.done():
            return self._inflight
        task = asyncio.get_running_loop().create_task(self._run_refresh())
        task.add_done_callback(self._log_refresh_outcome)
        self._inflight = task
        return task

    async def refresh(self) -> int:
        return await asyncio.shield(self.start_refresh())

    @staticmethod
    def _log_refresh_outcome(task: "asyncio.Task[int]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Recent snapshot refresh failed: %s", exc)

    async def load(self) -> Optional[RecentSnapshot]:
        snapshot = await self._store.load()
        if snapshot is None:
            return None
        detections = snapshot.payload.get("detections")
        if not isinstance(detections, list):
            logger.warning("Recent snapshot has no detections list, ignoring it")
            return None
        return RecentSnapshot(
            generated_at_ms=snapshot.generated_at_ms,
            detections=[record for record in detections if isinstance(record, dict)],
        )

    async def refresh_if_stale(self) -> None:
        recent = await self.load()
        if recent is None or self._clock() - recent.generated_at_ms >= self.refresh_interval_ms:
            await self.refresh()

    async def fallback_recent(self, limit: int) -> Optional[List[Dict[str, Any]]]:
        recent = await self.load()
        if recent is None:
            return None
        return sort_newest_first(recent.detections)[:limit]

    async def fallback_page(
        self,
        query: Mapping[str, str],
        *,
        default_page_size: int,
    ) -> Optional[List[Dict[str, Any]]]:
        recent = await self.load()
        if recent is None:
            return None
        return filter_detections(recent.detections, query, default_page_size=default_page_size)
