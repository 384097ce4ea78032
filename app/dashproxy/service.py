from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

from dashproxy.clients.birdnet import BirdnetClient
from dashproxy.config import ProxyConfig
from dashproxy.family import FamilyCache, FamilyMatchResolver
from dashproxy.freshness import CacheState
from dashproxy.recent import RecentSnapshotRefresher
from dashproxy.scheduler import RefreshScheduler
from dashproxy.schemas import (
    CacheHealthResponse,
    FamilyCacheHealth,
    ReadinessResponse,
    SnapshotHealth,
)
from dashproxy.snapshots import SnapshotStore
from dashproxy.summary import SummaryEngine
from dashproxy.utils.timeutil import Clock, iso_from_ms, now_ms


__all__ = ["CacheService"]


logger = logging.getLogger("dashproxy.service")


class CacheService:
    """
    Owns the upstream client, the three snapshot stores and the engines built
    on them. One instance lives on ``app.state`` for the whole process.
    """

    def __init__(
        self,
        config: ProxyConfig,
        *,
        client: Optional[BirdnetClient] = None,
        clock: Clock = now_ms,
    ) -> None:
        self.config = config
        self._clock = clock
        self._owns_client = client is None
        self.client = client or BirdnetClient(
            base_url=config.upstream.base_url,
            timeout=config.upstream.timeout_seconds,
            user_agent=config.upstream.user_agent,
        )

        self.summary_store = SnapshotStore(config.cache.summary_path, name="summary")
        self.recent_store = SnapshotStore(config.cache.recent_path, name="recent")
        self.family_store = SnapshotStore(config.cache.family_path, name="family")

        self.summary = SummaryEngine(self.client, self.summary_store, config.summary, clock=clock)
        self.recent = RecentSnapshotRefresher(self.client, self.recent_store, config.recent, clock=clock)
        self.family_cache = FamilyCache(self.family_store, config.family, clock=clock)
        self.family = FamilyMatchResolver(
            self.client,
            self.summary,
            self.family_cache,
            config.family,
            clock=clock,
        )

        self._scheduler: Optional[RefreshScheduler] = None
        self._bootstrap_task: Optional[asyncio.Task] = None
        self._upstream_probe: Optional[Tuple[int, bool]] = None
        self._health_cache: Optional[Tuple[int, CacheHealthResponse]] = None

        for store in (self.summary_store, self.recent_store, self.family_store):
            store.add_listener(self._on_snapshot_saved)

    def _on_snapshot_saved(self, name: str) -> None:
        self._health_cache = None

    async def start(self, *, bootstrap: bool = True, schedule: bool = True) -> None:
        fallback_root = self.config.cache.fallback_root
        for store in (self.summary_store, self.recent_store, self.family_store):
            await store.ensure_writable(fallback_root)
        await self.family_cache.load()

        if bootstrap:
            self._bootstrap_task = asyncio.create_task(self.refresh_stale_caches())
        if schedule:
            self._scheduler = RefreshScheduler(
                "cache-refresh",
                self.refresh_stale_caches,
                interval_seconds=self.config.server.refresh_tick_seconds,
            )
            self._scheduler.start()
        logger.info(
            "Cache service started",
            extra={
                "upstream": self.client.base_url,
                "summary_path": str(self.summary_store.path),
                "recent_path": str(self.recent_store.path),
                "family_path": str(self.family_store.path),
            },
        )

    async def stop(self) -> None:
        if self._scheduler is not None:
            await self._scheduler.stop()
            self._scheduler = None
        if self._bootstrap_task is not None and not self._bootstrap_task.done():
            self._bootstrap_task.cancel()
            try:
                await self._bootstrap_task
            except asyncio.CancelledError:
                pass
        self._bootstrap_task = None
        if self._owns_client:
            await self.client.aclose()

    async def refresh_stale_caches(self) -> None:
        """Refresh the summary and recent snapshots when absent or expired."""
        results = await asyncio.gather(
            self.summary.refresh_if_stale(),
            self.recent.refresh_if_stale(),
            return_exceptions=True,
        )
        for name, result in zip(("summary", "recent"), results):
            if isinstance(result, Exception):
                logger.warning("Background %s refresh failed: %s", name, result)

    async def upstream_ready(self) -> bool:
        now = self._clock()
        cache_ms = int(self.config.server.readyz_cache_seconds * 1000)
        if self._upstream_probe is not None and now - self._upstream_probe[0] < cache_ms:
            return self._upstream_probe[1]
        ok = await self.client.ping(self.config.upstream.ready_check_timeout_seconds)
        self._upstream_probe = (now, ok)
        return ok

    async def readiness(self) -> Tuple[bool, ReadinessResponse]:
        summary = await self.summary.lookup()
        recent = await self.recent.load()
        upstream_ok = await self.upstream_ready()
        ready = summary.has_payload and recent is not None
        return ready, ReadinessResponse(
            status="ready" if ready else "not_ready",
            upstream_ok=upstream_ok,
            summary_cache_present=summary.has_payload,
            summary_cache_fresh=summary.state is CacheState.FRESH,
            recent_cache_present=recent is not None,
        )

    def _snapshot_health(
        self,
        generated_at_ms: Optional[int],
        ttl_ms: int,
        *,
        refreshing: bool,
    ) -> SnapshotHealth:
        if generated_at_ms is None:
            return SnapshotHealth(present=False, fresh=False, ttl_ms=ttl_ms, refreshing=refreshing)
        age_ms = max(0, self._clock() - generated_at_ms)
        return SnapshotHealth(
            present=True,
            fresh=age_ms < ttl_ms,
            generated_at=iso_from_ms(generated_at_ms),
            age_ms=age_ms,
            ttl_ms=ttl_ms,
            refreshing=refreshing,
        )

    async def cache_health(self) -> CacheHealthResponse:
        now = self._clock()
        cache_ms = int(self.config.server.cachez_cache_seconds * 1000)
        if self._health_cache is not None and now - self._health_cache[0] < cache_ms:
            return self._health_cache[1]

        summary = await self.summary.lookup()
        recent = await self.recent.load()
        summary_health = self._snapshot_health(
            summary.generated_at_ms,
            self.summary.ttl_ms,
            refreshing=self.summary.in_flight,
        )
        recent_health = self._snapshot_health(
            recent.generated_at_ms if recent is not None else None,
            self.recent.refresh_interval_ms,
            refreshing=self.recent.in_flight,
        )
        stats: Dict[str, Any] = self.family_cache.stats()
        health = CacheHealthResponse(
            status="healthy" if summary_health.fresh and recent_health.fresh else "degraded",
            summary=summary_health,
            recent=recent_health,
            family=FamilyCacheHealth(
                cooldown_remaining_ms=self.family.cooldown_remaining_ms(),
                **stats,
            ),
        )
        self._health_cache = (now, health)
        return health
