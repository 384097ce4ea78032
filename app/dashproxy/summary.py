from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError

from dashproxy.clients.birdnet import BirdnetClient
from dashproxy.config import SummaryConfig
from dashproxy.detections import DetectionRecord
from dashproxy.freshness import CacheState, classify
from dashproxy.schemas import (
    ArchiveGroup,
    SpeciesCount,
    SummaryArchive,
    SummaryPayload,
    SummaryStats,
)
from dashproxy.snapshots import Snapshot, SnapshotStore
from dashproxy.utils.timeutil import (
    Clock,
    day_end_exclusive_ms,
    day_start_ms,
    iso_from_ms,
    now_ms,
    utc_date,
)


__all__ = [
    "SummaryAccumulator",
    "SummaryContractError",
    "SummaryEngine",
    "SummaryLookup",
    "SummaryPageLimitExceeded",
    "SummaryWindow",
]


logger = logging.getLogger("dashproxy.summary")

SpeciesKey = Tuple[str, str]


class SummaryContractError(RuntimeError):
    """The upstream violated the paging contract the scan relies on."""


class SummaryPageLimitExceeded(SummaryContractError):
    pass


@dataclass(frozen=True)
class SummaryWindow:
    start_date: date
    end_date: date

    @classmethod
    def ending_on(cls, today: date, days: int) -> "SummaryWindow":
        return cls(start_date=today - timedelta(days=max(days, 1) - 1), end_date=today)

    @property
    def start_ms(self) -> int:
        return day_start_ms(self.start_date)

    @property
    def end_ms_exclusive(self) -> int:
        return day_end_exclusive_ms(self.end_date)


class SummaryAccumulator:
    """Folds detection records into the 30-day statistics, one page at a time."""

    def __init__(self, window: SummaryWindow, *, top_species_limit: int = 10) -> None:
        self._window = window
        self._window_start_ms = window.start_ms
        self._window_end_ms = window.end_ms_exclusive
        self._top_species_limit = top_species_limit
        self.total_detections = 0
        self.confidence_sum = 0.0
        self.hourly_bins = [0] * 24
        self._species_counts: Dict[SpeciesKey, int] = {}
        self._archive_counts: Dict[SpeciesKey, int] = {}
        self._archive_last_seen: Dict[SpeciesKey, int] = {}

    def add(self, record: DetectionRecord) -> None:
        key = record.species_key
        self._species_counts[key] = self._species_counts.get(key, 0) + 1

        timestamp = record.timestamp_ms
        if timestamp is not None:
            hour = datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc).hour
            self.hourly_bins[hour] += 1
            if self._window_start_ms <= timestamp < self._window_end_ms:
                self._archive_counts[key] = self._archive_counts.get(key, 0) + 1
                previous = self._archive_last_seen.get(key)
                if previous is None or timestamp > previous:
                    self._archive_last_seen[key] = timestamp

        self.confidence_sum += record.confidence
        self.total_detections += 1

    def build(self, generated_at_ms: int) -> SummaryPayload:
        # sorted() is stable, so equal counts keep first-seen order
        top_species = [
            SpeciesCount(scientific_name=key[0], common_name=key[1], count=count)
            for key, count in sorted(
                self._species_counts.items(), key=lambda item: item[1], reverse=True
            )[: self._top_species_limit]
        ]
        groups = [
            ArchiveGroup(
                scientific_name=key[0],
                common_name=key[1],
                count=count,
                last_seen_at=iso_from_ms(self._archive_last_seen.get(key)),
            )
            for key, count in sorted(
                self._archive_counts.items(), key=lambda item: item[1], reverse=True
            )
        ]
        avg_confidence = (
            self.confidence_sum / self.total_detections if self.total_detections else 0.0
        )
        return SummaryPayload(
            generated_at=iso_from_ms(generated_at_ms),
            window_start=self._window.start_date.isoformat(),
            window_end=self._window.end_date.isoformat(),
            stats=SummaryStats(
                total_detections=self.total_detections,
                unique_species=len(self._species_counts),
                avg_confidence=avg_confidence,
                hourly_bins=list(self.hourly_bins),
                top_species=top_species,
            ),
            archive=SummaryArchive(groups=groups),
        )


@dataclass(frozen=True)
class SummaryLookup:
    state: CacheState
    payload: Optional[Dict[str, Any]]
    generated_at_ms: Optional[int]

    @property
    def has_payload(self) -> bool:
        return self.payload is not None


class SummaryEngine:
    """
    Builds and serves the rolling 30-day summary.

    At most one rebuild runs per process; every trigger while it runs gets the
    same task back. A failed rebuild leaves the previous snapshot on disk.
    """

    def __init__(
        self,
        client: BirdnetClient,
        store: SnapshotStore,
        config: SummaryConfig,
        *,
        clock: Clock = now_ms,
    ) -> None:
        self._client = client
        self._store = store
        self._config = config
        self._clock = clock
        self._inflight: Optional[asyncio.Task] = None
        self.last_error: Optional[BaseException] = None
        self.rebuilds_started = 0
        self._validated: Optional[Snapshot] = None

    @property
    def ttl_ms(self) -> int:
        return self._config.ttl_seconds * 1000

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    @property
    def store(self) -> SnapshotStore:
        return self._store

    async def build(self) -> Dict[str, Any]:
        generated_at_ms = self._clock()
        window = SummaryWindow.ending_on(utc_date(generated_at_ms), self._config.window_days)
        start_date = window.start_date.isoformat()
        end_date = window.end_date.isoformat()
        page_size = self._config.page_size
        concurrency = self._config.page_concurrency
        accumulator = SummaryAccumulator(window, top_species_limit=self._config.top_species_limit)

        page_index = 0
        pages_fetched = 0
        skipped = 0
        done = False
        while not done:
            if pages_fetched >= self._config.max_pages:
                raise SummaryPageLimitExceeded(
                    f"Summary fetch exceeded configured page limit ({self._config.max_pages})"
                )

            pages = await asyncio.gather(
                *(
                    self._client.fetch_detections_page(
                        start_date,
                        end_date,
                        limit=page_size,
                        offset=(page_index + index) * page_size,
                    )
                    for index in range(concurrency)
                )
            )
            pages_fetched += len(pages)

            for page in pages:
                if not page.detections:
                    done = True
                    break
                for raw in page.detections:
                    if not isinstance(raw, dict):
                        skipped += 1
                        continue
                    accumulator.add(DetectionRecord.from_raw(raw))
                if len(page.detections) < page_size:
                    done = True
                    break

            page_index += concurrency

        if skipped:
            logger.warning("Skipped %s non-object detection records", skipped)
        logger.info(
            "Summary scan finished",
            extra={
                "pages": pages_fetched,
                "detections": accumulator.total_detections,
                "window_start": start_date,
                "window_end": end_date,
            },
        )
        return accumulator.build(generated_at_ms).model_dump()

    async def _run_refresh(self) -> Dict[str, Any]:
        started = time.perf_counter()
        try:
            payload = await self.build()
            await self._store.save(payload)
        except Exception as exc:
            self.last_error = exc
            raise
        finally:
            self._inflight = None
        self.last_error = None
        logger.info("Summary rebuilt in %.2fs", time.perf_counter() - started)
        return payload

    def start_refresh(self) -> "asyncio.Task[Dict[str, Any]]":
        if self._inflight is not None and not self._inflight.done():
            return self._inflight
        self.rebuilds_started += 1
        task = asyncio.get_running_loop().create_task(self._run_refresh())
        task.add_done_callback(self._log_refresh_outcome)
        self._inflight = task
        return task

    async def refresh(self) -> Dict[str, Any]:
        return await asyncio.shield(self.start_refresh())

    def refresh_in_background(self) -> None:
        self.start_refresh()

    @staticmethod
    def _log_refresh_outcome(task: "asyncio.Task[Dict[str, Any]]") -> None:
        if task.cancelled():
            logger.warning("Summary rebuild cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Summary rebuild failed: %s", exc, exc_info=exc)

    async def lookup(self) -> SummaryLookup:
        snapshot = await self._store.load_cached()
        if snapshot is None:
            return SummaryLookup(state=CacheState.WARMING, payload=None, generated_at_ms=None)
        try:
            # an unchanged file comes back as the same object, validated once
            if snapshot is not self._validated:
                SummaryPayload.model_validate(snapshot.payload)
                self._validated = snapshot
        except ValidationError as exc:
            logger.warning(
                "Summary snapshot failed validation, treating as missing: %s",
                exc.error_count(),
            )
            return SummaryLookup(state=CacheState.WARMING, payload=None, generated_at_ms=None)
        state = classify(snapshot.generated_at_ms, self.ttl_ms, self._clock())
        return SummaryLookup(
            state=state,
            payload=snapshot.payload,
            generated_at_ms=snapshot.generated_at_ms,
        )

    async def refresh_if_stale(self) -> None:
        lookup = await self.lookup()
        if lookup.state is not CacheState.FRESH:
            await self.refresh()
