from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import List

import pytest

from dashproxy.clients.birdnet import DETECTIONS_PATH, BirdnetClient, BirdnetClientError, DetectionsPage
from dashproxy.config import SummaryConfig
from dashproxy.freshness import CacheState
from dashproxy.snapshots import SnapshotStore, save_snapshot
from dashproxy.summary import SummaryEngine, SummaryPageLimitExceeded

from conftest import MINUTE_MS, NOW_MS, make_detection, make_summary_payload


HOUR_MS = 60 * MINUTE_MS


def _engine(upstream, proxy_config, clock, **overrides) -> SummaryEngine:
    config = replace(proxy_config.summary, **overrides) if overrides else proxy_config.summary
    store = SnapshotStore(proxy_config.cache.summary_path, name="summary")
    return SummaryEngine(upstream.client(), store, config, clock=clock)


def _two_species_fixture() -> List[dict]:
    records = []
    for index in range(501):
        if index % 5 < 3:
            common, scientific = "Amsel", "Turdus merula"
        else:
            common, scientific = "Kohlmeise", "Parus major"
        records.append(
            make_detection(
                index,
                common_name=common,
                scientific_name=scientific,
                timestamp_ms=NOW_MS - index * 37 * MINUTE_MS,
            )
        )
    return records


def test_summary_over_501_records(upstream, proxy_config, clock):
    upstream.detections = _two_species_fixture()
    engine = _engine(upstream, proxy_config, clock)

    payload = asyncio.run(engine.build())
    stats = payload["stats"]

    amsel_count = sum(1 for index in range(501) if index % 5 < 3)
    assert stats["total_detections"] == 501
    assert stats["unique_species"] == 2
    assert stats["top_species"][0]["count"] == amsel_count
    assert stats["top_species"][0]["scientific_name"] == "Turdus merula"
    assert sum(stats["hourly_bins"]) == 501
    assert len(stats["hourly_bins"]) == 24
    assert stats["avg_confidence"] == pytest.approx(80.0)
    assert payload["window_start"] == "2025-05-17"
    assert payload["window_end"] == "2025-06-15"
    # a full first page of 500 then a short page ends the scan
    assert upstream.calls[DETECTIONS_PATH] == 4


def test_archive_only_counts_records_inside_window(upstream, proxy_config, clock):
    upstream.detections = [
        make_detection(1, timestamp_ms=NOW_MS - HOUR_MS),
        make_detection(2, timestamp_ms=NOW_MS - 3 * HOUR_MS),
        make_detection(3, timestamp_ms=NOW_MS - 45 * 24 * HOUR_MS),
        make_detection(4, common_name="Star", scientific_name="Sturnus vulgaris", timestamp_ms=NOW_MS - 40 * 24 * HOUR_MS),
    ]
    engine = _engine(upstream, proxy_config, clock)

    payload = asyncio.run(engine.build())
    groups = payload["archive"]["groups"]

    assert payload["stats"]["total_detections"] == 4
    assert payload["stats"]["unique_species"] == 2
    assert [group["scientific_name"] for group in groups] == ["Turdus migratorius"]
    assert groups[0]["count"] == 2
    assert groups[0]["last_seen_at"] == "2025-06-15T11:00:00.000Z"


def test_rebuild_is_idempotent(upstream, proxy_config, clock):
    upstream.detections = _two_species_fixture()
    engine = _engine(upstream, proxy_config, clock, page_size=50, page_concurrency=3)

    async def scenario():
        first = await engine.refresh()
        clock.advance(MINUTE_MS)
        second = await engine.refresh()
        return first, second

    first, second = asyncio.run(scenario())

    assert first["stats"] == second["stats"]
    assert first["archive"]["groups"] == second["archive"]["groups"]
    assert first["generated_at"] != second["generated_at"]


def test_page_ceiling_raises_contract_error(upstream, proxy_config, clock):
    upstream.detections = [make_detection(index) for index in range(10)]
    engine = _engine(upstream, proxy_config, clock, page_size=2, page_concurrency=1, max_pages=2)

    async def scenario():
        try:
            await engine.refresh()
        except SummaryPageLimitExceeded as exc:
            return exc
        return None

    error = asyncio.run(scenario())

    assert error is not None
    assert engine.last_error is error
    assert not engine.in_flight
    assert not proxy_config.cache.summary_path.exists()


def test_failed_rebuild_keeps_previous_snapshot(upstream, proxy_config, clock):
    previous = make_summary_payload(
        [{"common_name": "Amsel", "scientific_name": "Turdus merula", "count": 3}],
        generated_at_ms=NOW_MS - 2 * HOUR_MS,
    )
    save_snapshot(proxy_config.cache.summary_path, previous)
    upstream.status_overrides[DETECTIONS_PATH] = 503
    engine = _engine(upstream, proxy_config, clock)

    async def scenario():
        with pytest.raises(BirdnetClientError):
            await engine.refresh()
        return await engine.lookup()

    lookup = asyncio.run(scenario())

    assert lookup.state is CacheState.STALE
    assert lookup.payload == previous
    assert isinstance(engine.last_error, BirdnetClientError)


def test_lookup_states(upstream, proxy_config, clock):
    engine = _engine(upstream, proxy_config, clock)
    assert asyncio.run(engine.lookup()).state is CacheState.WARMING

    save_snapshot(proxy_config.cache.summary_path, make_summary_payload([], generated_at_ms=NOW_MS - MINUTE_MS))
    assert asyncio.run(engine.lookup()).state is CacheState.FRESH

    clock.advance(HOUR_MS)
    assert asyncio.run(engine.lookup()).state is CacheState.STALE


def test_invalid_snapshot_is_treated_as_warming(upstream, proxy_config, clock):
    save_snapshot(
        proxy_config.cache.summary_path,
        {"generated_at": "2025-06-15T11:59:00Z", "stats": {"hourly_bins": [1, 2]}},
    )
    engine = _engine(upstream, proxy_config, clock)

    lookup = asyncio.run(engine.lookup())

    assert lookup.state is CacheState.WARMING
    assert not lookup.has_payload


class _GatedClient(BirdnetClient):
    def __init__(self, records: List[dict]) -> None:
        super().__init__(base_url="http://birdnet.test")
        self.records = records
        self.gate = asyncio.Event()
        self.page_calls = 0

    async def fetch_detections_page(self, start_date, end_date, *, limit, offset):  # type: ignore[override]
        self.page_calls += 1
        await self.gate.wait()
        return DetectionsPage(detections=self.records[offset : offset + limit], total=len(self.records))


def test_stale_summary_served_while_single_rebuild_runs(proxy_config, clock):
    stale = make_summary_payload(
        [{"common_name": "Amsel", "scientific_name": "Turdus merula", "count": 3}],
        generated_at_ms=NOW_MS - 2 * HOUR_MS,
    )
    save_snapshot(proxy_config.cache.summary_path, stale)

    async def scenario():
        client = _GatedClient([make_detection(index) for index in range(3)])
        store = SnapshotStore(proxy_config.cache.summary_path, name="summary")
        engine = SummaryEngine(client, store, proxy_config.summary, clock=clock)

        first = await engine.lookup()
        engine.refresh_in_background()
        engine.refresh_in_background()
        await asyncio.sleep(0)
        during = await engine.lookup()
        in_flight = engine.in_flight
        waiters = asyncio.gather(engine.refresh(), engine.refresh())

        client.gate.set()
        results = await waiters
        after = await engine.lookup()
        await client.aclose()
        return first, during, in_flight, results, after, engine.rebuilds_started

    first, during, in_flight, results, after, rebuilds = asyncio.run(scenario())

    assert first.state is CacheState.STALE
    assert during.state is CacheState.STALE
    assert during.payload == stale
    assert in_flight is True
    assert rebuilds == 1
    assert results[0] == results[1]
    assert after.state is CacheState.FRESH
    assert after.payload["stats"]["total_detections"] == 3


def test_unusable_records_do_not_fail_the_rebuild(upstream, proxy_config, clock):
    upstream.detections = [make_detection(index) for index in range(5)]
    upstream.detections.append({"id": 5, "common_name": "Amsel", "timestamp": 1_718_000_000_000_000})
    upstream.detections.append(make_detection(6, confidence=-0.3))
    engine = _engine(upstream, proxy_config, clock)

    payload = asyncio.run(engine.build())
    stats = payload["stats"]

    assert stats["total_detections"] == 7
    # the microsecond timestamp is counted but not binned
    assert sum(stats["hourly_bins"]) == 6
    assert stats["avg_confidence"] == pytest.approx(80.0 * 5 / 7)


def test_lookup_reuses_the_validated_snapshot_until_it_changes(upstream, proxy_config, clock):
    save_snapshot(proxy_config.cache.summary_path, make_summary_payload([]))
    engine = _engine(upstream, proxy_config, clock)

    async def scenario():
        first = await engine.lookup()
        second = await engine.lookup()
        save_snapshot(
            proxy_config.cache.summary_path,
            make_summary_payload([{"common_name": "Amsel", "scientific_name": "Turdus merula", "count": 3}]),
        )
        third = await engine.lookup()
        return first, second, third

    first, second, third = asyncio.run(scenario())

    assert second.payload is first.payload
    assert third.payload["stats"]["total_detections"] == 3
