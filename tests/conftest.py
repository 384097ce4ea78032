from __future__ import annotations

import sys
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Optional


PROJECT_ROOT = Path(__file__).resolve().parents[1]
APP_DIR = PROJECT_ROOT / "app"

for path in (PROJECT_ROOT, APP_DIR):
    path_str = str(path)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)

import httpx
import pytest

from dashproxy.clients.birdnet import DETECTIONS_PATH, RECENT_PATH, SPECIES_PATH, BirdnetClient
from dashproxy.config import CacheFilesConfig, ProxyConfig
from dashproxy.utils.timeutil import iso_from_ms, parse_timestamp_ms


NOW_MS = parse_timestamp_ms("2025-06-15T12:00:00Z")
MINUTE_MS = 60 * 1000


class FakeClock:
    def __init__(self, now: int = NOW_MS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeUpstream:
    """In-memory stand-in for the BirdNET detection API."""

    def __init__(self) -> None:
        self.detections: List[Dict[str, Any]] = []
        self.recent: List[Dict[str, Any]] = []
        self.species: Dict[str, Dict[str, Any]] = {}
        self.status_overrides: Dict[str, int] = {}
        self.errors: Dict[str, Exception] = {}
        self.raw_bodies: Dict[str, bytes] = {}
        self.calls: Counter = Counter()
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls[path] += 1
        self.requests.append(request)

        error = self.errors.get(path)
        if error is not None:
            raise error
        raw_body = self.raw_bodies.get(path)
        if raw_body is not None:
            return httpx.Response(200, content=raw_body, headers={"content-type": "application/json"})
        status_code = self.status_overrides.get(path)
        if status_code is not None:
            return httpx.Response(status_code, json={"error": f"HTTP {status_code}"})

        params = request.url.params
        if path == DETECTIONS_PATH:
            offset = int(params.get("offset", "0"))
            limit = int(params.get("numResults", "100"))
            return httpx.Response(
                200,
                json={
                    "data": self.detections[offset : offset + limit],
                    "total": len(self.detections),
                },
            )
        if path == RECENT_PATH:
            limit = int(params.get("limit", "100"))
            return httpx.Response(200, json=self.recent[:limit])
        if path == SPECIES_PATH:
            payload = self.species.get(params.get("scientific_name", ""))
            if payload is None:
                return httpx.Response(404, json={"error": "not found"})
            return httpx.Response(200, json=payload)
        return httpx.Response(404, json={"error": "unknown path"})

    def client(self, **kwargs: Any) -> BirdnetClient:
        return BirdnetClient(
            base_url="http://birdnet.test",
            transport=httpx.MockTransport(self.handler),
            **kwargs,
        )


def make_detection(
    index: int,
    *,
    common_name: str = "American Robin",
    scientific_name: str = "Turdus migratorius",
    timestamp_ms: Optional[int] = None,
    confidence: float = 0.8,
) -> Dict[str, Any]:
    moment = timestamp_ms if timestamp_ms is not None else NOW_MS - index * MINUTE_MS
    return {
        "id": index,
        "common_name": common_name,
        "scientific_name": scientific_name,
        "confidence": confidence,
        "timestamp": iso_from_ms(moment),
    }


def make_summary_payload(
    groups: List[Dict[str, Any]],
    *,
    generated_at_ms: int = NOW_MS,
) -> Dict[str, Any]:
    return {
        "generated_at": iso_from_ms(generated_at_ms),
        "window_start": "2025-05-17",
        "window_end": "2025-06-15",
        "stats": {
            "total_detections": sum(group["count"] for group in groups),
            "unique_species": len(groups),
            "avg_confidence": 80.0,
            "hourly_bins": [0] * 24,
            "top_species": [
                {
                    "common_name": group["common_name"],
                    "scientific_name": group["scientific_name"],
                    "count": group["count"],
                }
                for group in groups[:10]
            ],
        },
        "archive": {
            "groups": [
                {**group, "last_seen_at": group.get("last_seen_at", iso_from_ms(generated_at_ms))}
                for group in groups
            ]
        },
    }


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture()
def proxy_config(tmp_path: Path) -> ProxyConfig:
    cache_dir = tmp_path / "cache"
    return ProxyConfig(
        cache=CacheFilesConfig(
            summary_path=cache_dir / "summary-30d.json",
            recent_path=cache_dir / "recent-detections.json",
            family_path=cache_dir / "family-matches.json",
            fallback_root=tmp_path / "fallback",
        )
    )
