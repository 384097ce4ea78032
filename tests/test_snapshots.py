from __future__ import annotations

import asyncio
import errno
import json
from pathlib import Path

import pytest

from dashproxy import snapshots
from dashproxy.snapshots import SnapshotStore, load_snapshot, resolve_writable_path, save_snapshot
from dashproxy.utils.timeutil import parse_timestamp_ms


def test_save_and_load_round_trip(tmp_path: Path):
    target = tmp_path / "nested" / "summary.json"
    payload = {"generated_at": "2025-06-15T12:00:00.000Z", "value": [1, 2, 3], "name": "Amsel"}

    save_snapshot(target, payload)
    snapshot = load_snapshot(target)

    assert snapshot is not None
    assert snapshot.payload == payload
    assert snapshot.generated_at_ms == parse_timestamp_ms("2025-06-15T12:00:00Z")
    assert list(target.parent.glob("*.tmp")) == []


def test_load_missing_file_is_a_miss(tmp_path: Path):
    assert load_snapshot(tmp_path / "absent.json") is None


@pytest.mark.parametrize(
    "raw",
    [
        "{not json",
        json.dumps([1, 2, 3]),
        json.dumps({"detections": []}),
        json.dumps({"generated_at": "yesterday-ish"}),
    ],
)
def test_corrupt_snapshots_are_treated_as_missing(tmp_path: Path, raw: str):
    target = tmp_path / "snapshot.json"
    target.write_text(raw, encoding="utf-8")
    assert load_snapshot(target) is None


def test_save_replaces_previous_snapshot(tmp_path: Path):
    target = tmp_path / "recent.json"
    save_snapshot(target, {"generated_at": "2025-06-15T12:00:00Z", "detections": [1]})
    save_snapshot(target, {"generated_at": "2025-06-15T12:05:00Z", "detections": [2]})

    snapshot = load_snapshot(target)
    assert snapshot is not None
    assert snapshot.payload["detections"] == [2]


def test_store_survives_restart_and_notifies_listeners(tmp_path: Path):
    target = tmp_path / "family.json"
    notified = []

    async def scenario():
        store = SnapshotStore(target, name="family")
        store.add_listener(notified.append)
        await store.save({"families": {"drosseln": {"complete": True}}})
        # a new store stands in for a fresh process
        return await SnapshotStore(target, name="family").load()

    snapshot = asyncio.run(scenario())

    assert notified == ["family"]
    assert snapshot is not None
    assert snapshot.payload["families"] == {"drosseln": {"complete": True}}
    assert snapshot.generated_at_ms > 0


def test_load_cached_rereads_only_after_the_file_changes(tmp_path: Path, monkeypatch):
    target = tmp_path / "summary.json"
    save_snapshot(target, {"generated_at": "2025-06-15T12:00:00.000Z", "value": 1})
    reads = []
    real_load = snapshots.load_snapshot

    def counting_load(path):
        reads.append(path)
        return real_load(path)

    monkeypatch.setattr(snapshots, "load_snapshot", counting_load)
    store = SnapshotStore(target, name="summary")

    async def scenario():
        first = await store.load_cached()
        second = await store.load_cached()
        save_snapshot(target, {"generated_at": "2025-06-15T13:00:00.000Z", "value": 12345})
        third = await store.load_cached()
        await store.save({"generated_at": "2025-06-15T14:00:00.000Z", "value": 2})
        fourth = await store.load_cached()
        return first, second, third, fourth

    first, second, third, fourth = asyncio.run(scenario())

    assert second is first
    assert third.payload["value"] == 12345
    assert fourth.payload["value"] == 2
    assert len(reads) == 3


def test_resolve_writable_path_keeps_writable_target(tmp_path: Path):
    candidate = tmp_path / "cache" / "summary-30d.json"
    resolved = resolve_writable_path(candidate, tmp_path / "fallback", "summary-30d.json")
    assert resolved == candidate
    assert list(candidate.parent.iterdir()) == []


def _deny_probe_writes(monkeypatch, blocked_dir: Path, error_number: int) -> None:
    original_write_text = Path.write_text

    def fake_write_text(self, *args, **kwargs):
        if self.parent == blocked_dir and ".probe." in self.name:
            raise OSError(error_number, "simulated failure", str(self))
        return original_write_text(self, *args, **kwargs)

    monkeypatch.setattr(Path, "write_text", fake_write_text)


def test_resolve_writable_path_falls_back_on_read_only_target(tmp_path: Path, monkeypatch):
    blocked = tmp_path / "readonly"
    _deny_probe_writes(monkeypatch, blocked, errno.EROFS)

    resolved = resolve_writable_path(blocked / "recent.json", tmp_path / "fallback", "recent.json")

    assert resolved == tmp_path / "fallback" / "recent.json"
    assert resolved.parent.is_dir()


def test_resolve_writable_path_propagates_other_errors(tmp_path: Path, monkeypatch):
    blocked = tmp_path / "full"
    _deny_probe_writes(monkeypatch, blocked, errno.ENOSPC)

    with pytest.raises(OSError):
        resolve_writable_path(blocked / "recent.json", tmp_path / "fallback", "recent.json")
