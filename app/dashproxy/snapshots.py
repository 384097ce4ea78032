from __future__ import annotations

import asyncio
import errno
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from dashproxy.utils.timeutil import iso_from_ms, now_ms, parse_timestamp_ms


__all__ = [
    "Snapshot",
    "SnapshotStore",
    "load_snapshot",
    "resolve_writable_path",
    "save_snapshot",
]


logger = logging.getLogger("dashproxy.snapshots")

_READ_ONLY_ERRNOS = {errno.EACCES, errno.EPERM, errno.EROFS}


@dataclass(frozen=True)
class Snapshot:
    payload: Dict[str, Any]
    generated_at_ms: int


def load_snapshot(path: Path) -> Optional[Snapshot]:
    """
    Read a JSON snapshot written by :func:`save_snapshot`.

    A missing file, unparsable JSON or a payload without a valid
    ``generated_at`` timestamp all yield ``None``; callers treat that as a
    cache miss.
    """
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.warning("Snapshot read failed for %s: %s", path, exc)
        return None

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("Snapshot at %s is not valid JSON: %s", path, exc)
        return None

    if not isinstance(payload, dict):
        logger.warning("Snapshot at %s is not a JSON object", path)
        return None

    generated_at_ms = parse_timestamp_ms(payload.get("generated_at"))
    if not generated_at_ms:
        logger.warning("Snapshot at %s has no usable generated_at", path)
        return None
    return Snapshot(payload=payload, generated_at_ms=generated_at_ms)


def save_snapshot(path: Path, payload: Dict[str, Any]) -> None:
    """Write ``payload`` to a pid-scoped temp file, then rename it over ``path``."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    temp_path = Path(f"{target}.{os.getpid()}.tmp")
    serialized = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    try:
        temp_path.write_text(serialized, encoding="utf-8")
        os.replace(temp_path, target)
    except OSError:
        temp_path.unlink(missing_ok=True)
        raise


def resolve_writable_path(candidate: Path, fallback_root: Path, fallback_name: str) -> Path:
    """
    Return ``candidate`` if its directory accepts writes, else a path under
    ``fallback_root``. Only permission and read-only filesystem errors trigger
    the fallback; anything else propagates.
    """
    candidate = Path(candidate)
    probe_path = Path(f"{candidate}.probe.{os.getpid()}")
    try:
        candidate.parent.mkdir(parents=True, exist_ok=True)
        probe_path.write_text("ok", encoding="utf-8")
        probe_path.unlink()
        return candidate
    except OSError as exc:
        if exc.errno not in _READ_ONLY_ERRNOS:
            raise
        fallback_path = Path(fallback_root) / fallback_name
        fallback_path.parent.mkdir(parents=True, exist_ok=True)
        logger.error(
            "Cache path not writable, falling back: %s -> %s",
            candidate,
            fallback_path,
        )
        return fallback_path


class SnapshotStore:
    """Async facade over one snapshot file; disk work runs in a worker thread."""

    def __init__(self, path: Path, *, name: str) -> None:
        self._path = Path(path)
        self._name = name
        self._listeners: List[Callable[[str], None]] = []
        self._write_lock = asyncio.Lock()
        self._memo: Optional[Tuple[Tuple[int, int, int], Snapshot]] = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def name(self) -> str:
        return self._name

    def add_listener(self, listener: Callable[[str], None]) -> None:
        self._listeners.append(listener)

    async def ensure_writable(self, fallback_root: Path) -> Path:
        self._path = await asyncio.to_thread(
            resolve_writable_path,
            self._path,
            fallback_root,
            self._path.name,
        )
        return self._path

    async def load(self) -> Optional[Snapshot]:
        return await asyncio.to_thread(load_snapshot, self._path)

    async def load_cached(self) -> Optional[Snapshot]:
        """
        Like :meth:`load`, but returns the previously parsed snapshot (the same
        object) while the file on disk is unchanged.
        """
        return await asyncio.to_thread(self._load_if_changed)

    def _load_if_changed(self) -> Optional[Snapshot]:
        try:
            stat = self._path.stat()
        except OSError:
            self._memo = None
            return load_snapshot(self._path)
        signature = (stat.st_ino, stat.st_mtime_ns, stat.st_size)
        memo = self._memo
        if memo is not None and memo[0] == signature:
            return memo[1]
        snapshot = load_snapshot(self._path)
        self._memo = (signature, snapshot) if snapshot is not None else None
        return snapshot

    async def save(self, payload: Dict[str, Any]) -> None:
        if not payload.get("generated_at"):
            payload = {**payload, "generated_at": iso_from_ms(now_ms())}
        async with self._write_lock:
            await asyncio.to_thread(save_snapshot, self._path, payload)
        self._memo = None
        logger.debug("Snapshot '%s' written to %s", self._name, self._path)
        for listener in self._listeners:
            listener(self._name)
