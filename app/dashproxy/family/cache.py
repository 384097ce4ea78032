from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from dashproxy.config import FamilyConfig
from dashproxy.freshness import CacheState, classify
from dashproxy.snapshots import SnapshotStore
from dashproxy.utils.timeutil import Clock, iso_from_ms, now_ms


__all__ = ["FamilyCache", "FamilyCacheEntry", "SpeciesFamilyInfo"]


logger = logging.getLogger("dashproxy.family.cache")


@dataclass(frozen=True)
class SpeciesFamilyInfo:
    family_tokens: List[str]
    updated_at_ms: int


@dataclass(frozen=True)
class FamilyCacheEntry:
    cache_key: str
    generated_at_ms: int
    family_common: str
    matches: List[Dict[str, str]] = field(default_factory=list)
    complete: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FamilyCacheEntry":
        matches = [
            {
                "common_name": str(match["common_name"]),
                "scientific_name": str(match["scientific_name"]),
            }
            for match in data.get("matches", [])
        ]
        return cls(
            cache_key=str(data["cache_key"]),
            generated_at_ms=int(data["generated_at_ms"]),
            family_common=str(data.get("family_common", "")),
            matches=matches,
            complete=bool(data.get("complete", False)),
        )


def _species_key(scientific_name: str) -> str:
    return scientific_name.strip().lower()


class FamilyCache:
    """
    Family match entries keyed by tokenized family label, plus the per-species
    family-token memo. Both live in memory and are mirrored to one snapshot
    file.
    """

    def __init__(
        self,
        store: SnapshotStore,
        config: FamilyConfig,
        *,
        clock: Clock = now_ms,
    ) -> None:
        self._store = store
        self._config = config
        self._clock = clock
        self._entries: Dict[str, FamilyCacheEntry] = {}
        self._species: Dict[str, SpeciesFamilyInfo] = {}

    @property
    def store(self) -> SnapshotStore:
        return self._store

    def entry_ttl_ms(self, entry: FamilyCacheEntry) -> int:
        seconds = self._config.match_ttl_seconds if entry.complete else self._config.partial_ttl_seconds
        return seconds * 1000

    def entry_state(self, entry: FamilyCacheEntry) -> CacheState:
        return classify(entry.generated_at_ms, self.entry_ttl_ms(entry), self._clock())

    def get_entry(self, cache_key: str) -> Optional[FamilyCacheEntry]:
        return self._entries.get(cache_key)

    def put_entry(self, entry: FamilyCacheEntry) -> None:
        self._entries[entry.cache_key] = entry
        self.prune_entries()

    def prune_entries(self) -> int:
        """
        Drop entries that have been stale for longer than the grace period, then
        the oldest ones beyond ``max_entries``. Returns how many were removed.
        """
        now = self._clock()
        grace_ms = self._config.stale_grace_seconds * 1000
        kept = {
            key: entry
            for key, entry in self._entries.items()
            if now - entry.generated_at_ms < self.entry_ttl_ms(entry) + grace_ms
        }
        if len(kept) > self._config.max_entries:
            newest = sorted(kept.values(), key=lambda entry: entry.generated_at_ms, reverse=True)
            kept = {entry.cache_key: entry for entry in newest[: self._config.max_entries]}
        removed = len(self._entries) - len(kept)
        if removed:
            self._entries = kept
            logger.debug("Pruned family cache entries", extra={"removed": removed, "entries": len(kept)})
        return removed

    def get_species(self, scientific_name: str) -> Optional[SpeciesFamilyInfo]:
        info = self._species.get(_species_key(scientific_name))
        if info is None:
            return None
        if self._clock() - info.updated_at_ms >= self._config.species_ttl_seconds * 1000:
            return None
        return info

    def put_species(self, scientific_name: str, family_tokens: List[str]) -> SpeciesFamilyInfo:
        info = SpeciesFamilyInfo(family_tokens=list(family_tokens), updated_at_ms=self._clock())
        self._species[_species_key(scientific_name)] = info
        return info

    def stats(self) -> Dict[str, int]:
        now = self._clock()
        species_ttl_ms = self._config.species_ttl_seconds * 1000
        return {
            "entries": len(self._entries),
            "partial_entries": sum(1 for entry in self._entries.values() if not entry.complete),
            "species_known": sum(
                1 for info in self._species.values() if now - info.updated_at_ms < species_ttl_ms
            ),
        }

    def to_payload(self) -> Dict[str, Any]:
        self.prune_entries()
        now = self._clock()
        species_ttl_ms = self._config.species_ttl_seconds * 1000
        return {
            "generated_at": iso_from_ms(now),
            "families": {key: asdict(entry) for key, entry in self._entries.items()},
            "species": {
                key: asdict(info)
                for key, info in self._species.items()
                if now - info.updated_at_ms < species_ttl_ms
            },
        }

    async def persist(self) -> None:
        await self._store.save(self.to_payload())

    async def load(self) -> None:
        snapshot = await self._store.load()
        if snapshot is None:
            return
        entries: Dict[str, FamilyCacheEntry] = {}
        species: Dict[str, SpeciesFamilyInfo] = {}
        try:
            for key, raw_entry in (snapshot.payload.get("families") or {}).items():
                entries[str(key)] = FamilyCacheEntry.from_dict(raw_entry)
            for key, raw_info in (snapshot.payload.get("species") or {}).items():
                species[str(key)] = SpeciesFamilyInfo(
                    family_tokens=[str(token) for token in raw_info["family_tokens"]],
                    updated_at_ms=int(raw_info["updated_at_ms"]),
                )
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Family cache file is malformed, starting empty: %s", exc)
            return
        self._entries = entries
        self._species = species
        self.prune_entries()
        logger.info(
            "Family cache loaded",
            extra={"entries": len(self._entries), "species": len(species)},
        )
