from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from dashproxy.clients.birdnet import BirdnetClient, UpstreamRateLimitedError
from dashproxy.config import FamilyConfig
from dashproxy.detections import UNKNOWN_SPECIES
from dashproxy.freshness import CacheState
from dashproxy.summary import SummaryEngine
from dashproxy.utils.timeutil import Clock, now_ms

from .cache import FamilyCache, FamilyCacheEntry
from .tokens import family_cache_key, has_family_intersection, tokenize_family_label


__all__ = ["FamilyMatchResolver", "FamilyMatchResult", "SummaryNotReady"]


logger = logging.getLogger("dashproxy.family.resolver")


class SummaryNotReady(RuntimeError):
    """No summary snapshot exists yet, so there are no candidate species."""


@dataclass(frozen=True)
class FamilyMatchResult:
    state: CacheState
    family_common: str
    matches: List[Dict[str, str]]
    complete: bool


@dataclass(frozen=True)
class _Candidate:
    index: int
    scientific_name: str
    common_name: str

    def as_match(self) -> Dict[str, str]:
        return {"common_name": self.common_name, "scientific_name": self.scientific_name}


def _extract_candidates(groups: Sequence[Any], limit: int) -> List[_Candidate]:
    candidates: List[_Candidate] = []
    seen = set()
    for group in groups:
        if len(candidates) >= limit:
            break
        if not isinstance(group, dict):
            continue
        scientific = str(group.get("scientific_name") or "").strip()
        key = scientific.lower()
        if not scientific or scientific == UNKNOWN_SPECIES or key in seen:
            continue
        seen.add(key)
        candidates.append(
            _Candidate(
                index=len(candidates),
                scientific_name=scientific,
                common_name=str(group.get("common_name") or scientific),
            )
        )
    return candidates


def _family_label(payload: Optional[Dict[str, Any]]) -> Optional[str]:
    if not payload:
        return None
    taxonomy = payload.get("taxonomy")
    if not isinstance(taxonomy, dict):
        return None
    label = taxonomy.get("family_common")
    return str(label) if label else None


class FamilyMatchResolver:
    """
    Finds species from the summary archive that share a taxonomic family.

    Candidate species come from ``archive.groups``; their families are looked
    up once through the upstream ``species`` endpoint and memoized. A 429 from
    upstream starts a process-wide cooldown during which no lookups are made.
    """

    def __init__(
        self,
        client: BirdnetClient,
        summary: SummaryEngine,
        cache: FamilyCache,
        config: FamilyConfig,
        *,
        clock: Clock = now_ms,
    ) -> None:
        self._client = client
        self._summary = summary
        self._cache = cache
        self._config = config
        self._clock = clock
        self._cooldown_until_ms = 0
        self._inflight: Dict[str, asyncio.Task] = {}

    @property
    def build_limit(self) -> int:
        # one extra slot so self-exclusion still leaves max_limit matches
        return self._config.max_limit + 1

    @property
    def cache(self) -> FamilyCache:
        return self._cache

    def cooldown_remaining_ms(self) -> int:
        return max(0, self._cooldown_until_ms - self._clock())

    def _cooling_down(self) -> bool:
        return self._clock() < self._cooldown_until_ms

    def clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self._config.default_limit
        return max(1, min(int(limit), self._config.max_limit))

    async def get_matches(
        self,
        family_common: str,
        *,
        scientific_name: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> FamilyMatchResult:
        limit = self.clamp_limit(limit)
        tokens = tokenize_family_label(family_common)
        if not tokens:
            return FamilyMatchResult(
                state=CacheState.FRESH,
                family_common=family_common,
                matches=[],
                complete=True,
            )

        cache_key = family_cache_key(tokens)
        entry = self._cache.get_entry(cache_key)
        if entry is None:
            entry = await self.resolve(family_common, tokens, cache_key)
            state = CacheState.FRESH
        else:
            state = self._cache.entry_state(entry)
            if state is CacheState.STALE:
                self.start_resolve(family_common, tokens, cache_key)

        return FamilyMatchResult(
            state=state,
            family_common=family_common,
            matches=_select_matches(entry.matches, scientific_name, limit),
            complete=entry.complete,
        )

    def start_resolve(
        self,
        family_common: str,
        tokens: List[str],
        cache_key: str,
    ) -> "asyncio.Task[FamilyCacheEntry]":
        task = self._inflight.get(cache_key)
        if task is not None and not task.done():
            return task
        task = asyncio.get_running_loop().create_task(
            self._run_resolve(family_common, tokens, cache_key)
        )
        task.add_done_callback(self._log_resolve_outcome)
        self._inflight[cache_key] = task
        return task

    async def resolve(self, family_common: str, tokens: List[str], cache_key: str) -> FamilyCacheEntry:
        return await asyncio.shield(self.start_resolve(family_common, tokens, cache_key))

    @staticmethod
    def _log_resolve_outcome(task: "asyncio.Task[FamilyCacheEntry]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, SummaryNotReady):
            logger.info("Family resolution deferred: %s", exc)
        elif exc is not None:
            logger.error("Family resolution failed: %s", exc, exc_info=exc)

    async def _run_resolve(
        self,
        family_common: str,
        tokens: List[str],
        cache_key: str,
    ) -> FamilyCacheEntry:
        try:
            entry = await self._build_entry(family_common, tokens, cache_key)
            self._cache.put_entry(entry)
            try:
                await self._cache.persist()
            except OSError as exc:
                logger.warning("Family cache write failed: %s", exc)
        finally:
            self._inflight.pop(cache_key, None)
        return entry

    async def _lookup_family_tokens(self, scientific_name: str) -> List[str]:
        payload = await self._client.fetch_species(scientific_name)
        tokens = tokenize_family_label(_family_label(payload))
        self._cache.put_species(scientific_name, tokens)
        return tokens

    async def _build_entry(
        self,
        family_common: str,
        tokens: List[str],
        cache_key: str,
    ) -> FamilyCacheEntry:
        lookup = await self._summary.lookup()
        if lookup.payload is None:
            self._summary.refresh_in_background()
            raise SummaryNotReady("summary snapshot not available yet")

        groups = (lookup.payload.get("archive") or {}).get("groups") or []
        candidates = _extract_candidates(groups, self._config.candidate_limit)
        build_limit = self.build_limit

        found: Dict[int, Dict[str, str]] = {}
        unresolved: List[_Candidate] = []
        for candidate in candidates:
            if len(found) >= build_limit:
                break
            info = self._cache.get_species(candidate.scientific_name)
            if info is None:
                unresolved.append(candidate)
            elif has_family_intersection(tokens, info.family_tokens):
                found[candidate.index] = candidate.as_match()

        budget = self._config.lookup_budget
        rate_limited = False
        failures = 0
        if len(found) < build_limit and unresolved:
            if self._cooling_down():
                rate_limited = True
            else:
                rate_limited, failures = await self._resolve_unresolved(
                    unresolved[:budget], tokens, found
                )

        limit_reached = len(found) >= build_limit
        complete = limit_reached or (
            len(unresolved) <= budget and not rate_limited and failures == 0
        )
        matches = [found[index] for index in sorted(found)][:build_limit]

        logger.info(
            "Family matches resolved",
            extra={
                "cache_key": cache_key,
                "candidates": len(candidates),
                "unresolved": len(unresolved),
                "matches": len(matches),
                "complete": complete,
                "rate_limited": rate_limited,
            },
        )
        return FamilyCacheEntry(
            cache_key=cache_key,
            generated_at_ms=self._clock(),
            family_common=family_common,
            matches=matches,
            complete=complete,
        )

    async def _resolve_unresolved(
        self,
        pending: List[_Candidate],
        tokens: List[str],
        found: Dict[int, Dict[str, str]],
    ) -> Tuple[bool, int]:
        """Look up ``pending`` in small concurrent batches; returns (rate_limited, failures)."""
        concurrency = self._config.lookup_concurrency
        failures = 0
        for start in range(0, len(pending), concurrency):
            batch = pending[start : start + concurrency]
            results = await asyncio.gather(
                *(self._lookup_family_tokens(candidate.scientific_name) for candidate in batch),
                return_exceptions=True,
            )

            rate_limited = False
            for candidate, result in zip(batch, results):
                if isinstance(result, UpstreamRateLimitedError):
                    rate_limited = True
                elif isinstance(result, BaseException):
                    failures += 1
                    logger.warning(
                        "Species lookup failed for '%s': %s",
                        candidate.scientific_name,
                        result,
                    )
                elif has_family_intersection(tokens, result):
                    found[candidate.index] = candidate.as_match()

            if rate_limited:
                self._cooldown_until_ms = self._clock() + self._config.cooldown_seconds * 1000
                logger.warning(
                    "Species lookups rate limited; pausing for %ss",
                    self._config.cooldown_seconds,
                )
                return True, failures
            if len(found) >= self.build_limit:
                break
            if self._cooling_down():
                # another resolution hit the rate limit meanwhile
                return True, failures
        return False, failures


def _select_matches(
    matches: List[Dict[str, str]],
    scientific_name: Optional[str],
    limit: int,
) -> List[Dict[str, str]]:
    own = (scientific_name or "").strip().lower()
    selected = [
        match for match in matches if not own or match["scientific_name"].strip().lower() != own
    ]
    return selected[:limit]
