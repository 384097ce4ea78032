from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class SpeciesCount(BaseModel):
    common_name: str
    scientific_name: str
    count: int = Field(..., ge=0)


class ArchiveGroup(SpeciesCount):
    last_seen_at: Optional[str] = None


class SummaryStats(BaseModel):
    total_detections: int = Field(..., ge=0)
    unique_species: int = Field(..., ge=0)
    avg_confidence: float = Field(..., ge=0.0)
    hourly_bins: List[int]
    top_species: List[SpeciesCount]

    @field_validator("hourly_bins")
    @classmethod
    def _check_bins(cls, value: List[int]) -> List[int]:
        if len(value) != 24:
            raise ValueError("hourly_bins must have 24 entries")
        return value


class SummaryArchive(BaseModel):
    groups: List[ArchiveGroup]


class SummaryPayload(BaseModel):
    generated_at: str
    window_start: str
    window_end: str
    stats: SummaryStats
    archive: SummaryArchive


class PendingResponse(BaseModel):
    pending: bool = True
    message: str
    retry_after_ms: int = 3000


class FamilyMatch(BaseModel):
    common_name: str
    scientific_name: str


class FamilyMatchesResponse(BaseModel):
    family_common: str
    matches: List[FamilyMatch]
    complete: bool


class SnapshotHealth(BaseModel):
    present: bool
    fresh: bool
    generated_at: Optional[str] = None
    age_ms: Optional[int] = None
    ttl_ms: int
    refreshing: bool = False


class FamilyCacheHealth(BaseModel):
    entries: int = Field(..., ge=0)
    partial_entries: int = Field(..., ge=0)
    species_known: int = Field(..., ge=0)
    cooldown_remaining_ms: int = Field(..., ge=0)


class CacheHealthResponse(BaseModel):
    status: str
    summary: SnapshotHealth
    recent: SnapshotHealth
    family: FamilyCacheHealth


class ReadinessResponse(BaseModel):
    status: str
    upstream_ok: bool
    summary_cache_present: bool
    summary_cache_fresh: bool
    recent_cache_present: bool
