from __future__ import annotations

from dataclasses import dataclass
from datetime import date as date_cls
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from dashproxy.utils.timeutil import day_end_exclusive_ms, day_start_ms, parse_timestamp_ms


UNKNOWN_SPECIES = "Unknown species"

_TIMESTAMP_FIELDS = (
    "timestamp",
    "endTime",
    "beginTime",
    "datetime",
    "created_at",
    "createdAt",
)


@dataclass(frozen=True)
class DetectionRecord:
    """Normalized view of one upstream detection."""

    id: Optional[Any]
    common_name: str
    scientific_name: str
    confidence: float
    timestamp_ms: Optional[int]

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "DetectionRecord":
        common_name, scientific_name = species_names(raw)
        return cls(
            id=raw.get("id"),
            common_name=common_name,
            scientific_name=scientific_name,
            confidence=get_confidence(raw),
            timestamp_ms=get_timestamp_ms(raw),
        )

    @property
    def species_key(self) -> Tuple[str, str]:
        return (self.scientific_name, self.common_name)


def _first_text(raw: Mapping[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = raw.get(key)
        if value is None:
            continue
        text = str(value)
        if text:
            return text
    return None


def species_names(raw: Mapping[str, Any]) -> Tuple[str, str]:
    common = _first_text(raw, "common_name", "commonName") or UNKNOWN_SPECIES
    scientific = _first_text(raw, "scientific_name", "scientificName") or UNKNOWN_SPECIES
    return common, scientific


def get_timestamp_ms(raw: Mapping[str, Any]) -> Optional[int]:
    for key in _TIMESTAMP_FIELDS:
        value = raw.get(key)
        if value not in (None, ""):
            return parse_timestamp_ms(value)

    day = raw.get("date")
    clock = raw.get("time")
    if day and clock:
        combined = parse_timestamp_ms(f"{day}T{clock}")
        if combined is not None:
            return combined
    if day:
        return parse_timestamp_ms(day)
    if clock:
        return parse_timestamp_ms(clock)
    return None


def get_confidence(raw: Mapping[str, Any]) -> float:
    """Confidence in percent; values above 1 are already percentages."""
    value = raw.get("confidence", 0)
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value if value is not None else 0)
    except (TypeError, ValueError):
        return 0.0
    if number != number or number <= 0 or number == float("inf"):
        return 0.0
    return number if number > 1 else number * 100


def sort_newest_first(records: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(records, key=lambda record: get_timestamp_ms(record) or 0, reverse=True)


def parse_non_negative_int(value: Optional[str], fallback: int) -> int:
    if value is None:
        return fallback
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return fallback
    if parsed != parsed or parsed < 0 or parsed == float("inf"):
        return fallback
    return int(parsed)


def _parse_day(value: Optional[str]) -> Optional[date_cls]:
    if not value:
        return None
    try:
        return date_cls.fromisoformat(value)
    except ValueError:
        return None


def filter_detections(
    records: Iterable[Dict[str, Any]],
    query: Mapping[str, str],
    *,
    default_page_size: int,
) -> List[Dict[str, Any]]:
    """
    Apply the upstream ``detections`` query parameters to a local list.

    Supports ``queryType=search`` with ``search``, an inclusive
    ``start_date``/``end_date`` UTC day range and ``numResults``/``offset``
    paging. Output is newest-first.
    """
    detections = sort_newest_first(records)

    search = (query.get("search") or "").strip().lower()
    if query.get("queryType") == "search" and search:
        matched = []
        for entry in detections:
            common = str(entry.get("common_name") or entry.get("commonName") or "").lower()
            scientific = str(entry.get("scientific_name") or entry.get("scientificName") or "").lower()
            if search in common or search in scientific:
                matched.append(entry)
        detections = matched

    start_day = _parse_day(query.get("start_date"))
    end_day = _parse_day(query.get("end_date"))
    if start_day and end_day:
        start_ms = day_start_ms(start_day)
        end_ms = day_end_exclusive_ms(end_day)
        in_range = []
        for entry in detections:
            timestamp = get_timestamp_ms(entry)
            if timestamp is not None and start_ms <= timestamp < end_ms:
                in_range.append(entry)
        detections = in_range

    page_size = parse_non_negative_int(query.get("numResults"), default_page_size)
    offset = parse_non_negative_int(query.get("offset"), 0)
    return detections[offset : offset + page_size]
