from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml


DEFAULT_FALLBACK_CACHE_ROOT = Path("/tmp/birdnet-dashboard-cache")


def _to_positive_int(data: Dict[str, Any], key: str, default: int, *, allow_zero: bool = False) -> int:
    raw = data.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid '{key}' value: {raw!r}") from exc
    if value < 0 or (value == 0 and not allow_zero):
        raise ValueError(f"'{key}' must be a positive integer, got {value}")
    return value


def _to_positive_float(data: Dict[str, Any], key: str, default: float) -> float:
    raw = data.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid '{key}' value: {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"'{key}' must be positive, got {value}")
    return value


@dataclass
class UpstreamConfig:
    base_url: str = "http://birdnet-go:8080"
    timeout_seconds: float = 12.0
    ready_check_timeout_seconds: float = 3.0
    user_agent: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UpstreamConfig":
        base_url = str(data.get("base_url") or cls.base_url).strip().rstrip("/")
        if not base_url:
            raise ValueError("Upstream configuration missing 'base_url'")
        return cls(
            base_url=base_url,
            timeout_seconds=_to_positive_float(data, "timeout_seconds", cls.timeout_seconds),
            ready_check_timeout_seconds=_to_positive_float(
                data, "ready_check_timeout_seconds", cls.ready_check_timeout_seconds
            ),
            user_agent=data.get("user_agent") or None,
        )


@dataclass
class CacheFilesConfig:
    summary_path: Path = Path("/cache/summary-30d.json")
    recent_path: Path = Path("/cache/recent-detections.json")
    family_path: Path = Path("/cache/family-matches.json")
    fallback_root: Path = DEFAULT_FALLBACK_CACHE_ROOT

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheFilesConfig":
        def to_path(key: str, default: Path) -> Path:
            value = data.get(key)
            if value in (None, "", "null"):
                return default
            return Path(str(value))

        return cls(
            summary_path=to_path("summary_path", cls.summary_path),
            recent_path=to_path("recent_path", cls.recent_path),
            family_path=to_path("family_path", cls.family_path),
            fallback_root=to_path("fallback_root", cls.fallback_root),
        )


@dataclass
class SummaryConfig:
    ttl_seconds: int = 60 * 60
    window_days: int = 30
    page_size: int = 500
    page_concurrency: int = 4
    max_pages: int = 5000
    top_species_limit: int = 10

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SummaryConfig":
        return cls(
            ttl_seconds=_to_positive_int(data, "ttl_seconds", cls.ttl_seconds),
            window_days=_to_positive_int(data, "window_days", cls.window_days),
            page_size=_to_positive_int(data, "page_size", cls.page_size),
            page_concurrency=_to_positive_int(data, "page_concurrency", cls.page_concurrency),
            max_pages=_to_positive_int(data, "max_pages", cls.max_pages),
            top_species_limit=_to_positive_int(data, "top_species_limit", cls.top_species_limit),
        )


@dataclass
class RecentConfig:
    snapshot_limit: int = 2000
    refresh_seconds: int = 15 * 60
    default_limit: int = 100

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecentConfig":
        return cls(
            snapshot_limit=_to_positive_int(data, "snapshot_limit", cls.snapshot_limit),
            refresh_seconds=_to_positive_int(data, "refresh_seconds", cls.refresh_seconds),
            default_limit=_to_positive_int(data, "default_limit", cls.default_limit),
        )


@dataclass
class FamilyConfig:
    candidate_limit: int = 120
    lookup_budget: int = 50
    lookup_concurrency: int = 2
    cooldown_seconds: int = 60
    species_ttl_seconds: int = 24 * 60 * 60
    match_ttl_seconds: int = 6 * 60 * 60
    partial_ttl_seconds: int = 2 * 60
    stale_grace_seconds: int = 24 * 60 * 60
    max_entries: int = 500
    max_limit: int = 50
    default_limit: int = 20

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FamilyConfig":
        config = cls(
            candidate_limit=_to_positive_int(data, "candidate_limit", cls.candidate_limit),
            lookup_budget=_to_positive_int(data, "lookup_budget", cls.lookup_budget, allow_zero=True),
            lookup_concurrency=_to_positive_int(data, "lookup_concurrency", cls.lookup_concurrency),
            cooldown_seconds=_to_positive_int(data, "cooldown_seconds", cls.cooldown_seconds),
            species_ttl_seconds=_to_positive_int(data, "species_ttl_seconds", cls.species_ttl_seconds),
            match_ttl_seconds=_to_positive_int(data, "match_ttl_seconds", cls.match_ttl_seconds),
            partial_ttl_seconds=_to_positive_int(data, "partial_ttl_seconds", cls.partial_ttl_seconds),
            stale_grace_seconds=_to_positive_int(
                data, "stale_grace_seconds", cls.stale_grace_seconds, allow_zero=True
            ),
            max_entries=_to_positive_int(data, "max_entries", cls.max_entries),
            max_limit=_to_positive_int(data, "max_limit", cls.max_limit),
            default_limit=_to_positive_int(data, "default_limit", cls.default_limit),
        )
        if config.default_limit > config.max_limit:
            raise ValueError("'default_limit' must not exceed 'max_limit'")
        return config


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 3001
    refresh_tick_seconds: int = 60
    readyz_cache_seconds: float = 5.0
    cachez_cache_seconds: float = 10.0
    bootstrap: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerConfig":
        return cls(
            host=str(data.get("host") or cls.host),
            port=_to_positive_int(data, "port", cls.port),
            refresh_tick_seconds=_to_positive_int(data, "refresh_tick_seconds", cls.refresh_tick_seconds),
            readyz_cache_seconds=_to_positive_float(data, "readyz_cache_seconds", cls.readyz_cache_seconds),
            cachez_cache_seconds=_to_positive_float(data, "cachez_cache_seconds", cls.cachez_cache_seconds),
            bootstrap=bool(data.get("bootstrap", cls.bootstrap)),
        )


@dataclass
class ProxyConfig:
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    cache: CacheFilesConfig = field(default_factory=CacheFilesConfig)
    summary: SummaryConfig = field(default_factory=SummaryConfig)
    recent: RecentConfig = field(default_factory=RecentConfig)
    family: FamilyConfig = field(default_factory=FamilyConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ProxyConfig":
        root = (data or {}).get("proxy") or {}
        if not isinstance(root, dict):
            raise ValueError("Configuration key 'proxy' must be a mapping")

        def section(name: str) -> Dict[str, Any]:
            value = root.get(name) or {}
            if not isinstance(value, dict):
                raise ValueError(f"Configuration section '{name}' must be a mapping")
            return value

        return cls(
            upstream=UpstreamConfig.from_dict(section("upstream")),
            cache=CacheFilesConfig.from_dict(section("cache")),
            summary=SummaryConfig.from_dict(section("summary")),
            recent=RecentConfig.from_dict(section("recent")),
            family=FamilyConfig.from_dict(section("family")),
            server=ServerConfig.from_dict(section("server")),
        )


# env var -> (section, key, converter applied to the raw string)
_ENV_OVERRIDES = {
    "BIRDNET_API_BASE_URL": ("upstream", "base_url", str),
    "UPSTREAM_TIMEOUT_MS": ("upstream", "timeout_seconds", lambda raw: float(raw) / 1000),
    "READY_CHECK_TIMEOUT_MS": ("upstream", "ready_check_timeout_seconds", lambda raw: float(raw) / 1000),
    "SUMMARY_CACHE_FILE": ("cache", "summary_path", str),
    "RECENT_CACHE_FILE": ("cache", "recent_path", str),
    "FAMILY_CACHE_FILE": ("cache", "family_path", str),
    "MAX_SUMMARY_PAGES": ("summary", "max_pages", int),
    "RECENT_SNAPSHOT_LIMIT": ("recent", "snapshot_limit", int),
    "RECENT_REFRESH_MS": ("recent", "refresh_seconds", lambda raw: int(float(raw) // 1000)),
    "FAMILY_MATCH_CANDIDATE_LIMIT": ("family", "candidate_limit", int),
    "HOST": ("server", "host", str),
    "PORT": ("server", "port", int),
    "READYZ_CACHE_MS": ("server", "readyz_cache_seconds", lambda raw: float(raw) / 1000),
    "CACHEZ_STATUS_CACHE_MS": ("server", "cachez_cache_seconds", lambda raw: float(raw) / 1000),
    "CACHE_REFRESH_TICK_MS": ("server", "refresh_tick_seconds", lambda raw: int(float(raw) // 1000)),
}


def apply_env_overrides(data: Optional[Dict[str, Any]], env: Mapping[str, str]) -> Dict[str, Any]:
    merged: Dict[str, Any] = dict(data or {})
    root: Dict[str, Any] = dict(merged.get("proxy") or {})
    for env_name, (section_name, key, convert) in _ENV_OVERRIDES.items():
        raw = env.get(env_name)
        if raw is None or raw.strip() == "":
            continue
        try:
            value = convert(raw.strip())
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid {env_name} value: {raw!r}") from exc
        section = dict(root.get(section_name) or {})
        section[key] = value
        root[section_name] = section
    merged["proxy"] = root
    return merged


def load_config(
    file_path: Optional[Path] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> ProxyConfig:
    config_dict: Dict[str, Any] = {}
    if file_path is not None and Path(file_path).exists():
        with open(file_path, "r", encoding="utf-8") as file:
            config_dict = yaml.safe_load(file) or {}
    return ProxyConfig.from_dict(apply_env_overrides(config_dict, os.environ if env is None else env))
