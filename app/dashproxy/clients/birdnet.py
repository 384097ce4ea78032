from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import httpx


__all__ = [
    "BirdnetClient",
    "BirdnetClientError",
    "DetectionsPage",
    "UnexpectedPayloadError",
    "UpstreamRateLimitedError",
    "UpstreamResponse",
    "UpstreamTimeoutError",
    "parse_detections_page",
]


logger = logging.getLogger("dashproxy.clients.birdnet")

DETECTIONS_PATH = "/api/v2/detections"
RECENT_PATH = "/api/v2/detections/recent"
SPECIES_PATH = "/api/v2/species"


class BirdnetClientError(RuntimeError):
    """Raised when upstream detection API requests fail."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class UpstreamTimeoutError(BirdnetClientError):
    """The upstream call exceeded its timeout."""

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=True)


class UpstreamRateLimitedError(BirdnetClientError):
    """Upstream answered 429."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=429, retryable=True)


class UnexpectedPayloadError(BirdnetClientError):
    """Upstream answered 2xx with a body of an unknown shape."""


@dataclass(frozen=True)
class DetectionsPage:
    detections: List[Dict[str, Any]]
    total: int


@dataclass(frozen=True)
class UpstreamResponse:
    status_code: int
    content: bytes
    content_type: Optional[str]


def parse_detections_page(payload: Any) -> DetectionsPage:
    """
    Accept the known shapes of the ``detections`` endpoint: a bare array or an
    object carrying the array under ``data``, ``detections`` or ``items``.
    """
    if isinstance(payload, list):
        return DetectionsPage(detections=payload, total=len(payload))

    if isinstance(payload, dict):
        for key in ("data", "detections", "items"):
            records = payload.get(key)
            if records is None:
                continue
            if not isinstance(records, list):
                raise UnexpectedPayloadError(
                    f"Unexpected detections payload: '{key}' is {type(records).__name__}"
                )
            total_raw = payload.get("total", len(records))
            try:
                total = int(total_raw)
            except (TypeError, ValueError):
                total = len(records)
            return DetectionsPage(detections=records, total=total)

    raise UnexpectedPayloadError(
        f"Unexpected detections payload of type {type(payload).__name__}"
    )


class BirdnetClient:
    """
    Thin async client for the BirdNET detection API. Every call is bounded by
    the client timeout; no call is retried here.
    """

    def __init__(
        self,
        *,
        base_url: str,
        timeout: float = 12.0,
        user_agent: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if user_agent:
            headers["User-Agent"] = user_agent
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(
        self,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        start = time.perf_counter()
        try:
            response = await self._client.get(
                path,
                params=params,
                timeout=timeout if timeout is not None else self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise UpstreamTimeoutError(f"Upstream request to {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise BirdnetClientError(
                f"Upstream request to {path} failed: {exc}",
                retryable=True,
            ) from exc
        logger.debug(
            "GET %s -> %s (%.3fs)",
            path,
            response.status_code,
            time.perf_counter() - start,
        )
        return response

    @staticmethod
    def _decode_json(response: httpx.Response, description: str) -> Any:
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise UnexpectedPayloadError(
                f"Failed to decode {description} response: {exc}",
                status_code=response.status_code,
            ) from exc

    @staticmethod
    def _raise_for_status(response: httpx.Response, description: str) -> None:
        if response.is_success:
            return
        if response.status_code == 429:
            raise UpstreamRateLimitedError(f"{description} rate limited: HTTP 429")
        raise BirdnetClientError(
            f"{description} failed: HTTP {response.status_code}",
            status_code=response.status_code,
            retryable=response.status_code >= 500,
        )

    async def fetch_detections_page(
        self,
        start_date: str,
        end_date: str,
        *,
        limit: int,
        offset: int,
    ) -> DetectionsPage:
        response = await self._get(
            DETECTIONS_PATH,
            {
                "start_date": start_date,
                "end_date": end_date,
                "numResults": str(limit),
                "offset": str(offset),
            },
        )
        self._raise_for_status(response, "Range page fetch")
        return parse_detections_page(self._decode_json(response, "range page"))

    async def fetch_recent(self, limit: int) -> List[Dict[str, Any]]:
        response = await self._get(RECENT_PATH, {"limit": str(limit)})
        self._raise_for_status(response, "Recent fetch")
        payload = self._decode_json(response, "recent detections")
        if not isinstance(payload, list):
            raise UnexpectedPayloadError("Recent fetch failed: non-array payload")
        return payload

    async def fetch_species(self, scientific_name: str) -> Optional[Dict[str, Any]]:
        response = await self._get(SPECIES_PATH, {"scientific_name": scientific_name})
        if response.status_code == 404:
            logger.debug("Species '%s' unknown upstream", scientific_name)
            return None
        self._raise_for_status(response, f"Species lookup '{scientific_name}'")
        payload = self._decode_json(response, "species")
        if not isinstance(payload, dict):
            raise UnexpectedPayloadError(
                f"Species lookup '{scientific_name}' returned {type(payload).__name__}"
            )
        return payload

    async def forward(self, path: str, params: Optional[Mapping[str, Any]] = None) -> UpstreamResponse:
        """Relay a GET verbatim; HTTP error statuses are returned, not raised."""
        response = await self._get(path, params)
        content = b"" if response.status_code == 204 else response.content
        return UpstreamResponse(
            status_code=response.status_code,
            content=content,
            content_type=response.headers.get("content-type"),
        )

    async def ping(self, timeout: float) -> bool:
        try:
            response = await self._get(RECENT_PATH, {"limit": "1"}, timeout=timeout)
        except BirdnetClientError:
            return False
        return response.is_success
