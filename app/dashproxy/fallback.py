from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

from dashproxy.clients.birdnet import (
    BirdnetClient,
    BirdnetClientError,
    UpstreamResponse,
    UpstreamTimeoutError,
)


__all__ = ["FallbackReason", "LiveAttempt", "attempt_live"]


logger = logging.getLogger("dashproxy.fallback")


class FallbackReason(str, Enum):
    TIMEOUT = "timeout"
    NETWORK = "network"
    SERVER_ERROR = "server_error"
    BAD_PAYLOAD = "bad_payload"


@dataclass(frozen=True)
class LiveAttempt:
    response: Optional[UpstreamResponse] = None
    reason: Optional[FallbackReason] = None

    @property
    def is_live(self) -> bool:
        return self.response is not None


def _is_json_body(response: UpstreamResponse) -> bool:
    if not response.content:
        return True
    try:
        json.loads(response.content)
    except (ValueError, UnicodeDecodeError):
        return False
    return True


async def attempt_live(
    client: BirdnetClient,
    path: str,
    params: Optional[Mapping[str, Any]] = None,
) -> LiveAttempt:
    """
    Relay one GET to upstream. Anything below 500 is live and passed through;
    timeouts, transport errors, 5xx and undecodable 2xx bodies become a
    :class:`FallbackReason` for the caller to act on.
    """
    try:
        response = await client.forward(path, params)
    except UpstreamTimeoutError:
        return LiveAttempt(reason=FallbackReason.TIMEOUT)
    except BirdnetClientError as exc:
        logger.debug("Live call to %s failed: %s", path, exc)
        return LiveAttempt(reason=FallbackReason.NETWORK)

    if response.status_code >= 500:
        return LiveAttempt(reason=FallbackReason.SERVER_ERROR)
    if 200 <= response.status_code < 300 and not _is_json_body(response):
        return LiveAttempt(reason=FallbackReason.BAD_PAYLOAD)
    return LiveAttempt(response=response)
