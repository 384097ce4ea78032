from .birdnet import (
    BirdnetClient,
    BirdnetClientError,
    DetectionsPage,
    UnexpectedPayloadError,
    UpstreamRateLimitedError,
    UpstreamResponse,
    UpstreamTimeoutError,
    parse_detections_page,
)

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
