"""Exception hierarchy for the campsite fetch and cache layer."""

from __future__ import annotations

import math


class CampsiteError(RuntimeError):
    """Base class for every expected failure of a campsite query."""

    code = "unknown"
    recoverable = True

    def __init__(self, message: str, *, service: str = "overpass") -> None:
        super().__init__(message)
        self.service = service


class BoundsValidationError(CampsiteError):
    """Raised before any network I/O when a bounding box is unusable."""

    code = "invalid_bounds"
    recoverable = False


class RateLimitExceeded(CampsiteError):
    """Raised when the local request budget is exhausted."""

    code = "rate_limit"

    def __init__(self, retry_after: float, *, service: str = "overpass") -> None:
        seconds = max(1, math.ceil(retry_after))
        super().__init__(f"Rate limit exceeded, retry after {seconds}s", service=service)
        self.retry_after = retry_after


class UpstreamTimeout(CampsiteError):
    code = "timeout"


class UpstreamNetworkError(CampsiteError):
    code = "network"


class UpstreamServerError(CampsiteError):
    code = "server"

    def __init__(self, status_code: int, *, service: str = "overpass") -> None:
        super().__init__(f"Upstream HTTP {status_code}", service=service)
        self.status_code = status_code


class UpstreamClientError(CampsiteError):
    """4xx responses; never retried."""

    code = "client"
    recoverable = False

    def __init__(self, status_code: int, *, service: str = "overpass") -> None:
        super().__init__(f"Upstream HTTP {status_code}", service=service)
        self.status_code = status_code


class InvalidPayloadError(CampsiteError):
    code = "invalid_payload"


class GeocodingError(CampsiteError):
    code = "geocoding"


class StoreError(CampsiteError):
    code = "store"


TRANSIENT_ERRORS: tuple[type[CampsiteError], ...] = (
    UpstreamTimeout,
    UpstreamNetworkError,
    UpstreamServerError,
    InvalidPayloadError,
)
