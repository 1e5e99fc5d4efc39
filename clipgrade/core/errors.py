"""Exception hierarchy and degradation records for the enhancement pipeline.

Two families live here:

* **Run-level failures** (``ToolInvocationError``, ``NotCostEffectiveError``,
  ``ConfigError``) abort the whole run with one top-level exception.
* **Group-local failures** (``ServiceError`` and friends,
  ``GeometryMismatchError``) are caught inside a group's processing and turned
  into :class:`GroupDegradationNotice` records; they never abort the run.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ClipgradeError(RuntimeError):
    """Root of every error raised by the enhancement pipeline."""


class ConfigError(ClipgradeError):
    """Raised when a configuration file or override cannot be used."""


class ToolInvocationError(ClipgradeError):
    """Raised when ffmpeg/ffprobe is missing or exits non-zero."""

    def __init__(self, message: str, *, returncode: Optional[int] = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class NotCostEffectiveError(ClipgradeError):
    """Raised before extraction when the input exceeds the duration/size limits."""


class ServiceError(ClipgradeError):
    """A non-retryable failure reported by an AI service."""


class TransientServiceError(ServiceError):
    """Timeout, rate limit, connection reset, or 5xx from an AI service."""

    def __init__(self, message: str, *, rate_limited: bool = False) -> None:
        super().__init__(message)
        self.rate_limited = rate_limited


class MalformedResponseError(ServiceError):
    """The service answered but the payload could not be interpreted."""


class GeometryMismatchError(ClipgradeError):
    """The edited representative no longer lines up with the original pixels."""

    def __init__(self, before_shape: tuple, after_shape: tuple) -> None:
        super().__init__(f"edited frame shape {after_shape} does not match original {before_shape}")
        self.before_shape = before_shape
        self.after_shape = after_shape


# ---------------------------------------------------------------------------
# Degradation notices
# ---------------------------------------------------------------------------


class DegradationReason(str, Enum):
    SERVICE_FAILURE = "service_failure"
    MALFORMED_CRITIQUE = "malformed_critique"
    GEOMETRY_MISMATCH = "geometry_mismatch"
    DEADLINE = "deadline"


@dataclass(frozen=True)
class GroupDegradationNotice:
    """One group-local fallback, reported to the caller alongside the video."""

    group_index: int
    reason: DegradationReason
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"group": self.group_index, "reason": self.reason.value, "detail": self.detail}


__all__ = [
    "ClipgradeError",
    "ConfigError",
    "ToolInvocationError",
    "NotCostEffectiveError",
    "ServiceError",
    "TransientServiceError",
    "MalformedResponseError",
    "GeometryMismatchError",
    "DegradationReason",
    "GroupDegradationNotice",
]
