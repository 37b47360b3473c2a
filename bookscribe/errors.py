"""Error taxonomy for the transcription pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import StageReport


class BookscribeError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(BookscribeError):
    """Required configuration (API key, model) is missing or invalid."""


class RemoteError(BookscribeError):
    """A call to the transcription service failed."""

    retryable = False

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientRemoteError(RemoteError):
    """Timeout, rate limit or server error; worth retrying with backoff."""

    retryable = True


class PermanentRemoteError(RemoteError):
    """Auth failure or malformed request; retrying will not help."""


class RasterizationError(BookscribeError):
    """A page could not be rendered (corrupt page, unsupported format)."""


class StageCancelled(BookscribeError):
    """The unit was not completed because the job was cancelled."""


class OutputTargetError(BookscribeError):
    """The output directory is unusable (disk full, permissions).

    Fatal to the job. ``report`` holds whatever the stage produced before
    dispatch stopped.
    """

    def __init__(self, message: str, *, report: Optional["StageReport"] = None) -> None:
        super().__init__(message)
        self.report = report
