"""Error taxonomy for the render service.

Every error knows the HTTP status it maps to and how to render itself as the
JSON body the API returns, so routes never build error payloads by hand.
"""

from typing import Any, Dict, Optional


class ReelServerError(Exception):
    """Base class for all errors surfaced to API callers."""

    status_code: int = 500
    message: str = "Internal error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.__class__.message
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message}


class ValidationError(ReelServerError):
    """The request cannot be rendered as given (no clips, clip too short...)."""

    status_code = 400
    message = "Invalid request"


class FetchError(ReelServerError):
    """A remote input could not be downloaded."""

    def __init__(self, url: str, status: Optional[int] = None, reason: Optional[str] = None):
        self.url = url
        self.status = status
        if status is not None:
            message = f"Download failed: HTTP {status}"
        else:
            message = f"Download failed: {reason or 'network error'}"
        super().__init__(message)


class EngineError(ReelServerError):
    """ffmpeg exited non-zero or ran past its timeout."""

    def __init__(self, message: str, stderr: Optional[str] = None):
        self.stderr = stderr
        super().__init__(message)


class EngineNotFoundError(EngineError):
    pass


class ProbeError(EngineError):
    pass


class CapacityError(ReelServerError):
    """Every job slot is taken; the caller may retry later."""

    status_code = 429
    message = "Server busy, try again later"

    def __init__(self, active_jobs: int, max_jobs: int):
        self.active_jobs = active_jobs
        self.max_jobs = max_jobs
        super().__init__()

    def to_payload(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "active_jobs": self.active_jobs,
            "max_jobs": self.max_jobs,
        }


class UploadNotFoundError(ReelServerError):
    status_code = 404
    message = "File not found or expired"


class JobError(ReelServerError):
    """Unexpected failure inside a job (disk full, bad path...)."""
