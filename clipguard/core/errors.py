"""
Error types for the ClipGuard pipeline.

All errors inherit from ClipGuardError for easy catching at the
orchestrator and API boundaries.
"""
from enum import Enum
from typing import Optional


class ClipGuardError(Exception):
    """Base exception for all pipeline failures."""
    pass


class MetadataFailure(str, Enum):
    """Why the metadata probe could not describe a source file."""
    TOOL_UNAVAILABLE = "tool_unavailable"
    NO_VIDEO_STREAM = "no_video_stream"
    INVALID_DATA = "invalid_data"


# User-facing messages per probe failure cause
METADATA_FAILURE_MESSAGES = {
    MetadataFailure.TOOL_UNAVAILABLE: "FFmpeg/FFprobe is not installed or not found in PATH.",
    MetadataFailure.NO_VIDEO_STREAM: "No video stream found in file.",
    MetadataFailure.INVALID_DATA: "Invalid video format or corrupted file.",
}


class MetadataError(ClipGuardError):
    """Raised when the source file cannot be probed. Fatal before job creation."""

    def __init__(self, cause: MetadataFailure, detail: str = ""):
        self.cause = cause
        self.detail = detail
        super().__init__(f"{METADATA_FAILURE_MESSAGES[cause]} {detail}".strip())

    @property
    def user_message(self) -> str:
        return f"Failed to process video file. {METADATA_FAILURE_MESSAGES[self.cause]}"


class FrameExtractionError(ClipGuardError):
    """Raised when frames cannot be extracted (tool or disk failure)."""

    def __init__(self, reason: str, timestamp: Optional[float] = None):
        self.reason = reason
        self.timestamp = timestamp
        where = f" at {timestamp:.2f}s" if timestamp is not None else ""
        super().__init__(f"Frame extraction failed{where}: {reason}")


class FrameClassificationError(ClipGuardError):
    """Raised when a single frame cannot be scored (timeout or backend failure)."""

    def __init__(self, frame_number: int, reason: str):
        self.frame_number = frame_number
        self.reason = reason
        super().__init__(reason)


class TranscodeError(ClipGuardError):
    """Raised when the streaming rendition cannot be produced. Fatal to the job."""
    pass


class JobNotFoundError(ClipGuardError):
    """Raised when a job id does not resolve to a persisted job."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class SubscriptionDenied(ClipGuardError):
    """Raised when an observer may not join a job topic."""

    def __init__(self, organization: str, job_id: str):
        self.organization = organization
        self.job_id = job_id
        super().__init__(f"Organization {organization} may not observe job {job_id}")
