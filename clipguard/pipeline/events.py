"""
Value types that flow out of the pipeline.

FrameRecord is one sampled frame's outcome; ProgressEvent is what the
broadcaster fans out to observers.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


@dataclass
class FrameRecord:
    """Outcome for one sampled frame. Failed frames carry `error` and no positive signal."""
    frame_number: int  # 1-based, contiguous
    timestamp_seconds: float
    is_explicit: bool = False
    is_violent: bool = False
    confidence: float = 0.0
    details: Dict[str, float] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def usable(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, frame_number: int, timestamp_seconds: float, error: str) -> "FrameRecord":
        return cls(frame_number=frame_number, timestamp_seconds=timestamp_seconds, error=error)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "frameNumber": self.frame_number,
            "timestampSeconds": round(self.timestamp_seconds, 3),
            "isExplicit": self.is_explicit,
            "isViolent": self.is_violent,
            "confidence": self.confidence,
            "details": self.details,
        }
        if self.error:
            data["error"] = self.error
        return data


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProgressEvent:
    """A single progress notification for one job topic."""
    job_id: str
    organization: str
    stage: str
    fraction_complete: int
    display_status: Optional[str] = None
    current_frame: Optional[int] = None
    total_frames: Optional[int] = None
    frame_record: Optional[FrameRecord] = None
    sensitivity_status: Optional[str] = None
    terminal: bool = False
    emitted_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Wire form. Optional fields are omitted when unset; organization never leaves the server."""
        data: Dict[str, Any] = {
            "jobId": self.job_id,
            "stage": self.stage,
            "fractionComplete": self.fraction_complete,
            "emittedAt": self.emitted_at.isoformat(),
        }
        if self.display_status is not None:
            data["displayStatus"] = self.display_status
        if self.current_frame is not None:
            data["currentFrame"] = self.current_frame
        if self.total_frames is not None:
            data["totalFrames"] = self.total_frames
        if self.frame_record is not None:
            data["frameRecord"] = self.frame_record.to_dict()
        if self.sensitivity_status is not None:
            data["sensitivityStatus"] = self.sensitivity_status
        return data
