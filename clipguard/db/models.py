"""
SQLAlchemy database models for ClipGuard.

- VideoJob: one end-to-end processing run for a single uploaded video.
  Written only by the pipeline orchestrator; everything else reads it.
"""
from datetime import datetime
from typing import Dict, Any
from sqlalchemy import Column, String, Integer, DateTime, Text, JSON, Enum, Index
from sqlalchemy.orm import declarative_base
import enum
import uuid

Base = declarative_base()


def generate_uuid() -> str:
    """Generate a short UUID."""
    return str(uuid.uuid4())[:8]


class JobStage(str, enum.Enum):
    """Pipeline stages, declared in the only order a job may move through them."""
    UPLOADING = "uploading"
    PROCESSING = "processing"
    ANALYZING = "analyzing"
    COMPRESSING = "compressing"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FLAGGED = "flagged"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STAGES

    @property
    def order(self) -> int:
        # All terminal stages share the last slot
        if self.is_terminal:
            return len(_PIPELINE_ORDER)
        return _PIPELINE_ORDER.index(self)

    def can_advance_to(self, target: "JobStage") -> bool:
        """
        Check a transition against the stage sequence.

        Terminal stages are absorbing. Any live stage may fail; otherwise a
        job may stay where it is (progress inside a stage) or move forward.
        """
        if self.is_terminal:
            return False
        if target == JobStage.FAILED:
            return True
        return target.order >= self.order


_PIPELINE_ORDER = [
    JobStage.UPLOADING,
    JobStage.PROCESSING,
    JobStage.ANALYZING,
    JobStage.COMPRESSING,
    JobStage.FINALIZING,
]

TERMINAL_STAGES = frozenset({JobStage.COMPLETED, JobStage.FLAGGED, JobStage.FAILED})


class SensitivityStatus(str, enum.Enum):
    """Job-level content verdict."""
    PENDING = "pending"
    SAFE = "safe"
    FLAGGED = "flagged"


class VideoJob(Base):
    """A single uploaded video moving through the processing pipeline."""
    __tablename__ = "video_jobs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    organization = Column(String(128), nullable=False, index=True)
    filename = Column(String(255), nullable=True)

    # Pipeline state
    stage = Column(Enum(JobStage), default=JobStage.UPLOADING, nullable=False, index=True)
    overall_progress = Column(Integer, default=0, nullable=False)  # 0-100, never decreases
    display_status = Column(String(255), nullable=True)
    error_message = Column(Text, nullable=True)  # Operator-facing only

    # Files
    source_path = Column(Text, nullable=False)
    derived_path = Column(Text, nullable=True)  # Set only on successful transcode

    # Results
    probed_metadata = Column(JSON, default=dict)
    sensitivity_status = Column(Enum(SensitivityStatus), default=SensitivityStatus.PENDING)
    sensitivity_verdict = Column(JSON, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('ix_video_jobs_org_stage', 'organization', 'stage'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "organization": self.organization,
            "filename": self.filename,
            "stage": self.stage.value if self.stage else None,
            "overall_progress": self.overall_progress,
            "display_status": self.display_status,
            "source_path": self.source_path,
            "derived_path": self.derived_path,
            "probed_metadata": self.probed_metadata or {},
            "sensitivity_status": self.sensitivity_status.value if self.sensitivity_status else None,
            "sensitivity_verdict": self.sensitivity_verdict,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
