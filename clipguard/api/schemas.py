"""
API Schemas (DTOs) - Single source of truth for API data structures.

These Pydantic models serve as Data Transfer Objects between:
- Database models ↔ API endpoints / pipeline
- Backend ↔ remote progress consumers

Wire names are camelCase; Python attributes stay snake_case.
"""
from datetime import datetime
from typing import Dict, Optional, Any
from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel

from clipguard.db.models import JobStage, SensitivityStatus


class CamelModel(BaseModel):
    """Base model serialising to camelCase while accepting either form."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class VideoMetadataDTO(CamelModel):
    """Probed properties of a source video."""
    duration: float = 0.0
    width: int = 0
    height: int = 0
    bitrate: int = 0
    codec: str = "unknown"
    fps: float = 0.0
    size: int = 0
    has_audio: bool = False


class VideoJobDTO(CamelModel):
    """Persisted projection of a job, returned by the status query."""
    id: str
    organization: str
    filename: Optional[str] = None
    stage: JobStage
    overall_progress: int = Field(ge=0, le=100, default=0)
    display_status: Optional[str] = None
    sensitivity_status: SensitivityStatus = SensitivityStatus.PENDING
    sensitivity_verdict: Optional[Dict[str, Any]] = None
    derived_path: Optional[str] = None
    metadata: VideoMetadataDTO = Field(default_factory=VideoMetadataDTO)
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Internal only - never serialised to observers
    source_path: str = Field(default="", exclude=True)
    error_message: Optional[str] = Field(default=None, exclude=True)

    @classmethod
    def from_db(cls, job) -> "VideoJobDTO":
        """Build the DTO while the ORM object is still bound to its session."""
        return cls(
            id=job.id,
            organization=job.organization,
            filename=job.filename,
            stage=job.stage,
            overall_progress=job.overall_progress or 0,
            display_status=job.display_status,
            sensitivity_status=job.sensitivity_status or SensitivityStatus.PENDING,
            sensitivity_verdict=job.sensitivity_verdict,
            derived_path=job.derived_path,
            metadata=VideoMetadataDTO(**(job.probed_metadata or {})),
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            source_path=job.source_path,
            error_message=job.error_message,
        )


class HealthResponse(BaseModel):
    status: str
    version: str
    classifier_backend: str
    classifier_available: bool
