"""
Database repository for video job persistence.

Repository pattern for data access. Every write the pipeline makes to a
job goes through JobRepository so stage ordering and progress
monotonicity are enforced in one place.
"""
from datetime import datetime
from typing import Optional, Dict, Any

from clipguard.api.schemas import VideoJobDTO
from clipguard.core.errors import JobNotFoundError
from clipguard.core.logging import get_logger
from clipguard.db.connection import get_db_session as get_session
from clipguard.db.models import VideoJob, JobStage, SensitivityStatus, generate_uuid

logger = get_logger("db.repository")


class JobRepository:
    """Repository for VideoJob CRUD operations."""

    @staticmethod
    def create(
        organization: str,
        source_path: str,
        metadata: Dict[str, Any],
        filename: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> VideoJobDTO:
        """Create a job in the `uploading` stage. Returns the persisted projection."""
        job_id = job_id or generate_uuid()
        with get_session() as session:
            job = VideoJob(
                id=job_id,
                organization=organization,
                filename=filename,
                source_path=source_path,
                probed_metadata=metadata,
                stage=JobStage.UPLOADING,
                overall_progress=0,
                sensitivity_status=SensitivityStatus.PENDING,
            )
            session.add(job)
            session.flush()
            dto = VideoJobDTO.from_db(job)
        logger.info(f"Created job {job_id} for organization {organization}")
        return dto

    @staticmethod
    def get(job_id: str) -> Optional[VideoJobDTO]:
        """Get job projection by ID."""
        with get_session() as session:
            job = session.query(VideoJob).filter(VideoJob.id == job_id).first()
            if not job:
                return None
            return VideoJobDTO.from_db(job)

    @staticmethod
    def get_for_organization(job_id: str, organization: str) -> VideoJobDTO:
        """Get a job visible to an organization; other tenants' jobs do not exist."""
        job = JobRepository.get(job_id)
        if job is None or job.organization != organization:
            raise JobNotFoundError(job_id)
        return job

    @staticmethod
    def update_progress(
        job_id: str,
        stage: JobStage,
        progress: int,
        display_status: Optional[str] = None,
    ) -> int:
        """
        Persist a stage/progress update.

        Progress is clamped so it never decreases. Returns the value actually
        stored so the caller can publish exactly what a status query would see.

        Raises:
            JobNotFoundError: unknown job
            ValueError: the update would move the job backwards or out of a terminal stage
        """
        with get_session() as session:
            job = session.query(VideoJob).filter(VideoJob.id == job_id).first()
            if not job:
                raise JobNotFoundError(job_id)

            if job.stage != stage and not job.stage.can_advance_to(stage):
                raise ValueError(f"Illegal stage transition {job.stage.value} -> {stage.value} for job {job_id}")

            stored = max(job.overall_progress or 0, min(100, int(round(progress))))
            job.stage = stage
            job.overall_progress = stored
            if display_status is not None:
                job.display_status = display_status
            if stage == JobStage.PROCESSING and not job.started_at:
                job.started_at = datetime.utcnow()
            return stored

    @staticmethod
    def save_terminal(
        job_id: str,
        stage: JobStage,
        verdict: Optional[Dict[str, Any]] = None,
        derived_path: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> VideoJobDTO:
        """Persist the single terminal outcome of a job."""
        if not stage.is_terminal:
            raise ValueError(f"{stage.value} is not a terminal stage")

        with get_session() as session:
            job = session.query(VideoJob).filter(VideoJob.id == job_id).first()
            if not job:
                raise JobNotFoundError(job_id)
            if not job.stage.can_advance_to(stage):
                raise ValueError(f"Job {job_id} already terminal ({job.stage.value})")

            job.stage = stage
            job.overall_progress = 100
            job.display_status = stage.value
            job.completed_at = datetime.utcnow()
            if verdict is not None:
                job.sensitivity_verdict = verdict
                job.sensitivity_status = SensitivityStatus(verdict["status"])
            if derived_path:
                job.derived_path = derived_path
            if error_message:
                job.error_message = error_message
            session.flush()
            return VideoJobDTO.from_db(job)

    @staticmethod
    def mark_failed(job_id: str, error_message: str) -> VideoJobDTO:
        """Persist a job as failed. Raw error text stays operator-facing."""
        return JobRepository.save_terminal(job_id, JobStage.FAILED, error_message=error_message)
