"""
Pipeline orchestrator.

Drives one job through
    processing -> analyzing -> compressing -> finalizing -> completed | flagged
and into `failed` from any live stage. Every update is persisted through the
repository before the matching ProgressEvent is published, so a status
query never lags behind what observers have been told.
"""
import asyncio
import time
from pathlib import Path
from typing import Optional, Set

from clipguard.classifiers.base import ClassifierBackend
from clipguard.core.config import Settings, settings as default_settings
from clipguard.core.logging import get_logger
from clipguard.db.models import JobStage
from clipguard.pipeline.aggregator import AggregationPolicy
from clipguard.pipeline.analysis import analyze_content
from clipguard.pipeline.events import ProgressEvent
from clipguard.utils.ffmpeg import transcode_for_streaming

logger = get_logger("pipeline.orchestrator")

# Orchestrator-level progress anchors
PROCESSING_PROGRESS = 10
ANALYSIS_START, ANALYSIS_END = 30, 50
COMPRESS_START, COMPRESS_END = 50, 90
FINALIZING_PROGRESS = 95


def scale(percent: float, start: int, end: int) -> float:
    """Map a sub-task percentage onto the [start, end] window."""
    percent = max(0.0, min(100.0, percent))
    return start + (end - start) * percent / 100


class PipelineOrchestrator:
    """
    Runs jobs as fire-and-forget asyncio tasks.

    Collaborators are injected so tests can substitute any of them.
    """

    def __init__(
        self,
        broadcaster,
        backend: ClassifierBackend,
        repository=None,
        config: Optional[Settings] = None,
        analyzer=None,
        transcoder=None,
    ):
        if repository is None:
            from clipguard.db.repository import JobRepository
            repository = JobRepository
        self.broadcaster = broadcaster
        self.backend = backend
        self.repository = repository
        self.config = config or default_settings
        self.policy = AggregationPolicy.from_settings(self.config)
        self.analyzer = analyzer or analyze_content
        self.transcoder = transcoder or transcode_for_streaming
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active_jobs(self) -> int:
        return len(self._tasks)

    def start(self, job_id: str) -> asyncio.Task:
        """Schedule a job and return immediately."""
        task = asyncio.create_task(self.run(job_id), name=f"job-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run(self, job_id: str):
        """
        Process one job to a terminal stage. Never raises.

        Returns:
            The terminal VideoJobDTO, or None when the job could not be recorded
        """
        start_time = time.time()
        job = self.repository.get(job_id)
        if job is None:
            logger.error(f"Job {job_id} not found, nothing to run")
            return None

        logger.info(f"Starting pipeline for job {job_id} ({job.filename})")
        try:
            result = await self._execute(job)
        except Exception as e:
            logger.error(f"Pipeline failed for job {job_id}: {e}", exc_info=True)
            result = self._fail(job, e)

        processing_time = time.time() - start_time
        if result is not None:
            logger.info(
                f"Job {job_id} finished as {result.stage.value} "
                f"(sensitivity={result.sensitivity_status.value}) in {processing_time:.2f}s"
            )
        return result

    async def _execute(self, job):
        metadata = job.metadata

        await self._advance(job, JobStage.PROCESSING, PROCESSING_PROGRESS, "Processing video...")
        await self._advance(job, JobStage.ANALYZING, ANALYSIS_START, "Analyzing content...")

        async def on_analysis(percent, status, current_frame=None, total_frames=None, frame_record=None):
            await self._report(
                job, JobStage.ANALYZING, scale(percent, ANALYSIS_START, ANALYSIS_END), status,
                current_frame=current_frame, total_frames=total_frames, frame_record=frame_record,
            )

        verdict = await self.analyzer(
            job_id=job.id,
            video_path=job.source_path,
            duration=metadata.duration,
            size=metadata.size,
            backend=self.backend,
            on_progress=on_analysis,
            policy=self.policy,
            frame_timeout=self.config.frame_timeout_sec,
            extraction_timeout=self.config.frame_extraction_timeout_sec,
            temp_dir=self.config.temp_dir,
        )
        logger.info(f"Content analysis for job {job.id}: {verdict.status.value} ({verdict.confidence:.2f})")

        await self._advance(job, JobStage.COMPRESSING, COMPRESS_START, "Compressing video...")

        last_reported = {"value": -1}

        async def on_transcode(percent: float):
            overall = int(scale(percent, COMPRESS_START, COMPRESS_END))
            # ffmpeg reports several times a second; only forward visible changes
            if overall <= last_reported["value"]:
                return
            last_reported["value"] = overall
            await self._report(job, JobStage.COMPRESSING, overall, f"Compressing video... {int(percent)}%")

        output_path = Path(self.config.processed_dir) / f"{job.id}.mp4"
        try:
            derived_path = await self.transcoder(
                job.source_path,
                str(output_path),
                metadata.duration,
                has_audio=metadata.has_audio,
                progress_callback=on_transcode,
                timeout=self.config.transcode_timeout_sec,
            )
        except Exception:
            output_path.unlink(missing_ok=True)
            raise

        await self._advance(job, JobStage.FINALIZING, FINALIZING_PROGRESS, "Finalizing...")

        terminal = JobStage.FLAGGED if verdict.is_flagged else JobStage.COMPLETED
        final = self.repository.save_terminal(
            job.id, terminal, verdict=verdict.to_dict(), derived_path=derived_path
        )
        self._publish(ProgressEvent(
            job_id=job.id,
            organization=job.organization,
            stage=terminal.value,
            fraction_complete=100,
            display_status=terminal.value,
            sensitivity_status=verdict.status.value,
            terminal=True,
        ))
        return final

    async def _advance(self, job, stage: JobStage, progress: float, display_status: str, **event_fields):
        """Persist a stage/progress update, then publish what was stored."""
        stored = self.repository.update_progress(job.id, stage, progress, display_status)
        self._publish(ProgressEvent(
            job_id=job.id,
            organization=job.organization,
            stage=stage.value,
            fraction_complete=stored,
            display_status=display_status,
            **event_fields,
        ))

    async def _report(self, job, stage: JobStage, progress: float, display_status: str, **event_fields):
        """In-stage progress. Failures are logged and never abort the job."""
        try:
            await self._advance(job, stage, progress, display_status, **event_fields)
        except Exception as e:
            logger.warning(f"Failed to record progress for job {job.id}: {e}")

    def _publish(self, event: ProgressEvent):
        try:
            self.broadcaster.publish(event)
        except Exception as e:
            logger.warning(f"Failed to broadcast progress for job {event.job_id}: {e}")

    def _fail(self, job, error: Exception):
        """Record the failed terminal state and tell observers."""
        try:
            final = self.repository.mark_failed(job.id, f"{error.__class__.__name__}: {error}")
        except Exception as e:
            logger.error(f"Could not record failure for job {job.id}: {e}", exc_info=True)
            return None

        self._publish(ProgressEvent(
            job_id=job.id,
            organization=job.organization,
            stage=JobStage.FAILED.value,
            fraction_complete=100,
            display_status=JobStage.FAILED.value,
            terminal=True,
        ))
        return final
