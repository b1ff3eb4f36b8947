"""
Content analysis stage.

Samples frames, scores each one against the selected backend and folds the
results into a SensitivityVerdict. Per-frame failures become error records;
the loop never aborts because of one frame.

Internal progress (0-100):
- 10: extraction started
- 20-100: frames scored, linear in frames completed
"""
import asyncio
from typing import Awaitable, Callable, List, Optional

from clipguard.classifiers.base import ClassifierBackend
from clipguard.core.config import settings
from clipguard.core.errors import FrameClassificationError, FrameExtractionError
from clipguard.core.logging import get_logger
from clipguard.pipeline.aggregator import AggregationPolicy, SensitivityVerdict, aggregate, should_sample
from clipguard.pipeline.events import FrameRecord
from clipguard.pipeline.sampler import FrameSampler

logger = get_logger("pipeline.analysis")

# (percent, display_status, current_frame, total_frames, frame_record)
AnalysisProgress = Callable[..., Awaitable[None]]

EXTRACTION_PROGRESS = 10
FRAMES_START = 20
FRAMES_SPAN = 80


def frame_progress(done: int, total: int) -> float:
    if total <= 0:
        return 100.0
    return FRAMES_START + FRAMES_SPAN * done / total


async def classify_frame(
    sampler: FrameSampler,
    backend: ClassifierBackend,
    frame_number: int,
    timeout: float,
) -> FrameRecord:
    """Extract and score one frame. Always returns a record, failed or not."""
    timestamp = sampler.timestamp_for(frame_number)
    try:
        frame = await sampler.extract(frame_number)
    except FrameExtractionError as e:
        logger.warning(f"Frame {frame_number} extraction failed: {e}")
        return FrameRecord.failed(frame_number, timestamp, e.reason)

    try:
        verdict = await asyncio.wait_for(backend.classify(frame), timeout=timeout)
    except asyncio.TimeoutError:
        error = FrameClassificationError(frame_number, "Frame analysis timeout")
    except Exception as e:
        error = FrameClassificationError(frame_number, str(e) or e.__class__.__name__)
    else:
        return FrameRecord(
            frame_number=frame_number,
            timestamp_seconds=timestamp,
            is_explicit=verdict.is_explicit,
            is_violent=verdict.is_violent,
            confidence=verdict.confidence,
            details=dict(verdict.details),
        )
    finally:
        sampler.discard(frame)

    logger.warning(f"Error analyzing frame {frame_number}: {error.reason}")
    return FrameRecord.failed(frame_number, timestamp, error.reason)


async def analyze_content(
    job_id: str,
    video_path: str,
    duration: float,
    size: int,
    backend: ClassifierBackend,
    on_progress: Optional[AnalysisProgress] = None,
    policy: Optional[AggregationPolicy] = None,
    frame_timeout: Optional[float] = None,
    temp_dir: Optional[str] = None,
    extraction_timeout: Optional[float] = None,
) -> SensitivityVerdict:
    """
    Run content analysis for one job.

    Args:
        job_id: Job identifier (names the scratch directory)
        video_path: Source video
        duration: Source duration in seconds
        size: Source size in bytes
        backend: Selected classifier backend
        on_progress: Awaited as on_progress(percent, status, current_frame=, total_frames=, frame_record=)
        policy: Aggregation thresholds
        frame_timeout: Per-frame classification limit in seconds
        extraction_timeout: Per-frame ffmpeg extraction limit in seconds

    Returns:
        SensitivityVerdict
    """
    policy = policy or AggregationPolicy.from_settings()
    frame_timeout = frame_timeout or settings.frame_timeout_sec

    async def report(percent, status, **kwargs):
        if on_progress:
            await on_progress(percent, status, **kwargs)

    if not should_sample(duration, backend.available, policy):
        logger.info(f"Skipping frame sampling for job {job_id} (backend_available={backend.available}, duration={duration:.2f}s)")
        return aggregate(duration, 0, [], backend.available, size=size, policy=policy)

    sampler = FrameSampler(video_path, job_id, duration, temp_dir=temp_dir, extraction_timeout=extraction_timeout)
    total = sampler.total_frames
    await report(EXTRACTION_PROGRESS, "Extracting frames...", total_frames=total)

    try:
        sampler.open()
    except FrameExtractionError as e:
        logger.error(f"Frame extraction failed for job {job_id}: {e}")
        return aggregate(duration, total, [], backend.available, extraction_failed=True, size=size, policy=policy)

    records: List[FrameRecord] = []
    try:
        for number in sampler.frame_numbers:
            status = f"Analyzing frame {number}/{total}..."
            await report(frame_progress(number - 1, total), status, current_frame=number, total_frames=total)

            record = await classify_frame(sampler, backend, number, frame_timeout)
            records.append(record)

            await report(frame_progress(number, total), status, current_frame=number, total_frames=total, frame_record=record)
    finally:
        sampler.close()

    failed = sum(1 for r in records if not r.usable)
    logger.info(f"Analyzed {total} frames for job {job_id} ({failed} failed)")
    return aggregate(duration, total, records, backend.available, size=size, policy=policy)
