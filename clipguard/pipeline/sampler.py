"""
Frame sampling for content analysis.

Sampling math:
- interval: 2s below 10s of video, 5s otherwise
- frame count: floor(duration / interval), clamped to [1, max_frames]
- timestamp(i): min(i * interval, duration - 1), never negative

Frames are extracted one at a time into a per-job scratch directory and
removed as soon as they have been scored.
"""
import asyncio
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from PIL import Image

from clipguard.core.config import settings
from clipguard.core.errors import FrameExtractionError
from clipguard.core.logging import get_logger
from clipguard.utils.ffmpeg import extract_frame

logger = get_logger("pipeline.sampler")

SHORT_VIDEO_SECONDS = 10
SHORT_INTERVAL = 2
DEFAULT_INTERVAL = 5


def sampling_interval(duration: float) -> int:
    return SHORT_INTERVAL if duration < SHORT_VIDEO_SECONDS else DEFAULT_INTERVAL


def frame_count(duration: float, max_frames: int = 20) -> int:
    """Number of frames to sample; always at least one."""
    calculated = int(max(duration, 0) // sampling_interval(duration))
    return max(1, min(max_frames, calculated))


def frame_timestamp(index: int, duration: float) -> float:
    """Seek position for the 0-based sample `index`."""
    return max(0.0, min(float(index * sampling_interval(duration)), duration - 1))


def sample_timestamps(duration: float, max_frames: int = 20) -> List[float]:
    return [frame_timestamp(i, duration) for i in range(frame_count(duration, max_frames))]


@dataclass
class SampledFrame:
    """A still extracted from the source, ready for classification."""
    frame_number: int  # 1-based
    timestamp: float
    path: str

    def read_bytes(self) -> bytes:
        with open(self.path, "rb") as fh:
            return fh.read()


class FrameSampler:
    """
    Extracts sampled frames for one job.

    Usage:
        with FrameSampler(video_path, job_id, duration) as sampler:
            for number in sampler.frame_numbers:
                frame = await sampler.extract(number)
                ...
                sampler.discard(frame)
    """

    def __init__(
        self,
        video_path: str,
        job_id: str,
        duration: float,
        temp_dir: Optional[str] = None,
        frame_size: Optional[str] = None,
        max_frames: Optional[int] = None,
        extraction_timeout: Optional[float] = None,
    ):
        self.video_path = video_path
        self.job_id = job_id
        self.duration = duration
        self.frame_size = frame_size or settings.frame_size
        self.extraction_timeout = extraction_timeout or settings.frame_extraction_timeout_sec
        self.timestamps = sample_timestamps(duration, max_frames or settings.max_sampled_frames)
        self.scratch_dir = Path(temp_dir or settings.temp_dir) / job_id / "frames"

    @property
    def total_frames(self) -> int:
        return len(self.timestamps)

    @property
    def frame_numbers(self) -> range:
        return range(1, self.total_frames + 1)

    def timestamp_for(self, frame_number: int) -> float:
        return self.timestamps[frame_number - 1]

    def open(self) -> "FrameSampler":
        try:
            self.scratch_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FrameExtractionError(f"cannot create scratch directory {self.scratch_dir}: {e}") from e
        logger.debug(f"Sampling {self.total_frames} frames for job {self.job_id} into {self.scratch_dir}")
        return self

    def close(self):
        shutil.rmtree(self.scratch_dir, ignore_errors=True)
        # Drop the per-job directory too once it is empty
        try:
            self.scratch_dir.parent.rmdir()
        except OSError:
            pass

    def __enter__(self) -> "FrameSampler":
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    async def extract(self, frame_number: int) -> SampledFrame:
        """
        Extract and validate one frame.

        Raises:
            FrameExtractionError: ffmpeg failed, timed out, or the output is not a decodable image
        """
        timestamp = self.timestamp_for(frame_number)
        output_path = str(self.scratch_dir / f"frame_{frame_number:04d}.png")

        loop = asyncio.get_event_loop()
        try:
            # ffmpeg enforces the same limit; this also covers a stuck worker thread
            await asyncio.wait_for(
                loop.run_in_executor(
                    None, extract_frame, self.video_path, timestamp, output_path,
                    self.frame_size, self.extraction_timeout,
                ),
                timeout=self.extraction_timeout,
            )
        except asyncio.TimeoutError as e:
            Path(output_path).unlink(missing_ok=True)
            raise FrameExtractionError("Frame extraction timeout", timestamp) from e

        frame = SampledFrame(frame_number=frame_number, timestamp=timestamp, path=output_path)
        try:
            with Image.open(output_path) as img:
                img.verify()
        except Exception as e:
            self.discard(frame)
            raise FrameExtractionError(f"extracted frame is not a valid image: {e}", timestamp) from e
        return frame

    def discard(self, frame: SampledFrame):
        Path(frame.path).unlink(missing_ok=True)
