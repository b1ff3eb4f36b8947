"""
FFmpeg utilities for video processing.

- probe_metadata: ffprobe wrapper used as the precondition for job creation
- extract_frame: single still extraction for the frame sampler
- transcode_for_streaming: async H.264/AAC faststart encode with progress
"""
import asyncio
import json
import shutil
import subprocess
from collections import deque
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from clipguard.core.config import settings
from clipguard.core.errors import (
    FrameExtractionError,
    MetadataError,
    MetadataFailure,
    TranscodeError,
)
from clipguard.core.logging import get_logger

logger = get_logger("ffmpeg")

ProgressCallback = Callable[[float], Awaitable[None]]

# Fixed rendition parameters (no adaptive bitrate ladder)
STREAMING_VIDEO_OPTIONS = [
    "-c:v", "libx264",
    "-preset", "medium",
    "-crf", "23",
    "-maxrate", "2M",
    "-bufsize", "4M",
]
STREAMING_AUDIO_OPTIONS = ["-c:a", "aac", "-b:a", "128k"]


@dataclass
class VideoMetadata:
    """Properties of a source video as reported by ffprobe."""
    duration: float
    width: int
    height: int
    bitrate: int
    codec: str
    fps: float
    size: int
    has_audio: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def locate_binary(name: str, configured: Optional[str] = None) -> Optional[str]:
    """
    Resolve an ffmpeg-family binary.

    An explicitly configured path wins; otherwise the binary is looked up on PATH.
    Returns None when it cannot be found.
    """
    if configured:
        if Path(configured).exists():
            return configured
        logger.warning(f"Configured {name} path does not exist: {configured}")
        return None
    return shutil.which(name)


def _parse_frame_rate(rate: Optional[str]) -> float:
    """Parse ffprobe's `num/den` frame rate; a zero denominator yields 0."""
    if not rate:
        return 0.0
    try:
        if "/" in rate:
            num, den = rate.split("/", 1)
            den_value = float(den)
            return float(num) / den_value if den_value > 0 else 0.0
        return float(rate)
    except ValueError:
        return 0.0


def probe_metadata(video_path: str) -> VideoMetadata:
    """
    Extract video metadata using ffprobe.

    Raises:
        MetadataError: with cause TOOL_UNAVAILABLE, NO_VIDEO_STREAM or INVALID_DATA
    """
    ffprobe = locate_binary("ffprobe", settings.ffprobe_path)
    if not ffprobe:
        raise MetadataError(MetadataFailure.TOOL_UNAVAILABLE, "ffprobe binary not found")

    path = Path(video_path)
    if not path.exists():
        raise MetadataError(MetadataFailure.INVALID_DATA, f"Video file not found: {video_path}")

    cmd = [
        ffprobe,
        "-v", "quiet",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        str(path)
    ]

    logger.info(f"Extracting metadata from: {video_path}")
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=True)
    except OSError as e:
        raise MetadataError(MetadataFailure.TOOL_UNAVAILABLE, str(e)) from e
    except subprocess.CalledProcessError as e:
        logger.error(f"ffprobe failed: {e.stderr}")
        raise MetadataError(MetadataFailure.INVALID_DATA, (e.stderr or "").strip()) from e

    try:
        data = json.loads(result.stdout or "{}")
    except json.JSONDecodeError as e:
        raise MetadataError(MetadataFailure.INVALID_DATA, "unreadable ffprobe output") from e

    streams = data.get("streams") or []
    video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
    audio_stream = next((s for s in streams if s.get("codec_type") == "audio"), None)

    if not video_stream:
        raise MetadataError(MetadataFailure.NO_VIDEO_STREAM)

    fmt = data.get("format") or {}
    try:
        duration = float(fmt.get("duration") or video_stream.get("duration") or 0)
        bitrate = int(fmt.get("bit_rate") or 0)
        size = int(fmt["size"]) if fmt.get("size") else path.stat().st_size
    except (TypeError, ValueError) as e:
        raise MetadataError(MetadataFailure.INVALID_DATA, f"malformed format block: {e}") from e

    metadata = VideoMetadata(
        duration=duration,
        width=int(video_stream.get("width") or 0),
        height=int(video_stream.get("height") or 0),
        bitrate=bitrate,
        codec=video_stream.get("codec_name", "unknown"),
        fps=_parse_frame_rate(video_stream.get("r_frame_rate")),
        size=size,
        has_audio=audio_stream is not None,
    )
    logger.info(f"Metadata extracted: {metadata}")
    return metadata


def extract_frame(
    video_path: str,
    timestamp: float,
    output_path: str,
    size: str = "320x240",
    timeout: Optional[float] = None,
) -> str:
    """Extract a single still at `timestamp` seconds, giving up after `timeout` seconds."""
    timeout = timeout or settings.frame_extraction_timeout_sec
    ffmpeg = locate_binary("ffmpeg", settings.ffmpeg_path)
    if not ffmpeg:
        raise FrameExtractionError("ffmpeg binary not found", timestamp)

    cmd = [
        ffmpeg,
        "-loglevel", "error",
        "-ss", f"{timestamp:.3f}",
        "-i", video_path,
        "-frames:v", "1",
        "-s", size,
        "-y",  # Overwrite
        output_path
    ]

    try:
        subprocess.run(cmd, capture_output=True, text=True, check=True, timeout=timeout)
    except subprocess.TimeoutExpired as e:
        logger.error(f"Frame extraction at {timestamp:.3f}s timed out after {timeout}s")
        raise FrameExtractionError("Frame extraction timeout", timestamp) from e
    except OSError as e:
        raise FrameExtractionError(str(e), timestamp) from e
    except subprocess.CalledProcessError as e:
        logger.error(f"Frame extraction failed: {e.stderr}")
        raise FrameExtractionError((e.stderr or "ffmpeg error").strip(), timestamp) from e

    if not Path(output_path).exists():
        raise FrameExtractionError("no frame written", timestamp)
    return output_path


def parse_progress_line(line: str, duration: float) -> Optional[float]:
    """
    Convert one line of `ffmpeg -progress` output to a percentage.

    ffmpeg reports out_time_ms in microseconds despite the name.
    """
    key, sep, value = line.strip().partition("=")
    if not sep:
        return None
    if key == "progress" and value == "end":
        return 100.0
    if key not in ("out_time_ms", "out_time_us") or duration <= 0:
        return None
    try:
        seconds = int(value) / 1_000_000
    except ValueError:
        return None  # "N/A" before the first packet
    return max(0.0, min(100.0, seconds / duration * 100))


def build_transcode_command(ffmpeg: str, input_path: str, output_path: str, has_audio: bool) -> List[str]:
    """FFmpeg argv for the stream-optimised rendition."""
    audio = STREAMING_AUDIO_OPTIONS if has_audio else ["-an"]
    return [
        ffmpeg,
        "-hide_banner",
        "-y",
        "-i", input_path,
        *STREAMING_VIDEO_OPTIONS,
        *audio,
        "-movflags", "+faststart",  # moov atom first for progressive playback
        "-f", "mp4",
        "-progress", "pipe:1",
        "-nostats",
        output_path,
    ]


async def transcode_for_streaming(
    input_path: str,
    output_path: str,
    duration: float,
    has_audio: bool = True,
    progress_callback: Optional[ProgressCallback] = None,
    timeout: Optional[float] = None,
) -> str:
    """
    Encode the source into an MP4 suitable for progressive streaming.

    Args:
        input_path: Source video path
        output_path: Rendition output path
        duration: Source duration in seconds (drives percentage reporting)
        has_audio: Whether to encode an audio track
        progress_callback: Awaited with percentages in [0, 100]
        timeout: Optional wall-clock limit in seconds; None means unbounded

    Returns:
        output_path

    Raises:
        TranscodeError: on missing binary, non-zero exit or timeout
    """
    ffmpeg = locate_binary("ffmpeg", settings.ffmpeg_path)
    if not ffmpeg:
        raise TranscodeError("ffmpeg binary not found")

    Path(output_path).parent.mkdir(parents=True, exist_ok=True)
    cmd = build_transcode_command(ffmpeg, input_path, output_path, has_audio)
    logger.info(f"FFmpeg process starting: {' '.join(cmd)}")

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise TranscodeError(f"Could not start ffmpeg: {e}") from e

    stderr_tail: deque = deque(maxlen=20)

    async def drain_stderr():
        async for raw in process.stderr:
            stderr_tail.append(raw.decode(errors="replace").rstrip())

    async def follow_progress():
        async for raw in process.stdout:
            percent = parse_progress_line(raw.decode(errors="replace"), duration)
            if percent is not None and progress_callback:
                await progress_callback(percent)
        await process.wait()

    stderr_task = asyncio.create_task(drain_stderr())
    try:
        if timeout:
            await asyncio.wait_for(follow_progress(), timeout=timeout)
        else:
            await follow_progress()
    except asyncio.TimeoutError as e:
        raise TranscodeError(f"Transcode timed out after {timeout}s") from e
    finally:
        if process.returncode is None:
            process.kill()
            await process.wait()
        await stderr_task

    if process.returncode != 0:
        detail = " | ".join(stderr_tail) or "no output"
        logger.error(f"FFmpeg exited with {process.returncode}: {detail}")
        raise TranscodeError(f"ffmpeg exited with code {process.returncode}")

    if progress_callback:
        await progress_callback(100.0)
    logger.info(f"Video processing completed: {output_path}")
    return output_path
