"""
Sensitivity aggregation.

Turns per-frame records into a single job-level verdict. Pure: no I/O,
no settings lookups unless no policy is passed.

Rules, first match wins:
1. no detection backend      -> flagged, 0.5
2. too short to sample       -> safe, 0.3
3. no usable frame           -> extraction_failure_status, 0.5
4. ratio of positive frames  -> flagged above threshold, flagged 0.7 below it
                                with any signal, otherwise safe 0.85
Advisory reasons for large or long sources are appended to every verdict.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from clipguard.core.config import settings
from clipguard.core.logging import get_logger
from clipguard.db.models import SensitivityStatus
from clipguard.pipeline.events import FrameRecord

logger = get_logger("pipeline.aggregator")

REASON_NO_BACKEND = "No content detection backend configured - manual review required"
REASON_TOO_SHORT = "Video duration too short for analysis"
REASON_EXTRACTION_FAILED = "Frame extraction failed - manual review recommended"
REASON_ANALYSIS_FAILED = "Frame analysis failed for all frames - manual review required"
REASON_LARGE_FILE = "Large file size - requires manual review"
REASON_LONG_DURATION = "Long duration - requires manual review"

SAFE_CONFIDENCE = 0.85
BELOW_THRESHOLD_CONFIDENCE = 0.7
REVIEW_CONFIDENCE = 0.5
TOO_SHORT_CONFIDENCE = 0.3


@dataclass
class AggregationPolicy:
    """Thresholds that shape the verdict."""
    flag_ratio_threshold: float = 0.15
    min_analysis_duration: float = 3.0
    large_file_bytes: int = 200 * 1024 * 1024
    long_duration: float = 3600.0
    extraction_failure_status: SensitivityStatus = SensitivityStatus.FLAGGED

    @classmethod
    def from_settings(cls, config=None) -> "AggregationPolicy":
        config = config or settings
        return cls(
            flag_ratio_threshold=config.flag_ratio_threshold,
            min_analysis_duration=config.min_analysis_duration_sec,
            large_file_bytes=config.large_file_bytes,
            long_duration=config.long_duration_sec,
            extraction_failure_status=SensitivityStatus(config.extraction_failure_status.lower()),
        )


@dataclass
class SensitivityVerdict:
    """Job-level content verdict."""
    status: SensitivityStatus
    confidence: float
    reasons: List[str] = field(default_factory=list)
    total_frames: int = 0
    explicit_frames: int = 0
    violent_frames: int = 0
    frame_results: Optional[List[FrameRecord]] = None  # None when nothing was sampled

    @property
    def is_flagged(self) -> bool:
        return self.status == SensitivityStatus.FLAGGED

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "status": self.status.value,
            "confidence": round(self.confidence, 4),
            "reasons": list(self.reasons),
        }
        if self.frame_results is not None:
            data["frameAnalysis"] = {
                "totalFrames": self.total_frames,
                "explicitFrames": self.explicit_frames,
                "violentFrames": self.violent_frames,
                "frameResults": [r.to_dict() for r in self.frame_results],
            }
        return data


def should_sample(duration: float, backend_available: bool, policy: Optional[AggregationPolicy] = None) -> bool:
    """Whether rules 1 and 2 leave anything to sample."""
    policy = policy or AggregationPolicy.from_settings()
    return backend_available and duration >= policy.min_analysis_duration


def _advisories(duration: float, size: int, policy: AggregationPolicy) -> List[str]:
    reasons = []
    if size > policy.large_file_bytes:
        reasons.append(REASON_LARGE_FILE)
    if duration > policy.long_duration:
        reasons.append(REASON_LONG_DURATION)
    return reasons


def aggregate(
    duration: float,
    frame_count: int,
    records: List[FrameRecord],
    backend_available: bool,
    extraction_failed: bool = False,
    size: int = 0,
    policy: Optional[AggregationPolicy] = None,
) -> SensitivityVerdict:
    """
    Compute the sensitivity verdict for one job.

    Args:
        duration: Source duration in seconds
        frame_count: Number of frames that were scheduled for sampling
        records: One FrameRecord per scheduled frame (error records included)
        backend_available: False when no detection backend was selected
        extraction_failed: Sampling could not start at all
        size: Source size in bytes
        policy: Thresholds; read from settings when omitted
    """
    policy = policy or AggregationPolicy.from_settings()
    advisories = _advisories(duration, size, policy)

    if not backend_available:
        verdict = SensitivityVerdict(SensitivityStatus.FLAGGED, REVIEW_CONFIDENCE, [REASON_NO_BACKEND])
    elif duration < policy.min_analysis_duration:
        verdict = SensitivityVerdict(SensitivityStatus.SAFE, TOO_SHORT_CONFIDENCE, [REASON_TOO_SHORT])
    elif extraction_failed or frame_count <= 0 or not any(r.usable for r in records):
        verdict = SensitivityVerdict(
            policy.extraction_failure_status,
            REVIEW_CONFIDENCE,
            [REASON_ANALYSIS_FAILED if records and not extraction_failed else REASON_EXTRACTION_FAILED],
            total_frames=max(frame_count, 0),
            frame_results=sorted(records, key=lambda r: r.frame_number),
        )
    else:
        verdict = _score_frames(frame_count, records, policy)

    verdict.reasons.extend(advisories)
    logger.debug(f"Aggregated verdict: {verdict.status.value} ({verdict.confidence:.2f}) {verdict.reasons}")
    return verdict


def _score_frames(frame_count: int, records: List[FrameRecord], policy: AggregationPolicy) -> SensitivityVerdict:
    explicit = sum(1 for r in records if r.is_explicit)
    violent = sum(1 for r in records if r.is_violent)
    explicit_ratio = explicit / frame_count
    violent_ratio = violent / frame_count
    threshold = policy.flag_ratio_threshold

    reasons: List[str] = []
    if explicit_ratio > threshold or violent_ratio > threshold:
        status = SensitivityStatus.FLAGGED
        confidence = max(explicit_ratio, violent_ratio)
        if explicit:
            reasons.append(
                f"Explicit content detected in {explicit} of {frame_count} frames ({explicit_ratio * 100:.1f}%)"
            )
        if violent:
            reasons.append(
                f"Violent content detected in {violent} of {frame_count} frames ({violent_ratio * 100:.1f}%)"
            )
    elif explicit or violent:
        # Below threshold but still a signal
        status = SensitivityStatus.FLAGGED
        confidence = BELOW_THRESHOLD_CONFIDENCE
        if explicit:
            reasons.append(f"Potential explicit content detected in {explicit} frame(s) - manual review recommended")
        if violent:
            reasons.append(f"Potential violent content detected in {violent} frame(s) - manual review recommended")
    else:
        status = SensitivityStatus.SAFE
        confidence = SAFE_CONFIDENCE

    return SensitivityVerdict(
        status=status,
        confidence=confidence,
        reasons=reasons,
        total_frames=frame_count,
        explicit_frames=explicit,
        violent_frames=violent,
        frame_results=sorted(records, key=lambda r: r.frame_number),
    )
