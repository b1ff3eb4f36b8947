"""
Client-side reconciliation of pushed events and polled snapshots.

Both sources are folded into an immutable ObservedJob by pure functions:
- progress never decreases
- a terminal phase is sticky
- frame records accumulate by frame number and stay sorted
"""
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple


class Phase(str, Enum):
    """
    What the observer believes the job is doing.

    ERROR means the observer stopped watching because the server does not know
    the job (or will not show it). It is not terminal: a later status moves on from it.
    """
    IDLE = "idle"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    ANALYZING = "analyzing"
    COMPRESSING = "compressing"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    FLAGGED = "flagged"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.COMPLETED, Phase.FAILED, Phase.FLAGGED)

    @property
    def rank(self) -> int:
        if self.is_terminal:
            return len(_LIVE_ORDER)
        if self == Phase.ERROR:
            return -1
        return _LIVE_ORDER.index(self)


_LIVE_ORDER = [
    Phase.IDLE,
    Phase.UPLOADING,
    Phase.PROCESSING,
    Phase.ANALYZING,
    Phase.COMPRESSING,
    Phase.FINALIZING,
]

_FRAME_MARKERS = ("analyzing frame", "extracting frame", "analyzing frames", "extracting frames")


def normalize_phase(raw: Optional[str], current: Phase = Phase.IDLE) -> Phase:
    """
    Map a raw status string onto a Phase.

    Exact phase names match case-insensitively; free-form display statuses
    are pattern-matched. Anything unrecognised keeps `current`.
    """
    if not raw:
        return current
    text = str(raw).strip().lower()
    try:
        return Phase(text)
    except ValueError:
        pass
    if any(marker in text for marker in _FRAME_MARKERS):
        return Phase.ANALYZING
    if "compress" in text:
        return Phase.COMPRESSING
    if "final" in text:
        return Phase.FINALIZING
    return current


FrameRecords = Tuple[Dict[str, Any], ...]


@dataclass(frozen=True)
class ObservedJob:
    """Everything an observer knows about one job."""
    job_id: str
    phase: Phase = Phase.IDLE
    display_status: Optional[str] = None
    progress: int = 0
    current_frame: Optional[int] = None
    total_frames: Optional[int] = None
    frame_records: FrameRecords = ()
    sensitivity_status: Optional[str] = None
    verdict: Optional[Dict[str, Any]] = None
    derived_path: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.phase.is_terminal

    @property
    def settled(self) -> bool:
        """Nothing more will be learned about the job."""
        return self.phase.is_terminal or self.phase == Phase.ERROR


def merge_frames(existing: FrameRecords, incoming: Iterable[Dict[str, Any]]) -> FrameRecords:
    """Add records, replacing any held for the same frame number."""
    by_number = {r["frameNumber"]: r for r in existing if r and r.get("frameNumber")}
    for record in incoming:
        if record and record.get("frameNumber"):
            by_number[record["frameNumber"]] = record
    return tuple(by_number[n] for n in sorted(by_number))


def _advance_phase(prior: Phase, candidate: Phase) -> Phase:
    if prior.is_terminal:
        return prior
    if candidate.is_terminal or candidate.rank >= prior.rank:
        return candidate
    return prior


def _progress(prior: int, value: Any) -> int:
    try:
        incoming = int(round(float(value)))
    except (TypeError, ValueError):
        return prior
    return max(prior, min(100, incoming))


def mark_error(prior: ObservedJob, message: str) -> ObservedJob:
    """Record that the job cannot be observed. A terminal job keeps its outcome."""
    if prior.terminal:
        return prior
    return replace(prior, phase=Phase.ERROR, display_status=message)


def merge_event(prior: ObservedJob, event: Dict[str, Any]) -> ObservedJob:
    """Fold one pushed progress/complete message into the observed state."""
    stage = event.get("stage")
    display = event.get("displayStatus")

    candidate = normalize_phase(stage, prior.phase)
    if not stage:
        candidate = normalize_phase(display, prior.phase)
    if not stage and not display and (event.get("currentFrame") or event.get("totalFrames")):
        candidate = Phase.ANALYZING

    phase = _advance_phase(prior.phase, candidate)
    record = event.get("frameRecord")

    return replace(
        prior,
        phase=phase,
        display_status=prior.display_status if prior.terminal else (display or prior.display_status),
        progress=100 if phase.is_terminal else _progress(prior.progress, event.get("fractionComplete")),
        current_frame=event.get("currentFrame", prior.current_frame),
        total_frames=event.get("totalFrames", prior.total_frames),
        frame_records=merge_frames(prior.frame_records, [record] if record else []),
        sensitivity_status=event.get("sensitivityStatus") or prior.sensitivity_status,
    )


def merge_snapshot(prior: ObservedJob, snapshot: Dict[str, Any]) -> ObservedJob:
    """Fold a polled job status (GET /jobs/{id}) into the observed state."""
    phase = _advance_phase(prior.phase, normalize_phase(snapshot.get("stage"), prior.phase))

    verdict = snapshot.get("sensitivityVerdict") or prior.verdict
    frame_results = ((verdict or {}).get("frameAnalysis") or {}).get("frameResults") or []
    sensitivity = snapshot.get("sensitivityStatus")
    if sensitivity == "pending":
        sensitivity = None

    return replace(
        prior,
        phase=phase,
        display_status=prior.display_status if prior.terminal else (snapshot.get("displayStatus") or prior.display_status),
        progress=100 if phase.is_terminal else _progress(prior.progress, snapshot.get("overallProgress")),
        frame_records=merge_frames(prior.frame_records, frame_results),
        sensitivity_status=sensitivity or prior.sensitivity_status,
        verdict=verdict,
        derived_path=snapshot.get("derivedPath") or prior.derived_path,
    )
