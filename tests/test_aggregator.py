"""
Test sensitivity aggregation rules.
"""
from clipguard.db.models import SensitivityStatus
from clipguard.pipeline.aggregator import (
    REASON_ANALYSIS_FAILED,
    REASON_EXTRACTION_FAILED,
    REASON_LARGE_FILE,
    REASON_LONG_DURATION,
    REASON_NO_BACKEND,
    REASON_TOO_SHORT,
    AggregationPolicy,
    aggregate,
    should_sample,
)
from clipguard.pipeline.events import FrameRecord

POLICY = AggregationPolicy()


def records(flags, violent=()):
    """Build one record per flag; True marks an explicit frame."""
    return [
        FrameRecord(
            frame_number=i + 1,
            timestamp_seconds=i * 2.0,
            is_explicit=flag,
            is_violent=(i + 1) in violent,
            confidence=0.9 if flag else 0.1,
        )
        for i, flag in enumerate(flags)
    ]


def test_all_clean_frames_are_safe():
    verdict = aggregate(8, 4, records([False] * 4), backend_available=True, policy=POLICY)
    assert verdict.status == SensitivityStatus.SAFE
    assert verdict.confidence == 0.85
    assert verdict.reasons == []
    data = verdict.to_dict()
    assert data["frameAnalysis"]["totalFrames"] == 4
    assert data["frameAnalysis"]["explicitFrames"] == 0


def test_ratio_above_threshold_flags_with_ratio_confidence():
    verdict = aggregate(8, 4, records([False, True, False, False]), backend_available=True, policy=POLICY)
    assert verdict.status == SensitivityStatus.FLAGGED
    assert verdict.confidence == 0.25
    assert any("1 of 4 frames (25.0%)" in reason for reason in verdict.reasons)
    assert verdict.reasons[0].startswith("Explicit content detected")


def test_signal_below_threshold_still_flags():
    verdict = aggregate(60, 10, records([True] + [False] * 9), backend_available=True, policy=POLICY)
    assert verdict.status == SensitivityStatus.FLAGGED
    assert verdict.confidence == 0.7
    assert verdict.reasons == [
        "Potential explicit content detected in 1 frame(s) - manual review recommended"
    ]


def test_violent_and_explicit_reasons_reported_separately():
    verdict = aggregate(8, 4, records([True, True, False, False], violent=(3,)), backend_available=True, policy=POLICY)
    assert verdict.confidence == 0.5
    assert verdict.reasons[0] == "Explicit content detected in 2 of 4 frames (50.0%)"
    assert verdict.reasons[1] == "Violent content detected in 1 of 4 frames (25.0%)"


def test_no_backend_flags_everything():
    verdict = aggregate(8, 0, [], backend_available=False, policy=POLICY)
    assert verdict.status == SensitivityStatus.FLAGGED
    assert verdict.confidence == 0.5
    assert verdict.reasons == [REASON_NO_BACKEND]
    assert "frameAnalysis" not in verdict.to_dict()


def test_too_short_is_safe_without_sampling():
    verdict = aggregate(2, 0, [], backend_available=True, policy=POLICY)
    assert verdict.status == SensitivityStatus.SAFE
    assert verdict.confidence == 0.3
    assert verdict.reasons == [REASON_TOO_SHORT]
    assert verdict.total_frames == 0


def test_backend_rule_wins_over_duration_rule():
    verdict = aggregate(1, 0, [], backend_available=False, policy=POLICY)
    assert verdict.reasons == [REASON_NO_BACKEND]


def test_no_usable_frames_uses_extraction_failure_policy():
    failed = [FrameRecord.failed(n, 0.0, "timeout") for n in range(1, 5)]

    verdict = aggregate(8, 4, failed, backend_available=True, policy=POLICY)
    assert verdict.status == SensitivityStatus.FLAGGED
    assert verdict.confidence == 0.5
    assert verdict.reasons == [REASON_ANALYSIS_FAILED]
    assert len(verdict.to_dict()["frameAnalysis"]["frameResults"]) == 4

    lenient = AggregationPolicy(extraction_failure_status=SensitivityStatus.SAFE)
    verdict = aggregate(8, 4, [], backend_available=True, extraction_failed=True, policy=lenient)
    assert verdict.status == SensitivityStatus.SAFE
    assert verdict.reasons == [REASON_EXTRACTION_FAILED]


def test_error_frames_count_in_denominator():
    mixed = records([True, False, False]) + [FrameRecord.failed(4, 6.0, "timeout")]
    verdict = aggregate(8, 4, mixed, backend_available=True, policy=POLICY)
    assert verdict.confidence == 0.25
    assert verdict.to_dict()["frameAnalysis"]["frameResults"][3]["error"] == "timeout"


def test_advisories_appended_without_changing_status():
    verdict = aggregate(4000, 20, records([False] * 20), backend_available=True,
                        size=300 * 1024 * 1024, policy=POLICY)
    assert verdict.status == SensitivityStatus.SAFE
    assert verdict.reasons == [REASON_LARGE_FILE, REASON_LONG_DURATION]

    verdict = aggregate(8, 0, [], backend_available=False, size=300 * 1024 * 1024, policy=POLICY)
    assert verdict.reasons == [REASON_NO_BACKEND, REASON_LARGE_FILE]


def test_frame_results_sorted_by_number():
    shuffled = list(reversed(records([False, False, True, False])))
    verdict = aggregate(8, 4, shuffled, backend_available=True, policy=POLICY)
    numbers = [r["frameNumber"] for r in verdict.to_dict()["frameAnalysis"]["frameResults"]]
    assert numbers == [1, 2, 3, 4]


def test_should_sample():
    assert should_sample(8, True, POLICY)
    assert not should_sample(2.9, True, POLICY)
    assert not should_sample(8, False, POLICY)
