"""
Test client-side reconciliation of pushed events and polled snapshots.
"""
import pytest

from clipguard.client.reconcile import (
    ObservedJob,
    Phase,
    mark_error,
    merge_event,
    merge_frames,
    merge_snapshot,
    normalize_phase,
)


@pytest.mark.parametrize("raw,expected", [
    ("COMPLETED", Phase.COMPLETED),
    ("Analyzing", Phase.ANALYZING),
    ("Analyzing frame 3/10...", Phase.ANALYZING),
    ("Extracting frames...", Phase.ANALYZING),
    ("Compressing video... 40%", Phase.COMPRESSING),
    ("Finalizing...", Phase.FINALIZING),
])
def test_normalize_phase(raw, expected):
    assert normalize_phase(raw) == expected


def test_unknown_status_keeps_current_phase():
    assert normalize_phase("Processing video...", Phase.PROCESSING) == Phase.PROCESSING
    assert normalize_phase("something odd", Phase.COMPRESSING) == Phase.COMPRESSING
    assert normalize_phase(None, Phase.UPLOADING) == Phase.UPLOADING


def frame(number, explicit=False):
    return {"frameNumber": number, "isExplicit": explicit}


def test_merge_frames_replaces_and_sorts():
    merged = merge_frames((frame(3), frame(1)), [frame(2), frame(3, explicit=True)])
    assert [f["frameNumber"] for f in merged] == [1, 2, 3]
    assert merged[2]["isExplicit"] is True
    # Invalid records are ignored
    assert merge_frames(merged, [None, {"frameNumber": None}]) == merged


def test_merge_event_accumulates_frames_and_progress():
    job = ObservedJob(job_id="j1")
    job = merge_event(job, {"stage": "analyzing", "fractionComplete": 34, "displayStatus": "Analyzing frame 1/2...",
                            "currentFrame": 1, "totalFrames": 2, "frameRecord": frame(1)})
    job = merge_event(job, {"stage": "analyzing", "fractionComplete": 42, "currentFrame": 2,
                            "totalFrames": 2, "frameRecord": frame(2)})

    assert job.phase == Phase.ANALYZING
    assert job.progress == 42
    assert job.current_frame == 2
    assert [f["frameNumber"] for f in job.frame_records] == [1, 2]


def test_progress_never_decreases():
    job = ObservedJob(job_id="j1", phase=Phase.COMPRESSING, progress=70)
    job = merge_event(job, {"stage": "compressing", "fractionComplete": 60})
    assert job.progress == 70
    job = merge_snapshot(job, {"stage": "analyzing", "overallProgress": 40})
    assert job.progress == 70
    assert job.phase == Phase.COMPRESSING


def test_frame_counters_without_status_imply_analyzing():
    job = merge_event(ObservedJob(job_id="j1", phase=Phase.PROCESSING), {"currentFrame": 1, "totalFrames": 4})
    assert job.phase == Phase.ANALYZING


def test_terminal_is_sticky():
    job = merge_event(ObservedJob(job_id="j1"), {"stage": "flagged", "fractionComplete": 100,
                                                "sensitivityStatus": "flagged"})
    assert job.terminal
    job = merge_event(job, {"stage": "compressing", "fractionComplete": 60})
    job = merge_snapshot(job, {"stage": "completed", "overallProgress": 100})
    assert job.phase == Phase.FLAGGED
    assert job.progress == 100
    assert job.sensitivity_status == "flagged"


def test_snapshot_fills_verdict_after_terminal_push():
    job = merge_event(ObservedJob(job_id="j1"), {"stage": "completed", "fractionComplete": 100})
    verdict = {"status": "safe", "confidence": 0.85, "reasons": [],
               "frameAnalysis": {"totalFrames": 2, "frameResults": [frame(2), frame(1)]}}
    job = merge_snapshot(job, {"stage": "completed", "overallProgress": 100, "sensitivityStatus": "safe",
                               "sensitivityVerdict": verdict, "derivedPath": "/out/j1.mp4"})

    assert job.verdict == verdict
    assert job.derived_path == "/out/j1.mp4"
    assert job.sensitivity_status == "safe"
    assert [f["frameNumber"] for f in job.frame_records] == [1, 2]


def test_pending_snapshot_status_is_not_a_verdict():
    job = merge_snapshot(ObservedJob(job_id="j1"), {"stage": "processing", "overallProgress": 10,
                                                   "sensitivityStatus": "pending"})
    assert job.sensitivity_status is None
    assert job.phase == Phase.PROCESSING
    assert job.progress == 10


def test_error_settles_a_live_job_but_not_a_finished_one():
    live = merge_event(ObservedJob(job_id="job1"), {"stage": "analyzing", "fractionComplete": 35})
    lost = mark_error(live, "Job not found")
    assert lost.phase == Phase.ERROR
    assert lost.settled and not lost.terminal
    assert lost.progress == 35

    # A later status from the server still moves on from ERROR
    resumed = merge_event(lost, {"stage": "compressing", "fractionComplete": 60})
    assert resumed.phase == Phase.COMPRESSING

    done = merge_event(live, {"type": "complete", "stage": "completed"})
    assert mark_error(done, "Job not found") is done
