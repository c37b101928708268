import logging
import threading

import pytest

from stereo_align.logging_utils import StageNameFilter, add_file_handler, setup_logger
from stereo_align.stats import StatsRecorder


def test_stats_counters_and_rates():
    rec = StatsRecorder(["pose", "fusion"])
    for _ in range(4):
        rec.submitted()
    rec.rejected()
    rec.invalid()
    rec.stage("pose", 0.010)
    rec.stage("pose", 0.030)
    rec.completed(0.050, detection_failed=False)
    rec.completed(0.070, detection_failed=True)
    rec.set_dropped(2)

    s = rec.snapshot()
    assert s.frames_submitted == 4
    assert s.frames_completed == 2
    assert s.frames_rejected == 1
    assert s.frames_invalid == 1
    assert s.frames_dropped == 2
    assert s.detection_failure_rate == pytest.approx(0.5)
    assert s.stages["pose"].mean_ms == pytest.approx(20.0)
    assert s.stages["pose"].max_ms == pytest.approx(30.0)
    assert s.stages["fusion"].count == 0
    assert s.total.mean_ms == pytest.approx(60.0)
    assert s.throughput_fps > 0
    assert any("throughput" in line for line in s.lines())


def test_snapshot_is_a_copy():
    rec = StatsRecorder(["pose"])
    snap = rec.snapshot()
    rec.stage("pose", 0.01)
    assert snap.stages["pose"].count == 0


def test_empty_stats_have_zero_rates():
    s = StatsRecorder(["pose"]).snapshot()
    assert s.detection_failure_rate == 0.0
    assert s.throughput_fps == 0.0


def _record(thread_name):
    rec = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", None, None)
    rec.threadName = thread_name
    return rec


def test_stage_filter_uses_stage_thread_names():
    f = StageNameFilter("rigA")
    rec = _record("align-rectify")
    assert f.filter(rec)
    assert rec.stage == "rectify"
    rec = _record("MainThread")
    f.filter(rec)
    assert rec.stage == "rigA"


def test_setup_logger_is_idempotent(tmp_path):
    log = setup_logger("unit-rig", logging.DEBUG)
    again = setup_logger("unit-rig", logging.DEBUG)
    assert log is again
    assert len(log.handlers) == 1

    path = tmp_path / "rig.log"
    add_file_handler(log, "unit-rig", str(path))
    log.info("hello from %s", threading.current_thread().name)
    for h in log.handlers:
        h.flush()
    assert "[unit-rig] hello" in path.read_text(encoding="utf-8")
    for h in list(log.handlers[1:]):
        log.removeHandler(h)
        h.close()
