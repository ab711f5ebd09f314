"""Tests for PipelineRun persistence."""

import json
import threading

import pytest

from drydock.core.errors import CorruptError, NotFoundError
from drydock.pipeline.state import (
    RunStateManager,
    RunStatus,
    StageStatus,
    list_runs,
    new_run_id,
)
from tests.pipeline.helpers import make_run, make_template, save_run


class TestPipelineRun:
    def test_new_run_starts_at_first_stage(self):
        run = make_run()
        assert run.status is RunStatus.RUNNING
        assert run.current_stage == "plan"
        assert run.stage_order == ["plan", "build", "review"]
        assert all(s.status is StageStatus.PENDING for s in run.stages.values())

    def test_next_stage_skips_done(self):
        run = make_run()
        run.stages["plan"].status = StageStatus.PASSED
        run.stages["build"].status = StageStatus.SKIPPED
        assert run.next_stage() == "review"
        run.stages["review"].status = StageStatus.PASSED
        assert run.next_stage() is None

    def test_failed_stage_is_not_done(self):
        run = make_run()
        run.stages["plan"].status = StageStatus.FAILED
        assert run.next_stage() == "plan"

    def test_terminal_statuses(self):
        assert {s for s in RunStatus if s.terminal} == {RunStatus.STOPPED, RunStatus.SUCCESS, RunStatus.FAILURE}

    def test_summary_marks_overrides(self):
        run = make_run()
        run.stages["plan"].status = StageStatus.SKIPPED
        run.stages["plan"].override = True
        summary = run.summary()
        assert summary["stages"]["plan"] == {"status": "skipped", "iteration": 0, "override": True}
        assert "override" not in summary["stages"]["build"]

    def test_new_run_id_is_unique_and_safe(self):
        a, b = new_run_id("ISSUE 7/x"), new_run_id("ISSUE 7/x")
        assert a != b
        assert a.startswith("ISSUE-7-x-")
        assert new_run_id().startswith("run-")


class TestRunStateManager:
    def test_round_trip(self, tmp_path):
        run = make_run(stages=("plan", {"id": "build", "config": {"max_iterations": 4, "isolate": True}}))
        run.stages["build"].iteration = 3
        run.stages["build"].retry_base = 2
        run.stages["build"].last_error = "tests failed"
        mgr = save_run(run, tmp_path / "runs")
        loaded = mgr.load()
        assert loaded.stage_defs["build"].max_iterations == 4
        assert loaded.stage_defs["build"].isolate
        assert loaded.stages["build"].iteration == 3
        assert loaded.stages["build"].retry_base == 2
        assert loaded.stages["build"].last_error == "tests failed"
        assert loaded.work_item == "ISSUE-7"

    def test_file_layout(self, tmp_path):
        save_run(make_run(run_id="r1"), tmp_path / "runs")
        data = json.loads((tmp_path / "runs" / "r1" / "run.json").read_text())
        assert data["status"] == "running"
        assert data["stage_order"] == ["plan", "build", "review"]

    def test_load_missing(self, tmp_path):
        with pytest.raises(NotFoundError):
            RunStateManager.for_run(tmp_path, "ghost").load()

    def test_update_missing(self, tmp_path):
        with pytest.raises(NotFoundError):
            RunStateManager.for_run(tmp_path, "ghost").update(lambda r: None)

    def test_corrupt_run(self, tmp_path):
        mgr = save_run(make_run(run_id="r1"), tmp_path)
        mgr.state_file.write_text('{"status": "exploded"}')
        with pytest.raises(CorruptError):
            mgr.load()

    def test_update_stamps_time(self, tmp_path):
        mgr = save_run(make_run(), tmp_path)
        run = mgr.update(lambda r: setattr(r, "status", RunStatus.PAUSED))
        assert run.updated_at != "2026-01-01T00:00:00Z"
        assert mgr.load().status is RunStatus.PAUSED

    def test_concurrent_updates(self, tmp_path):
        mgr = save_run(make_run(), tmp_path)

        def bump():
            for _ in range(20):
                RunStateManager(mgr.state_file).update(
                    lambda r: setattr(r.stages["build"], "iteration", r.stages["build"].iteration + 1)
                )

        threads = [threading.Thread(target=bump) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert mgr.load().stages["build"].iteration == 60


def test_list_runs(tmp_path):
    save_run(make_run(run_id="b"), tmp_path)
    save_run(make_run(run_id="a"), tmp_path)
    (tmp_path / "junk").mkdir()
    (tmp_path / "broken").mkdir()
    (tmp_path / "broken" / "run.json").write_text("{")
    assert [r.run_id for r in list_runs(tmp_path)] == ["a", "b"]
    assert list_runs(tmp_path / "none") == []


def test_make_template_helper():
    t = make_template("a", {"id": "b", "gate": "approve"})
    assert [s.id for s in t.stages] == ["a", "b"]
