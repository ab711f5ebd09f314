"""Tests for operator controls on a persisted run."""

import shutil
import tempfile
import unittest
from pathlib import Path

from drydock.core.errors import InvalidTransitionError
from drydock.core.events import EventLog
from drydock.pipeline.control import ControlAction, apply_control
from drydock.pipeline.state import RunStatus, StageStatus
from tests.pipeline.helpers import make_run, save_run


class ControlTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = Path(tempfile.mkdtemp(prefix="control_test_"))
        self.events = EventLog(self.tmp / "events")

    def tearDown(self):
        shutil.rmtree(self.tmp)

    def _save(self, run=None):
        return save_run(run or make_run(), self.tmp / "runs")

    def _events(self):
        return [(e.type, e.attrs) for e in self.events.consume(0)]


class TestPauseResumeStop(ControlTestCase):
    def test_pause_and_resume(self):
        mgr = self._save()
        run = apply_control(mgr, self.events, ControlAction.PAUSE)
        self.assertIs(run.status, RunStatus.PAUSED)
        run = apply_control(mgr, self.events, "resume")
        self.assertIs(run.status, RunStatus.RUNNING)
        self.assertEqual([t for t, _ in self._events()], ["pipeline_paused", "pipeline_resumed"])

    def test_pause_requires_running(self):
        mgr = self._save()
        apply_control(mgr, self.events, ControlAction.PAUSE)
        with self.assertRaises(InvalidTransitionError):
            apply_control(mgr, self.events, ControlAction.PAUSE)

    def test_resume_requires_paused(self):
        with self.assertRaises(InvalidTransitionError):
            apply_control(self._save(), self.events, ControlAction.RESUME)

    def test_stop_records_reason(self):
        mgr = self._save()
        run = apply_control(mgr, self.events, ControlAction.STOP, reason="wrong branch")
        self.assertIs(run.status, RunStatus.STOPPED)
        self.assertEqual(run.stop_reason, "wrong branch")
        (etype, attrs), = self._events()
        self.assertEqual(etype, "pipeline_stopped")
        self.assertEqual(attrs["reason"], "wrong branch")

    def test_stop_is_final(self):
        mgr = self._save()
        apply_control(mgr, self.events, ControlAction.STOP)
        for action in (ControlAction.STOP, ControlAction.RESUME, ControlAction.PAUSE):
            with self.assertRaises(InvalidTransitionError):
                apply_control(mgr, self.events, action)

    def test_failed_transition_leaves_state_and_log(self):
        mgr = self._save()
        with self.assertRaises(InvalidTransitionError):
            apply_control(mgr, self.events, ControlAction.RESUME)
        self.assertIs(mgr.load().status, RunStatus.RUNNING)
        self.assertEqual(self._events(), [])

    def test_works_without_event_log(self):
        run = apply_control(self._save(), None, ControlAction.PAUSE)
        self.assertIs(run.status, RunStatus.PAUSED)


class TestSkip(ControlTestCase):
    def test_skip_records_override(self):
        mgr = self._save()
        run = apply_control(mgr, self.events, ControlAction.SKIP, stage="build", reason="flaky infra")
        ss = run.stages["build"]
        self.assertIs(ss.status, StageStatus.SKIPPED)
        self.assertTrue(ss.override)
        (etype, attrs), = self._events()
        self.assertEqual(etype, "stage_skipped")
        self.assertTrue(attrs["override"])
        self.assertEqual(attrs["stage"], "build")

    def test_skip_failed_stage_revives_run(self):
        run = make_run()
        run.status = RunStatus.FAILURE
        run.stages["build"].status = StageStatus.FAILED
        mgr = self._save(run)
        run = apply_control(mgr, self.events, ControlAction.SKIP, stage="build")
        self.assertIs(run.status, RunStatus.RUNNING)

    def test_skip_clears_pending_approval(self):
        run = make_run()
        run.status = RunStatus.PAUSED
        run.awaiting_approval = "review"
        run = apply_control(self._save(run), self.events, ControlAction.SKIP, stage="review")
        self.assertEqual(run.awaiting_approval, "")
        self.assertIs(run.status, RunStatus.RUNNING)

    def test_skip_needs_known_stage(self):
        mgr = self._save()
        with self.assertRaises(InvalidTransitionError):
            apply_control(mgr, self.events, ControlAction.SKIP)
        with self.assertRaises(InvalidTransitionError):
            apply_control(mgr, self.events, ControlAction.SKIP, stage="ghost")

    def test_skip_twice(self):
        mgr = self._save()
        apply_control(mgr, self.events, ControlAction.SKIP, stage="build")
        with self.assertRaises(InvalidTransitionError):
            apply_control(mgr, self.events, ControlAction.SKIP, stage="build")


class TestRetry(ControlTestCase):
    def test_retry_keeps_counter_and_sets_budget_base(self):
        run = make_run()
        run.status = RunStatus.FAILURE
        run.stages["build"].status = StageStatus.FAILED
        run.stages["build"].iteration = 5
        run = apply_control(self._save(run), self.events, ControlAction.RETRY, stage="build")
        ss = run.stages["build"]
        self.assertIs(ss.status, StageStatus.PENDING)
        self.assertEqual(ss.iteration, 5)
        self.assertEqual(ss.retry_base, 5)
        self.assertIs(run.status, RunStatus.RUNNING)
        self.assertEqual(run.current_stage, "build")

    def test_retry_pending_stage_rejected(self):
        with self.assertRaises(InvalidTransitionError):
            apply_control(self._save(), self.events, ControlAction.RETRY, stage="build")

    def test_retry_on_stopped_run_rejected(self):
        run = make_run()
        run.status = RunStatus.STOPPED
        run.stages["build"].status = StageStatus.FAILED
        with self.assertRaises(InvalidTransitionError):
            apply_control(self._save(run), self.events, ControlAction.RETRY, stage="build")


class TestApprove(ControlTestCase):
    def test_approve_resumes(self):
        run = make_run()
        run.status = RunStatus.PAUSED
        run.awaiting_approval = "review"
        run.stages["review"].status = StageStatus.PASSED
        run = apply_control(self._save(run), self.events, ControlAction.APPROVE, stage="review")
        self.assertIs(run.status, RunStatus.RUNNING)
        self.assertEqual(run.awaiting_approval, "")
        self.assertTrue(run.stages["review"].approved)
        self.assertEqual(self._events()[0][0], "stage_approved")

    def test_approve_wrong_stage(self):
        run = make_run()
        run.status = RunStatus.PAUSED
        run.awaiting_approval = "review"
        with self.assertRaises(InvalidTransitionError):
            apply_control(self._save(run), self.events, ControlAction.APPROVE, stage="build")

    def test_approve_when_nothing_waits(self):
        with self.assertRaises(InvalidTransitionError):
            apply_control(self._save(), self.events, ControlAction.APPROVE, stage="review")


def test_every_action_has_a_handler():
    from drydock.pipeline.control import _HANDLERS
    assert set(_HANDLERS) == set(ControlAction)
