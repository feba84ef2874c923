"""Tests for ralph.runner.review_gate module."""

import pytest
from transitions import MachineError

from fakes import FakeWorker
from ralph.agents.worker import WorkerResult
from ralph.lib.timeline import Timeline
from ralph.runner.budget import WallClockBudget
from ralph.runner.review_gate import ReviewCycle, ReviewGate, ReviewSignal, parse_signal
from ralph.runner.stages import Escalation, EscalationReason

PASS = "All good.\n<cr-signal>CR-PASS</cr-signal>\n"
FIXED = "Fixed two MEDIUM issues.\n<cr-signal>CR-FIXED</cr-signal>\n"
BLOCKED = "Needs a new dependency.\n<cr-signal>CR-BLOCKED</cr-signal>\n"


class TestParseSignal:
    """Tests for signal extraction."""

    def test_each_signal(self):
        assert parse_signal(PASS) == ReviewSignal.PASS
        assert parse_signal(FIXED) == ReviewSignal.FIXED
        assert parse_signal(BLOCKED) == ReviewSignal.BLOCKED

    def test_last_signal_wins(self):
        text = "<cr-signal>CR-FIXED</cr-signal>\nthen re-checked\n<cr-signal>CR-PASS</cr-signal>"
        assert parse_signal(text) == ReviewSignal.PASS

    def test_whitespace_inside_tag(self):
        assert parse_signal("<cr-signal> CR-PASS </cr-signal>") == ReviewSignal.PASS

    def test_none(self):
        assert parse_signal("looks fine to me") is None
        assert parse_signal("") is None
        assert parse_signal(None) is None

    def test_unknown_signal_ignored(self):
        assert parse_signal("<cr-signal>CR-MAYBE</cr-signal>") is None
        assert parse_signal("<cr-signal>CR-BLOCKED</cr-signal><cr-signal>CR-MAYBE</cr-signal>") == ReviewSignal.BLOCKED


class TestReviewCycle:
    """Tests for the review state machine."""

    def test_no_fixed_to_pass(self):
        cycle = ReviewCycle("1-1-user-login", 3)
        cycle.signal_fixed()
        with pytest.raises(MachineError):
            cycle.signal_pass()

    def test_fixed_goes_back_to_reviewing(self):
        cycle = ReviewCycle("1-1-user-login", 3)
        cycle.iteration = 1
        cycle.record(ReviewSignal.FIXED)
        assert cycle.state == "reviewing"
        assert not cycle.finished

    def test_fixed_on_last_iteration_exhausts(self):
        cycle = ReviewCycle("1-1-user-login", 3)
        cycle.iteration = 3
        cycle.record(ReviewSignal.FIXED)
        assert cycle.state == "exhausted"
        assert cycle.finished

    def test_missing_signal_blocks(self):
        cycle = ReviewCycle("1-1-user-login", 3)
        cycle.record(None)
        assert cycle.state == "blocked"


class TestReviewGate:
    """Tests for the review loop."""

    @pytest.fixture
    def sleeps(self):
        return []

    def _gate(self, worker, sleeps, timeline=None, max_iterations=3):
        return ReviewGate(worker, max_iterations, timeout=600, backoff=2,
                          timeline=timeline, sleep=sleeps.append)

    def test_pass_first_time(self, tmp_path, sleeps):
        worker = FakeWorker({"review": [PASS]})
        outcome = self._gate(worker, sleeps).run("1-1-user-login", tmp_path / "s.md", tmp_path)
        assert outcome.passed
        assert outcome.iterations == 1
        assert sleeps == []
        assert (tmp_path / "review-1.log").read_text() == PASS

    def test_fixed_then_pass(self, tmp_path, sleeps):
        worker = FakeWorker({"review": [FIXED, PASS]})
        outcome = self._gate(worker, sleeps).run("1-1-user-login", tmp_path / "s.md", tmp_path)
        assert outcome.passed
        assert outcome.iterations == 2
        assert sleeps == [2]
        assert "Review iteration 2 of 3" in worker.stage_calls("review")[1]

    def test_fixed_until_exhausted(self, tmp_path, sleeps):
        worker = FakeWorker({"review": [FIXED, FIXED, FIXED, PASS]})
        outcome = self._gate(worker, sleeps).run("1-1-user-login", tmp_path / "s.md", tmp_path)
        assert outcome.state == "exhausted"
        assert not outcome.passed
        assert len(worker.stage_calls("review")) == 3

    def test_blocked(self, tmp_path, sleeps):
        worker = FakeWorker({"review": [FIXED, BLOCKED]})
        outcome = self._gate(worker, sleeps).run("1-1-user-login", tmp_path / "s.md", tmp_path)
        assert outcome.state == "blocked"
        assert outcome.iterations == 2

    def test_no_signal_is_blocked(self, tmp_path, sleeps):
        worker = FakeWorker({"review": ["I reviewed it."]})
        outcome = self._gate(worker, sleeps).run("1-1-user-login", tmp_path / "s.md", tmp_path)
        assert outcome.state == "blocked"

    def test_timeout_is_blocked(self, tmp_path, sleeps):
        worker = FakeWorker({"review": [WorkerResult(transcript=PASS, exit_code=-1, timed_out=True)]})
        outcome = self._gate(worker, sleeps).run("1-1-user-login", tmp_path / "s.md", tmp_path)
        assert outcome.state == "blocked"

    def test_single_iteration_budget(self, tmp_path, sleeps):
        worker = FakeWorker({"review": [FIXED]})
        outcome = self._gate(worker, sleeps, max_iterations=1).run("1-1-user-login", tmp_path / "s.md", tmp_path)
        assert outcome.state == "exhausted"
        assert outcome.iterations == 1

    def test_events(self, tmp_path, sleeps):
        timeline = Timeline()
        worker = FakeWorker({"review": [FIXED, PASS]})
        self._gate(worker, sleeps, timeline).run("1-1-user-login", tmp_path / "s.md", tmp_path)
        assert [e.event_type for e in timeline.events] == ["review_started", "review_signal", "review_signal"]
        assert timeline.events[1].summary.endswith("-> CR-FIXED")

    def test_timeout_capped_by_budget(self, tmp_path, sleeps):
        now = [0.0]
        budget = WallClockBudget(100, clock=lambda: now[0])
        now[0] = 40
        worker = FakeWorker({"review": [PASS]})
        self._gate(worker, sleeps).run("1-1-user-login", tmp_path / "s.md", tmp_path, budget)
        assert worker.timeouts == [60]

    def test_budget_spent(self, tmp_path, sleeps):
        now = [0.0]
        budget = WallClockBudget(100, clock=lambda: now[0])
        now[0] = 100
        worker = FakeWorker({"review": [PASS]})
        with pytest.raises(Escalation) as exc_info:
            self._gate(worker, sleeps).run("1-1-user-login", tmp_path / "s.md", tmp_path, budget)
        assert exc_info.value.reason == EscalationReason.WALL_CLOCK
        assert worker.calls == []
