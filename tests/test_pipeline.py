"""Tests for ralph.runner.pipeline module (the chain controller)."""

import json

import pytest

from fakes import FakeSupervisor, FakeWorker, always_pass, always_timeout, make_task
from ralph.lib.constants import EXIT_CONFIG_ERROR, EXIT_ESCALATED, EXIT_MISSING_ARTIFACT, EXIT_OK
from ralph.lib.ledger import StatusLedger
from ralph.lib.timeline import Timeline
from ralph.runner.discovery import DiscoveredStory
from ralph.runner.pipeline import ChainController
from ralph.runner.stages import EscalationReason
from ralph.runner.supervisor import AttemptOutcome

PASS = "<cr-signal>CR-PASS</cr-signal>"
FIXED = "<cr-signal>CR-FIXED</cr-signal>"
BLOCKED = "<cr-signal>CR-BLOCKED</cr-signal>"


@pytest.fixture(autouse=True)
def quiet_git(monkeypatch):
    monkeypatch.setattr("ralph.runner.pipeline.count_changed_files", lambda root: 0)


def write_all_stories(project, validation=None):
    project.write_story("1-1-user-login", [make_task("T1"), make_task("T2")], validation=validation)
    project.write_story("1-2-password-reset", [make_task("T1")], status="backlog")
    project.write_story("2-1-audit-log", [make_task("T1")], status="backlog")


class Harness:
    """A ChainController wired to fakes."""

    def __init__(self, project, script=always_pass, reviews=None, explicit_story=None, clock=None):
        self.project = project
        self.supervisor = FakeSupervisor(script)
        self.worker = FakeWorker({"review": reviews if reviews is not None else [PASS] * 5})
        self.timeline = Timeline()
        self.sleeps = []
        kwargs = {"clock": clock} if clock else {}
        self.controller = ChainController(
            project.config,
            project.ledger,
            self.worker,
            supervisor=self.supervisor,
            timeline=self.timeline,
            explicit_story=explicit_story,
            sleep=self.sleeps.append,
            **kwargs,
        )

    def run(self):
        return self.controller.run()

    def event_types(self):
        return [e.event_type for e in self.timeline.events]

    def log_dirs(self, key):
        return sorted(self.project.config.log_root.glob(f"{key}-*"))

    def result(self, key):
        (log_dir,) = self.log_dirs(key)
        return json.loads((log_dir / "result.json").read_text())


class TestChain:
    """Tests for running stories back to back."""

    def test_whole_backlog(self, project, capsys):
        write_all_stories(project)
        h = Harness(project)

        assert h.run() == EXIT_OK
        assert [o.story_key for o in h.controller.outcomes] == [
            "1-1-user-login", "1-2-password-reset", "2-1-audit-log",
        ]
        assert h.controller.stories_completed == 3
        for key in ("1-1-user-login", "1-2-password-reset", "2-1-audit-log"):
            assert project.ledger.get(key) == "done"
            assert "Status: done" in project.config.story_file(key).read_text()
        assert project.ledger.get("epic-1") == "done"
        assert project.ledger.get("epic-2") == "done"
        assert h.supervisor.task_ids() == ["T1", "T2", "T1", "T1"]
        assert len(h.worker.stage_calls("review")) == 3

        out = capsys.readouterr().out
        assert "Stories completed: 3" in out
        assert "Total runtime:" in out
        assert h.event_types()[-1] == "pipeline_done"

    def test_log_dirs_removed_without_learnings(self, project):
        write_all_stories(project)
        h = Harness(project)
        h.run()
        assert h.log_dirs("1-1-user-login") == []

    def test_single_mode(self, project):
        write_all_stories(project)
        project.configure(chain_mode=False)
        h = Harness(project)
        assert h.run() == EXIT_OK
        assert project.ledger.get("1-1-user-login") == "done"
        assert project.ledger.get("1-2-password-reset") == "backlog"

    def test_chain_pause(self, project):
        write_all_stories(project)
        project.configure(chain_pause=3)
        h = Harness(project)
        h.run()
        assert h.sleeps == [3, 3, 3]

    def test_progress_report(self, project):
        write_all_stories(project)
        h = Harness(project)
        h.run()
        report = project.config.progress_report.read_text()
        assert report.startswith("# Ralph Progress Report\n")
        assert "Pipeline Complete (3 stories)" in report
        assert "| 1-1-user-login | done | 2/2 passed |" in report

    def test_activity_log_created(self, project):
        write_all_stories(project)
        Harness(project).run()
        assert project.config.activity_log.read_text().startswith("# Project Build - Activity Log")

    def test_epic_failure_does_not_stop_chain(self, project):
        write_all_stories(project)
        project.config.epic_validation_script(1).write_text("exit 1\n")
        h = Harness(project)

        assert h.run() == EXIT_OK
        assert project.ledger.get("epic-1") == "review"
        assert project.ledger.get("2-1-audit-log") == "done"
        assert project.ledger.get("epic-2") == "done"
        assert "epic_failed" in h.event_types()

    def test_resumes_in_progress_story(self, project):
        write_all_stories(project)
        project.ledger.update("1-1-user-login", "in-progress")
        project.configure(chain_mode=False)
        h = Harness(project)
        assert h.run() == EXIT_OK
        assert project.ledger.get("1-1-user-login") == "done"

    def test_learnings_kept_for_finished_story(self, project):
        write_all_stories(project)
        project.configure(chain_mode=False)

        def fail_once(task_id, number):
            return (AttemptOutcome.FAILED, False) if number == 1 else (AttemptOutcome.PASSED, True)

        h = Harness(project, script=fail_once)
        assert h.run() == EXIT_OK

        (log_dir,) = h.log_dirs("1-1-user-login")
        assert sorted(p.name for p in log_dir.iterdir()) == ["failure-learnings.md", "result.json"]
        result = h.result("1-1-user-login")
        assert result["status"] == "done"
        assert result["tasks"] == {"completed": 2, "total": 2, "attempts": 4}
        assert result["stages"]["epic"]["status"] == "passed"


class TestEscalation:
    """Tests for stories that end in review."""

    def test_task_failure(self, project):
        write_all_stories(project)
        h = Harness(project, script=always_timeout)

        assert h.run() == EXIT_ESCALATED
        assert h.supervisor.task_ids() == ["T1", "T1", "T1"]
        assert project.ledger.get("1-1-user-login") == "review"
        assert "Status: review" in project.config.story_file("1-1-user-login").read_text()
        assert project.ledger.get("1-2-password-reset") == "backlog"
        assert h.worker.stage_calls("review") == []

        result = h.result("1-1-user-login")
        assert result["status"] == "review"
        assert result["escalation"]["reason"] == "task_failed"
        assert result["tasks"] == {"completed": 0, "total": 2, "attempts": 3}
        assert result["stages"]["tasks"]["status"] == "escalated"

        outcome = h.controller.outcomes[-1]
        assert outcome.reason == EscalationReason.TASK_FAILED
        assert not outcome.done

    def test_activity_entry(self, project):
        write_all_stories(project)
        h = Harness(project, script=always_timeout)
        h.run()

        activity = project.config.activity_log.read_text()
        assert "1-1-user-login escalated to review (task_failed)" in activity
        assert "- Stage: tasks" in activity
        assert "- Uncommitted files: 0" in activity
        (log_dir,) = h.log_dirs("1-1-user-login")
        assert f"- Logs: {log_dir}" in activity

    def test_validation_failure(self, project):
        write_all_stories(project, validation=["exit 3"])
        h = Harness(project)
        assert h.run() == EXIT_ESCALATED
        assert h.result("1-1-user-login")["escalation"]["reason"] == "validation_failed"
        assert h.worker.stage_calls("review") == []

    def test_skip_validation(self, project):
        write_all_stories(project, validation=["exit 3"])
        project.configure(skip_validation=True, chain_mode=False)
        h = Harness(project)
        assert h.run() == EXIT_OK
        assert project.ledger.get("1-1-user-login") == "done"

    def test_review_exhausted(self, project):
        write_all_stories(project)
        h = Harness(project, reviews=[FIXED, FIXED, FIXED])
        assert h.run() == EXIT_ESCALATED
        assert project.ledger.get("1-1-user-login") == "review"
        assert h.result("1-1-user-login")["escalation"]["reason"] == "review_exhausted"

    def test_review_blocked(self, project):
        write_all_stories(project)
        h = Harness(project, reviews=[FIXED, BLOCKED])
        assert h.run() == EXIT_ESCALATED
        assert h.result("1-1-user-login")["escalation"]["reason"] == "review_blocked"

    def test_review_fixed_then_pass(self, project):
        write_all_stories(project)
        project.configure(chain_mode=False, retry_backoff=2)
        h = Harness(project, reviews=[FIXED, PASS])
        assert h.run() == EXIT_OK
        assert h.sleeps == [2]

    def test_wall_clock(self, project):
        write_all_stories(project)
        now = [0.0]

        def slow(task_id, number):
            now[0] += project.config.wall_clock_timeout + 1
            return AttemptOutcome.TIMEOUT, False

        h = Harness(project, script=slow, clock=lambda: now[0])
        assert h.run() == EXIT_ESCALATED
        assert h.result("1-1-user-login")["escalation"]["reason"] == "wall_clock"
        assert "wall_clock" in h.event_types()
        assert len(h.supervisor.calls) == 1

    def test_wall_clock_during_validation(self, project):
        write_all_stories(project)
        project.configure(build_cmd="exec sleep 10", wall_clock_timeout=2, chain_mode=False)
        h = Harness(project)
        assert h.run() == EXIT_ESCALATED
        assert h.result("1-1-user-login")["escalation"]["reason"] == "wall_clock"
        assert project.ledger.get("1-1-user-login") == "review"

    def test_story_file_missing_during_processing(self, project):
        write_all_stories(project)
        h = Harness(project)
        story = DiscoveredStory(
            key="1-1-user-login", status="ready-for-dev", epic_num=1, story_num=1,
            story_file=project.story_dir / "gone.md",
        )
        outcome = h.controller.process_story(story)
        assert outcome.reason == EscalationReason.MISSING_ARTIFACT
        assert "missing_artifact" in project.config.activity_log.read_text()

    def test_internal_error(self, project):
        write_all_stories(project)

        def broken(task_id, number):
            raise RuntimeError("worker adapter crashed")

        h = Harness(project, script=broken)
        assert h.run() == EXIT_ESCALATED
        result = h.result("1-1-user-login")
        assert result["escalation"]["reason"] == "internal_error"
        assert "worker adapter crashed" in result["escalation"]["message"]
        assert result["stages"]["tasks"]["status"] == "failed"


class TestExitCodes:
    """Tests for run() exit codes."""

    def test_nothing_to_do(self, project):
        project.write_ledger("development_status:\n  epic-1: done\n  1-1-user-login: done\n")
        assert Harness(project).run() == EXIT_OK

    def test_missing_ledger(self, project):
        project.ledger_path.unlink()
        assert Harness(project).run() == EXIT_CONFIG_ERROR

    def test_missing_story_file(self, project):
        project.configure(skip_generation=True)
        h = Harness(project)
        assert h.run() == EXIT_MISSING_ARTIFACT
        assert h.supervisor.calls == []

    def test_explicit_done(self, project):
        project.ledger.update("1-1-user-login", "done")
        h = Harness(project, explicit_story="1-1-user-login")
        assert h.run() == EXIT_OK
        assert h.supervisor.calls == []

    def test_explicit_review(self, project):
        project.ledger.update("1-1-user-login", "review")
        assert Harness(project, explicit_story="1-1-user-login").run() == EXIT_ESCALATED

    def test_explicit_unknown_key(self, project):
        assert Harness(project, explicit_story="9-9-nope").run() == EXIT_CONFIG_ERROR

    def test_explicit_story_only(self, project):
        write_all_stories(project)
        h = Harness(project, explicit_story="1-2-password-reset")
        assert h.run() == EXIT_OK
        assert project.ledger.get("1-2-password-reset") == "done"
        assert project.ledger.get("1-1-user-login") == "ready-for-dev"
        assert project.ledger.get("2-1-audit-log") == "backlog"


class TestLedgerIsolation:
    """The controller reads the ledger through its own accessor."""

    def test_external_edits_observed(self, project):
        write_all_stories(project)
        project.configure(chain_mode=False)
        other = StatusLedger(project.ledger_path)
        other.update("1-1-user-login", "review")
        h = Harness(project)
        assert h.run() == EXIT_OK
        assert [o.story_key for o in h.controller.outcomes] == ["1-2-password-reset"]
