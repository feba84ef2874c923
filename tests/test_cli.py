"""Tests for the ralph CLI."""

import json

import pytest

from fakes import make_task
from ralph.cli import apply_run_overrides, build_parser, main
from ralph.lib.config import ConfigError
from ralph.runner.locking import pipeline_lock

SHELL_AGENTS = """stages:
  implement: sh -c {prompt}
  review: cat
  learnings: cat
  create_story: cat
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ("RALPH_LEDGER", "RALPH_STORY_DIR", "RALPH_MAX_RETRIES", "RALPH_CHAIN_MODE"):
        monkeypatch.delenv(key, raising=False)


def run_cli(capsys, *argv):
    code = main(list(argv))
    captured = capsys.readouterr()
    return code, captured.out, captured.err


class TestParser:
    """Tests for argument parsing."""

    def test_run_defaults(self):
        args = build_parser().parse_args(["run"])
        assert args.story is None
        assert args.chain_mode is None
        assert not args.no_prefect

    def test_single_and_chain_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["run", "--single", "--chain"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestRunOverrides:
    """Tests for CLI flags layered over the config."""

    def test_flags(self, project):
        args = build_parser().parse_args(["run", "--max-retries", "5", "--cr-iterations", "2",
                                          "--single", "--skip-validation", "--skip-cs"])
        config = apply_run_overrides(project.config, args)
        assert config.max_retries == 5
        assert config.max_cr_iterations == 2
        assert config.chain_mode is False
        assert config.skip_validation
        assert config.skip_generation

    def test_explicit_story_implies_single(self, project):
        args = build_parser().parse_args(["run", "1-1-user-login", "--chain"])
        assert apply_run_overrides(project.config, args).chain_mode is False

    def test_no_flags_keep_config(self, project):
        args = build_parser().parse_args(["run"])
        assert apply_run_overrides(project.config, args) == project.config

    def test_rejects_zero(self, project):
        args = build_parser().parse_args(["run", "--max-retries", "0"])
        with pytest.raises(ConfigError):
            apply_run_overrides(project.config, args)


class TestQueries:
    """Tests for the read-only commands."""

    def test_next(self, project, capsys):
        code, out, _ = run_cli(capsys, "next", "-C", str(project.root))
        assert code == 0
        data = json.loads(out)
        assert data["storyKey"] == "1-1-user-login"
        assert data["needsCS"] is False

    def test_next_when_done(self, project, capsys):
        project.write_ledger("development_status:\n  1-1-user-login: done\n")
        code, out, _ = run_cli(capsys, "next", "-C", str(project.root))
        assert code == 0
        assert json.loads(out) == {"done": True}

    def test_task(self, project, capsys):
        path = project.write_story("1-1-user-login", [make_task("T1", passes=True), make_task("T2")])
        code, out, _ = run_cli(capsys, "task", str(path))
        assert code == 0
        data = json.loads(out)
        assert data["taskId"] == "T2"
        assert data["completedCount"] == 1

    def test_task_malformed(self, tmp_path, capsys):
        path = tmp_path / "s.md"
        path.write_text("no manifest")
        code, _, err = run_cli(capsys, "task", str(path))
        assert code == 1
        assert "ERROR" in err

    def test_epic(self, project, capsys):
        project.ledger.update("1-1-user-login", "done")
        code, out, _ = run_cli(capsys, "epic", "1", "-C", str(project.root))
        assert code == 0
        assert json.loads(out) == {
            "epicNum": 1,
            "epicStatus": "in-progress",
            "allDone": False,
            "stories": [
                {"key": "1-1-user-login", "status": "done"},
                {"key": "1-2-password-reset", "status": "backlog"},
            ],
        }

    def test_report(self, project, capsys):
        code, out, _ = run_cli(capsys, "report", "-C", str(project.root))
        assert code == 0
        assert "### Epic 1 (in-progress)" in project.config.progress_report.read_text()

    def test_bad_config(self, project, capsys, monkeypatch):
        monkeypatch.setenv("RALPH_MAX_RETRIES", "many")
        code, _, err = run_cli(capsys, "next", "-C", str(project.root))
        assert code == 2
        assert "RALPH_MAX_RETRIES" in err


class TestSetStatus:
    """Tests for `ralph set-status`."""

    def test_valid_transition(self, project, capsys):
        path = project.write_story("1-1-user-login", [make_task("T1")])
        code, out, _ = run_cli(capsys, "set-status", "1-1-user-login", "in-progress", "-C", str(project.root))
        assert code == 0
        assert out.strip() == "1-1-user-login: in-progress"
        assert project.ledger.get("1-1-user-login") == "in-progress"
        assert "Status: in-progress" in path.read_text()

    def test_unchanged(self, project, capsys):
        code, out, _ = run_cli(capsys, "set-status", "1-1-user-login", "ready-for-dev", "-C", str(project.root))
        assert code == 0
        assert out.strip() == "1-1-user-login: ready-for-dev (unchanged)"

    def test_invalid_transition(self, project, capsys):
        code, _, err = run_cli(capsys, "set-status", "1-1-user-login", "done", "-C", str(project.root))
        assert code == 1
        assert "Invalid transition" in err
        assert project.ledger.get("1-1-user-login") == "ready-for-dev"

    def test_force(self, project, capsys):
        code, _, _ = run_cli(capsys, "set-status", "1-1-user-login", "done", "--force", "-C", str(project.root))
        assert code == 0
        assert project.ledger.get("1-1-user-login") == "done"

    def test_epic(self, project, capsys):
        code, _, _ = run_cli(capsys, "set-status", "epic-2", "done", "-C", str(project.root))
        assert code == 0
        assert project.ledger.get("epic-2") == "done"

    def test_unknown_status(self, project, capsys):
        code, _, err = run_cli(capsys, "set-status", "1-1-user-login", "shipped", "-C", str(project.root))
        assert code == 2
        assert "Unknown status 'shipped'" in err

    def test_unknown_key(self, project, capsys):
        code, _, err = run_cli(capsys, "set-status", "9-9-nope", "done", "--force", "-C", str(project.root))
        assert code == 1
        assert "9-9-nope" in err


class TestRun:
    """Tests for `ralph run` outside the pipeline itself."""

    def test_missing_binary(self, project, capsys):
        (project.root / "agents.yaml").write_text("stages:\n  implement: ralph-no-such-binary {prompt}\n")
        code, _, err = run_cli(capsys, "run", "--no-prefect", "-C", str(project.root))
        assert code == 2
        assert "ralph-no-such-binary" in err

    def test_nothing_to_do(self, project, capsys):
        (project.root / "agents.yaml").write_text(SHELL_AGENTS)
        project.write_ledger("development_status:\n  epic-1: done\n  1-1-user-login: done\n")
        code, out, _ = run_cli(capsys, "run", "--no-prefect", "-C", str(project.root))
        assert code == 0
        assert "Stories completed: 0" in out

    def test_locked(self, project, capsys):
        (project.root / "agents.yaml").write_text(SHELL_AGENTS)
        with pipeline_lock(project.root):
            code, _, err = run_cli(capsys, "run", "--no-prefect", "-C", str(project.root))
        assert code == 4
        assert "Could not acquire" in err

    @pytest.mark.parametrize("flags,use_prefect", [([], True), (["--no-prefect"], False)])
    def test_runs_through_engine(self, project, capsys, monkeypatch, flags, use_prefect):
        (project.root / "agents.yaml").write_text(SHELL_AGENTS)
        seen = []

        def fake_run(controller, use_prefect=True):
            seen.append((controller.explicit_story, use_prefect))
            return 0

        monkeypatch.setattr("ralph.workflow.engine.run", fake_run)
        code, _, _ = run_cli(capsys, "run", "1-1-user-login", *flags, "-C", str(project.root))
        assert code == 0
        assert seen == [("1-1-user-login", use_prefect)]
