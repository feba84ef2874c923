import dataclasses

import pytest

from fakes import LEDGER, story_text
from ralph.lib.config import load_config
from ralph.lib.ledger import StatusLedger
from ralph.lib.prompts import clear_cache


class Project:
    """A throwaway project: ledger, story directory and a fast config."""

    def __init__(self, root):
        self.root = root
        self.story_dir = root / "_bmad-output" / "implementation-artifacts"
        self.story_dir.mkdir(parents=True)
        self.ledger_path = self.story_dir / "sprint-status.yaml"
        self.ledger_path.write_text(LEDGER)
        self.ledger = StatusLedger(self.ledger_path)
        self.config = dataclasses.replace(
            load_config(root, environ={}),
            ledger_path=self.ledger_path,
            build_cmd="true",
            test_cmd="true",
            retry_backoff=0,
            chain_pause=0,
            command_timeout=30,
        )

    def write_ledger(self, text):
        self.ledger_path.write_text(text)

    def write_story(self, key, tasks, status="ready-for-dev", validation=None):
        path = self.config.story_file(key)
        path.write_text(story_text(tasks, status=status, validation=validation))
        return path

    def configure(self, **changes):
        self.config = dataclasses.replace(self.config, **changes)
        return self.config


@pytest.fixture
def project(tmp_path):
    return Project(tmp_path)


@pytest.fixture(autouse=True)
def no_desktop_notifications(monkeypatch):
    monkeypatch.setattr("ralph.notifications.notify", lambda *args, **kwargs: None)


@pytest.fixture(autouse=True)
def fresh_prompt_cache():
    clear_cache()
    yield
    clear_cache()
