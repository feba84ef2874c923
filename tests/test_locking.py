"""Tests for ralph.runner.locking module."""

import os

import pytest

from ralph.runner.locking import LOCK_FILE_NAME, LockTimeout, lock_holder, pipeline_lock


class TestPipelineLock:
    """Tests for the single-writer project lock."""

    def test_writes_pid(self, tmp_path):
        with pipeline_lock(tmp_path):
            assert lock_holder(tmp_path) == str(os.getpid())
        assert (tmp_path / LOCK_FILE_NAME).exists()

    def test_second_holder_rejected(self, tmp_path):
        with pipeline_lock(tmp_path):
            with pytest.raises(LockTimeout):
                with pipeline_lock(tmp_path):
                    pass

    def test_waits_up_to_timeout(self, tmp_path):
        with pipeline_lock(tmp_path):
            with pytest.raises(LockTimeout, match="within 0.2s"):
                with pipeline_lock(tmp_path, timeout=0.2):
                    pass

    def test_released_on_exit(self, tmp_path):
        with pipeline_lock(tmp_path):
            pass
        with pipeline_lock(tmp_path):
            pass

    def test_released_on_error(self, tmp_path):
        with pytest.raises(RuntimeError):
            with pipeline_lock(tmp_path):
                raise RuntimeError("boom")
        with pipeline_lock(tmp_path):
            pass

    def test_no_holder(self, tmp_path):
        assert lock_holder(tmp_path) == ""
