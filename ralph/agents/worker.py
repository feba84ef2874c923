"""
Worker integration.

The worker is an external code-generating CLI (Claude by default). The
pipeline only relies on a narrow contract: given an objective and some
context file references it either mutates the workspace and prints the
completion marker, or it does not. Anything else it prints is opaque
transcript.
"""

import logging
import os
import signal
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from ralph.lib.agents_config import AgentsConfig, get_stage_command
from ralph.lib.constants import COMPLETION_MARKER

logger = logging.getLogger(__name__)


@dataclass
class WorkerResult:
    transcript: str
    exit_code: int
    timed_out: bool = False

    @property
    def completed(self) -> bool:
        """True if the worker asserted the objective is done."""
        return COMPLETION_MARKER in self.transcript


def build_objective(objective: str, context_refs: Sequence[Path] = ()) -> str:
    """Prefix the objective with @path references to context files."""
    if not context_refs:
        return objective
    refs = " ".join(f"@{ref}" for ref in context_refs)
    return f"{refs}\n\n{objective}"


def write_worker_log(log_file: Path, cmd: list[str], exit_code: int, transcript: str, prompt: str = "") -> None:
    shown = " ".join("<prompt>" if prompt and arg == prompt else arg for arg in cmd)
    log_file.write_text(
        f"=== COMMAND ===\n{shown}\n\n"
        f"=== EXIT CODE ===\n{exit_code}\n\n"
        f"=== OUTPUT ===\n{transcript}\n"
    )


class WorkerProcess:
    """A running worker started by CliWorker.spawn().

    Output (stdout and stderr combined) streams into log_file as it is
    produced, so the transcript survives the process being killed.
    """

    def __init__(self, proc: subprocess.Popen, log_file: Path, log_handle):
        self.proc = proc
        self.log_file = log_file
        self._log_handle = log_handle

    @property
    def pid(self) -> int:
        return self.proc.pid

    def poll(self) -> Optional[int]:
        return self.proc.poll()

    def wait(self, timeout: Optional[float] = None) -> int:
        return self.proc.wait(timeout=timeout)

    def _signal_group(self, sig: int) -> None:
        try:
            os.killpg(os.getpgid(self.proc.pid), sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            self.proc.send_signal(sig)

    def terminate(self, grace: float = 10) -> None:
        """SIGTERM the worker's process group, SIGKILL after grace seconds."""
        if self.proc.poll() is not None:
            return
        self._signal_group(signal.SIGTERM)
        try:
            self.proc.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            logger.warning(f"Worker {self.proc.pid} ignored SIGTERM, killing")
            self._signal_group(signal.SIGKILL)
            self.proc.wait()

    def close(self) -> None:
        if not self._log_handle.closed:
            self._log_handle.close()

    def read_transcript(self) -> str:
        try:
            return self.log_file.read_text(errors="replace")
        except OSError:
            return ""


class CliWorker:
    """Runs worker stages as CLI commands configured in agents.yaml."""

    def __init__(self, config: AgentsConfig, workspace: Path):
        self.config = config
        self.workspace = Path(workspace)

    def _command(self, stage: str, objective: str):
        return get_stage_command(
            self.config, stage, {"prompt": objective, "workspace": str(self.workspace)}
        )

    def attempt(
        self,
        objective: str,
        context_refs: Sequence[Path] = (),
        stage: str = "implement",
        timeout: Optional[float] = None,
        log_file: Optional[Path] = None,
    ) -> WorkerResult:
        """Run the worker to completion (or timeout) and return its transcript.

        Never raises for worker failures: a missing binary, a non-zero exit
        and a timeout all come back as a WorkerResult.
        """
        text = build_objective(objective, context_refs)
        command = self._command(stage, text)

        try:
            result = subprocess.run(
                command.cmd,
                cwd=str(self.workspace),
                input=command.get_stdin_input(text),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=timeout,
            )
            outcome = WorkerResult(transcript=result.stdout or "", exit_code=result.returncode)
        except subprocess.TimeoutExpired as e:
            partial = e.stdout or ""
            if isinstance(partial, bytes):
                partial = partial.decode(errors="replace")
            logger.warning(f"Worker stage '{stage}' timed out after {timeout}s")
            outcome = WorkerResult(transcript=partial, exit_code=-1, timed_out=True)
        except OSError as e:
            logger.error(f"Worker stage '{stage}' could not start: {e}")
            outcome = WorkerResult(transcript=str(e), exit_code=-1)

        if log_file:
            write_worker_log(log_file, command.cmd, outcome.exit_code, outcome.transcript, text)

        return outcome

    def spawn(
        self,
        objective: str,
        context_refs: Sequence[Path],
        log_file: Path,
        stage: str = "implement",
    ) -> WorkerProcess:
        """Start the worker in its own process group without waiting for it."""
        text = build_objective(objective, context_refs)
        command = self._command(stage, text)

        log_handle = open(log_file, "w")
        try:
            proc = subprocess.Popen(
                command.cmd,
                cwd=str(self.workspace),
                stdin=subprocess.PIPE if command.prompt_via_stdin else subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                text=True,
                start_new_session=True,
            )
        except OSError:
            log_handle.close()
            raise

        if command.prompt_via_stdin:
            threading.Thread(
                target=_feed_stdin, args=(proc, text), name=f"stdin-{proc.pid}", daemon=True
            ).start()

        logger.debug(f"Spawned worker pid={proc.pid} stage={stage}")
        return WorkerProcess(proc, log_file, log_handle)


def _feed_stdin(proc: subprocess.Popen, text: str) -> None:
    try:
        proc.stdin.write(text)
        proc.stdin.close()
    except (BrokenPipeError, OSError, ValueError):
        # worker exited before reading its prompt
        pass
