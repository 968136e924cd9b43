import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path

import pytest


# Ensure tests can import project packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from config.settings import Settings  # noqa: E402
from engine.errors import ToolUnavailableError  # noqa: E402
from engine.process import ProcessResult  # noqa: E402


@dataclass
class FakeScript:
    """What a fake tool invocation prints, writes and exits with."""

    stdout: list = field(default_factory=list)
    stderr: list = field(default_factory=list)
    exit_code: int = 0
    creates: dict = field(default_factory=dict)
    block: bool = False
    spawn_error: bool = False


class FakeProcess:
    def __init__(self, script, on_stdout, on_stderr):
        self.script = script
        self._on_stdout = on_stdout
        self._on_stderr = on_stderr
        self._released = threading.Event()
        self.terminated = False

    def wait(self):
        if self.script.block:
            self._released.wait(timeout=5)
        if self.terminated:
            return ProcessResult(exit_code=-15, terminated=True)
        for line in self.script.stdout:
            if self._on_stdout is not None:
                self._on_stdout(line)
        for line in self.script.stderr:
            if self._on_stderr is not None:
                self._on_stderr(line)
        for path, payload in self.script.creates.items():
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            Path(path).write_bytes(payload)
        return ProcessResult(exit_code=self.script.exit_code)

    def release(self):
        self._released.set()

    def terminate(self, *, grace_seconds=3.0):
        self.terminated = True
        self._released.set()
        return True


class FakeRunner:
    """Stand-in for ProcessRunner driven by a ``(command, args) -> FakeScript`` responder."""

    def __init__(self, responder):
        self.responder = responder
        self.calls = []
        self.processes = []
        self.started = threading.Event()

    def start(self, command, args, *, on_stdout=None, on_stderr=None):
        args = list(args)
        self.calls.append([command, *args])
        script = self.responder(command, args)
        if script.spawn_error:
            raise ToolUnavailableError(command)
        process = FakeProcess(script, on_stdout, on_stderr)
        self.processes.append(process)
        self.started.set()
        return process

    def run(self, command, args, *, on_stdout=None, on_stderr=None):
        return self.start(command, args, on_stdout=on_stdout, on_stderr=on_stderr).wait()


def output_dir_from_args(args):
    """Return the directory of yt-dlp's ``-o`` template."""
    return Path(args[args.index("-o") + 1]).parent


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        temp_dir=str(tmp_path / "temp"),
        log_dir=str(tmp_path / "logs"),
        job_expiry_minutes=15,
        cleanup_interval_minutes=5,
        max_jobs_per_requester=3,
    )
