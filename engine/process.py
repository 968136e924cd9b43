"""Spawn external tools and stream their output line by line."""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from engine.errors import ToolUnavailableError

logger = logging.getLogger(__name__)

LineHandler = Callable[[str], None]

READER_JOIN_TIMEOUT = 1.0


@dataclass(frozen=True)
class ProcessResult:
    exit_code: int
    terminated: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class RunningProcess:
    """A spawned tool with one reader thread per output stream."""

    def __init__(
        self,
        proc: subprocess.Popen,
        argv: Sequence[str],
        *,
        on_stdout: Optional[LineHandler] = None,
        on_stderr: Optional[LineHandler] = None,
    ):
        self._proc = proc
        self.argv = list(argv)
        self._terminated = False
        self._readers = [
            self._start_reader(proc.stdout, on_stdout, "stdout"),
            self._start_reader(proc.stderr, on_stderr, "stderr"),
        ]

    @property
    def pid(self) -> int:
        return self._proc.pid

    def _start_reader(self, stream, handler, name):
        def _read():
            if stream is None:
                return
            for raw_line in iter(stream.readline, ""):
                line = raw_line.rstrip("\r\n")
                if handler is None:
                    continue
                try:
                    handler(line)
                except Exception:
                    logger.exception("process_line_handler_failed stream=%s", name)
            try:
                stream.close()
            except OSError:
                pass

        reader = threading.Thread(target=_read, name=f"{self.argv[0]}-{name}-reader", daemon=True)
        reader.start()
        return reader

    def poll(self) -> Optional[int]:
        return self._proc.poll()

    def wait(self, *, reader_timeout: float = READER_JOIN_TIMEOUT) -> ProcessResult:
        """Block until the process exits, then give each stream reader ``reader_timeout`` to drain.

        A descendant that inherited the pipes can keep them open after the
        process exits; its reader is left behind as a daemon thread.
        """
        exit_code = self._proc.wait()
        for reader in self._readers:
            reader.join(timeout=reader_timeout)
            if reader.is_alive():
                logger.warning("process_reader_still_open argv0=%s thread=%s", self.argv[0], reader.name)
        return ProcessResult(exit_code=exit_code, terminated=self._terminated)

    def terminate(self, *, grace_seconds: float = 3.0) -> bool:
        """Send SIGTERM, escalating to SIGKILL after ``grace_seconds``."""
        if self._proc.poll() is not None:
            return False
        self._terminated = True
        try:
            self._proc.terminate()
        except ProcessLookupError:
            return False
        deadline = time.monotonic() + grace_seconds
        while time.monotonic() < deadline:
            if self._proc.poll() is not None:
                return True
            time.sleep(0.05)
        try:
            self._proc.kill()
        except ProcessLookupError:
            pass
        return True


class ProcessRunner:
    """Launch external commands with streamed, line-oriented output."""

    def start(
        self,
        command: str,
        args: Sequence[str],
        *,
        on_stdout: Optional[LineHandler] = None,
        on_stderr: Optional[LineHandler] = None,
    ) -> RunningProcess:
        argv = [command, *args]
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as exc:
            raise ToolUnavailableError(command, detail=str(exc)) from exc
        logger.debug("process_started pid=%s argv=%s", proc.pid, argv)
        return RunningProcess(proc, argv, on_stdout=on_stdout, on_stderr=on_stderr)

    def run(
        self,
        command: str,
        args: Sequence[str],
        *,
        on_stdout: Optional[LineHandler] = None,
        on_stderr: Optional[LineHandler] = None,
    ) -> ProcessResult:
        return self.start(command, args, on_stdout=on_stdout, on_stderr=on_stderr).wait()
