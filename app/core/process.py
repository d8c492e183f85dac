"""
Bounded subprocess execution for untrusted build steps.

Security / resource limits:
- No shell=True anywhere; commands are argument lists
- Hard wall-clock timeout, enforced by killing the whole process group
- Streaming reader with a byte cap; a runaway process is killed once it
  exceeds the cap instead of being buffered in memory
- Only the last N lines of output are retained for diagnostics
- Sanitized environment (no service credentials leak into builds)
"""
import logging
import os
import signal
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_PATH = "/usr/local/bin:/usr/bin:/bin"
READ_CHUNK_SIZE = 64 * 1024
# Longest single line kept in the diagnostic tail
MAX_LINE_CHARS = 4096


class CommandError(Exception):
    """Command could not be constructed."""
    pass


@dataclass
class CommandResult:
    """Result of a bounded subprocess command."""
    command: list[str]
    exit_code: int
    output_tail: list[str] = field(default_factory=list)
    output_bytes: int = 0
    duration_ms: int = 0
    timed_out: bool = False
    output_exceeded: bool = False
    pid: Optional[int] = None
    timeout: float = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.output_exceeded

    @property
    def status_line(self) -> Optional[str]:
        """How a failed command ended, e.g. `[exit code 3]`. None on success."""
        if self.timed_out:
            return f"[killed after {self.timeout:g}s timeout]"
        if self.output_exceeded:
            return f"[killed after {self.output_bytes} bytes of output]"
        if self.exit_code < 0:
            return f"[killed by signal {-self.exit_code}]"
        if self.exit_code != 0:
            return f"[exit code {self.exit_code}]"
        return None

    @property
    def diagnostics(self) -> list[str]:
        """
        Output tail, closed by the status line when the command failed.

        Never empty for a failed command, even one that printed nothing.
        """
        line = self.status_line
        return self.output_tail + [line] if line else list(self.output_tail)


def sanitize_env(extra: Optional[dict[str, str]] = None) -> dict[str, str]:
    """Create a minimal environment for subprocess execution."""
    safe_env = {
        "PATH": os.environ.get("PATH", DEFAULT_PATH),
        "HOME": os.environ.get("HOME", "/tmp"),
        "LANG": "C.UTF-8",
        "LC_ALL": "C.UTF-8",
        # Never block on an interactive credential prompt
        "GIT_TERMINAL_PROMPT": "0",
        "CI": "true",
    }
    if extra:
        safe_env.update(extra)
    return safe_env


def _kill_process_group(proc: subprocess.Popen) -> None:
    """SIGKILL the process and everything it spawned."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError:
        proc.kill()


class _OutputReader(threading.Thread):
    """Drains a pipe, counting bytes and keeping only the last lines."""

    def __init__(self, proc: subprocess.Popen, max_bytes: int, tail_lines: int):
        super().__init__(name=f"output-reader-{proc.pid}", daemon=True)
        self._proc = proc
        self._max_bytes = max_bytes
        self._tail_lines = max(tail_lines, 1)
        self._tail: deque[str] = deque(maxlen=self._tail_lines)
        self._partial = ""
        self.total_bytes = 0
        self.exceeded = False

    def run(self) -> None:
        stream = self._proc.stdout
        while True:
            chunk = stream.read1(READ_CHUNK_SIZE)
            if not chunk:
                break
            self.total_bytes += len(chunk)
            self._feed(chunk.decode("utf-8", errors="replace"))
            if self.total_bytes > self._max_bytes:
                self.exceeded = True
                _kill_process_group(self._proc)
                break
        stream.close()

    def _feed(self, text: str) -> None:
        lines = (self._partial + text).split("\n")
        self._partial = lines.pop()[-MAX_LINE_CHARS:]
        for line in lines:
            self._tail.append(line.rstrip("\r")[:MAX_LINE_CHARS])

    @property
    def tail(self) -> list[str]:
        lines = list(self._tail)
        if self._partial:
            lines.append(self._partial)
        return lines[-self._tail_lines:]


def run_command(
    cmd: list[str],
    cwd: Path,
    timeout: float,
    max_output_bytes: int,
    tail_lines: int = 50,
    env: Optional[dict[str, str]] = None,
) -> CommandResult:
    """
    Execute a command with a timeout and an output cap.

    stdout and stderr are merged so the diagnostic tail keeps their
    interleaving. The call never raises for process failures: a missing
    executable, a non-zero exit, a timeout or an oversized output are all
    reported through the returned CommandResult.

    Args:
        cmd: Command as list of strings (NO shell=True!)
        cwd: Working directory
        timeout: Wall-clock budget in seconds
        max_output_bytes: Combined stdout/stderr budget in bytes
        tail_lines: Number of trailing output lines to keep
        env: Full environment (defaults to sanitize_env())

    Returns:
        CommandResult with exit status and output tail
    """
    # Validate command is a list (never a string for shell execution)
    if not isinstance(cmd, list):
        raise CommandError("Command must be a list, not a string")
    if len(cmd) == 0:
        raise CommandError("Command cannot be empty")

    start = time.monotonic()

    try:
        proc = subprocess.Popen(
            cmd,
            cwd=str(cwd),
            env=env if env is not None else sanitize_env(),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            start_new_session=True,
            # CRITICAL: No shell=True!
        )
    except OSError as e:
        logger.warning(f"command_spawn_failed cmd={cmd[0]} error={type(e).__name__}")
        return CommandResult(
            command=cmd,
            exit_code=127,
            output_tail=[f"{cmd[0]}: {e.strerror or e}"],
            duration_ms=int((time.monotonic() - start) * 1000),
            timeout=timeout,
        )

    reader = _OutputReader(proc, max_output_bytes, tail_lines)
    reader.start()

    timed_out = False
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_process_group(proc)
        proc.wait()
        logger.warning(f"command_timeout cmd={cmd[0]} timeout={timeout}")
    finally:
        # Grandchildren may still hold the pipe open after the leader exits
        reader.join(timeout=5)
        if reader.is_alive():
            _kill_process_group(proc)
            reader.join(timeout=5)

    if reader.exceeded:
        logger.warning(
            f"command_output_exceeded cmd={cmd[0]} limit={max_output_bytes}"
        )

    return CommandResult(
        command=cmd,
        exit_code=-1 if timed_out else proc.returncode,
        output_tail=reader.tail,
        output_bytes=reader.total_bytes,
        duration_ms=int((time.monotonic() - start) * 1000),
        timed_out=timed_out,
        output_exceeded=reader.exceeded,
        pid=proc.pid,
        timeout=timeout,
    )
