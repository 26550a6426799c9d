"""Streaming subprocess execution with a hard wall-clock deadline."""

from __future__ import annotations

import os
import signal
import subprocess
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from untilgreen.constants import TIMED_OUT_EXIT_CODE

OutputCallback = Callable[[str], None]

_JOIN_GRACE_SECONDS = 2.0


@dataclass(frozen=True)
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool

    @property
    def combined(self) -> str:
        return f"{self.stdout}{self.stderr}"


def _kill_process_tree(process: subprocess.Popen[str]) -> None:
    if os.name == "posix":
        try:
            os.killpg(process.pid, signal.SIGKILL)
            return
        except (ProcessLookupError, PermissionError):
            pass
    try:
        process.kill()
    except ProcessLookupError:
        pass


def _feed_stdin(stream: Any, text: str) -> None:
    try:
        stream.write(text)
        stream.flush()
    except (OSError, ValueError):
        pass
    finally:
        try:
            stream.close()
        except OSError:
            pass


def run_streaming(
    argv: Sequence[str],
    *,
    cwd: str | os.PathLike[str] | None = None,
    env: dict[str, str] | None = None,
    timeout: float | None = None,
    stdin_text: str | None = None,
    on_stdout: OutputCallback | None = None,
    on_stderr: OutputCallback | None = None,
) -> CommandResult:
    """Run *argv*, forwarding output line by line as it arrives.

    Raises ``OSError`` when the process cannot be started. A *timeout* of
    ``None`` or ``<= 0`` means no deadline; when the deadline passes the whole
    process group is killed and the result reports ``timed_out=True``.
    """
    popen_kwargs: dict[str, Any] = {}
    if os.name == "posix":
        popen_kwargs["start_new_session"] = True
    process = subprocess.Popen(
        list(argv),
        cwd=cwd,
        env=env,
        shell=False,
        text=True,
        encoding="utf-8",
        errors="replace",
        stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        bufsize=1,
        **popen_kwargs,
    )

    sink_lock = threading.Lock()
    stdout_chunks: list[str] = []
    stderr_chunks: list[str] = []

    def _pump_stream(stream: Any, captured: list[str], callback: OutputCallback | None) -> None:
        if stream is None:
            return
        try:
            for line in iter(stream.readline, ""):
                captured.append(line)
                if callback is not None:
                    with sink_lock:
                        callback(line)
        finally:
            try:
                stream.close()
            except OSError:
                pass

    stdout_thread = threading.Thread(
        target=_pump_stream, args=(process.stdout, stdout_chunks, on_stdout), daemon=True
    )
    stderr_thread = threading.Thread(
        target=_pump_stream, args=(process.stderr, stderr_chunks, on_stderr), daemon=True
    )
    stdout_thread.start()
    stderr_thread.start()

    # stdin is written after the readers start; a blocked write cannot stall them.
    stdin_thread: threading.Thread | None = None
    if stdin_text is not None and process.stdin is not None:
        stdin_thread = threading.Thread(target=_feed_stdin, args=(process.stdin, stdin_text), daemon=True)
        stdin_thread.start()

    deadline = timeout if timeout is not None and timeout > 0 else None
    timed_out = False
    try:
        returncode = process.wait(timeout=deadline)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_process_tree(process)
        returncode = process.wait()
    except BaseException:
        _kill_process_tree(process)
        process.wait()
        if stdin_thread is not None:
            stdin_thread.join(timeout=_JOIN_GRACE_SECONDS)
        stdout_thread.join(timeout=_JOIN_GRACE_SECONDS)
        stderr_thread.join(timeout=_JOIN_GRACE_SECONDS)
        raise

    # Orphaned grandchildren can hold the pipes open after a kill.
    grace = _JOIN_GRACE_SECONDS if timed_out else None
    if stdin_thread is not None:
        stdin_thread.join(timeout=_JOIN_GRACE_SECONDS)
    stdout_thread.join(timeout=grace)
    stderr_thread.join(timeout=grace)

    if timed_out:
        exit_code = TIMED_OUT_EXIT_CODE
    elif returncode < 0:
        exit_code = 128 - returncode
    else:
        exit_code = returncode
    return CommandResult(
        stdout="".join(stdout_chunks),
        stderr="".join(stderr_chunks),
        exit_code=exit_code,
        timed_out=timed_out,
    )
