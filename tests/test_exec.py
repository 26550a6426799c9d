from __future__ import annotations

import shutil
import sys
from pathlib import Path

import pytest

from untilgreen.exec import run_streaming


def test_run_streaming_forwards_lines_and_captures_output(tmp_path: Path) -> None:
    seen: list[str] = []

    result = run_streaming(
        [sys.executable, "-c", "import sys; print('out'); print('err', file=sys.stderr); sys.exit(4)"],
        cwd=tmp_path,
        on_stdout=seen.append,
    )

    assert result.exit_code == 4
    assert result.timed_out is False
    assert result.stdout == "out\n"
    assert result.stderr == "err\n"
    assert seen == ["out\n"]


def test_run_streaming_passes_stdin(tmp_path: Path) -> None:
    result = run_streaming(
        [sys.executable, "-c", "import sys; print(sys.stdin.read().upper())"],
        cwd=tmp_path,
        stdin_text="prompt text",
    )

    assert result.stdout.strip() == "PROMPT TEXT"


@pytest.mark.skipif(shutil.which("sleep") is None, reason="sleep is not available")
def test_run_streaming_timeout_kills_process(tmp_path: Path) -> None:
    result = run_streaming(["sleep", "30"], cwd=tmp_path, timeout=0.5)

    assert result.timed_out is True
    assert result.exit_code == 1


def test_run_streaming_missing_binary_raises(tmp_path: Path) -> None:
    with pytest.raises(OSError):
        run_streaming([str(tmp_path / "nope")], cwd=tmp_path)


def test_run_streaming_large_stdin_while_child_floods_stdout(tmp_path: Path) -> None:
    script = (
        "import sys\n"
        "sys.stdout.write('x' * (1 << 20) + '\\n')\n"
        "sys.stdout.flush()\n"
        "print(len(sys.stdin.read()))\n"
    )
    prompt = "p" * (2 << 20)

    result = run_streaming([sys.executable, "-c", script], cwd=tmp_path, stdin_text=prompt, timeout=60)

    assert result.timed_out is False
    assert result.exit_code == 0
    assert result.stdout.splitlines()[-1] == str(len(prompt))
