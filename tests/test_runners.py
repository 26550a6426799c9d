from __future__ import annotations

import io
import json
from typing import Any

import pytest

import untilgreen.runners as runners_module
from untilgreen.console import ConsoleOutput
from untilgreen.exec import CommandResult
from untilgreen.models import AgentRunError, CodexMeta, RunConfig, SessionState
from untilgreen.runners import (
    AgentRunner,
    StreamState,
    build_claude_argv,
    build_codex_argv,
    claude_event_chunks,
    codex_event_chunks,
)
from untilgreen.session import MemorySessionStore


class FakeStreaming:
    """Stands in for ``run_streaming``: replays stdout lines and returns a result."""

    def __init__(self, lines: list[Any], *, exit_code: int = 0, stderr: str = "", timed_out: bool = False) -> None:
        self.lines = [line if isinstance(line, str) else json.dumps(line) + "\n" for line in lines]
        self.exit_code = exit_code
        self.stderr = stderr
        self.timed_out = timed_out
        self.calls: list[dict[str, Any]] = []

    def __call__(self, argv: list[str], **kwargs: Any) -> CommandResult:
        self.calls.append({"argv": argv, **kwargs})
        for line in self.lines:
            kwargs["on_stdout"](line)
        if self.stderr:
            kwargs["on_stderr"](self.stderr)
        return CommandResult(
            stdout="".join(self.lines),
            stderr=self.stderr,
            exit_code=self.exit_code,
            timed_out=self.timed_out,
        )


def _claude_session(session_id: str = "11111111-2222-3333-4444-555555555555") -> SessionState:
    return SessionState(session_id=session_id, agent="claude", cwd="/work")


def _codex_session(session_id: str = "pending") -> SessionState:
    return SessionState(session_id=session_id, agent="codex", cwd="/work", codex=CodexMeta())


# ---------------------------------------------------------------------------
# argv builders
# ---------------------------------------------------------------------------


def test_claude_argv_first_turn_pins_session_id() -> None:
    cfg = RunConfig(agent="claude", prompt="p", max_turns=5)

    argv = build_claude_argv(cfg, prompt="do it", session_id="sid", resume=False)

    assert argv == [
        "claude",
        "-p",
        "do it",
        "--output-format",
        "stream-json",
        "--verbose",
        "--max-turns",
        "5",
        "--session-id",
        "sid",
        "--permission-mode",
        "dontAsk",
    ]


def test_claude_argv_resume_and_pass_through_permission_mode() -> None:
    cfg = RunConfig(agent="claude", prompt="p", pass_through_args=("--permission-mode=acceptEdits", "--model", "opus"))

    argv = build_claude_argv(cfg, prompt="p", session_id="sid", resume=True)

    assert argv[argv.index("--resume") + 1] == "sid"
    assert "--session-id" not in argv
    assert "dontAsk" not in argv
    assert argv[-3:] == ["--permission-mode=acceptEdits", "--model", "opus"]


def test_claude_argv_dangerous_skips_permissions() -> None:
    cfg = RunConfig(agent="claude", prompt="p", dangerously_allow_all=True)

    argv = build_claude_argv(cfg, prompt="p", session_id="sid", resume=False)

    assert "--dangerously-skip-permissions" in argv
    assert "--permission-mode" not in argv


def test_codex_argv_new_thread_reads_prompt_from_stdin() -> None:
    cfg = RunConfig(agent="codex", prompt="p")

    argv = build_codex_argv(cfg, cwd="/work", thread_id="pending", resume=True)

    assert argv == ["codex", "exec", "--json", "--sandbox", "workspace-write", "-C", "/work", "-"]


def test_codex_argv_resume_thread_after_pass_through() -> None:
    cfg = RunConfig(agent="codex", prompt="p", pass_through_args=("--sandbox", "read-only"))

    argv = build_codex_argv(cfg, cwd="", thread_id="thread-1", resume=True)

    assert argv == ["codex", "exec", "--json", "--sandbox", "read-only", "resume", "thread-1", "-"]


def test_codex_argv_dangerous_bypasses_sandbox() -> None:
    cfg = RunConfig(agent="codex", prompt="p", dangerously_allow_all=True)

    argv = build_codex_argv(cfg, cwd="", thread_id="pending", resume=False)

    assert "--dangerously-bypass-approvals-and-sandbox" in argv
    assert "--sandbox" not in argv


# ---------------------------------------------------------------------------
# Event parsing
# ---------------------------------------------------------------------------


def test_claude_events_collect_text_and_session_id() -> None:
    state = StreamState()

    claude_event_chunks({"type": "system", "subtype": "init", "session_id": "abc"}, state)
    chunks = claude_event_chunks(
        {
            "type": "assistant",
            "session_id": "abc",
            "message": {
                "content": [
                    {"type": "text", "text": "Working on it"},
                    {"type": "tool_use", "name": "Bash", "input": {"command": "pytest"}},
                ]
            },
        },
        state,
    )

    assert state.session_id == "abc"
    assert state.output == "Working on it\n"
    assert chunks[0] == "Working on it\n"
    assert chunks[1].startswith("[tool_use] Bash")


def test_claude_error_result_marks_failure() -> None:
    state = StreamState()

    claude_event_chunks({"type": "result", "subtype": "error_max_turns", "is_error": True}, state)

    assert state.failed is True
    assert state.error == "error_max_turns"


def test_codex_events_track_thread_messages_and_failures() -> None:
    state = StreamState()

    codex_event_chunks({"type": "thread.started", "thread_id": "t-1"}, state)
    codex_event_chunks({"type": "item.completed", "item": {"type": "agent_message", "text": "UNTILGREEN_PASS ok"}}, state)
    command_chunks = codex_event_chunks(
        {"type": "item.completed", "item": {"type": "command_execution", "command": "ls"}}, state
    )
    codex_event_chunks({"type": "turn.failed", "error": {"message": "rate limited"}}, state)

    assert state.session_id == "t-1"
    assert state.output == "UNTILGREEN_PASS ok\n"
    assert command_chunks == ["$ ls\n"]
    assert state.failed is True
    assert state.error == "rate limited"


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


def test_claude_run_echoes_text_and_passes_cwd(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = FakeStreaming(
        [
            {"type": "system", "subtype": "init", "session_id": "11111111-2222-3333-4444-555555555555"},
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "done"}]}},
            "plain text line\n",
        ]
    )
    monkeypatch.setattr(runners_module, "run_streaming", fake)
    stream = io.StringIO()
    session = _claude_session()
    store = MemorySessionStore(session)
    runner = AgentRunner(store, console=ConsoleOutput(stream))

    result = runner.run(RunConfig(agent="claude", prompt="fix it"), session)

    assert result.exit_code == 0
    assert "done\n" in stream.getvalue()
    assert "plain text line" in stream.getvalue()
    call = fake.calls[0]
    assert call["cwd"] == "/work"
    assert call["stdin_text"] is None
    assert call["argv"][:3] == ["claude", "-p", "fix it"]


def test_codex_run_saves_thread_id_and_notifies(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = FakeStreaming([{"type": "thread.started", "thread_id": "thread-9"}, {"type": "turn.completed"}])
    monkeypatch.setattr(runners_module, "run_streaming", fake)
    session = _codex_session()
    store = MemorySessionStore(session)
    seen: list[str] = []
    runner = AgentRunner(store, on_session_id=seen.append)

    runner.run(RunConfig(agent="codex", prompt="fix it"), session)

    stored = store.load()
    assert stored is not None
    assert stored.session_id == "thread-9"
    assert seen == ["thread-9"]
    assert fake.calls[0]["stdin_text"] == "fix it"
    assert fake.calls[0]["argv"][-1] == "-"


def test_nonzero_exit_raises_agent_run_error(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = FakeStreaming([], exit_code=2, stderr="Error: not logged in\n")
    monkeypatch.setattr(runners_module, "run_streaming", fake)
    runner = AgentRunner(MemorySessionStore())

    with pytest.raises(AgentRunError, match="claude exited with code 2: Error: not logged in"):
        runner.run(RunConfig(agent="claude", prompt="p"), _claude_session())


def test_launch_failure_raises_agent_run_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def _missing(argv: list[str], **kwargs: Any) -> CommandResult:
        raise FileNotFoundError(2, "No such file or directory", argv[0])

    monkeypatch.setattr(runners_module, "run_streaming", _missing)
    runner = AgentRunner(MemorySessionStore())

    with pytest.raises(AgentRunError, match="unable to launch codex"):
        runner.run(RunConfig(agent="codex", prompt="p"), _codex_session())


def test_unreadable_prompt_file_raises_agent_run_error(tmp_path: Any) -> None:
    runner = AgentRunner(MemorySessionStore())

    with pytest.raises(AgentRunError, match="unable to resolve prompt"):
        runner.run(RunConfig(agent="claude", prompt_file=str(tmp_path / "missing.md")), _claude_session())


def test_run_judge_collects_output_and_applies_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = FakeStreaming(
        [{"type": "assistant", "message": {"content": [{"type": "text", "text": "UNTILGREEN_FAIL missing docs"}]}}],
        timed_out=True,
        exit_code=1,
    )
    monkeypatch.setattr(runners_module, "run_streaming", fake)
    runner = AgentRunner(MemorySessionStore())

    outcome = runner.run_judge(
        RunConfig(agent="claude", prompt="p"),
        _claude_session(),
        prompt="judge this",
        verify_session_id="judge-1",
        resume=False,
        timeout=30,
    )

    assert outcome.output == "UNTILGREEN_FAIL missing docs\n"
    assert outcome.timed_out is True
    assert outcome.exit_code == 1
    assert fake.calls[0]["timeout"] == 30
    argv = fake.calls[0]["argv"]
    assert argv[argv.index("--session-id") + 1] == "judge-1"
