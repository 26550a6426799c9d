from __future__ import annotations

import io
import shutil
from pathlib import Path
from typing import Any

import pytest

from untilgreen.console import ConsoleOutput
from untilgreen.models import (
    AgentRunError,
    AgentVerify,
    CodexMeta,
    CommandVerify,
    MarkerNotFound,
    RunConfig,
    SessionState,
    VerifyExecutionError,
)
from untilgreen.runners import JudgeOutcome
from untilgreen.session import MemorySessionStore
from untilgreen.verify import (
    Verifier,
    build_verify_prompt,
    parse_verify_output,
    run_command_verify,
)

BASH = shutil.which("bash")
needs_bash = pytest.mark.skipif(BASH is None, reason="bash is not available")


class FakeJudge:
    def __init__(self, outcome: JudgeOutcome | Exception) -> None:
        self.outcome = outcome
        self.calls: list[dict[str, Any]] = []

    def run_judge(self, cfg: RunConfig, session: SessionState, **kwargs: Any) -> JudgeOutcome:
        self.calls.append({"cfg": cfg, "session_id": session.session_id, **kwargs})
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def _agent_cfg(**overrides: Any) -> RunConfig:
    values: dict[str, Any] = {
        "agent": "claude",
        "prompt": "add a health endpoint",
        "verify": AgentVerify(prompt="GET /health returns 200"),
    }
    values.update(overrides)
    return RunConfig(**values)


def _store_with(session: SessionState) -> MemorySessionStore:
    store = MemorySessionStore()
    store.save(session)
    return store


# ---------------------------------------------------------------------------
# Judge output
# ---------------------------------------------------------------------------


def test_parse_verify_output_pass_with_reason() -> None:
    verdict = parse_verify_output("thinking...\nUNTILGREEN_PASS all tests green\n")

    assert verdict.passed is True
    assert verdict.reason == "all tests green"


def test_parse_verify_output_last_marker_wins() -> None:
    verdict = parse_verify_output("UNTILGREEN_PASS early guess\nlater...\nUNTILGREEN_FAIL lint errors remain\ntrailer")

    assert verdict.passed is False
    assert verdict.reason == "lint errors remain"


def test_parse_verify_output_pass_after_fail() -> None:
    verdict = parse_verify_output("UNTILGREEN_FAIL first\nUNTILGREEN_PASS   fixed  ")

    assert verdict.passed is True
    assert verdict.reason == "fixed"


def test_parse_verify_output_without_marker_raises() -> None:
    with pytest.raises(MarkerNotFound, match="UNTILGREEN_PASS or UNTILGREEN_FAIL"):
        parse_verify_output("I think it works")


def test_build_verify_prompt_layout() -> None:
    prompt = build_verify_prompt("tests pass", "fix bug")

    assert prompt == (
        'Verify task completion. Output "UNTILGREEN_PASS <reason>" or "UNTILGREEN_FAIL <reason>".\n'
        "\n"
        "Criteria: tests pass\n"
        "\n"
        "Task: fix bug"
    )


# ---------------------------------------------------------------------------
# Command verify
# ---------------------------------------------------------------------------


@needs_bash
def test_command_verify_reports_exit_code_and_output(tmp_path: Path) -> None:
    sink = io.StringIO()
    result = run_command_verify(
        CommandVerify(command="echo checking; echo oops >&2; exit 3", shell=str(BASH)),
        cwd=str(tmp_path),
        timeout_sec=0,
        console=ConsoleOutput(sink),
    )

    assert result.exit_code == 3
    assert result.timed_out is False
    assert "checking" in result.output_tail
    assert "oops" in result.output_tail
    assert "checking" in sink.getvalue()


@needs_bash
def test_command_verify_runs_in_workspace(tmp_path: Path) -> None:
    (tmp_path / "marker.txt").write_text("ok", encoding="utf-8")

    result = run_command_verify(
        CommandVerify(command="test -f marker.txt", shell=str(BASH)),
        cwd=str(tmp_path),
        timeout_sec=0,
    )

    assert result.passed is True


@needs_bash
def test_command_verify_timeout_marks_failure(tmp_path: Path) -> None:
    result = run_command_verify(
        CommandVerify(command="sleep 30", shell=str(BASH)),
        cwd=str(tmp_path),
        timeout_sec=1,
    )

    assert result.timed_out is True
    assert result.exit_code == 1
    assert result.passed is False


@needs_bash
def test_command_verify_keeps_only_output_tail(tmp_path: Path) -> None:
    result = run_command_verify(
        CommandVerify(command="head -c 10000 /dev/zero | tr '\\0' a; echo END", shell=str(BASH)),
        cwd=str(tmp_path),
        timeout_sec=0,
    )

    assert len(result.output_tail.encode("utf-8")) == 4096
    assert result.output_tail.endswith("END\n")


def test_command_verify_requires_command(tmp_path: Path) -> None:
    with pytest.raises(VerifyExecutionError, match="verify command is required"):
        run_command_verify(CommandVerify(command="  "), cwd=str(tmp_path), timeout_sec=0)


def test_command_verify_missing_shell_is_execution_error(tmp_path: Path) -> None:
    with pytest.raises(VerifyExecutionError, match="unable to start verify shell"):
        run_command_verify(
            CommandVerify(command="true", shell=str(tmp_path / "no-such-shell")),
            cwd=str(tmp_path),
            timeout_sec=0,
        )


# ---------------------------------------------------------------------------
# Agent verify
# ---------------------------------------------------------------------------


def test_agent_verify_allocates_and_saves_verify_session() -> None:
    session = SessionState(session_id="main", agent="claude", cwd="/w")
    store = _store_with(session)
    judge = FakeJudge(JudgeOutcome(output="UNTILGREEN_PASS looks right\n", exit_code=0, timed_out=False, session_id="main"))
    verifier = Verifier(runner=judge, store=store)  # type: ignore[arg-type]

    result = verifier.run(_agent_cfg(), session)

    assert result.exit_code == 0
    assert result.output_tail == "looks right"
    stored = store.load()
    assert stored is not None and stored.claude is not None
    assert len(stored.claude.verify_session_id) == 36
    call = judge.calls[0]
    assert call["verify_session_id"] == stored.claude.verify_session_id
    assert call["resume"] is False
    assert "Criteria: GET /health returns 200" in call["prompt"]
    assert "Task: add a health endpoint" in call["prompt"]


def test_agent_verify_resumes_when_configured() -> None:
    session = SessionState(session_id="main", agent="claude", cwd="/w")
    session.agent_meta().verify_session_id = "judge-1"
    judge = FakeJudge(JudgeOutcome(output="UNTILGREEN_FAIL nope", exit_code=0, timed_out=False, session_id=None))
    verifier = Verifier(runner=judge, store=_store_with(session))  # type: ignore[arg-type]

    result = verifier.run(_agent_cfg(resume_verify_session=True, verify_timeout_sec=5), session)

    assert result.exit_code == 1
    assert result.output_tail == "nope"
    assert judge.calls[0]["verify_session_id"] == "judge-1"
    assert judge.calls[0]["resume"] is True
    assert judge.calls[0]["timeout"] == 5


def test_agent_verify_missing_marker_is_failing_result() -> None:
    session = SessionState(session_id="main", agent="claude", cwd="/w")
    judge = FakeJudge(JudgeOutcome(output="no verdict here", exit_code=0, timed_out=False, session_id=None))
    verifier = Verifier(runner=judge, store=_store_with(session))  # type: ignore[arg-type]

    result = verifier.run(_agent_cfg(), session)

    assert result.exit_code == 1
    assert "marker" in result.output_tail


def test_agent_verify_judge_process_failure_overrides_pass() -> None:
    session = SessionState(session_id="main", agent="claude", cwd="/w")
    judge = FakeJudge(JudgeOutcome(output="UNTILGREEN_PASS fine", exit_code=2, timed_out=False, session_id=None))
    verifier = Verifier(runner=judge, store=_store_with(session))  # type: ignore[arg-type]

    result = verifier.run(_agent_cfg(), session)

    assert result.exit_code == 2
    assert result.passed is False


def test_codex_agent_verify_adopts_judge_thread_id() -> None:
    session = SessionState(session_id="thread-main", agent="codex", cwd="/w", codex=CodexMeta())
    store = _store_with(session)
    judge = FakeJudge(JudgeOutcome(output="UNTILGREEN_PASS ok", exit_code=0, timed_out=False, session_id="thread-judge"))
    verifier = Verifier(runner=judge, store=store)  # type: ignore[arg-type]

    verifier.run(_agent_cfg(agent="codex"), session)

    stored = store.load()
    assert stored is not None and stored.codex is not None
    assert stored.codex.verify_session_id == "thread-judge"


def test_agent_verify_reads_criteria_file(tmp_path: Path) -> None:
    criteria = tmp_path / "criteria.md"
    criteria.write_text("the README mentions the flag", encoding="utf-8")
    session = SessionState(session_id="main", agent="claude", cwd="/w")
    judge = FakeJudge(JudgeOutcome(output="UNTILGREEN_PASS ok", exit_code=0, timed_out=False, session_id=None))
    verifier = Verifier(runner=judge, store=_store_with(session))  # type: ignore[arg-type]

    verifier.run(_agent_cfg(verify=AgentVerify(prompt_file=str(criteria))), session)

    assert "Criteria: the README mentions the flag" in judge.calls[0]["prompt"]


def test_agent_verify_launch_failure_is_execution_error() -> None:
    session = SessionState(session_id="main", agent="claude", cwd="/w")
    judge = FakeJudge(AgentRunError("unable to launch claude"))
    verifier = Verifier(runner=judge, store=_store_with(session))  # type: ignore[arg-type]

    with pytest.raises(VerifyExecutionError, match="unable to launch claude"):
        verifier.run(_agent_cfg(), session)


def test_verifier_none_mode_is_disabled_failure() -> None:
    session = SessionState(session_id="main", agent="claude", cwd="/w")
    verifier = Verifier(runner=FakeJudge(RuntimeError("unused")), store=_store_with(session))  # type: ignore[arg-type]

    result = verifier.run(RunConfig(agent="claude", prompt="p"), session)

    assert (result.exit_code, result.timed_out, result.output_tail) == (1, False, "verification disabled")


def test_verifier_rejects_unknown_strategy() -> None:
    session = SessionState(session_id="main", agent="claude", cwd="/w")
    verifier = Verifier(runner=FakeJudge(RuntimeError("unused")), store=_store_with(session))  # type: ignore[arg-type]

    with pytest.raises(TypeError, match="unsupported verify strategy"):
        verifier.run(RunConfig(agent="claude", prompt="p", verify="make test"), session)  # type: ignore[arg-type]
