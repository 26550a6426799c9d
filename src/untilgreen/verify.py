"""Verification strategies: disabled, shell command, or an agent acting as judge."""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path

from untilgreen.config import resolve_prompt
from untilgreen.console import ConsoleOutput
from untilgreen.constants import FAIL_MARKER, PASS_MARKER, VERIFY_OUTPUT_TAIL_BYTES
from untilgreen.exec import run_streaming
from untilgreen.models import (
    AgentRunError,
    AgentVerify,
    CommandVerify,
    MarkerNotFound,
    NoVerify,
    RunConfig,
    SessionState,
    ValidationError,
    VerifyExecutionError,
    VerifyResult,
)
from untilgreen.runners import AgentRunner
from untilgreen.session import SessionStore
from untilgreen.utils import _strip_ansi, _tail_text

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Judge output
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Verdict:
    passed: bool
    reason: str


def parse_verify_output(output: str) -> Verdict:
    """Read the judge's verdict; the marker that appears last wins."""
    pass_idx = output.rfind(PASS_MARKER)
    fail_idx = output.rfind(FAIL_MARKER)
    if pass_idx == -1 and fail_idx == -1:
        raise MarkerNotFound(f"no {PASS_MARKER} or {FAIL_MARKER} marker found")
    if pass_idx > fail_idx:
        rest = output[pass_idx + len(PASS_MARKER) :]
        return Verdict(passed=True, reason=rest.split("\n", 1)[0].strip())
    rest = output[fail_idx + len(FAIL_MARKER) :]
    return Verdict(passed=False, reason=rest.split("\n", 1)[0].strip())


def build_verify_prompt(criteria: str, task: str) -> str:
    return "\n".join(
        [
            f'Verify task completion. Output "{PASS_MARKER} <reason>" or "{FAIL_MARKER} <reason>".',
            "",
            f"Criteria: {criteria}",
            "",
            f"Task: {task}",
        ]
    )


def resolve_verify_prompt(spec: AgentVerify) -> str:
    if spec.prompt and spec.prompt.strip():
        return spec.prompt
    if not spec.prompt_file:
        raise VerifyExecutionError("verify agent prompt is required")
    try:
        return Path(spec.prompt_file).expanduser().read_text(encoding="utf-8")
    except OSError as exc:
        raise VerifyExecutionError(f"unable to read verify prompt file {spec.prompt_file}: {exc}") from exc


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def run_noop_verify() -> VerifyResult:
    return VerifyResult.disabled()


def run_command_verify(
    spec: CommandVerify,
    *,
    cwd: str,
    timeout_sec: int,
    console: ConsoleOutput | None = None,
) -> VerifyResult:
    """Run the verify command through ``<shell> -lc`` and keep the output tail."""
    if not spec.command.strip():
        raise VerifyExecutionError("verify command is required")
    if not spec.shell.strip():
        raise VerifyExecutionError("verify shell is required")

    def _sink(line: str) -> None:
        if console is not None:
            console.write(line)
        logger.debug("verify_output", extra={"fields": {"line": _strip_ansi(line).rstrip("\n")}})

    try:
        result = run_streaming(
            [spec.shell, "-lc", spec.command],
            cwd=cwd or None,
            env=dict(os.environ),
            timeout=timeout_sec if timeout_sec > 0 else None,
            on_stdout=_sink,
            on_stderr=_sink,
        )
    except OSError as exc:
        raise VerifyExecutionError(f"unable to start verify shell {spec.shell}: {exc}") from exc
    return VerifyResult(
        exit_code=result.exit_code,
        timed_out=result.timed_out,
        output_tail=_tail_text(result.combined, VERIFY_OUTPUT_TAIL_BYTES),
    )


def run_agent_verify(
    cfg: RunConfig,
    session: SessionState,
    spec: AgentVerify,
    *,
    runner: AgentRunner,
    store: SessionStore,
) -> VerifyResult:
    """Ask a judging agent session whether the task is done."""
    try:
        task = resolve_prompt(cfg.prompt, cfg.prompt_file)
    except (OSError, ValidationError) as exc:
        raise VerifyExecutionError(f"unable to resolve prompt: {exc}") from exc
    criteria = resolve_verify_prompt(spec)

    meta = session.agent_meta()
    if not meta.verify_session_id:
        meta.verify_session_id = str(uuid.uuid4())
        store.save(session)

    try:
        outcome = runner.run_judge(
            cfg,
            session,
            prompt=build_verify_prompt(criteria, task),
            verify_session_id=meta.verify_session_id,
            resume=cfg.resume_verify_session,
            timeout=cfg.verify_timeout_sec if cfg.verify_timeout_sec > 0 else None,
        )
    except AgentRunError as exc:
        raise VerifyExecutionError(f"verify agent failed: {exc}") from exc

    if session.agent == "codex" and outcome.session_id and outcome.session_id != meta.verify_session_id:
        meta.verify_session_id = outcome.session_id
        store.save(session)

    try:
        verdict = parse_verify_output(outcome.output)
    except MarkerNotFound as exc:
        return VerifyResult(exit_code=1, timed_out=outcome.timed_out, output_tail=str(exc))

    verdict_exit = 0 if verdict.passed else 1
    return VerifyResult(
        exit_code=verdict_exit if outcome.exit_code == 0 else outcome.exit_code,
        timed_out=outcome.timed_out,
        output_tail=verdict.reason,
    )


class Verifier:
    """Dispatches on the configured verify strategy."""

    def __init__(
        self,
        *,
        runner: AgentRunner,
        store: SessionStore,
        console: ConsoleOutput | None = None,
    ) -> None:
        self.runner = runner
        self.store = store
        self.console = console

    def run(self, cfg: RunConfig, session: SessionState) -> VerifyResult:
        spec = cfg.verify
        if isinstance(spec, NoVerify):
            return run_noop_verify()
        if isinstance(spec, CommandVerify):
            return run_command_verify(spec, cwd=session.cwd, timeout_sec=cfg.verify_timeout_sec, console=self.console)
        if isinstance(spec, AgentVerify):
            return run_agent_verify(cfg, session, spec, runner=self.runner, store=self.store)
        raise TypeError(f"unsupported verify strategy: {type(spec).__name__}")
