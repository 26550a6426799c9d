from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass
from typing import Protocol

from untilgreen.console import ConsoleOutput
from untilgreen.constants import MAX_AGENT_ERROR_STREAK
from untilgreen.models import (
    AgentErrorLimitReached,
    AgentResult,
    AgentRunError,
    CheckpointError,
    RunConfig,
    RunResult,
    SessionNotInitialized,
    SessionState,
    UntilgreenError,
    VerifyResult,
    WrittenCheckpoint,
)
from untilgreen.session import SessionStore

logger = logging.getLogger(__name__)


class Runner(Protocol):
    def run(self, cfg: RunConfig, session: SessionState) -> AgentResult: ...


class Verifier(Protocol):
    def run(self, cfg: RunConfig, session: SessionState) -> VerifyResult: ...


class CheckpointWriter(Protocol):
    def write(
        self,
        iteration: int,
        session_id: str,
        verify: VerifyResult,
        verify_mode: str,
    ) -> WrittenCheckpoint: ...


class Clock(Protocol):
    def now_ms(self) -> int: ...


class SystemClock:
    def now_ms(self) -> int:
        return int(time.monotonic() * 1000)


@dataclass
class ControllerDeps:
    runner: Runner
    verifier: Verifier
    checkpointer: CheckpointWriter | None
    session_store: SessionStore
    console: ConsoleOutput
    clock: Clock = dataclasses.field(default_factory=SystemClock)
    # Iterations already checkpointed for a resumed session; numbering continues after them.
    start_iteration: int = 0


def format_duration(ms: int) -> str:
    if ms <= 0:
        return "0s"
    seconds, millis = divmod(int(ms), 1000)
    if seconds < 60:
        return f"{seconds}.{millis:03d}s"
    minutes, remainder = divmod(seconds, 60)
    return f"{minutes}m{remainder}s"


def _reached_limits(cfg: RunConfig, iterations: int, elapsed_ms: int) -> bool:
    if cfg.max_iterations > 0 and iterations >= cfg.max_iterations:
        return True
    if cfg.max_minutes > 0 and elapsed_ms >= cfg.max_minutes * 60_000:
        return True
    return False


def _require_session(store: SessionStore) -> SessionState:
    session = store.load()
    if session is None:
        raise SessionNotInitialized("loop controller: session not initialized")
    return session


def run_loop(deps: ControllerDeps, cfg: RunConfig) -> RunResult:
    """Alternate agent turns and verification until it passes or a limit hits.

    Every iteration is checkpointed when a checkpointer is configured. Agent
    turn failures are tolerated until ``MAX_AGENT_ERROR_STREAK`` happen in a
    row; verification and checkpoint failures end the loop immediately.
    """
    clock = deps.clock
    start_ms = clock.now_ms()
    initial = _require_session(deps.session_store)
    deps.console.session_start(initial.session_id, initial.agent, cfg.verify_mode)

    iterations = 0
    resume_main = cfg.resume_session
    resume_verify = cfg.resume_verify_session
    agent_error_streak = 0

    while True:
        iter_start_ms = clock.now_ms()
        iterations += 1
        iteration = deps.start_iteration + iterations
        session = _require_session(deps.session_store)
        logger.debug(
            "iteration_start",
            extra={"fields": {"iteration": iteration, "session_id": session.session_id}},
        )

        run_cfg = dataclasses.replace(cfg, resume_session=resume_main, resume_verify_session=resume_verify)
        if cfg.verify_mode == "command":
            logger.debug(
                "verify_command",
                extra={"fields": {"shell": cfg.verify.shell, "cmd": cfg.verify.command}},
            )

        agent_error: AgentRunError | None = None
        try:
            deps.runner.run(run_cfg, session)
        except AgentRunError as exc:
            agent_error = exc
        deps.console.agent_exit(session.agent, agent_error)
        if agent_error is not None:
            agent_error_streak += 1
            logger.warning(
                "agent_run_error",
                extra={"fields": {"error": str(agent_error), "session_id": session.session_id}},
            )
        else:
            agent_error_streak = 0
        resume_main = True

        refreshed = deps.session_store.load()
        if refreshed is not None:
            if refreshed.session_id != session.session_id:
                logger.debug(
                    "session_update",
                    extra={
                        "fields": {
                            "session_id": refreshed.session_id,
                            "prior_session": session.session_id,
                            "iteration": iteration,
                        }
                    },
                )
            session = refreshed

        try:
            verify_result = deps.verifier.run(run_cfg, session)
        except (UntilgreenError, OSError, TypeError) as exc:
            logger.error(
                "verify_exec_failed",
                extra={"fields": {"error": str(exc), "session_id": session.session_id}},
            )
            raise
        if cfg.verify_mode == "agent":
            resume_verify = True

        checkpoint_ref = ""
        if deps.checkpointer is not None:
            session = _require_session(deps.session_store)
            try:
                written = deps.checkpointer.write(iteration, session.session_id, verify_result, cfg.verify_mode)
            except CheckpointError as exc:
                logger.error(
                    "checkpoint_failed",
                    extra={"fields": {"error": str(exc), "session_id": session.session_id}},
                )
                raise
            checkpoint_ref = written.ref

        if cfg.verify_mode != "none":
            deps.console.verification("pass" if verify_result.exit_code == 0 else "fail", verify_result)
        deps.console.iteration(iteration, format_duration(clock.now_ms() - iter_start_ms), checkpoint_ref)

        if agent_error is not None and agent_error_streak >= MAX_AGENT_ERROR_STREAK:
            limit_error = AgentErrorLimitReached(agent_error_streak, agent_error)
            logger.error(
                "agent_error_limit",
                extra={
                    "fields": {
                        "error": str(limit_error),
                        "session_id": session.session_id,
                        "agent_error_streak": agent_error_streak,
                    }
                },
            )
            raise limit_error from agent_error

        if verify_result.passed:
            status = "success"
        elif _reached_limits(cfg, iterations, clock.now_ms() - start_ms):
            status = "limit"
        else:
            continue

        elapsed_ms = clock.now_ms() - start_ms
        deps.console.session_complete(status, iterations, format_duration(elapsed_ms))
        return RunResult(
            status=status,
            iterations=iterations,
            elapsed_ms=elapsed_ms,
            last_verify_exit_code=verify_result.exit_code,
            last_checkpoint_ref=checkpoint_ref,
        )
