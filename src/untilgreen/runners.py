from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from untilgreen.config import resolve_prompt
from untilgreen.console import ConsoleOutput
from untilgreen.constants import AGENT_KINDS, PENDING_SESSION_ID
from untilgreen.exec import CommandResult, run_streaming
from untilgreen.logs import AgentOutputWriter
from untilgreen.models import AgentResult, AgentRunError, RunConfig, SessionState, ValidationError
from untilgreen.session import SessionStore
from untilgreen.utils import _compact_log_text, _strip_ansi, _tail_text

logger = logging.getLogger(__name__)

SessionIdCallback = Callable[[str], None]

_ERROR_TAIL_BYTES = 1024


def _has_flag(args: Sequence[str], flag: str) -> bool:
    return any(arg == flag or arg.startswith(f"{flag}=") for arg in args)


# ---------------------------------------------------------------------------
# argv builders
# ---------------------------------------------------------------------------


def build_claude_argv(
    cfg: RunConfig,
    *,
    prompt: str,
    session_id: str,
    resume: bool,
    binary: str = "claude",
) -> list[str]:
    argv = [binary, "-p", prompt, "--output-format", "stream-json", "--verbose"]
    if cfg.max_turns > 0:
        argv.extend(["--max-turns", str(cfg.max_turns)])
    if resume and session_id != PENDING_SESSION_ID:
        argv.extend(["--resume", session_id])
    else:
        argv.extend(["--session-id", session_id])
    if cfg.dangerously_allow_all:
        argv.append("--dangerously-skip-permissions")
    elif not _has_flag(cfg.pass_through_args, "--permission-mode"):
        argv.extend(["--permission-mode", "dontAsk"])
    argv.extend(cfg.pass_through_args)
    return argv


def build_codex_argv(
    cfg: RunConfig,
    *,
    cwd: str,
    thread_id: str,
    resume: bool,
    binary: str = "codex",
) -> list[str]:
    argv = [binary, "exec", "--json"]
    if cfg.dangerously_allow_all:
        argv.append("--dangerously-bypass-approvals-and-sandbox")
    elif not _has_flag(cfg.pass_through_args, "--sandbox"):
        argv.extend(["--sandbox", "workspace-write"])
    if cwd:
        argv.extend(["-C", cwd])
    argv.extend(cfg.pass_through_args)
    if resume and thread_id and thread_id != PENDING_SESSION_ID:
        argv.extend(["resume", thread_id])
    # Prompt is read from stdin.
    argv.append("-")
    return argv


# ---------------------------------------------------------------------------
# Stream event parsing
# ---------------------------------------------------------------------------


@dataclass
class StreamState:
    """What one agent process reported over its JSONL event stream."""

    session_id: str | None = None
    failed: bool = False
    error: str = ""
    text: list[str] = field(default_factory=list)

    @property
    def output(self) -> str:
        return "".join(self.text)


def _content_blocks(message: Any) -> list[dict[str, Any]]:
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def claude_event_chunks(event: dict[str, Any], state: StreamState) -> list[str]:
    """Apply one ``stream-json`` event to *state*; return text to display."""
    session_id = event.get("session_id")
    if isinstance(session_id, str) and session_id:
        state.session_id = session_id
    kind = event.get("type")
    chunks: list[str] = []
    if kind == "assistant":
        for block in _content_blocks(event.get("message")):
            block_type = block.get("type")
            if block_type == "text" and isinstance(block.get("text"), str):
                text = block["text"]
                state.text.append(text if text.endswith("\n") else f"{text}\n")
                chunks.append(text if text.endswith("\n") else f"{text}\n")
            elif block_type == "tool_use":
                name = block.get("name") if isinstance(block.get("name"), str) else "tool"
                summary = _compact_log_text(json.dumps(block.get("input", {}), default=str), limit=160)
                chunks.append(f"[tool_use] {name} {summary}\n")
    elif kind == "result":
        if event.get("is_error") is True:
            state.failed = True
            result_text = event.get("result")
            state.error = result_text if isinstance(result_text, str) and result_text else str(event.get("subtype", "error"))
            chunks.append(f"[result] {state.error}\n")
    return chunks


def codex_event_chunks(event: dict[str, Any], state: StreamState) -> list[str]:
    """Apply one ``codex exec --json`` event to *state*; return text to display."""
    kind = event.get("type")
    chunks: list[str] = []
    if kind == "thread.started":
        thread_id = event.get("thread_id")
        if isinstance(thread_id, str) and thread_id:
            state.session_id = thread_id
    elif kind in ("turn.failed", "error"):
        state.failed = True
        detail = event.get("error") if kind == "turn.failed" else event.get("message")
        if isinstance(detail, dict):
            detail = detail.get("message")
        state.error = detail if isinstance(detail, str) and detail else kind
        chunks.append(f"[error] {state.error}\n")
    elif kind == "item.completed":
        item = event.get("item")
        if not isinstance(item, dict):
            return chunks
        item_type = item.get("type")
        text = item.get("text")
        if item_type == "agent_message" and isinstance(text, str):
            state.text.append(text if text.endswith("\n") else f"{text}\n")
            chunks.append(text if text.endswith("\n") else f"{text}\n")
        elif item_type == "command_execution" and isinstance(item.get("command"), str):
            chunks.append(f"$ {item['command']}\n")
        elif item_type == "reasoning" and isinstance(text, str):
            chunks.append(f"[reasoning] {_compact_log_text(text, limit=160)}\n")
    return chunks


_EVENT_PARSERS = {
    "claude": claude_event_chunks,
    "codex": codex_event_chunks,
}


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class JudgeOutcome:
    output: str
    exit_code: int
    timed_out: bool
    session_id: str | None


class AgentRunner:
    """Runs agent turns by shelling out to the ``claude`` / ``codex`` CLIs."""

    def __init__(
        self,
        session_store: SessionStore,
        *,
        console: ConsoleOutput | None = None,
        on_session_id: SessionIdCallback | None = None,
        binaries: dict[str, str] | None = None,
    ) -> None:
        self.session_store = session_store
        self.console = console
        self.on_session_id = on_session_id
        self.binaries = {kind: kind for kind in AGENT_KINDS}
        if binaries:
            self.binaries.update(binaries)

    def run(self, cfg: RunConfig, session: SessionState) -> AgentResult:
        if session.agent not in AGENT_KINDS:
            raise AgentRunError(f"unsupported agent: {session.agent!r}")
        if not session.session_id:
            raise AgentRunError("session id is required")
        try:
            prompt = resolve_prompt(cfg.prompt, cfg.prompt_file)
        except (OSError, ValidationError) as exc:
            raise AgentRunError(f"unable to resolve prompt: {exc}") from exc

        if session.agent == "claude":
            argv = build_claude_argv(
                cfg,
                prompt=prompt,
                session_id=session.session_id,
                resume=cfg.resume_session,
                binary=self.binaries["claude"],
            )
            stdin_text = None
        else:
            argv = build_codex_argv(
                cfg,
                cwd=session.cwd,
                thread_id=session.session_id,
                resume=cfg.resume_session,
                binary=self.binaries["codex"],
            )
            stdin_text = prompt

        state, result = self._stream(session.agent, argv, cwd=session.cwd, stdin_text=stdin_text, timeout=None)
        if result.exit_code != 0:
            raise AgentRunError(self._failure_message(session.agent, result, state))

        if state.session_id and state.session_id != session.session_id:
            previous = session.session_id
            session.session_id = state.session_id
            self.session_store.save(session)
            logger.info(
                "agent_session_id",
                extra={"fields": {"agent": session.agent, "previous": previous, "session_id": state.session_id}},
            )
            if self.on_session_id is not None:
                self.on_session_id(state.session_id)
        return AgentResult(exit_code=1 if state.failed else 0)

    def run_judge(
        self,
        cfg: RunConfig,
        session: SessionState,
        *,
        prompt: str,
        verify_session_id: str,
        resume: bool,
        timeout: float | None,
    ) -> JudgeOutcome:
        """Run a judging turn in the verify session and collect its assistant text."""
        if session.agent == "claude":
            argv = build_claude_argv(
                cfg,
                prompt=prompt,
                session_id=verify_session_id,
                resume=resume,
                binary=self.binaries["claude"],
            )
            stdin_text = None
        elif session.agent == "codex":
            argv = build_codex_argv(
                cfg,
                cwd=session.cwd,
                thread_id=verify_session_id,
                resume=resume,
                binary=self.binaries["codex"],
            )
            stdin_text = prompt
        else:
            raise AgentRunError(f"unsupported agent: {session.agent!r}")

        state, result = self._stream(
            session.agent,
            argv,
            cwd=session.cwd,
            stdin_text=stdin_text,
            timeout=timeout,
            log_stream="verify",
        )
        exit_code = result.exit_code
        if exit_code == 0 and state.failed:
            exit_code = 1
        return JudgeOutcome(
            output=state.output,
            exit_code=exit_code,
            timed_out=result.timed_out,
            session_id=state.session_id,
        )

    def _stream(
        self,
        agent: str,
        argv: list[str],
        *,
        cwd: str,
        stdin_text: str | None,
        timeout: float | None,
        log_stream: str = "stdout",
    ) -> tuple[StreamState, CommandResult]:
        parse_event = _EVENT_PARSERS[agent]
        state = StreamState()
        stdout_log = AgentOutputWriter(logger, agent=agent, stream=log_stream)
        stderr_log = AgentOutputWriter(logger, agent=agent, stream="stderr")

        def _on_stdout(line: str) -> None:
            stripped = line.strip()
            if not stripped:
                return
            try:
                event = json.loads(stripped)
            except json.JSONDecodeError:
                event = None
            if not isinstance(event, dict):
                self._echo(line)
                stdout_log.write(line)
                return
            logger.debug(
                "agent_message",
                extra={"fields": {"agent": agent, "event_type": event.get("type"), "subtype": event.get("subtype")}},
            )
            for chunk in parse_event(event, state):
                self._echo(chunk)
                stdout_log.write(chunk)

        logger.debug(
            "agent_command",
            extra={"fields": {"agent": agent, "cmd": _compact_log_text(" ".join(argv))}},
        )
        try:
            result = run_streaming(
                argv,
                cwd=cwd or None,
                env=dict(os.environ),
                timeout=timeout,
                stdin_text=stdin_text,
                on_stdout=_on_stdout,
                on_stderr=stderr_log.write,
            )
        except OSError as exc:
            raise AgentRunError(f"unable to launch {agent}: {exc}") from exc
        finally:
            stdout_log.flush()
            stderr_log.flush()
        return (state, result)

    def _echo(self, chunk: str) -> None:
        if self.console is not None:
            self.console.write(chunk)

    @staticmethod
    def _failure_message(agent: str, result: CommandResult, state: StreamState) -> str:
        detail = state.error or _strip_ansi(_tail_text(result.stderr, _ERROR_TAIL_BYTES)).strip()
        message = f"{agent} exited with code {result.exit_code}"
        if detail:
            message = f"{message}: {_compact_log_text(detail)}"
        return message
