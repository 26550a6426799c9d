from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TextIO

from untilgreen.checkpoint import (
    Checkpointer,
    collect_sessions,
    format_full_metadata,
    format_relative_time,
    format_short_date,
    resolve_checkpoint_ref,
    resolve_session_prefix,
)
from untilgreen.config import (
    RunInput,
    apply_unverified_limits,
    apply_workspace_defaults,
    build_run_config,
    load_workspace_config,
)
from untilgreen.console import BOLD, CYAN, DIM, GREEN, RESET, ConsoleOutput, supports_color
from untilgreen.constants import PENDING_SESSION_ID, VERSION
from untilgreen.controller import ControllerDeps, run_loop
from untilgreen.logs import SessionLogFile, configure_logging
from untilgreen.models import RunConfig, RunParsed, RunResult, UntilgreenError, ValidationError
from untilgreen.runners import AgentRunner
from untilgreen.session import JsonSessionStore, MemorySessionStore, SessionStore, ensure_session
from untilgreen.utils import (
    _parse_utc,
    default_log_path,
    log_label_for_run,
    pending_log_path,
    resolve_path,
    resolve_repo_root,
    resolve_workspace_root,
    slugify,
)
from untilgreen.verify import Verifier

logger = logging.getLogger(__name__)


def _split_pass_through(argv: list[str]) -> tuple[list[str], list[str]]:
    """Everything after the first ``--`` is forwarded to the agent CLI untouched."""
    if "--" not in argv:
        return (argv, [])
    index = argv.index("--")
    return (argv[:index], argv[index + 1 :])


# ---------------------------------------------------------------------------
# run / claude / codex
# ---------------------------------------------------------------------------


@dataclass
class RunContext:
    """Everything one ``run`` invocation wires together before the loop starts."""

    cfg: RunConfig
    store: SessionStore
    deps: ControllerDeps
    log_file: SessionLogFile

    def last_session_id(self) -> str:
        try:
            session = self.store.load()
        except UntilgreenError:
            return ""
        return session.session_id if session is not None else ""


def prepare_run(parsed: RunParsed, *, cwd: Path | None = None, stream: TextIO | None = None) -> RunContext:
    cfg = apply_unverified_limits(parsed)
    root, in_git = resolve_workspace_root(cwd)

    store: SessionStore
    if parsed.state_file:
        store = JsonSessionStore(resolve_path(root, parsed.state_file))
    else:
        store = MemorySessionStore()
    session, created = ensure_session(store, agent=cfg.agent, cwd=str(root), override_id=parsed.session_id)
    if not created:
        meta = session.codex if session.agent == "codex" else session.claude
        cfg = dataclasses.replace(
            cfg,
            resume_session=True,
            resume_verify_session=bool(meta is not None and meta.verify_session_id),
        )

    label = log_label_for_run(slugify(cfg.prompt or cfg.prompt_file or "prompt"))
    rotate_log = False
    if parsed.log_explicit:
        log_path = resolve_path(root, cfg.log_path)
    elif cfg.agent == "codex" and session.session_id == PENDING_SESSION_ID:
        log_path = pending_log_path(label)
        rotate_log = True
    else:
        log_path = default_log_path(session.session_id, label)
    try:
        log_file = configure_logging(log_path, log_format=cfg.log_format, level=cfg.log_level)
    except OSError as exc:
        raise ValidationError(f"unable to open log file {log_path}: {exc}") from exc
    cfg = dataclasses.replace(cfg, log_path=str(log_path))
    console = ConsoleOutput(stream, log_path=str(log_path))

    def _rotate_log(session_id: str) -> None:
        next_path = default_log_path(session_id, label)
        try:
            rotated = log_file.maybe_rotate(next_path)
        except OSError as exc:
            logger.error("log_rotate_failed", extra={"fields": {"error": str(exc), "session_id": session_id}})
            return
        if rotated:
            console.log_path = str(next_path)

    runner = AgentRunner(store, console=console, on_session_id=_rotate_log if rotate_log else None)
    checkpointer = Checkpointer(root) if in_git else None
    start_iteration = 0
    if checkpointer is not None and session.session_id != PENDING_SESSION_ID:
        try:
            start_iteration = checkpointer.last_iteration(session.session_id)
        except UntilgreenError:
            log_file.close()
            raise
    deps = ControllerDeps(
        runner=runner,
        verifier=Verifier(runner=runner, store=store, console=console),
        checkpointer=checkpointer,
        session_store=store,
        console=console,
        start_iteration=start_iteration,
    )
    logger.info(
        "run_config",
        extra={
            "fields": {
                "agent": cfg.agent,
                "verify_mode": cfg.verify_mode,
                "max_iterations": cfg.max_iterations,
                "max_minutes": cfg.max_minutes,
                "workspace": str(root),
                "in_git": in_git,
                "start_iteration": start_iteration,
            }
        },
    )
    return RunContext(cfg=cfg, store=store, deps=deps, log_file=log_file)


def _run_input_from_args(args: argparse.Namespace) -> RunInput:
    return RunInput(
        agent=args.agent_override or getattr(args, "agent", None),
        prompt=args.prompt or "",
        prompt_file=args.file,
        verify_cmd=args.verify,
        verify_shell=args.verify_shell or "",
        verify_agent_prompt=args.verify_agent,
        verify_agent_file=args.verify_agent_file,
        max_iter=args.max_iter,
        max_mins=args.max_mins,
        max_turns=args.max_turns,
        session_id=args.session_id,
        verify_timeout_sec=args.verify_timeout,
        log_path=args.log,
        log_format=args.log_format,
        log_level=args.log_level,
        dangerous=bool(args.dangerous or args.im_in_danger),
        state_file=args.state_file,
        pass_through_args=list(args.pass_through),
    )


def _cmd_run(args: argparse.Namespace) -> int:
    command = args.command
    if args.show_help_on_empty and not args.raw_argv:
        args.subparser.print_help()
        return 0
    try:
        root, _in_git = resolve_workspace_root()
        run_input, max_iter_explicit, max_mins_explicit = apply_workspace_defaults(
            _run_input_from_args(args), load_workspace_config(root)
        )
        parsed = build_run_config(
            run_input,
            log_explicit=args.log is not None,
            max_iter_explicit=max_iter_explicit,
            max_mins_explicit=max_mins_explicit,
        )
    except ValidationError as exc:
        args.subparser.print_usage(sys.stderr)
        print(f"untilgreen {command}: ERROR {exc}", file=sys.stderr)
        return 2

    try:
        context = prepare_run(parsed)
    except UntilgreenError as exc:
        print(f"untilgreen {command}: ERROR {exc}", file=sys.stderr)
        return 1

    try:
        result: RunResult = run_loop(context.deps, context.cfg)
    except UntilgreenError as exc:
        session_id = context.last_session_id()
        suffix = f" (session {session_id})" if session_id else ""
        print(f"untilgreen {command}: ERROR {exc}{suffix}", file=sys.stderr)
        return 1
    finally:
        context.log_file.close()
    logger.debug("run_result", extra={"fields": dataclasses.asdict(result)})
    return 0


# ---------------------------------------------------------------------------
# checkpoints
# ---------------------------------------------------------------------------


def _paint(enabled: bool, code: str, text: str) -> str:
    return f"{code}{text}{RESET}" if enabled else text


def list_checkpoints(
    repo_root: Path,
    *,
    session: str | None,
    as_json: bool,
    stream: TextIO,
    now: datetime | None = None,
) -> None:
    checkpointer = Checkpointer(repo_root)
    refs = checkpointer.list(None)
    sessions = collect_sessions(refs)
    if session:
        resolved = resolve_session_prefix(session, [item.session_id for item in sessions])
        selected = [ref for ref in refs if ref.session_id == resolved]
        if as_json:
            stream.write(json.dumps([ref.to_payload() for ref in selected], indent=2) + "\n")
            return
        for ref in selected:
            stream.write(format_full_metadata(ref))
            stream.write("\n")
        return

    if as_json:
        stream.write(json.dumps([dataclasses.asdict(item) for item in sessions], indent=2) + "\n")
        return
    color = supports_color(stream)
    moment = now or datetime.now(timezone.utc)
    folder = repo_root.name or str(repo_root)
    for item in sessions:
        short_id = item.session_id[:6] if item.session_id else "------"
        last = _parse_utc(item.last_timestamp)
        relative = format_relative_time(last, moment)
        absolute = format_short_date(last)
        if relative != "-" and absolute != "-":
            when = f"{relative} ({absolute})"
        else:
            when = relative if relative != "-" else absolute
        stream.write(
            f"{_paint(color, BOLD + CYAN, short_id)} {_paint(color, DIM, f'({item.count})')} "
            f"{_paint(color, GREEN, when)} {_paint(color, DIM, folder)}\n"
        )


def use_checkpoint(repo_root: Path, *, ref: str, session: str | None) -> str:
    checkpointer = Checkpointer(repo_root)
    resolved_session = None
    if session:
        sessions = collect_sessions(checkpointer.list(None))
        resolved_session = resolve_session_prefix(session, [item.session_id for item in sessions])
    target = resolve_checkpoint_ref(ref, resolved_session)
    checkpointer.use(target)
    return target


def _cmd_checkpoints_list(args: argparse.Namespace) -> int:
    repo_root = resolve_repo_root()
    if repo_root is None:
        print("untilgreen checkpoints list: ERROR not inside a git repository", file=sys.stderr)
        return 1
    try:
        list_checkpoints(
            repo_root,
            session=args.session or args.session_id,
            as_json=args.json,
            stream=sys.stdout,
        )
    except UntilgreenError as exc:
        print(f"untilgreen checkpoints list: ERROR {exc}", file=sys.stderr)
        return 1
    return 0


def _cmd_checkpoints_use(args: argparse.Namespace) -> int:
    repo_root = resolve_repo_root()
    if repo_root is None:
        print("untilgreen checkpoints use: ERROR not inside a git repository", file=sys.stderr)
        return 1
    try:
        use_checkpoint(repo_root, ref=args.ref, session=args.session_id)
    except UntilgreenError as exc:
        print(f"untilgreen checkpoints use: ERROR {exc}", file=sys.stderr)
        return 1
    return 0


def _cmd_version(_args: argparse.Namespace) -> int:
    print(f"untilgreen {VERSION}")
    return 0


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------


def _add_run_arguments(parser: argparse.ArgumentParser, *, include_agent: bool) -> None:
    if include_agent:
        parser.add_argument("-a", "--agent", help="Agent to drive (claude|codex)")
    parser.add_argument("prompt", nargs="?", default="", help="Prompt to run")
    parser.add_argument("-f", "--file", default=None, help="Path to prompt file")
    parser.add_argument("-V", "--verify", default=None, help="Verification command")
    parser.add_argument("--verify-agent", default=None, help="Verifier agent criteria")
    parser.add_argument("--verify-agent-file", default=None, help="Verifier agent criteria file")
    parser.add_argument("--verify-shell", default=None, help="Shell used to run --verify (default: /bin/bash)")
    parser.add_argument("-n", "--max-iter", type=int, default=None, help="Max iterations (0 = unlimited)")
    parser.add_argument("-m", "--max-mins", type=int, default=None, help="Max wall-clock minutes (0 = unlimited)")
    parser.add_argument("-T", "--max-turns", type=int, default=None, help="Max turns per agent run")
    parser.add_argument("--session-id", default=None, help="Resume or pin a session id")
    parser.add_argument("-t", "--verify-timeout", type=int, default=None, help="Verification timeout in seconds")
    parser.add_argument("-l", "--log", default=None, help="Log file path")
    parser.add_argument("--log-format", default=None, help="Log format (text|json)")
    parser.add_argument("-v", "--log-level", default=None, help="Log level (debug|info|warn|error)")
    parser.add_argument("--dangerous", action="store_true", help="Bypass agent approvals and sandbox")
    parser.add_argument("--im-in-danger", action="store_true", help="Alias for --dangerous")
    parser.add_argument("--state-file", default=None, help="Persist session state to this JSON file")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="untilgreen",
        description="Drive a coding agent in a loop until verification passes",
    )
    subparsers = parser.add_subparsers(dest="command")

    for name, agent, help_text in (
        ("run", None, "Run the loop with a chosen agent"),
        ("claude", "claude", "Run the loop with Claude Code"),
        ("codex", "codex", "Run the loop with Codex"),
    ):
        sub = subparsers.add_parser(
            name,
            help=help_text,
            epilog="Arguments after -- are passed through to the agent CLI.",
        )
        _add_run_arguments(sub, include_agent=agent is None)
        sub.set_defaults(
            handler=_cmd_run,
            agent_override=agent,
            subparser=sub,
            show_help_on_empty=agent is not None,
        )

    checkpoints = subparsers.add_parser("checkpoints", help="Inspect and restore iteration checkpoints")
    checkpoint_commands = checkpoints.add_subparsers(dest="checkpoints_command")

    list_parser = checkpoint_commands.add_parser("list", help="List checkpoint sessions or one session's iterations")
    list_parser.add_argument("session", nargs="?", default=None, help="Session id (prefix ok)")
    list_parser.add_argument("-s", "--session-id", default=None, help="Session id (prefix ok)")
    list_parser.add_argument("-j", "--json", action="store_true", help="Output JSON")
    list_parser.set_defaults(handler=_cmd_checkpoints_list)

    use_parser = checkpoint_commands.add_parser("use", help="Check out a checkpoint ref")
    use_parser.add_argument("ref", help="Checkpoint ref, <session>/iter-NNNN, or bare iteration")
    use_parser.add_argument("-s", "--session-id", default=None, help="Session id for a bare iteration")
    use_parser.set_defaults(handler=_cmd_checkpoints_use)

    version = subparsers.add_parser("version", help="Print the untilgreen version")
    version.set_defaults(handler=_cmd_version)
    return parser


def main(argv: list[str] | None = None) -> int:
    raw = list(sys.argv[1:] if argv is None else argv)
    head, pass_through = _split_pass_through(raw)
    parser = _build_parser()
    args = parser.parse_args(head)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2
    args.pass_through = pass_through
    # Arguments after the subcommand name, used to show help on a bare `untilgreen claude`.
    args.raw_argv = raw[1:]
    return int(handler(args))
