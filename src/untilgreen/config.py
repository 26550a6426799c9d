from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator

from untilgreen.constants import (
    AGENT_KINDS,
    DEFAULT_LOG_FORMAT,
    DEFAULT_LOG_LEVEL,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MAX_MINUTES,
    DEFAULT_MAX_TURNS,
    DEFAULT_VERIFY_SHELL,
    DEFAULT_VERIFY_TIMEOUT_SECONDS,
    LOG_FORMATS,
    LOG_LEVELS,
    WORKSPACE_CONFIG_DIR,
    WORKSPACE_CONFIG_FILE,
)
from untilgreen.models import (
    AgentVerify,
    CommandVerify,
    NoVerify,
    RunConfig,
    RunParsed,
    ValidationError,
    VerifySpec,
)


@dataclass
class RunInput:
    """Raw ``run`` options as parsed from the command line, before validation."""

    agent: str | None = None
    prompt: str = ""
    prompt_file: str | None = None
    verify_cmd: str | None = None
    verify_shell: str = ""
    verify_agent_prompt: str | None = None
    verify_agent_file: str | None = None
    max_iter: int | None = None
    max_mins: int | None = None
    max_turns: int | None = None
    session_id: str | None = None
    verify_timeout_sec: int | None = None
    log_path: str | None = None
    log_format: str | None = None
    log_level: str | None = None
    dangerous: bool = False
    state_file: str | None = None
    pass_through_args: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Workspace config file
# ---------------------------------------------------------------------------

_NON_NEGATIVE_INT: dict[str, Any] = {"type": "integer", "minimum": 0}

WORKSPACE_CONFIG_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "agent": {"enum": list(AGENT_KINDS)},
        "verify_shell": {"type": "string", "minLength": 1},
        "max_iterations": _NON_NEGATIVE_INT,
        "max_minutes": _NON_NEGATIVE_INT,
        "max_turns": _NON_NEGATIVE_INT,
        "verify_timeout": _NON_NEGATIVE_INT,
        "log_format": {"enum": list(LOG_FORMATS)},
        "log_level": {"enum": list(LOG_LEVELS)},
    },
}


def workspace_config_path(root: Path) -> Path:
    return root / WORKSPACE_CONFIG_DIR / WORKSPACE_CONFIG_FILE


def load_workspace_config(root: Path) -> dict[str, Any]:
    """Load ``.untilgreen/config.yaml`` under *root*; missing file means no defaults."""
    path = workspace_config_path(root)
    if not path.exists():
        return {}
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValidationError(f"{path} is not valid YAML: {exc}") from exc
    except OSError as exc:
        raise ValidationError(f"unable to read {path}: {exc}") from exc
    if loaded is None:
        return {}
    validator = Draft202012Validator(WORKSPACE_CONFIG_SCHEMA)
    errors = sorted(validator.iter_errors(loaded), key=lambda item: [str(part) for part in item.path])
    if errors:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error.path) or '<root>'}: {error.message}" for error in errors
        )
        raise ValidationError(f"{path} schema violation: {details}")
    return dict(loaded)


def apply_workspace_defaults(run_input: RunInput, workspace: dict[str, Any]) -> tuple[RunInput, bool, bool]:
    """Fill options the command line left unset from the workspace config.

    Returns the merged input and whether the iteration and minute limits are
    now set explicitly (by either source).
    """
    max_iter_explicit = run_input.max_iter is not None or "max_iterations" in workspace
    max_mins_explicit = run_input.max_mins is not None or "max_minutes" in workspace
    merged = dataclasses.replace(
        run_input,
        agent=run_input.agent or workspace.get("agent"),
        verify_shell=run_input.verify_shell or workspace.get("verify_shell", ""),
        max_iter=run_input.max_iter if run_input.max_iter is not None else workspace.get("max_iterations"),
        max_mins=run_input.max_mins if run_input.max_mins is not None else workspace.get("max_minutes"),
        max_turns=run_input.max_turns if run_input.max_turns is not None else workspace.get("max_turns"),
        verify_timeout_sec=(
            run_input.verify_timeout_sec
            if run_input.verify_timeout_sec is not None
            else workspace.get("verify_timeout")
        ),
        log_format=run_input.log_format or workspace.get("log_format"),
        log_level=run_input.log_level or workspace.get("log_level"),
    )
    return (merged, max_iter_explicit, max_mins_explicit)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _validation_issues(data: RunInput) -> list[str]:
    issues: list[str] = []
    if not data.agent:
        issues.append("--agent is required (or use untilgreen claude/codex)")
    elif data.agent not in AGENT_KINDS:
        issues.append(f"--agent must be one of {', '.join(AGENT_KINDS)}")
    if data.prompt and data.prompt_file:
        issues.append("inline prompt and --file are mutually exclusive")
    if not data.prompt and not data.prompt_file:
        issues.append("prompt is required (inline or --file)")
    if data.verify_cmd and (data.verify_agent_prompt or data.verify_agent_file):
        issues.append("--verify is mutually exclusive with --verify-agent/--verify-agent-file")
    if data.verify_agent_prompt and data.verify_agent_file:
        issues.append("--verify-agent and --verify-agent-file are mutually exclusive")
    for flag, value in (
        ("--max-iter", data.max_iter),
        ("--max-mins", data.max_mins),
        ("--max-turns", data.max_turns),
        ("--verify-timeout", data.verify_timeout_sec),
    ):
        if value is not None and value < 0:
            issues.append(f"{flag} must be >= 0")
    if data.log_format is not None and data.log_format not in LOG_FORMATS:
        issues.append(f"--log-format must be one of {', '.join(LOG_FORMATS)}")
    if data.log_level is not None and data.log_level not in LOG_LEVELS:
        issues.append(f"--log-level must be one of {', '.join(LOG_LEVELS)}")
    return issues


def _verify_spec(data: RunInput) -> VerifySpec:
    if data.verify_agent_prompt or data.verify_agent_file:
        return AgentVerify(prompt=data.verify_agent_prompt, prompt_file=data.verify_agent_file)
    if data.verify_cmd:
        return CommandVerify(command=data.verify_cmd, shell=data.verify_shell or DEFAULT_VERIFY_SHELL)
    return NoVerify()


def build_run_config(
    data: RunInput,
    *,
    log_explicit: bool = False,
    max_iter_explicit: bool | None = None,
    max_mins_explicit: bool | None = None,
) -> RunParsed:
    """Validate *data* into an immutable ``RunConfig``; raises ``ValidationError``."""
    issues = _validation_issues(data)
    if issues:
        raise ValidationError("; ".join(issues))

    config = RunConfig(
        agent=str(data.agent),
        prompt=data.prompt,
        prompt_file=data.prompt_file,
        verify=_verify_spec(data),
        max_iterations=DEFAULT_MAX_ITERATIONS if data.max_iter is None else data.max_iter,
        max_minutes=DEFAULT_MAX_MINUTES if data.max_mins is None else data.max_mins,
        max_turns=DEFAULT_MAX_TURNS if data.max_turns is None else data.max_turns,
        verify_timeout_sec=(
            DEFAULT_VERIFY_TIMEOUT_SECONDS if data.verify_timeout_sec is None else data.verify_timeout_sec
        ),
        log_path=data.log_path or "",
        log_format=data.log_format or DEFAULT_LOG_FORMAT,
        log_level=data.log_level or DEFAULT_LOG_LEVEL,
        pass_through_args=tuple(data.pass_through_args),
        dangerously_allow_all=data.dangerous,
    )
    return RunParsed(
        config=config,
        session_id=data.session_id or None,
        state_file=data.state_file or None,
        log_explicit=log_explicit,
        max_iter_explicit=data.max_iter is not None if max_iter_explicit is None else max_iter_explicit,
        max_mins_explicit=data.max_mins is not None if max_mins_explicit is None else max_mins_explicit,
    )


def apply_unverified_limits(parsed: RunParsed) -> RunConfig:
    """An unverified loop with no explicit limits runs unbounded."""
    cfg = parsed.config
    if cfg.verify_mode != "none":
        return cfg
    if parsed.max_iter_explicit or parsed.max_mins_explicit:
        return cfg
    return dataclasses.replace(cfg, max_iterations=0, max_minutes=0)


def resolve_prompt(prompt: str | None, prompt_file: str | None) -> str:
    """Return inline *prompt* when non-blank, else the contents of *prompt_file*."""
    if prompt and prompt.strip():
        return prompt
    if not prompt_file:
        raise ValidationError("prompt is required")
    return Path(prompt_file).expanduser().read_text(encoding="utf-8")
