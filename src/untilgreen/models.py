"""untilgreen data models: exceptions and dataclasses."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Union

from untilgreen.constants import (
    DEFAULT_LOG_FORMAT,
    DEFAULT_LOG_LEVEL,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MAX_MINUTES,
    DEFAULT_MAX_TURNS,
    DEFAULT_VERIFY_SHELL,
    DEFAULT_VERIFY_TIMEOUT_SECONDS,
    VERIFY_DISABLED_MESSAGE,
    VERIFY_MODES,
)


def _coerce_int(value: Any, *, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    return default


def _coerce_bool(value: Any, *, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    return default


def _coerce_str(value: Any, *, default: str = "") -> str:
    if isinstance(value, str):
        return value
    return default


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class UntilgreenError(RuntimeError):
    """Base class for every error raised by untilgreen."""


class ValidationError(UntilgreenError):
    """Raised when run configuration is invalid; the loop never starts."""


class SessionMismatch(UntilgreenError):
    """Raised when a requested session id conflicts with the stored one."""


class SessionNotInitialized(UntilgreenError):
    """Raised when the loop starts without an established session."""


class SessionStoreError(UntilgreenError):
    """Raised when persisted session state cannot be read or written."""


class AgentRunError(UntilgreenError):
    """Raised when one agent turn fails to execute."""


class AgentErrorLimitReached(UntilgreenError):
    def __init__(self, streak: int, last_error: BaseException) -> None:
        super().__init__(f"agent error limit reached ({streak}): {last_error}")
        self.streak = streak
        self.last_error = last_error


class VerifyExecutionError(UntilgreenError):
    """Raised when verification infrastructure fails (not a failing verdict)."""


class MarkerNotFound(UntilgreenError):
    """Raised when judge output carries neither verdict marker."""


class CheckpointError(UntilgreenError):
    """Raised when a checkpoint cannot be written or read."""


class CheckpointNotFound(CheckpointError):
    """Raised when a checkpoint ref does not exist."""


class AmbiguousPrefix(UntilgreenError):
    """Raised when a session prefix matches more than one session."""


class NotFound(UntilgreenError):
    """Raised when a session prefix matches nothing."""


# ---------------------------------------------------------------------------
# Verify strategies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NoVerify:
    mode: ClassVar[str] = "none"


@dataclass(frozen=True)
class CommandVerify:
    command: str
    shell: str = DEFAULT_VERIFY_SHELL
    mode: ClassVar[str] = "command"


@dataclass(frozen=True)
class AgentVerify:
    prompt: str | None = None
    prompt_file: str | None = None
    mode: ClassVar[str] = "agent"


VerifySpec = Union[NoVerify, CommandVerify, AgentVerify]


# ---------------------------------------------------------------------------
# Run configuration and results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunConfig:
    agent: str
    prompt: str = ""
    prompt_file: str | None = None
    verify: VerifySpec = field(default_factory=NoVerify)
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    max_minutes: int = DEFAULT_MAX_MINUTES
    max_turns: int = DEFAULT_MAX_TURNS
    verify_timeout_sec: int = DEFAULT_VERIFY_TIMEOUT_SECONDS
    resume_session: bool = False
    resume_verify_session: bool = False
    log_path: str = ""
    log_format: str = DEFAULT_LOG_FORMAT
    log_level: str = DEFAULT_LOG_LEVEL
    pass_through_args: tuple[str, ...] = ()
    dangerously_allow_all: bool = False

    @property
    def verify_mode(self) -> str:
        return self.verify.mode


@dataclass(frozen=True)
class RunParsed:
    """Validated run configuration plus the flags that shaped it."""

    config: RunConfig
    session_id: str | None
    state_file: str | None
    log_explicit: bool
    max_iter_explicit: bool
    max_mins_explicit: bool


@dataclass(frozen=True)
class AgentResult:
    exit_code: int


@dataclass(frozen=True)
class VerifyResult:
    exit_code: int
    timed_out: bool
    output_tail: str

    @property
    def passed(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @classmethod
    def disabled(cls) -> VerifyResult:
        return cls(exit_code=1, timed_out=False, output_tail=VERIFY_DISABLED_MESSAGE)


@dataclass(frozen=True)
class RunResult:
    status: str  # "success" | "limit"
    iterations: int
    elapsed_ms: int
    last_verify_exit_code: int
    last_checkpoint_ref: str


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@dataclass
class ClaudeMeta:
    transcript_path: str = ""
    verify_session_id: str = ""
    verify_transcript_path: str = ""


@dataclass
class CodexMeta:
    session_file: str = ""
    verify_session_id: str = ""
    verify_session_file: str = ""


@dataclass
class SessionState:
    session_id: str
    agent: str
    cwd: str = ""
    created_at: str = ""
    updated_at: str = ""
    claude: ClaudeMeta | None = None
    codex: CodexMeta | None = None

    def agent_meta(self) -> ClaudeMeta | CodexMeta:
        """Return this session's agent metadata, creating an empty record if absent."""
        if self.agent == "codex":
            if self.codex is None:
                self.codex = CodexMeta()
            return self.codex
        if self.claude is None:
            self.claude = ClaudeMeta()
        return self.claude

    def to_payload(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "agent": self.agent,
            "cwd": self.cwd,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "claude": None
            if self.claude is None
            else {
                "transcript_path": self.claude.transcript_path,
                "verify_session_id": self.claude.verify_session_id,
                "verify_transcript_path": self.claude.verify_transcript_path,
            },
            "codex": None
            if self.codex is None
            else {
                "session_file": self.codex.session_file,
                "verify_session_id": self.codex.verify_session_id,
                "verify_session_file": self.codex.verify_session_file,
            },
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> SessionState:
        claude_raw = payload.get("claude")
        codex_raw = payload.get("codex")
        claude = None
        if isinstance(claude_raw, dict):
            claude = ClaudeMeta(
                transcript_path=_coerce_str(claude_raw.get("transcript_path")),
                verify_session_id=_coerce_str(claude_raw.get("verify_session_id")),
                verify_transcript_path=_coerce_str(claude_raw.get("verify_transcript_path")),
            )
        codex = None
        if isinstance(codex_raw, dict):
            codex = CodexMeta(
                session_file=_coerce_str(codex_raw.get("session_file")),
                verify_session_id=_coerce_str(codex_raw.get("verify_session_id")),
                verify_session_file=_coerce_str(codex_raw.get("verify_session_file")),
            )
        return cls(
            session_id=_coerce_str(payload.get("session_id")),
            agent=_coerce_str(payload.get("agent")),
            cwd=_coerce_str(payload.get("cwd")),
            created_at=_coerce_str(payload.get("created_at")),
            updated_at=_coerce_str(payload.get("updated_at")),
            claude=claude,
            codex=codex,
        )


# ---------------------------------------------------------------------------
# Checkpoints
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CheckpointMeta:
    """Verify metadata embedded in a checkpoint commit message."""

    session_id: str = ""
    iteration: int = 0
    verify_exit_code: int = 0
    verify_timed_out: bool = False
    verify_mode: str = ""
    verify_output: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "iteration": self.iteration,
            "verify_exit_code": self.verify_exit_code,
            "verify_timed_out": self.verify_timed_out,
            "verify_mode": self.verify_mode,
            "verify_output": self.verify_output,
        }

    @classmethod
    def from_payload(cls, payload: Any) -> CheckpointMeta:
        if not isinstance(payload, dict):
            return cls()
        mode = _coerce_str(payload.get("verify_mode"))
        return cls(
            session_id=_coerce_str(payload.get("session_id")),
            iteration=_coerce_int(payload.get("iteration"), default=0),
            verify_exit_code=_coerce_int(payload.get("verify_exit_code"), default=0),
            verify_timed_out=_coerce_bool(payload.get("verify_timed_out"), default=False),
            verify_mode=mode if mode in VERIFY_MODES else "",
            verify_output=_coerce_str(payload.get("verify_output")),
        )


@dataclass(frozen=True)
class CheckpointRef:
    ref: str
    short_sha: str
    iteration: int
    timestamp: str
    session_id: str
    verify_exit_code: int
    verify_timed_out: bool
    verify_mode: str
    verify_output: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "ref": self.ref,
            "short_sha": self.short_sha,
            "iteration": self.iteration,
            "timestamp": self.timestamp,
            "session_id": self.session_id,
            "verify_exit_code": self.verify_exit_code,
            "verify_timed_out": self.verify_timed_out,
            "verify_mode": self.verify_mode,
            "verify_output": self.verify_output,
        }


@dataclass(frozen=True)
class WrittenCheckpoint:
    ref: str
    short_sha: str


@dataclass(frozen=True)
class SessionSummary:
    session_id: str
    count: int
    last_timestamp: str
