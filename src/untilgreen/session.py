"""Session state stores and the create-or-resume rule for a run."""

from __future__ import annotations

import copy
import logging
import uuid
from pathlib import Path
from typing import Any, Protocol

from jsonschema import Draft202012Validator

from untilgreen.constants import AGENT_KINDS, PENDING_SESSION_ID
from untilgreen.models import (
    ClaudeMeta,
    CodexMeta,
    SessionMismatch,
    SessionState,
    SessionStoreError,
)
from untilgreen.utils import _read_json, _utc_now, _write_json

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    def load(self) -> SessionState | None: ...

    def save(self, state: SessionState) -> None: ...


def _stamped(state: SessionState) -> SessionState:
    stored = copy.deepcopy(state)
    now = _utc_now()
    if not stored.created_at:
        stored.created_at = now
    stored.updated_at = now
    return stored


class MemorySessionStore:
    """Holds the session for one process; callers always receive copies."""

    def __init__(self, state: SessionState | None = None) -> None:
        self._current = copy.deepcopy(state)

    def load(self) -> SessionState | None:
        return copy.deepcopy(self._current)

    def save(self, state: SessionState) -> None:
        self._current = _stamped(state)


_AGENT_META_SCHEMA: dict[str, Any] = {
    "type": ["object", "null"],
    "additionalProperties": {"type": "string"},
}

SESSION_STATE_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["session_id", "agent"],
    "properties": {
        "session_id": {"type": "string", "minLength": 1},
        "agent": {"enum": list(AGENT_KINDS)},
        "cwd": {"type": "string"},
        "created_at": {"type": "string"},
        "updated_at": {"type": "string"},
        "claude": _AGENT_META_SCHEMA,
        "codex": _AGENT_META_SCHEMA,
    },
}


def _format_error_path(path: Any) -> str:
    parts = [str(part) for part in path]
    return ".".join(parts) if parts else "<root>"


def _validate_session_payload(payload: dict[str, Any], *, path: Path) -> None:
    validator = Draft202012Validator(SESSION_STATE_SCHEMA)
    failures = [
        f"{_format_error_path(error.path)}: {error.message}"
        for error in sorted(validator.iter_errors(payload), key=lambda item: _format_error_path(item.path))
    ]
    if failures:
        raise SessionStoreError(f"invalid state file {path}: {'; '.join(failures)}")


class JsonSessionStore:
    """Session persisted as one JSON document, so a later run can resume it."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> SessionState | None:
        if not self.path.exists():
            return None
        payload = _read_json(self.path)
        _validate_session_payload(payload, path=self.path)
        return SessionState.from_payload(payload)

    def save(self, state: SessionState) -> None:
        stored = _stamped(state)
        try:
            _write_json(self.path, stored.to_payload())
        except OSError as exc:
            raise SessionStoreError(f"unable to write state file {self.path}: {exc}") from exc


def new_session_id(agent: str) -> str:
    if agent == "codex":
        return PENDING_SESSION_ID
    return str(uuid.uuid4())


def ensure_session(
    store: SessionStore,
    *,
    agent: str,
    cwd: str,
    override_id: str | None = None,
) -> tuple[SessionState, bool]:
    """Load the stored session for *agent* or create and save a new one.

    Returns ``(session, created)``. A stored session for another agent kind
    is replaced; a stored session whose id differs from *override_id* raises
    ``SessionMismatch``.
    """
    loaded = store.load()
    if loaded is not None and loaded.agent == agent:
        if override_id and loaded.session_id != override_id:
            raise SessionMismatch(f"session id mismatch ({loaded.session_id} vs {override_id})")
        if not loaded.cwd:
            loaded.cwd = cwd
            store.save(loaded)
        return (loaded, False)

    if loaded is not None:
        logger.info(
            "session_replaced",
            extra={"fields": {"previous_agent": loaded.agent, "previous_session_id": loaded.session_id}},
        )
    session = SessionState(
        session_id=override_id or new_session_id(agent),
        agent=agent,
        cwd=cwd,
        claude=ClaudeMeta() if agent == "claude" else None,
        codex=CodexMeta() if agent == "codex" else None,
    )
    store.save(session)
    return (session, True)
