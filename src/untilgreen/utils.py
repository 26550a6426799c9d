"""untilgreen utility functions shared across modules."""

from __future__ import annotations

import json
import os
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from untilgreen.constants import (
    ANSI_ESCAPE_PATTERN,
    GIT_IDENTITY_EMAIL,
    GIT_IDENTITY_NAME,
    HOME_ENV_VAR,
    SLUG_MAX_LENGTH,
)
from untilgreen.models import SessionStoreError


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    return (
        datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    )


def _parse_utc(value: str) -> datetime | None:
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# JSON I/O helpers
# ---------------------------------------------------------------------------


def _write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")


def _read_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise SessionStoreError(f"state file not found: {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise SessionStoreError(f"state file is not valid JSON: {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise SessionStoreError(f"state file must contain an object: {path}")
    return payload


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def _compact_log_text(text: str, limit: int = 240) -> str:
    compact = " ".join(text.strip().split())
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _tail_text(text: str, max_bytes: int) -> str:
    """Keep the last *max_bytes* bytes of *text*, discarding the head."""
    if max_bytes <= 0:
        return text
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    return encoded[-max_bytes:].decode("utf-8", errors="ignore")


def _strip_ansi(text: str) -> str:
    return ANSI_ESCAPE_PATTERN.sub("", text)


def slugify(text: str) -> str:
    out: list[str] = []
    prev_dash = False
    for char in text.strip().lower():
        if ("a" <= char <= "z") or ("0" <= char <= "9"):
            out.append(char)
            prev_dash = False
            continue
        if not prev_dash:
            out.append("-")
            prev_dash = True
    slug = "".join(out).strip("-")
    if not slug:
        slug = "prompt"
    return slug[:SLUG_MAX_LENGTH]


def log_label_for_run(slug: str, *, now: datetime | None = None) -> str:
    moment = now or datetime.now(timezone.utc)
    stamp = moment.strftime("%Y%m%d-%H%M%S") + f"-{moment.microsecond // 1000:03d}"
    if not slug:
        return stamp
    return f"{stamp}-{slug}"


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def home_dir() -> Path:
    override = os.environ.get(HOME_ENV_VAR, "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".untilgreen"


def logs_dir() -> Path:
    return home_dir() / "logs"


def default_log_path(session_id: str, label: str) -> Path:
    name = f"{session_id}-{label}" if label else session_id
    return logs_dir() / f"{name}.log"


def pending_log_path(label: str) -> Path:
    name = f"pending-{label}" if label else "pending"
    return logs_dir() / f"{name}.log"


def resolve_path(root: Path, value: str) -> Path:
    candidate = Path(value).expanduser()
    if candidate.is_absolute():
        return candidate
    return root / candidate


# ---------------------------------------------------------------------------
# Git helpers
# ---------------------------------------------------------------------------


def _with_git_identity(env: dict[str, str] | None = None) -> dict[str, str]:
    merged = dict(os.environ if env is None else env)
    merged.setdefault("GIT_AUTHOR_NAME", GIT_IDENTITY_NAME)
    merged.setdefault("GIT_AUTHOR_EMAIL", GIT_IDENTITY_EMAIL)
    merged.setdefault("GIT_COMMITTER_NAME", GIT_IDENTITY_NAME)
    merged.setdefault("GIT_COMMITTER_EMAIL", GIT_IDENTITY_EMAIL)
    return merged


def _run_git(repo_root: Path, args: list[str]) -> subprocess.CompletedProcess[str]:
    command = ["git", "-C", str(repo_root), *args]
    try:
        return subprocess.run(
            command,
            text=True,
            capture_output=True,
            check=False,
            env=_with_git_identity(),
        )
    except FileNotFoundError as exc:
        return subprocess.CompletedProcess(command, 127, "", f"git not found: {exc}")
    except OSError as exc:
        return subprocess.CompletedProcess(command, 1, "", str(exc))


def resolve_repo_root(cwd: Path | None = None) -> Path | None:
    check = _run_git(cwd or Path.cwd(), ["rev-parse", "--show-toplevel"])
    root = check.stdout.strip()
    if check.returncode != 0 or not root:
        return None
    return Path(root)


def resolve_workspace_root(cwd: Path | None = None) -> tuple[Path, bool]:
    """Return ``(root, in_git)``: the repo toplevel, or *cwd* outside git."""
    repo_root = resolve_repo_root(cwd)
    if repo_root is not None:
        return (repo_root, True)
    return ((cwd or Path.cwd()).resolve(), False)
