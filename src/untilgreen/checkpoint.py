"""Git checkpoint refs: one immutable commit per loop iteration.

Each checkpoint is a commit of the current ``HEAD`` tree, parented on
``HEAD``, stored under ``refs/untilgreen/<session>/iter-NNNN``. The commit
message carries the iteration's verify metadata as one JSON line so that
``checkpoints list`` can report it without any side state.
"""

from __future__ import annotations

import json
import logging
import subprocess
import sys
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import TextIO

from untilgreen.constants import (
    CHECKPOINT_ITERATION_PAD,
    CHECKPOINT_MESSAGE_TITLE,
    CHECKPOINT_NAMESPACE,
    CHECKPOINT_REF_PREFIX,
    SHORT_SHA_LENGTH,
)
from untilgreen.models import (
    AmbiguousPrefix,
    CheckpointError,
    CheckpointMeta,
    CheckpointNotFound,
    CheckpointRef,
    NotFound,
    SessionSummary,
    VerifyResult,
    WrittenCheckpoint,
)
from untilgreen.utils import _parse_utc, _run_git, _with_git_identity

logger = logging.getLogger(__name__)


def checkpoint_ref_name(session_id: str, iteration: int) -> str:
    return f"{CHECKPOINT_REF_PREFIX}{session_id}/iter-{iteration:0{CHECKPOINT_ITERATION_PAD}d}"


def _short_sha(sha: str) -> str:
    return sha[:SHORT_SHA_LENGTH]


def _parse_iteration(ref: str) -> int:
    last = ref.rsplit("/", 1)[-1]
    if not last.startswith("iter-"):
        return 0
    digits = last[len("iter-") :]
    return int(digits) if digits.isdigit() else 0


def _session_from_ref(ref: str) -> str:
    parts = ref.split("/")
    for index in range(len(parts) - 2):
        if parts[index] == CHECKPOINT_NAMESPACE:
            return parts[index + 1]
    return ""


def _checkpoint_message(meta: CheckpointMeta) -> str:
    return f"{CHECKPOINT_MESSAGE_TITLE}\n{json.dumps(meta.to_payload())}\n"


def _parse_meta(message: str) -> CheckpointMeta:
    """First JSON object line of *message* wins; anything else gives defaults."""
    for line in message.splitlines():
        text = line.strip()
        if not text.startswith("{"):
            continue
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return CheckpointMeta.from_payload(payload)
    return CheckpointMeta()


class Checkpointer:
    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root

    def _git(self, args: list[str]) -> str:
        result = _run_git(self.repo_root, args)
        if result.returncode != 0:
            detail = (result.stderr or "").strip()
            message = f"git {' '.join(args[:2])} failed"
            raise CheckpointError(f"{message}: {detail}" if detail else message)
        return result.stdout

    def _head(self) -> tuple[str, str]:
        try:
            head = self._git(["rev-parse", "HEAD"]).strip()
            tree = self._git(["show", "-s", "--format=%T", "HEAD"]).strip()
        except CheckpointError as exc:
            raise CheckpointError(f"repository has no HEAD commit: {exc}") from exc
        if not head:
            raise CheckpointError("empty HEAD sha")
        if not tree:
            raise CheckpointError("empty HEAD tree")
        return (head, tree)

    def write(
        self,
        iteration: int,
        session_id: str,
        verify: VerifyResult,
        verify_mode: str,
    ) -> WrittenCheckpoint:
        if not session_id:
            raise CheckpointError("session id is required")
        ref = checkpoint_ref_name(session_id, iteration)
        head, tree = self._head()
        meta = CheckpointMeta(
            session_id=session_id,
            iteration=iteration,
            verify_exit_code=verify.exit_code,
            verify_timed_out=verify.timed_out,
            verify_mode=verify_mode,
            verify_output=verify.output_tail,
        )
        sha = self._git(["commit-tree", tree, "-p", head, "-m", _checkpoint_message(meta)]).strip()
        if not sha:
            raise CheckpointError("git commit-tree returned an empty sha")
        # Empty old value: git refuses to move a ref that already exists.
        try:
            self._git(["update-ref", ref, sha, ""])
        except CheckpointError as exc:
            if _run_git(self.repo_root, ["show-ref", "--verify", "--quiet", ref]).returncode == 0:
                raise CheckpointError(f"checkpoint already exists: {ref}") from exc
            raise
        logger.debug("checkpoint_written", extra={"fields": {"ref": ref, "sha": sha}})
        return WrittenCheckpoint(ref=ref, short_sha=_short_sha(sha))

    def _describe(self, sha: str, ref: str) -> CheckpointRef:
        timestamp_result = _run_git(self.repo_root, ["show", "-s", "--format=%cI", ref])
        timestamp = timestamp_result.stdout.strip() if timestamp_result.returncode == 0 else ""
        message_result = _run_git(self.repo_root, ["show", "-s", "--format=%B", ref])
        if message_result.returncode == 0:
            meta = _parse_meta(message_result.stdout)
        else:
            logger.warning("checkpoint_meta_unreadable", extra={"fields": {"ref": ref}})
            meta = CheckpointMeta()
        return CheckpointRef(
            ref=ref,
            short_sha=_short_sha(sha),
            iteration=_parse_iteration(ref),
            timestamp=timestamp,
            session_id=meta.session_id or _session_from_ref(ref),
            verify_exit_code=meta.verify_exit_code,
            verify_timed_out=meta.verify_timed_out,
            verify_mode=meta.verify_mode,
            verify_output=meta.verify_output,
        )

    def list(self, session_id: str | None = None) -> list[CheckpointRef]:
        result = _run_git(self.repo_root, ["show-ref"])
        # show-ref exits 1 when the repository has no refs at all.
        if result.returncode == 1 and not result.stdout.strip():
            return []
        if result.returncode != 0:
            raise CheckpointError(f"git show-ref failed: {result.stderr.strip()}")
        prefix = f"{CHECKPOINT_REF_PREFIX}{session_id}/" if session_id else CHECKPOINT_REF_PREFIX
        refs: list[CheckpointRef] = []
        for line in result.stdout.splitlines():
            sha, _, ref = line.strip().partition(" ")
            if not sha or not ref.startswith(prefix):
                continue
            refs.append(self._describe(sha, ref))
        refs.sort(key=lambda item: (item.session_id, item.iteration))
        return refs

    def last_iteration(self, session_id: str) -> int:
        """Highest checkpointed iteration for *session_id*, or 0."""
        return max((ref.iteration for ref in self.list(session_id)), default=0)

    def show(self, ref_or_iter: str) -> CheckpointRef:
        ref = ref_or_iter if ref_or_iter.startswith("refs/") else f"{CHECKPOINT_REF_PREFIX}{ref_or_iter}"
        result = _run_git(self.repo_root, ["show-ref", "--verify", ref])
        if result.returncode != 0:
            raise CheckpointNotFound(f"checkpoint not found: {ref}")
        sha, _, full_ref = result.stdout.strip().partition(" ")
        if not sha or not full_ref:
            raise CheckpointError(f"unexpected show-ref output for {ref}")
        return self._describe(sha, full_ref)

    def use(self, ref: str, *, stdout: TextIO | None = None, stderr: TextIO | None = None) -> None:
        """Check out *ref* in the repository (detached HEAD)."""
        try:
            result = subprocess.run(
                ["git", "-C", str(self.repo_root), "checkout", ref],
                text=True,
                capture_output=True,
                check=False,
                env=_with_git_identity(),
            )
        except OSError as exc:
            raise CheckpointError(f"unable to run git checkout: {exc}") from exc
        (stdout or sys.stdout).write(result.stdout)
        (stderr or sys.stderr).write(result.stderr)
        if result.returncode != 0:
            raise CheckpointError(f"git checkout {ref} failed")


# ---------------------------------------------------------------------------
# Session grouping and ref resolution
# ---------------------------------------------------------------------------


def collect_sessions(refs: Sequence[CheckpointRef]) -> list[SessionSummary]:
    """Group sorted *refs* by session with a count and the newest timestamp."""
    grouped: dict[str, tuple[int, datetime | None, str]] = {}
    for ref in refs:
        count, newest, newest_raw = grouped.get(ref.session_id, (0, None, ""))
        parsed = _parse_utc(ref.timestamp)
        if parsed is not None and (newest is None or parsed > newest):
            newest, newest_raw = parsed, ref.timestamp
        grouped[ref.session_id] = (count + 1, newest, newest_raw)
    return [
        SessionSummary(session_id=session_id, count=count, last_timestamp=raw)
        for session_id, (count, _newest, raw) in grouped.items()
    ]


def resolve_session_prefix(prefix: str, session_ids: Sequence[str]) -> str:
    if not prefix:
        raise NotFound("session id is required")
    matches = [session_id for session_id in session_ids if session_id.startswith(prefix)]
    if not matches:
        raise NotFound(f"no session matches prefix: {prefix}")
    if len(matches) > 1:
        raise AmbiguousPrefix(f"session prefix is ambiguous: {prefix}")
    return matches[0]


def resolve_checkpoint_ref(value: str, session_id: str | None) -> str:
    """Turn a full ref, ``<session>/iter-NNNN`` or a bare iteration into a ref."""
    if value.startswith("refs/"):
        return value
    if "/" in value:
        return f"{CHECKPOINT_REF_PREFIX}{value}"
    if not session_id:
        raise NotFound("session id is required for bare iteration ref")
    return f"{CHECKPOINT_REF_PREFIX}{session_id}/iter-{value.zfill(CHECKPOINT_ITERATION_PAD)}"


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def format_full_metadata(ref: CheckpointRef) -> str:
    verify_exit = str(ref.verify_exit_code) if ref.verify_mode else "-"
    return (
        f"iter: {ref.iteration:0{CHECKPOINT_ITERATION_PAD}d}\n"
        f"sha: {ref.short_sha}\n"
        f"timestamp: {ref.timestamp or '-'}\n"
        f"session: {ref.session_id or '-'}\n"
        f"verify_exit: {verify_exit}\n"
        f"verify_mode: {ref.verify_mode or '-'}\n"
        f"verify_output: {ref.verify_output or '-'}\n"
        f"ref: {ref.ref}\n"
    )


def format_relative_time(then: datetime | None, now: datetime) -> str:
    if then is None:
        return "-"
    seconds = max(0, int((now - then).total_seconds()))
    if seconds < 30:
        return "just now"
    if seconds < 60:
        return f"{seconds}s ago"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    days = hours // 24
    if days < 7:
        return f"{days}d ago"
    return f"{days // 7}w ago"


def format_short_date(then: datetime | None) -> str:
    if then is None:
        return "-"
    return then.astimezone().strftime("%b %d %H:%M")
