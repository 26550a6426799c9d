"""untilgreen constants: agent kinds, limits and defaults."""

from __future__ import annotations

import re

VERSION = "0.1.0"

AGENT_KINDS = ("claude", "codex")
VERIFY_MODES = ("none", "command", "agent")
LOG_FORMATS = ("text", "json")
LOG_LEVELS = ("debug", "info", "warn", "error")

# Codex allocates its thread id on the first turn; until then the session
# carries this placeholder.
PENDING_SESSION_ID = "pending"

DEFAULT_MAX_ITERATIONS = 10
DEFAULT_MAX_MINUTES = 30
DEFAULT_MAX_TURNS = 0
DEFAULT_VERIFY_TIMEOUT_SECONDS = 0
DEFAULT_VERIFY_SHELL = "/bin/bash"
DEFAULT_LOG_FORMAT = "text"
DEFAULT_LOG_LEVEL = "info"

MAX_AGENT_ERROR_STREAK = 3
VERIFY_OUTPUT_TAIL_BYTES = 4096
TIMED_OUT_EXIT_CODE = 1

VERIFY_DISABLED_MESSAGE = "verification disabled"
PASS_MARKER = "UNTILGREEN_PASS"
FAIL_MARKER = "UNTILGREEN_FAIL"

CHECKPOINT_NAMESPACE = "untilgreen"
CHECKPOINT_REF_PREFIX = f"refs/{CHECKPOINT_NAMESPACE}/"
CHECKPOINT_MESSAGE_TITLE = "untilgreen checkpoint"
CHECKPOINT_ITERATION_PAD = 4
SHORT_SHA_LENGTH = 7
GIT_IDENTITY_NAME = "untilgreen"
GIT_IDENTITY_EMAIL = "untilgreen@local"

HOME_ENV_VAR = "UNTILGREEN_HOME"
WORKSPACE_CONFIG_DIR = ".untilgreen"
WORKSPACE_CONFIG_FILE = "config.yaml"

SLUG_MAX_LENGTH = 100
ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m")
