"""Human-facing progress lines for the loop, mirrored into the run log."""

from __future__ import annotations

import logging
import sys
from typing import TextIO

from untilgreen.models import VerifyResult

logger = logging.getLogger(__name__)

RESET = "\x1b[0m"
DIM = "\x1b[2m"
BOLD = "\x1b[1m"
RED = "\x1b[31m"
GREEN = "\x1b[32m"
YELLOW = "\x1b[33m"
CYAN = "\x1b[36m"


def supports_color(stream: TextIO) -> bool:
    isatty = getattr(stream, "isatty", None)
    try:
        return bool(isatty and isatty())
    except ValueError:
        return False


class ConsoleOutput:
    def __init__(self, stream: TextIO | None = None, *, log_path: str = "") -> None:
        self.stream = stream if stream is not None else sys.stdout
        self.log_path = log_path
        self._color = supports_color(self.stream)

    def _c(self, code: str, text: str) -> str:
        return f"{code}{text}{RESET}" if self._color else text

    def write(self, text: str) -> None:
        self.stream.write(text)
        self.stream.flush()

    def agent_exit(self, agent: str, error: BaseException | None = None) -> None:
        if error is not None:
            self.write(f"\n{self._c(RED, 'error')} {self._c(DIM, f'[{agent}]')} {error}\n")
            if self.log_path:
                self.write(f"{self._c(DIM, f'log: {self.log_path}')}\n")
            logger.info(
                "agent_exit",
                extra={"fields": {"agent": agent, "error": str(error), "log_path": self.log_path or None}},
            )
            return
        self.write(f"\n{self._c(DIM, f'exit [{agent}]')}\n")
        logger.info("agent_exit", extra={"fields": {"agent": agent}})

    def verification(self, status: str, result: VerifyResult) -> None:
        header = f"{self._c(GREEN if status == 'pass' else RED, f'verification:{status}')} {self._c(DIM, '[untilgreen]')}"
        lines: list[str] = []
        if result.output_tail:
            lines.append(result.output_tail)
        if result.timed_out:
            lines.append("(timed out)")
        if lines:
            body = "\n".join(f"  {line}" for line in lines)
            self.write(f"{header}\n{self._c(DIM, body)}\n\n")
        else:
            self.write(f"{header}\n\n")
        logger.info(
            "verification",
            extra={
                "fields": {
                    "status": status,
                    "exit_code": result.exit_code,
                    "timed_out": result.timed_out,
                    "output": result.output_tail,
                }
            },
        )

    def iteration(self, iteration: int, elapsed: str, checkpoint: str = "") -> None:
        parts = [f"iteration {iteration}", elapsed]
        if checkpoint:
            parts.append(checkpoint)
        self.write(f"{self._c(DIM, ' · '.join(parts))}\n\n")
        logger.info(
            "iteration_complete",
            extra={"fields": {"iteration": iteration, "elapsed": elapsed, "checkpoint": checkpoint or None}},
        )

    def session_start(self, session_id: str, agent: str, verify_mode: str) -> None:
        self.write(f"{self._c(CYAN, 'session')} {self._c(DIM, f'[{agent}]')} {self._c(DIM, session_id[:8])}\n")
        logger.info(
            "session_start",
            extra={"fields": {"session_id": session_id, "agent": agent, "verify_mode": verify_mode}},
        )

    def session_complete(self, status: str, iterations: int, elapsed: str) -> None:
        summary = f"{iterations} iterations · {elapsed}"
        self.write(f"{self._c(GREEN if status == 'success' else YELLOW, status)} {self._c(DIM, summary)}\n\n")
        logger.info(
            "session_complete",
            extra={"fields": {"status": status, "iterations": iterations, "elapsed": elapsed}},
        )
