"""External agent invocation.

The agent is a command-line program that receives a natural-language
instruction as its last argument. Success is its exit status; stderr
carries the failure text used for classification.
"""

from __future__ import annotations

import logging
import subprocess
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

# Exit code reported when the process had to be killed
TIMEOUT_EXIT_CODE = 124


@dataclass
class AgentResult:
    """Outcome of one agent invocation."""

    success: bool
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    duration_seconds: float = 0.0

    @property
    def error_message(self) -> str:
        """Failure text for classification (empty on success)."""
        if self.success:
            return ""
        if self.timed_out:
            return f"Agent timed out after {self.duration_seconds:.0f}s"
        text = self.stderr.strip() or self.stdout.strip()
        return text or f"Agent exited with code {self.exit_code}"


class AgentRunner:
    """Runs the agent command with a hard timeout."""

    def __init__(
        self,
        command: Sequence[str],
        timeout: float | None = 3600.0,
        cwd: Path | None = None,
    ):
        if not command:
            raise ValueError("Agent command must not be empty")
        self.command = list(command)
        self.timeout = timeout
        self.cwd = cwd

    def run(self, instruction: str) -> AgentResult:
        """Invoke the agent with *instruction* and wait for it to exit."""
        argv = [*self.command, instruction]
        logger.info("Invoking agent: %s", " ".join(self.command))
        started = time.monotonic()

        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                cwd=str(self.cwd) if self.cwd else None,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            duration = time.monotonic() - started
            logger.error("Agent timed out after %.0fs", duration)
            return AgentResult(
                success=False,
                exit_code=TIMEOUT_EXIT_CODE,
                stdout=_decode(e.stdout),
                stderr=_decode(e.stderr),
                timed_out=True,
                duration_seconds=duration,
            )
        except FileNotFoundError:
            logger.error("Agent executable not found: %s", self.command[0])
            return AgentResult(
                success=False,
                exit_code=127,
                stderr=f"{self.command[0]}: command not found",
                duration_seconds=time.monotonic() - started,
            )

        duration = time.monotonic() - started
        result = AgentResult(
            success=proc.returncode == 0,
            exit_code=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
            duration_seconds=duration,
        )
        if result.success:
            logger.info("Agent finished in %.1fs", duration)
        else:
            logger.warning("Agent failed with exit code %d", proc.returncode)
        return result


def _decode(output: str | bytes | None) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return output
