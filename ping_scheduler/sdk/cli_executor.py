"""
Command-line ping executor.

Runs ``claude -p <prompt> --model <model> --max-turns 1`` as a subprocess.
"""

import asyncio
import logging
import os
import tempfile
import time
from datetime import datetime
from typing import Dict, Optional

from ..core.outcome import PingAttemptOutcome

logger = logging.getLogger(__name__)

CLI_PING_TIMEOUT_SECONDS = 30.0

# Prepended so the claude launcher can find node and friends when started
# from a minimal environment (launchd, cron, systemd user units).
EXTRA_PATH_ENTRIES = ("/usr/local/bin", "/opt/homebrew/bin", "/usr/bin", "/bin")


def build_command(claude_path: str, prompt: str, model: str) -> list:
    return [claude_path, "-p", prompt, "--model", model, "--max-turns", "1"]


def build_environment(base: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    env = dict(os.environ if base is None else base)
    existing = env.get("PATH", "")
    env["PATH"] = ":".join(EXTRA_PATH_ENTRIES + ((existing,) if existing else ()))
    return env


class ClaudeCliExecutor:
    """Ping executor backed by the ``claude`` command line."""

    def __init__(self, claude_path: str, timeout: float = CLI_PING_TIMEOUT_SECONDS):
        """Initialize the executor.

        Args:
            claude_path: Path to the claude executable
            timeout: Seconds before the subprocess is killed

        Raises:
            ValueError: If claude_path is empty
        """
        if not claude_path or not claude_path.strip():
            raise ValueError("claude_path is required and cannot be empty")
        self.claude_path = claude_path
        self.timeout = timeout

    async def execute(self, prompt: str, model: str) -> PingAttemptOutcome:
        args = build_command(self.claude_path, prompt, model)
        command = " ".join(args)
        started_at = datetime.now()
        start = time.monotonic()

        def elapsed() -> float:
            return time.monotonic() - start

        logger.debug("Running %s", command)
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                # Neutral working directory; never the user's project folders
                cwd=tempfile.gettempdir(),
                env=build_environment(),
            )
        except OSError as e:
            return PingAttemptOutcome.failure(
                started_at, elapsed(), f"Failed to launch {self.claude_path}: {e}",
                command=command, model=model,
            )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return PingAttemptOutcome.failure(
                started_at, elapsed(), f"Ping timed out after {self.timeout:.0f}s",
                command=command, model=model,
            )

        output = stdout.decode("utf-8", errors="replace").strip()
        error_output = stderr.decode("utf-8", errors="replace").strip()

        if process.returncode == 0:
            return PingAttemptOutcome.success(
                started_at, elapsed(), output, command=command, model=model
            )
        return PingAttemptOutcome.failure(
            started_at,
            elapsed(),
            error_output or f"Exit code {process.returncode}",
            response=output,
            command=command,
            model=model,
        )
