"""External command execution (Azure CLI, sqlcmd).

Commands are always passed as argument lists and never receive piped
standard input. Output is captured so failures can be reported with the
tool's own stderr.
"""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

AZ_CLI = "az"
SQLCMD = "sqlcmd"

# Trim captured stderr in error messages to keep logs readable
MAX_ERROR_OUTPUT_CHARS = 2000


class CommandError(Exception):
    """Raised when an external command cannot be run or exits non-zero."""

    def __init__(self, message: str, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class CommandRunner:
    """Runs external commands with consistent error handling."""

    def which(self, name: str) -> str | None:
        return shutil.which(name)

    def run(
        self,
        cmd: list[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run a command and capture its output.

        Args:
            cmd: Command and arguments.
            cwd: Working directory.
            check: Raise CommandError on a non-zero exit code.

        Returns:
            CompletedProcess result.

        Raises:
            CommandError: If the executable is missing or the command fails.
        """
        executable = self.which(cmd[0])
        if executable is None:
            raise CommandError(f"Command not found: {cmd[0]}. Install it and try again.")

        cmd_str = " ".join(cmd)
        logger.debug("Executing command", extra={"command": cmd_str})

        try:
            result = subprocess.run(
                [executable, *cmd[1:]],
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            raise CommandError(f"Could not execute {cmd[0]}: {e}") from e

        if result.returncode != 0 and check:
            stderr = (result.stderr or "").strip()[:MAX_ERROR_OUTPUT_CHARS]
            message = f"Command failed ({result.returncode}): {cmd_str}"
            if stderr:
                message = f"{message}\n{stderr}"
            raise CommandError(message, returncode=result.returncode, stderr=stderr)

        return result

    def run_json(self, cmd: list[str]) -> Any:
        """Run a command that prints JSON (``-o json``) and parse its output.

        Raises:
            CommandError: If the command fails or prints invalid JSON.
        """
        result = self.run(cmd)
        try:
            return json.loads(result.stdout or "null")
        except json.JSONDecodeError as e:
            raise CommandError(f"Invalid JSON from {' '.join(cmd)}: {e}") from e
