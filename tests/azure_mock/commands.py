"""Recording stand-in for the external command runner (az, sqlcmd)."""

from __future__ import annotations

import json
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from provisioner.commands import CommandError, CommandRunner

DEFAULT_SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000000"
DEFAULT_USER = {"id": "11111111-2222-3333-4444-555555555555", "name": "dev@contoso.com"}


@dataclass
class RecordedCommand:
    """One command invocation, with the SQL script it was given (if any)."""

    args: list[str]
    script_path: str | None = None
    script: str | None = None
    script_existed: bool = False

    @property
    def line(self) -> str:
        return " ".join(self.args)


@dataclass
class _FailureRule:
    match: str
    returncode: int
    stderr: str


@dataclass
class FakeCommandRunner(CommandRunner):
    """CommandRunner that never spawns processes.

    Commands are answered from canned responses; failure rules match a
    substring of the command line or of the SQL script passed with ``-i``.
    """

    user: dict[str, str] | None = field(default_factory=lambda: dict(DEFAULT_USER))
    subscription_id: str = DEFAULT_SUBSCRIPTION_ID
    missing: set[str] = field(default_factory=set)
    calls: list[RecordedCommand] = field(default_factory=list)
    _failures: list[_FailureRule] = field(default_factory=list)

    def fail(self, match: str, returncode: int = 1, stderr: str = "simulated failure") -> None:
        self._failures.append(_FailureRule(match, returncode, stderr))

    def which(self, name: str) -> str | None:
        return None if name in self.missing else f"/usr/bin/{name}"

    def run(
        self,
        cmd: list[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        if self.which(cmd[0]) is None:
            raise CommandError(f"Command not found: {cmd[0]}. Install it and try again.")

        recorded = RecordedCommand(args=list(cmd))
        if "-i" in cmd:
            path = Path(cmd[cmd.index("-i") + 1])
            recorded.script_path = str(path)
            recorded.script_existed = path.is_file()
            if recorded.script_existed:
                recorded.script = path.read_text(encoding="utf-8")
        self.calls.append(recorded)

        returncode, stderr = 0, ""
        for rule in self._failures:
            if rule.match in recorded.line or (recorded.script and rule.match in recorded.script):
                returncode, stderr = rule.returncode, rule.stderr
                break

        stdout = self._respond(cmd) if returncode == 0 else ""
        if returncode != 0 and check:
            raise CommandError(
                f"Command failed ({returncode}): {recorded.line}\n{stderr}",
                returncode=returncode,
                stderr=stderr,
            )
        return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)

    def _respond(self, cmd: list[str]) -> str:
        line = " ".join(cmd)
        if line.startswith("az ad signed-in-user show"):
            if self.user is None:
                raise CommandError("Please run 'az login' to setup account.", returncode=1)
            return json.dumps(self.user)
        if line.startswith("az account show"):
            return self.subscription_id + "\n"
        return ""

    def commands(self, prefix: str) -> list[RecordedCommand]:
        return [c for c in self.calls if c.line.startswith(prefix)]

    @property
    def sqlcmd_calls(self) -> list[RecordedCommand]:
        return self.commands("sqlcmd")
