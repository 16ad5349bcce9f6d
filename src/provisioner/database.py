"""Database readiness, operator network access and the SQL script channel.

All SQL reaches the database through ``sqlcmd``. Scripts are written to a
temporary file and passed with ``-i <path>``; standard input is never piped.
The temporary file is removed after every execution, including failed ones.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import os
import tempfile
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import httpx

from .commands import AZ_CLI, SQLCMD, CommandError, CommandRunner
from .environment import RunMode
from .spec_loader import SpecLoadError, read_script

logger = logging.getLogger(__name__)

PUBLIC_IP_LOOKUP_URL = "https://api.ipify.org"
PUBLIC_IP_LOOKUP_TIMEOUT_SECONDS = 10.0
FIREWALL_RULE_PREFIX = "ClientIp-"


class SqlAuthMethod(str, Enum):
    """Entra ID authentication methods understood by sqlcmd."""

    AZURE_CLI = "ActiveDirectoryAzCli"
    DEFAULT = "ActiveDirectoryDefault"


def auth_method_for(mode: RunMode) -> SqlAuthMethod:
    if mode == RunMode.AUTOMATED:
        return SqlAuthMethod.AZURE_CLI
    return SqlAuthMethod.DEFAULT


class NetworkAccessError(Exception):
    """Raised when the operator's network path to the database cannot be opened."""

    pass


async def wait_for_readiness(
    delay_seconds: int,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> None:
    """Give the database engine a fixed delay to finish starting."""
    if delay_seconds <= 0:
        return
    logger.info("Waiting for the database to become reachable", extra={"seconds": delay_seconds})
    await sleep(delay_seconds)


async def lookup_public_ip(http_client: httpx.AsyncClient | None = None) -> str:
    """Return this machine's public IPv4/IPv6 address.

    Raises:
        NetworkAccessError: If the lookup fails or returns garbage.
    """
    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(timeout=PUBLIC_IP_LOOKUP_TIMEOUT_SECONDS)
    try:
        response = await client.get(PUBLIC_IP_LOOKUP_URL)
        response.raise_for_status()
    except httpx.HTTPError as e:
        raise NetworkAccessError(f"Public IP lookup failed: {e}") from e
    finally:
        if owns_client:
            await client.aclose()

    text = response.text.strip()
    try:
        return str(ipaddress.ip_address(text))
    except ValueError as e:
        raise NetworkAccessError(f"Public IP lookup returned an invalid address: {text!r}") from e


def firewall_rule_name(now: datetime | None = None) -> str:
    """Timestamped rule name so repeated runs never collide."""
    moment = now or datetime.now(UTC)
    return f"{FIREWALL_RULE_PREFIX}{moment.strftime('%Y%m%d%H%M%S')}"


async def open_client_firewall(
    runner: CommandRunner,
    resource_group: str,
    server_name: str,
    http_client: httpx.AsyncClient | None = None,
) -> str:
    """Allow the operator's public address through the SQL server firewall.

    Returns:
        The name of the created firewall rule.

    Raises:
        NetworkAccessError: If the address lookup or rule creation fails.
    """
    ip = await lookup_public_ip(http_client)
    rule_name = firewall_rule_name()

    try:
        runner.run(
            [
                AZ_CLI,
                "sql",
                "server",
                "firewall-rule",
                "create",
                "--resource-group",
                resource_group,
                "--server",
                server_name,
                "--name",
                rule_name,
                "--start-ip-address",
                ip,
                "--end-ip-address",
                ip,
                "-o",
                "none",
            ]
        )
    except CommandError as e:
        raise NetworkAccessError(f"Could not create firewall rule '{rule_name}': {e}") from e

    logger.info(
        "Opened SQL firewall for operator address",
        extra={"server": server_name, "rule": rule_name, "ip": ip},
    )
    return rule_name


@dataclass(frozen=True)
class ScriptResult:
    """Outcome of one script execution."""

    name: str
    returncode: int | None
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ScriptImporter:
    """Executes SQL scripts against one database through sqlcmd."""

    def __init__(
        self,
        runner: CommandRunner,
        server_fqdn: str,
        database: str,
        auth_method: SqlAuthMethod,
        temp_dir: Path | None = None,
    ) -> None:
        self._runner = runner
        self._server_fqdn = server_fqdn
        self._database = database
        self._auth_method = auth_method
        self._temp_dir = temp_dir

    def _command(self, script_path: str) -> list[str]:
        return [
            SQLCMD,
            "-S",
            self._server_fqdn,
            "-d",
            self._database,
            "--authentication-method",
            self._auth_method.value,
            "-b",
            "-i",
            script_path,
        ]

    def run_script(self, name: str, sql: str) -> ScriptResult:
        """Run one script through a temporary file.

        Never raises for a failing script; the caller decides whether a
        failure is fatal.
        """
        handle = tempfile.NamedTemporaryFile(
            mode="w",
            suffix=".sql",
            prefix="azp-",
            dir=self._temp_dir,
            delete=False,
            encoding="utf-8",
        )
        script_path = handle.name
        try:
            with handle:
                handle.write(sql)
            result = self._runner.run(self._command(script_path), check=False)
            error = (result.stderr or result.stdout or "").strip() if result.returncode else ""
            return ScriptResult(name=name, returncode=result.returncode, error=error)
        except CommandError as e:
            return ScriptResult(name=name, returncode=e.returncode, error=str(e))
        finally:
            try:
                os.unlink(script_path)
            except FileNotFoundError:
                pass

    def import_scripts(self, paths: Iterable[Path]) -> list[ScriptResult]:
        """Run scripts in order. Failures are logged and do not stop the batch."""
        results = []
        for path in paths:
            try:
                sql = read_script(path)
            except SpecLoadError as e:
                result = ScriptResult(name=path.name, returncode=None, error=str(e))
            else:
                result = self.run_script(path.name, sql)

            if result.ok:
                logger.info("Imported script", extra={"script": result.name})
            else:
                logger.warning(
                    f"Script '{result.name}' failed; continuing",
                    extra={
                        "script": result.name,
                        "returncode": result.returncode,
                        "error": result.error,
                    },
                )
            results.append(result)
        return results
