"""Binding of the workload identity to a contained database user.

``CREATE USER ... FROM EXTERNAL PROVIDER`` needs the SQL server to read the
directory. Creating the user from its SID does not: an Entra ID application
SID is the client id's GUID in its little-endian byte layout.
"""

from __future__ import annotations

import logging
import uuid

from .database import ScriptImporter

logger = logging.getLogger(__name__)

DATABASE_ROLES: tuple[str, ...] = ("db_datareader", "db_datawriter")
BINDING_SCRIPT_NAME = "bind-workload-identity"


class IdentityBindingError(Exception):
    """Raised when the workload identity cannot be mapped to a database user."""

    pass


def client_id_to_sid(client_id: str) -> str:
    """Convert a client id GUID into a SQL SID literal.

    >>> client_id_to_sid("12345678-1234-1234-1234-123456789012")
    '0x78563412341234121234123456789012'

    Raises:
        IdentityBindingError: If the client id is not a GUID.
    """
    try:
        value = uuid.UUID(client_id)
    except (ValueError, AttributeError, TypeError) as e:
        raise IdentityBindingError(f"Client id is not a GUID: {client_id!r}") from e
    return "0x" + value.bytes_le.hex().upper()


def quote_identifier(name: str) -> str:
    return "[" + name.replace("]", "]]") + "]"


def quote_literal(value: str) -> str:
    return "N'" + value.replace("'", "''") + "'"


def build_binding_script(identity_name: str, client_id: str) -> str:
    """Build the idempotent drop-then-create script for the identity's user."""
    if not identity_name:
        raise IdentityBindingError("Managed identity name is empty")

    sid = client_id_to_sid(client_id)
    user = quote_identifier(identity_name)

    lines = [
        "SET NOCOUNT ON;",
        f"IF EXISTS (SELECT 1 FROM sys.database_principals WHERE name = {quote_literal(identity_name)})",
        f"    DROP USER {user};",
        f"CREATE USER {user} WITH SID = {sid}, TYPE = E;",
    ]
    lines.extend(f"ALTER ROLE {role} ADD MEMBER {user};" for role in DATABASE_ROLES)
    lines.append(f"GRANT EXECUTE TO {user};")
    return "\n".join(lines) + "\n"


def bind_identity(importer: ScriptImporter, identity_name: str, client_id: str) -> None:
    """Create the database user for the identity and grant its fixed permissions.

    Raises:
        IdentityBindingError: If the script cannot be built or fails.
    """
    script = build_binding_script(identity_name, client_id)
    result = importer.run_script(BINDING_SCRIPT_NAME, script)
    if not result.ok:
        raise IdentityBindingError(
            f"Could not bind managed identity '{identity_name}' to the database: "
            f"{result.error or f'sqlcmd exited with {result.returncode}'}"
        )

    logger.info(
        "Bound managed identity to database user",
        extra={"identity": identity_name, "roles": list(DATABASE_ROLES)},
    )
