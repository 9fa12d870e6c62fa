from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any

from cloneguard.core.config import get_settings
from cloneguard.core.errors import DataPlatformConfigError, DataPlatformError
from cloneguard.providers.platform.base import (
    PRIVILEGE_MEMBERSHIP,
    DropKind,
    GrantCommand,
    GrantTarget,
    Grantee,
    ObjectRef,
    RoleRef,
)
from cloneguard.services.naming import quote_identifier
from cloneguard.services.resilience import call_platform


logger = logging.getLogger(__name__)

_ALLOWED_PRIVILEGES = frozenset(
    {
        "USAGE",
        "SELECT",
        "INSERT",
        "UPDATE",
        "DELETE",
        "TRUNCATE",
        "OWNERSHIP",
        "CREATE TABLE",
        "CREATE VIEW",
        "CREATE PROCEDURE",
        "CREATE FUNCTION",
        "CREATE SCHEMA",
    }
)


def _qualified(*parts: str | None) -> str:
    return ".".join(quote_identifier(part) for part in parts if part)


def _render_object(ref: ObjectRef) -> str:
    return _qualified(ref.database, ref.schema)


def _render_role(role: RoleRef) -> str:
    return _qualified(role.database, role.name)


def _render_target(target: GrantTarget) -> str:
    container = target.container
    if target.kind == "DATABASE_ROLE":
        if target.role is None:
            raise DataPlatformError("DATABASE_ROLE grant target requires a role")
        return _render_role(target.role)
    if container is None:
        raise DataPlatformError(f"{target.kind} grant target requires a container")
    if target.kind == "SCHEMA":
        return f"SCHEMA {_render_object(container)}"
    if target.kind == "DATABASE":
        return f"DATABASE {_qualified(container.database)}"
    if target.kind == "ALL_SCHEMAS":
        return f"ALL SCHEMAS IN DATABASE {_qualified(container.database)}"
    scope, noun = target.kind.split("_", 1)
    if container.schema:
        where = f"IN SCHEMA {_render_object(container)}"
    else:
        where = f"IN DATABASE {_qualified(container.database)}"
    return f"{scope} {noun} {where}"


def _render_grantee(grantee: Grantee) -> str:
    if grantee.kind == "DATABASE_ROLE":
        return f"DATABASE ROLE {_qualified(grantee.database, grantee.name)}"
    if grantee.kind == "ROLE":
        return f"ROLE {quote_identifier(grantee.name)}"
    return f"USER {quote_identifier(grantee.name)}"


def render_grant(command: GrantCommand) -> str:
    """Render a typed grant into a single statement."""
    grantee = _render_grantee(command.grantee)
    if command.privileges == (PRIVILEGE_MEMBERSHIP,):
        role = command.target.role
        if role is None:
            raise DataPlatformError("Membership grants require a role target")
        keyword = "DATABASE ROLE" if role.database else "ROLE"
        return f"GRANT {keyword} {_render_role(role)} TO {grantee}"
    unknown = [item for item in command.privileges if item not in _ALLOWED_PRIVILEGES]
    if unknown or not command.privileges:
        raise DataPlatformError("Unsupported privilege in grant", details={"privileges": unknown})
    target = _render_target(command.target)
    statement = f"GRANT {', '.join(command.privileges)} ON {target} TO {grantee}"
    if command.privileges == ("OWNERSHIP",):
        # Keep existing grants when handing ownership to the administrative role.
        statement += " COPY CURRENT GRANTS"
    return statement


def render_copy(kind: str, source: ObjectRef, target: ObjectRef) -> str:
    # Plain CREATE (never OR REPLACE) so an existing object is never clobbered.
    return f"CREATE {kind} {_render_object(target)} CLONE {_render_object(source)}"


def render_create_role(role: RoleRef) -> str:
    keyword = "DATABASE ROLE" if role.database else "ROLE"
    return f"CREATE {keyword} IF NOT EXISTS {_render_role(role)}"


def render_drop(kind: DropKind, name: ObjectRef | RoleRef) -> str:
    if kind == "DATABASE_ROLE":
        if not isinstance(name, RoleRef):
            raise DataPlatformError("DATABASE_ROLE drops require a role reference")
        return f"DROP DATABASE ROLE IF EXISTS {_render_role(name)}"
    if not isinstance(name, ObjectRef):
        raise DataPlatformError(f"{kind} drops require an object reference")
    if kind == "SCHEMA":
        return f"DROP SCHEMA IF EXISTS {_render_object(name)}"
    return f"DROP DATABASE IF EXISTS {_qualified(name.database)}"


class SnowflakeDataPlatform:
    def __init__(self, connection: Any | None = None) -> None:
        self._connection = connection
        self._connect_lock = threading.Lock()

    def _get_connection(self) -> Any:
        if self._connection is not None:
            return self._connection
        with self._connect_lock:
            if self._connection is not None:
                return self._connection
            settings = get_settings()
            if not settings.snowflake_account or not settings.snowflake_user:
                raise DataPlatformConfigError("SNOWFLAKE_ACCOUNT and SNOWFLAKE_USER are required")
            try:
                import snowflake.connector
            except Exception as exc:  # pragma: no cover - environment-specific import
                raise DataPlatformConfigError(
                    "Snowflake connector not available. Install snowflake-connector-python."
                ) from exc
            params: dict[str, Any] = {
                "account": settings.snowflake_account,
                "user": settings.snowflake_user,
            }
            if settings.snowflake_password:
                params["password"] = settings.snowflake_password
            if settings.snowflake_role:
                params["role"] = settings.snowflake_role
            if settings.snowflake_warehouse:
                params["warehouse"] = settings.snowflake_warehouse
            self._connection = snowflake.connector.connect(**params)
            return self._connection

    def _run(self, statement: str) -> list[tuple[Any, ...]]:
        connection = self._get_connection()
        cursor = connection.cursor()
        try:
            cursor.execute(statement)
            return list(cursor.fetchall())
        finally:
            cursor.close()

    async def _execute(self, operation: str, statement: str, *, retry: bool = True) -> list[tuple[Any, ...]]:
        # Run blocking connector calls off the event loop; wrap failures in platform errors.
        logger.debug("platform_statement operation=%s statement=%s", operation, statement)
        try:
            if not retry:
                return await asyncio.to_thread(self._run, statement)
            return await call_platform(operation, lambda: asyncio.to_thread(self._run, statement))
        except DataPlatformConfigError:
            raise
        except Exception as exc:
            raise DataPlatformError(
                "Data platform command failed",
                details={"error_type": exc.__class__.__name__, "error": str(exc)},
            ) from exc

    async def _truncate_all_tables(self, target: ObjectRef) -> None:
        # Zero-copy clones always carry data; structure-only clones are emptied afterwards.
        rows = await self._execute("show_tables", f"SHOW TABLES IN SCHEMA {_render_object(target)}")
        for row in rows:
            table_name = str(row[1])
            table = _qualified(target.database, target.schema, table_name)
            await self._execute("truncate_table", f"TRUNCATE TABLE IF EXISTS {table}")

    async def copy_schema(self, source: ObjectRef, target: ObjectRef, *, include_data: bool) -> None:
        await self._execute("copy_schema", render_copy("SCHEMA", source, target), retry=False)
        if not include_data:
            await self._truncate_all_tables(target)

    async def copy_database(self, source: ObjectRef, target: ObjectRef, *, include_data: bool) -> None:
        await self._execute("copy_database", render_copy("DATABASE", source, target), retry=False)
        if not include_data:
            rows = await self._execute("show_schemas", f"SHOW SCHEMAS IN DATABASE {_qualified(target.database)}")
            for row in rows:
                schema_name = str(row[1])
                if schema_name.upper() == "INFORMATION_SCHEMA":
                    continue
                await self._truncate_all_tables(ObjectRef(target.database, schema_name))

    async def create_access_role(self, role: RoleRef) -> None:
        await self._execute("create_access_role", render_create_role(role))

    async def grant(self, command: GrantCommand) -> None:
        await self._execute("grant", render_grant(command))

    async def drop(self, kind: DropKind, name: ObjectRef | RoleRef) -> None:
        await self._execute(f"drop_{kind.lower()}", render_drop(kind, name))
