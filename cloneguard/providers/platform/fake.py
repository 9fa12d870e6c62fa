from __future__ import annotations

import asyncio
from typing import Any, Callable

from cloneguard.core.errors import DataPlatformError
from cloneguard.providers.platform.base import (
    PRIVILEGE_MEMBERSHIP,
    DropKind,
    GrantCommand,
    ObjectRef,
    RoleRef,
)


class FakeDataPlatform:
    """In-memory data platform for local development and tests.

    Operations are recorded in ``calls`` in the order they were issued. Failures can be
    injected per operation name (``copy_schema``, ``copy_database``,
    ``create_access_role``, ``grant``, ``drop``) with an optional predicate on the
    operation argument, and copies can be slowed down to exercise timeouts.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.schemas: set[str] = set()
        self.databases: set[str] = set()
        self.roles: set[str] = set()
        self.grants: list[GrantCommand] = []
        self.calls: list[tuple[str, Any]] = []
        self.copy_delay_s: float = 0.0
        self._failures: dict[str, tuple[Callable[[Any], bool] | None, Exception | None]] = {}

    def fail_on(
        self,
        operation: str,
        *,
        when: Callable[[Any], bool] | None = None,
        error: Exception | None = None,
    ) -> None:
        # Register a failure for an operation; the predicate receives the primary argument.
        self._failures[operation] = (when, error)

    def clear_failures(self) -> None:
        self._failures.clear()

    def _maybe_fail(self, operation: str, argument: Any) -> None:
        entry = self._failures.get(operation)
        if entry is None:
            return
        predicate, error = entry
        if predicate is not None and not predicate(argument):
            return
        raise error or DataPlatformError(f"Injected {operation} failure")

    async def copy_schema(self, source: ObjectRef, target: ObjectRef, *, include_data: bool) -> None:
        self.calls.append(("copy_schema", (source, target, include_data)))
        if self.copy_delay_s:
            await asyncio.sleep(self.copy_delay_s)
        self._maybe_fail("copy_schema", target)
        self.schemas.add(target.qualified)

    async def copy_database(self, source: ObjectRef, target: ObjectRef, *, include_data: bool) -> None:
        self.calls.append(("copy_database", (source, target, include_data)))
        if self.copy_delay_s:
            await asyncio.sleep(self.copy_delay_s)
        self._maybe_fail("copy_database", target)
        self.databases.add(target.qualified)

    async def create_access_role(self, role: RoleRef) -> None:
        self.calls.append(("create_access_role", role))
        self._maybe_fail("create_access_role", role)
        self.roles.add(role.qualified)

    async def grant(self, command: GrantCommand) -> None:
        self.calls.append(("grant", command))
        self._maybe_fail("grant", command)
        self.grants.append(command)

    async def drop(self, kind: DropKind, name: ObjectRef | RoleRef) -> None:
        # Drops behave like IF EXISTS so repeated deletes stay harmless.
        self.calls.append(("drop", (kind, name)))
        self._maybe_fail("drop", (kind, name))
        if kind == "SCHEMA":
            self.schemas.discard(name.qualified)
        elif kind == "DATABASE":
            self.databases.discard(name.qualified)
            self.schemas = {item for item in self.schemas if not item.startswith(f"{name.qualified}.")}
        else:
            self.roles.discard(name.qualified)
            self.grants = [
                item
                for item in self.grants
                if not (
                    item.privileges == (PRIVILEGE_MEMBERSHIP,)
                    and item.target.role is not None
                    and item.target.role.qualified == name.qualified
                )
            ]

    def grants_to(self, grantee_name: str) -> list[GrantCommand]:
        return [item for item in self.grants if item.grantee.name == grantee_name]
