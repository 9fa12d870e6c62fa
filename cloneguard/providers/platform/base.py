from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Protocol


DropKind = Literal["SCHEMA", "DATABASE", "DATABASE_ROLE"]
GrantTargetKind = Literal[
    "SCHEMA",
    "DATABASE",
    "ALL_SCHEMAS",
    "ALL_TABLES",
    "FUTURE_TABLES",
    "ALL_VIEWS",
    "FUTURE_VIEWS",
    "DATABASE_ROLE",
]
GranteeKind = Literal["DATABASE_ROLE", "ROLE", "USER"]

# Granting a role to another principal rather than an object privilege.
PRIVILEGE_MEMBERSHIP = "MEMBERSHIP"


@dataclass(frozen=True)
class ObjectRef:
    # A database, or a schema inside a database when schema is set.
    database: str
    schema: str | None = None

    @property
    def qualified(self) -> str:
        return f"{self.database}.{self.schema}" if self.schema else self.database


@dataclass(frozen=True)
class RoleRef:
    # Database roles are scoped to a database; account roles leave database unset.
    name: str
    database: str | None = None

    @property
    def qualified(self) -> str:
        return f"{self.database}.{self.name}" if self.database else self.name


@dataclass(frozen=True)
class GrantTarget:
    kind: GrantTargetKind
    container: ObjectRef | None = None
    role: RoleRef | None = None


@dataclass(frozen=True)
class Grantee:
    kind: GranteeKind
    name: str
    database: str | None = None


@dataclass(frozen=True)
class GrantCommand:
    """One typed grant; privileges are rendered by the platform, never concatenated here."""

    privileges: tuple[str, ...]
    target: GrantTarget
    grantee: Grantee


class DataPlatform(Protocol):
    async def copy_schema(self, source: ObjectRef, target: ObjectRef, *, include_data: bool) -> None:
        ...

    async def copy_database(self, source: ObjectRef, target: ObjectRef, *, include_data: bool) -> None:
        ...

    async def create_access_role(self, role: RoleRef) -> None:
        ...

    async def grant(self, command: GrantCommand) -> None:
        ...

    async def drop(self, kind: DropKind, name: ObjectRef | RoleRef) -> None:
        ...
