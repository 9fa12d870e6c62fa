from __future__ import annotations

from dataclasses import dataclass

from cloneguard.domain.types import CLONE_KIND_SCHEMA
from cloneguard.providers.platform.base import (
    PRIVILEGE_MEMBERSHIP,
    GrantCommand,
    GrantTarget,
    Grantee,
    ObjectRef,
    RoleRef,
)


_READ = ("SELECT",)
_WRITE_DML = ("INSERT", "UPDATE", "DELETE", "TRUNCATE")
_SCHEMA_CREATE = ("CREATE TABLE", "CREATE VIEW", "CREATE PROCEDURE", "CREATE FUNCTION")


@dataclass(frozen=True)
class AccessStep:
    # Label identifies the step in partial-failure reports.
    label: str
    command: GrantCommand


@dataclass(frozen=True)
class AccessPlan:
    read_role: RoleRef
    write_role: RoleRef
    steps: tuple[AccessStep, ...]


def _membership(role: RoleRef, grantee: Grantee) -> GrantCommand:
    return GrantCommand(
        privileges=(PRIVILEGE_MEMBERSHIP,),
        target=GrantTarget(kind="DATABASE_ROLE", role=role),
        grantee=grantee,
    )


def build_access_plan(
    *,
    kind: str,
    clone_database: str,
    clone_schema: str | None,
    read_role: str,
    write_role: str,
    admin_role: str,
    actor: str,
) -> AccessPlan:
    """Build the indirection grants for a freshly copied clone.

    The read role receives read privileges on current and future objects, the write role
    inherits the read role plus DML and create privileges, and the write role is then
    handed to both the actor and the environment's administrative role. The actor never
    receives a privilege on the clone itself: the only grant naming the actor is the
    write-role membership. Database clones additionally transfer ownership of the new
    database to the administrative role.
    """
    read = RoleRef(name=read_role, database=clone_database)
    write = RoleRef(name=write_role, database=clone_database)
    read_grantee = Grantee(kind="DATABASE_ROLE", name=read_role, database=clone_database)
    write_grantee = Grantee(kind="DATABASE_ROLE", name=write_role, database=clone_database)
    admin_grantee = Grantee(kind="ROLE", name=admin_role)

    if kind == CLONE_KIND_SCHEMA:
        container = ObjectRef(database=clone_database, schema=clone_schema)
        usage = [
            AccessStep("read_usage_schema", GrantCommand(("USAGE",), GrantTarget("SCHEMA", container), read_grantee)),
        ]
        create = AccessStep(
            "write_create_in_schema",
            GrantCommand(_SCHEMA_CREATE, GrantTarget("SCHEMA", container), write_grantee),
        )
    else:
        container = ObjectRef(database=clone_database)
        usage = [
            AccessStep("read_usage_database", GrantCommand(("USAGE",), GrantTarget("DATABASE", container), read_grantee)),
            AccessStep(
                "read_usage_schemas",
                GrantCommand(("USAGE",), GrantTarget("ALL_SCHEMAS", container), read_grantee),
            ),
        ]
        create = AccessStep(
            "write_create_schema",
            GrantCommand(("CREATE SCHEMA",), GrantTarget("DATABASE", container), write_grantee),
        )

    steps: list[AccessStep] = list(usage)
    for target_kind in ("ALL_TABLES", "ALL_VIEWS", "FUTURE_TABLES", "FUTURE_VIEWS"):
        steps.append(
            AccessStep(
                f"read_select_{target_kind.lower()}",
                GrantCommand(_READ, GrantTarget(target_kind, container), read_grantee),
            )
        )
    steps.append(AccessStep("write_inherits_read", _membership(read, write_grantee)))
    for target_kind in ("ALL_TABLES", "FUTURE_TABLES"):
        steps.append(
            AccessStep(
                f"write_dml_{target_kind.lower()}",
                GrantCommand(_WRITE_DML, GrantTarget(target_kind, container), write_grantee),
            )
        )
    steps.append(create)
    steps.append(AccessStep("grant_write_to_actor", _membership(write, Grantee(kind="USER", name=actor))))
    steps.append(AccessStep("grant_write_to_admin", _membership(write, admin_grantee)))
    if kind != CLONE_KIND_SCHEMA:
        steps.append(
            AccessStep(
                "transfer_ownership_to_admin",
                GrantCommand(("OWNERSHIP",), GrantTarget("DATABASE", container), admin_grantee),
            )
        )
    return AccessPlan(read_role=read, write_role=write, steps=tuple(steps))
