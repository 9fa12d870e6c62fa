from __future__ import annotations

import pytest

from cloneguard.core.errors import DataPlatformError
from cloneguard.providers.platform.base import (
    PRIVILEGE_MEMBERSHIP,
    GrantCommand,
    GrantTarget,
    Grantee,
    ObjectRef,
    RoleRef,
)
from cloneguard.providers.platform.fake import FakeDataPlatform


@pytest.mark.asyncio
async def test_fake_platform_tracks_objects_and_memberships() -> None:
    platform = FakeDataPlatform()
    target = ObjectRef("HR", "PAYROLL_CLONE_B_1")
    write = RoleRef("R_WRITE", "HR")
    await platform.copy_schema(ObjectRef("HR", "PAYROLL"), target, include_data=True)
    await platform.create_access_role(write)
    await platform.grant(
        GrantCommand((PRIVILEGE_MEMBERSHIP,), GrantTarget("DATABASE_ROLE", role=write), Grantee("USER", "b"))
    )
    assert "HR.PAYROLL_CLONE_B_1" in platform.schemas
    assert len(platform.grants_to("b")) == 1

    await platform.drop("DATABASE_ROLE", write)
    await platform.drop("SCHEMA", target)
    # Drops behave like IF EXISTS.
    await platform.drop("SCHEMA", target)
    assert platform.schemas == set()
    assert platform.roles == set()
    assert platform.grants_to("b") == []
    assert [name for name, _ in platform.calls].count("drop") == 3


@pytest.mark.asyncio
async def test_fake_platform_injects_failures_by_predicate() -> None:
    platform = FakeDataPlatform()
    platform.fail_on("create_access_role", when=lambda role: role.name.endswith("_WRITE"))
    await platform.create_access_role(RoleRef("X_READ", "HR"))
    with pytest.raises(DataPlatformError):
        await platform.create_access_role(RoleRef("X_WRITE", "HR"))

    platform.clear_failures()
    await platform.create_access_role(RoleRef("X_WRITE", "HR"))
    assert platform.roles == {"HR.X_READ", "HR.X_WRITE"}
