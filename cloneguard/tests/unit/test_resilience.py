from __future__ import annotations

import pytest

from cloneguard.core.errors import DataPlatformError
from cloneguard.providers.platform.base import ObjectRef, RoleRef
from cloneguard.providers.platform.snowflake import SnowflakeDataPlatform
from cloneguard.services.resilience import (
    PlatformRetryPolicy,
    call_platform,
    get_lock_redis,
    is_transient_platform_error,
)


_FAST = PlatformRetryPolicy(max_attempts=3, backoff_ms=1, call_timeout_ms=1000)


class OperationalError(Exception):
    """Stands in for snowflake.connector.errors.OperationalError."""


class _SqlStateError(Exception):
    def __init__(self, sqlstate: str) -> None:
        super().__init__(sqlstate)
        self.sqlstate = sqlstate


class _Cursor:
    def __init__(self, connection: "_Connection") -> None:
        self._connection = connection

    def execute(self, statement: str) -> None:
        self._connection.statements.append(statement)
        if self._connection.failures:
            raise self._connection.failures.pop(0)

    def fetchall(self) -> list:
        return []

    def close(self) -> None:
        pass


class _Connection:
    def __init__(self, failures: list[Exception]) -> None:
        self.failures = failures
        self.statements: list[str] = []

    def cursor(self) -> _Cursor:
        return _Cursor(self)


def test_transient_platform_errors() -> None:
    assert is_transient_platform_error(TimeoutError()) is True
    assert is_transient_platform_error(ConnectionResetError()) is True
    assert is_transient_platform_error(OperationalError("session dropped")) is True
    assert is_transient_platform_error(_SqlStateError("08001")) is True
    assert is_transient_platform_error(_SqlStateError("42501")) is False
    assert is_transient_platform_error(FileNotFoundError()) is False
    assert is_transient_platform_error(ValueError("bad statement")) is False


@pytest.mark.asyncio
async def test_call_platform_retries_transient_failures() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise OperationalError("connection reset")
        return "ok"

    assert await call_platform("grant", flaky, policy=_FAST) == "ok"
    assert calls["count"] == 3


@pytest.mark.asyncio
async def test_call_platform_surfaces_permanent_failures_at_once() -> None:
    calls = {"count": 0}

    async def denied() -> None:
        calls["count"] += 1
        raise _SqlStateError("42501")

    with pytest.raises(_SqlStateError):
        await call_platform("grant", denied, policy=_FAST)
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_call_platform_gives_up_after_max_attempts() -> None:
    calls = {"count": 0}

    async def down() -> None:
        calls["count"] += 1
        raise ConnectionResetError()

    with pytest.raises(ConnectionResetError):
        await call_platform("drop_schema", down, policy=_FAST)
    assert calls["count"] == 3


@pytest.mark.asyncio
async def test_snowflake_retries_role_statements_but_never_copies() -> None:
    connection = _Connection([OperationalError("session expired")])
    platform = SnowflakeDataPlatform(connection=connection)
    await platform.create_access_role(RoleRef("R_READ", "HR"))
    assert connection.statements == ['CREATE DATABASE ROLE IF NOT EXISTS "HR"."R_READ"'] * 2

    connection = _Connection([OperationalError("session expired")])
    platform = SnowflakeDataPlatform(connection=connection)
    with pytest.raises(DataPlatformError) as excinfo:
        await platform.copy_schema(
            ObjectRef("HR", "PAYROLL"), ObjectRef("HR", "PAYROLL_CLONE_B_1"), include_data=True
        )
    assert excinfo.value.details["error_type"] == "OperationalError"
    assert len(connection.statements) == 1


@pytest.mark.asyncio
async def test_lock_redis_is_disabled_without_redis_url() -> None:
    assert get_lock_redis() is None
