from __future__ import annotations

import pytest

from cloneguard.core.errors import InvalidArgumentError
from cloneguard.services.naming import (
    build_clone_names,
    canonical_actor,
    normalize_identifier,
    quote_identifier,
    sanitize_actor,
    source_key,
)


def test_sanitize_actor_collapses_runs_and_trims() -> None:
    assert sanitize_actor("jane.doe@corp.com") == "JANE_DOE_CORP_COM"
    assert sanitize_actor("  --b--  ") == "B"
    assert sanitize_actor("a..b__c") == "A_B_C"


def test_canonical_actor_folds_case_and_whitespace() -> None:
    assert canonical_actor(" bob ") == canonical_actor("Bob") == canonical_actor("BOB") == "BOB"
    assert canonical_actor("jane.doe") != canonical_actor("jane-doe")
    assert canonical_actor(None) == ""


def test_sanitize_actor_rejects_names_without_usable_characters() -> None:
    with pytest.raises(InvalidArgumentError):
        sanitize_actor("@@--")
    with pytest.raises(InvalidArgumentError):
        sanitize_actor("")


def test_schema_clone_names_are_bit_exact() -> None:
    names = build_clone_names(
        kind="SCHEMA",
        environment="DEV",
        source_database="HR",
        source_schema="PAYROLL",
        actor_token="B",
        sequence=1,
    )
    assert names.clone_name == "PAYROLL_CLONE_B_1"
    assert names.qualified_name == "HR.PAYROLL_CLONE_B_1"
    assert names.clone_database == "HR"
    assert names.clone_schema == "PAYROLL_CLONE_B_1"
    assert names.role_prefix == "SRD_HR_DEV"
    assert names.read_role == "SRD_HR_DEV_PAYROLL_CLONE_B_1_READ"
    assert names.write_role == "SRD_HR_DEV_PAYROLL_CLONE_B_1_WRITE"
    assert names.admin_role == "SRF_DEV_DBADMIN"


def test_database_clone_names_create_a_new_database() -> None:
    names = build_clone_names(
        kind="DATABASE",
        environment="TST",
        source_database="SALES",
        source_schema=None,
        actor_token="JANE_DOE",
        sequence=3,
    )
    assert names.clone_name == "SALES_CLONE_JANE_DOE_3"
    assert names.qualified_name == "SALES_CLONE_JANE_DOE_3"
    assert names.clone_database == "SALES_CLONE_JANE_DOE_3"
    assert names.clone_schema is None
    assert names.write_role == "SRD_SALES_TST_SALES_CLONE_JANE_DOE_3_WRITE"
    assert names.admin_role == "SRF_TST_DBADMIN"


def test_schema_clone_without_schema_is_rejected() -> None:
    with pytest.raises(InvalidArgumentError):
        build_clone_names(
            kind="SCHEMA",
            environment="DEV",
            source_database="HR",
            source_schema=None,
            actor_token="B",
            sequence=1,
        )


def test_normalize_identifier_uppercases_and_validates() -> None:
    assert normalize_identifier(" hr_main ", field="source_database") == "HR_MAIN"
    for bad in ("HR;DROP", "1HR", "HR.PAYROLL", 'HR"', ""):
        with pytest.raises(InvalidArgumentError):
            normalize_identifier(bad, field="source_database")
    with pytest.raises(InvalidArgumentError):
        normalize_identifier(None, field="source_schema")


def test_quote_identifier_doubles_embedded_quotes() -> None:
    assert quote_identifier("HR") == '"HR"'
    assert quote_identifier('a"; DROP DATABASE HR; --') == '"a""; DROP DATABASE HR; --"'
    with pytest.raises(InvalidArgumentError):
        quote_identifier("bad\nname")
    with pytest.raises(InvalidArgumentError):
        quote_identifier("")


def test_source_key_distinguishes_schema_and_database_sources() -> None:
    assert source_key("HR", "PAYROLL") == "HR.PAYROLL"
    assert source_key("HR", None) == "HR"
