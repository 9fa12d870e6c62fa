"""Naming rules for clones and their indirection roles.

Every identifier that ends up in a data-platform command passes through this module:
actor names are sanitized into a restricted token, source identifiers are validated,
and the clone/role names are derived from fixed templates so that they stay bit-exact
across releases.
"""

from __future__ import annotations

from dataclasses import dataclass
import re

from cloneguard.core.config import get_settings
from cloneguard.core.errors import InvalidArgumentError
from cloneguard.domain.types import CLONE_KIND_SCHEMA


_NON_ALNUM_RUN = re.compile(r"[^A-Z0-9]+")
_IDENTIFIER = re.compile(r"^[A-Z_][A-Z0-9_$]*$")
_MAX_IDENTIFIER_LENGTH = 255


def canonical_actor(actor: str | None) -> str:
    # Ownership, quota counting and sequence numbering all key on this one form.
    return (actor or "").strip().upper()


def sanitize_actor(actor: str) -> str:
    # Uppercase, collapse every non-alphanumeric run into one underscore, trim the edges.
    token = _NON_ALNUM_RUN.sub("_", (actor or "").upper()).strip("_")
    if not token:
        raise InvalidArgumentError("Actor name has no usable characters", details={"actor": actor})
    return token


def sanitize_token(value: str) -> str:
    # Same restricted character set as actors; used for role targets and labels.
    return _NON_ALNUM_RUN.sub("_", (value or "").upper()).strip("_")


def normalize_identifier(value: str | None, *, field: str) -> str:
    # Unquoted warehouse identifiers resolve case-insensitively to upper case.
    if value is None or not str(value).strip():
        raise InvalidArgumentError(f"{field} is required", details={"field": field})
    normalized = str(value).strip().upper()
    if len(normalized) > _MAX_IDENTIFIER_LENGTH or not _IDENTIFIER.match(normalized):
        raise InvalidArgumentError(
            f"{field} is not a valid identifier",
            details={"field": field, "value": value},
        )
    return normalized


def quote_identifier(value: str) -> str:
    """Render one identifier for a platform statement.

    Object names reach this point already normalized by ``normalize_identifier``; user
    names, which may legitimately contain ``@`` or ``.``, are only checked for control
    characters here. The result is double-quoted with embedded quotes doubled, so no
    caller ever concatenates a raw identifier into a command.
    """
    if not value or any(ord(ch) < 32 for ch in value):
        raise InvalidArgumentError("Identifier is empty or contains control characters")
    return '"' + value.replace('"', '""') + '"'


@dataclass(frozen=True)
class CloneNames:
    clone_name: str
    qualified_name: str
    clone_database: str
    clone_schema: str | None
    read_role: str
    write_role: str
    admin_role: str
    role_prefix: str


def role_prefix(*, source_database: str, environment: str) -> str:
    template = get_settings().clone_role_prefix_template
    return sanitize_token(template.format(source_database=source_database, environment=environment))


def admin_role_for(environment: str) -> str:
    template = get_settings().platform_admin_role_template
    return sanitize_token(template.format(environment=environment))


def build_clone_names(
    *,
    kind: str,
    environment: str,
    source_database: str,
    source_schema: str | None,
    actor_token: str,
    sequence: int,
) -> CloneNames:
    # Schema clones live beside their source schema; database clones are new databases.
    if kind == CLONE_KIND_SCHEMA:
        if not source_schema:
            raise InvalidArgumentError("Schema name required for SCHEMA clone type")
        clone_name = f"{source_schema}_CLONE_{actor_token}_{sequence}"
        clone_database = source_database
        clone_schema: str | None = clone_name
        qualified_name = f"{source_database}.{clone_name}"
    else:
        clone_name = f"{source_database}_CLONE_{actor_token}_{sequence}"
        clone_database = clone_name
        clone_schema = None
        qualified_name = clone_name
    prefix = role_prefix(source_database=source_database, environment=environment)
    target = sanitize_token(clone_name)
    return CloneNames(
        clone_name=clone_name,
        qualified_name=qualified_name,
        clone_database=clone_database,
        clone_schema=clone_schema,
        read_role=f"{prefix}_{target}_READ",
        write_role=f"{prefix}_{target}_WRITE",
        admin_role=admin_role_for(environment),
        role_prefix=prefix,
    )


def source_key(source_database: str, source_schema: str | None) -> str:
    return f"{source_database}.{source_schema}" if source_schema else source_database
