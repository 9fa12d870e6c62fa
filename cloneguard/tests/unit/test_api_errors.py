from __future__ import annotations

import pytest

from cloneguard.apps.api.errors import status_for_error
from cloneguard.core.errors import (
    CloneGuardError,
    CloneTimeoutError,
    DataPlatformError,
    ExternalError,
    InvalidArgumentError,
    NotFoundError,
    PartialFailureError,
    PermissionDeniedError,
    PolicyDeniedError,
    PolicyViolationError,
    QuotaExceededError,
)


@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (InvalidArgumentError("bad"), 400),
        (QuotaExceededError("full"), 409),
        (PolicyViolationError("blocked"), 403),
        (PolicyDeniedError("denied"), 403),
        (NotFoundError("missing"), 404),
        (PermissionDeniedError("not yours"), 403),
        (PartialFailureError("half"), 502),
        (CloneTimeoutError("slow"), 504),
        (ExternalError("down"), 502),
        (DataPlatformError("raw platform failure"), 500),
        (CloneGuardError("other"), 500),
    ],
)
def test_status_for_error(error: CloneGuardError, status_code: int) -> None:
    assert status_for_error(error) == status_code
