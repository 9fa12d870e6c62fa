from __future__ import annotations

import os
from pathlib import Path
import tempfile

# Settings and the engine are built at import time, so the environment comes first.
_DB_DIR = Path(tempfile.mkdtemp(prefix="cloneguard-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR / 'cloneguard.db'}")
os.environ["DATA_PLATFORM"] = "fake"
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402
from sqlalchemy import delete  # noqa: E402

from cloneguard.domain.models import (  # noqa: E402
    Base,
    Clone,
    CloneAccessEvent,
    CloneAdmissionLock,
    CloneAuditRecord,
    CloneLimit,
    ClonePolicy,
    PolicyViolation,
)
from cloneguard.persistence.db import SessionLocal, engine  # noqa: E402
from cloneguard.providers.platform.factory import get_data_platform  # noqa: E402
from cloneguard.services import admission  # noqa: E402
from cloneguard.services.limits import get_limit_store  # noqa: E402
from cloneguard.services.policies import get_policy_store  # noqa: E402


_GOVERNANCE_TABLES = (
    CloneAccessEvent,
    CloneAuditRecord,
    PolicyViolation,
    ClonePolicy,
    CloneLimit,
    CloneAdmissionLock,
    Clone,
)


@pytest.fixture(autouse=True)
async def clean_governance_state():
    # Every test starts from empty tables, a fresh fake platform and cold caches.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with SessionLocal() as session:
        for model in _GOVERNANCE_TABLES:
            await session.execute(delete(model))
        await session.commit()
    get_data_platform().reset()
    get_limit_store().invalidate()
    get_policy_store().invalidate()
    admission._controller = None
    yield
    get_data_platform().reset()
    await engine.dispose()
