from __future__ import annotations

from functools import lru_cache

from cloneguard.core.config import get_settings
from cloneguard.core.errors import DataPlatformConfigError
from cloneguard.providers.platform.base import DataPlatform
from cloneguard.providers.platform.fake import FakeDataPlatform
from cloneguard.providers.platform.snowflake import SnowflakeDataPlatform


@lru_cache
def get_data_platform() -> DataPlatform:
    # One platform client per process so connections and fake state are shared by callers.
    settings = get_settings()
    provider = (settings.data_platform or "").lower()

    if provider == "fake":
        return FakeDataPlatform()
    if provider == "snowflake":
        return SnowflakeDataPlatform()

    raise DataPlatformConfigError(f"Unsupported data platform: {provider}")
