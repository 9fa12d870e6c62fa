from __future__ import annotations

import asyncio

from cloneguard.core.logging import configure_logging
from cloneguard.services.reaper import run_reaper_loop


async def _main() -> None:
    # Dedicated process so expired clones are swept without request traffic.
    configure_logging()
    await run_reaper_loop()


if __name__ == "__main__":
    asyncio.run(_main())
