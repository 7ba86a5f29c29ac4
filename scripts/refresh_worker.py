from __future__ import annotations

import asyncio

from stacksearch.core.logging import configure_logging
from stacksearch.services.container import build_container


async def _main() -> None:
    # Standalone credential sweeper for deployments that disable the in-API scheduler.
    configure_logging()
    container = await build_container()
    try:
        await container.scheduler.run_forever()
    finally:
        await container.aclose()


if __name__ == "__main__":
    asyncio.run(_main())
