from __future__ import annotations

import asyncio

from stacksearch.core.logging import configure_logging
from stacksearch.services.container import build_container


async def prune() -> None:
    configure_logging()
    container = await build_container()
    try:
        deleted = await container.search_logger.purge_search_logs()
        print(f"pruned_search_logs={deleted}")
    finally:
        await container.aclose()


if __name__ == "__main__":
    asyncio.run(prune())
