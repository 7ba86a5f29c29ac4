from __future__ import annotations

import argparse
import asyncio
import json

from stacksearch.core.logging import configure_logging
from stacksearch.services.container import build_container
from stacksearch.services.resilience import drain_background_tasks


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Index every published entry of one stack.")
    parser.add_argument("stack_api_key")
    parser.add_argument("--environment", default=None)
    parser.add_argument("--content-type", default=None)
    parser.add_argument("--locale", default=None)
    parser.add_argument("--include-images", action="store_true")
    return parser.parse_args()


async def _main(args: argparse.Namespace) -> None:
    configure_logging()
    container = await build_container()
    try:
        summary = await container.indexing.index_all(
            args.stack_api_key,
            args.environment,
            content_type=args.content_type,
            locale=args.locale,
            include_images=args.include_images,
        )
        print(json.dumps(summary.as_dict(), indent=2))
    finally:
        await drain_background_tasks()
        await container.aclose()


if __name__ == "__main__":
    asyncio.run(_main(_parse_args()))
