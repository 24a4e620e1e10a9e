"""
Run a bank feed sync from the command line.

    python -m bankfeed                 # sync every active connection
    python -m bankfeed <item_id>       # sync one connection
"""

import sys
import json
import asyncio
import logging

from config import get_settings
from logging_config import setup_logging
from sentry_integration import init_sentry
from bankfeed.engine import build_engine_from_settings
from bankfeed.errors import BankFeedError

logger = logging.getLogger(__name__)


async def main(item_ids) -> int:
    settings = get_settings()
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)
    init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT)

    engine = build_engine_from_settings(settings)
    try:
        if not item_ids:
            results = await engine.sync_all_connections()
        else:
            results = []
            for item_id in item_ids:
                try:
                    results.append(await engine.sync_connection(item_id))
                except BankFeedError as e:
                    logger.error(f"Sync failed for {item_id}: {e}")
                    results.append({"item_id": item_id, "success": False, "error": str(e)})
    finally:
        await engine.aclose()

    output = [r if isinstance(r, dict) else r.to_dict() for r in results]
    print(json.dumps(output, indent=2, default=str))
    return 0 if all(r["success"] for r in output) else 1


def run():
    sys.exit(asyncio.run(main(sys.argv[1:])))


if __name__ == "__main__":
    run()
