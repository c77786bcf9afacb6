"""Run one verification reconciliation scan and print the summary.

Usage:
    python -m scripts.run_reconcile
    # e.g. from cron when the API's in-process scheduler is disabled
"""

import asyncio
import logging
import sys

from flakewatch.engine.scheduler import run_reconciliation
from flakewatch.engine.service import build_engine

logging.basicConfig(
    level=logging.WARNING,
    format="%(levelname)s: %(message)s",
)


async def main() -> None:
    """Build the engine, reconcile, and print the counts."""
    try:
        engine = build_engine()
        summary = await run_reconciliation(engine, trigger="script")
    except Exception as e:
        print(f"Failed to reconcile: {e}", file=sys.stderr)
        sys.exit(1)
    print(summary.model_dump_json(indent=2))


if __name__ == "__main__":
    asyncio.run(main())
