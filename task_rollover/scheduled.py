"""One-shot scheduled rollover, meant to be invoked by cron around local midnight.

Usage: ``python -m task_rollover.scheduled [--force]``. Without ``--force`` the
run is skipped outside the configured ``ROLLOVER_HOUR`` window of the
reference zone. The exit status is non-zero when any user failed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from typing import Optional, Sequence

from .api import build_service
from .config import load_settings
from .main import configure_logging

logger = logging.getLogger(__name__)


async def run_once(force: bool = False) -> dict:
    settings = load_settings(os.getenv("TASK_ROLLOVER_ENV"))
    configure_logging(settings.log_level)
    service = build_service(settings)
    try:
        return await service.run_scheduled_rollover(force=force)
    finally:
        if service.roster_client is not None:
            await service.roster_client.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    force = "--force" in args or os.getenv("ROLLOVER_FORCE", "").lower() == "true"
    outcome = asyncio.run(run_once(force=force))
    print(json.dumps(outcome))
    if outcome.get("should_run") and outcome["result"]["error_count"]:
        logger.error("Scheduled rollover finished with errors: %s", outcome["failed_users"])
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
