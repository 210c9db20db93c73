"""Run one activity sync from cron or by hand.

Exits 0 when every attempted provider succeeded, 1 on partial or total
failure and 2 when the run hit its deadline::

    python -m scripts.run_sync
    python -m scripts.run_sync --service spotify
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from activity_sync.core.config import get_settings
from activity_sync.core.logging import configure_logging
from activity_sync.dependencies import get_sync_orchestrator
from activity_sync.models.activity import Provider
from activity_sync.services.sync_orchestrator import SyncRunReport, SyncRunStatus

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_TIMEOUT = 2


def exit_code_for(report: SyncRunReport) -> int:
    if report.status == SyncRunStatus.SUCCEEDED:
        return EXIT_OK
    if report.status == SyncRunStatus.TIMEOUT:
        return EXIT_TIMEOUT
    return EXIT_FAILED


async def run(services: Optional[List[Provider]] = None) -> SyncRunReport:
    orchestrator = get_sync_orchestrator()
    return await orchestrator.sync_all(services)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync GitHub and Spotify activity.")
    parser.add_argument(
        "--service",
        choices=[p.value for p in Provider] + ["all"],
        default="all",
        help="Limit the run to one provider (default: all configured providers).",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging(get_settings().log_level)

    services = None if args.service == "all" else [Provider(args.service)]
    report = asyncio.run(run(services))
    print(json.dumps(report.to_dict(), indent=2))
    return exit_code_for(report)


if __name__ == "__main__":  # pragma: no cover - script entry point
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        logger.info("Sync interrupted")
        sys.exit(EXIT_FAILED)
