from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict

# Make the app directory importable when run as a script
CURRENT_DIR = Path(__file__).resolve().parent
APP_DIR = CURRENT_DIR.parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from dashproxy.config import ProxyConfig, load_config
from dashproxy.logging_utils import setup_console_logging
from dashproxy.service import CacheService


logger = logging.getLogger("dashproxy.jobs.warm_caches")


async def run_warmup(
    config: ProxyConfig,
    *,
    summary: bool = True,
    recent: bool = True,
    force: bool = False,
) -> Dict[str, Any]:
    """
    Populate the snapshot files once and report the resulting cache state.

    Without ``force`` a snapshot is only rebuilt when missing or expired.
    Errors propagate so cron jobs exit non-zero.
    """
    service = CacheService(config)
    await service.start(bootstrap=False, schedule=False)
    try:
        if summary:
            if force:
                await service.summary.refresh()
            else:
                await service.summary.refresh_if_stale()
        if recent:
            if force:
                await service.recent.refresh()
            else:
                await service.recent.refresh_if_stale()
        health = await service.cache_health()
    finally:
        await service.stop()

    logger.info(
        "Cache warm-up finished (summary=%s, recent=%s)",
        health.summary.fresh,
        health.recent.fresh,
    )
    return health.model_dump()


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Build the summary and recent detection snapshots.")
    parser.add_argument(
        "--config",
        default=APP_DIR / "config.yaml",
        type=Path,
        help="Path to config.yaml (default: app/config.yaml).",
    )
    parser.add_argument("--force", action="store_true", help="Rebuild even if snapshots are fresh.")
    parser.add_argument("--skip-summary", action="store_true", help="Do not touch the summary snapshot.")
    parser.add_argument("--skip-recent", action="store_true", help="Do not touch the recent snapshot.")
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    setup_console_logging()
    config = load_config(args.config)
    result = asyncio.run(
        run_warmup(
            config,
            summary=not args.skip_summary,
            recent=not args.skip_recent,
            force=args.force,
        )
    )
    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    main()
