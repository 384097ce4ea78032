from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import uvicorn

from dashproxy.config import ProxyConfig, load_config
from dashproxy.logging_utils import setup_console_logging, setup_debug_logging
from dashproxy.service import CacheService
from jobs.warm_caches import run_warmup


PROJECT_ROOT = Path(__file__).resolve().parent
_config_override = os.getenv("DASHPROXY_CONFIG")
CONFIG_PATH = Path(_config_override) if _config_override else PROJECT_ROOT / "config.yaml"
DEBUG_LOGGER = setup_debug_logging(PROJECT_ROOT)


def serve(config: ProxyConfig, *, host: Optional[str] = None, port: Optional[int] = None) -> None:
    bind_host = host or config.server.host
    bind_port = port or config.server.port
    DEBUG_LOGGER.info("server.start", extra={"host": bind_host, "port": bind_port})
    uvicorn.run(
        "api:app",
        host=bind_host,
        port=bind_port,
        app_dir=str(PROJECT_ROOT),
        log_level="info",
    )


async def collect_status(config: ProxyConfig) -> Dict[str, Any]:
    service = CacheService(config)
    await service.start(bootstrap=False, schedule=False)
    try:
        ready, readiness = await service.readiness()
        health = await service.cache_health()
    finally:
        await service.stop()
    return {
        "ready": ready,
        "readiness": readiness.model_dump(),
        "cache": health.model_dump(),
    }


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="BirdNET dashboard caching proxy.")
    parser.add_argument(
        "--config",
        type=Path,
        default=CONFIG_PATH,
        help="Path to config.yaml (default: app/config.yaml or $DASHPROXY_CONFIG).",
    )
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level to stderr.")
    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP proxy (default).")
    serve_parser.add_argument("--host", default=None, help="Bind address (overrides config).")
    serve_parser.add_argument("--port", type=int, default=None, help="Bind port (overrides config).")

    subparsers.add_parser("rebuild-summary", help="Rebuild the 30-day summary snapshot now.")
    subparsers.add_parser("refresh-recent", help="Refresh the recent detections snapshot now.")
    subparsers.add_parser("status", help="Print readiness and cache diagnostics as JSON.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    setup_console_logging(level=logging.DEBUG if args.verbose else logging.INFO)
    config = load_config(args.config)
    command = args.command or "serve"

    if command == "serve":
        serve(config, host=getattr(args, "host", None), port=getattr(args, "port", None))
        return

    if command == "rebuild-summary":
        result = asyncio.run(run_warmup(config, summary=True, recent=False, force=True))
    elif command == "refresh-recent":
        result = asyncio.run(run_warmup(config, summary=False, recent=True, force=True))
    else:
        result = asyncio.run(collect_status(config))
    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    main()
