"""
Command line entry point.

Usage:
    python -m storesync sync       # run one full sync and exit
    python -m storesync preload    # preload period stats and print a summary
    python -m storesync status     # show sync log status and record counts
    python -m storesync run        # preload, then keep background jobs running
"""
import argparse
import asyncio
import json
import sys

from storesync.app import Pipeline
from storesync.config import config
from storesync.exceptions import ConfigurationError
from storesync.observability import get_logger, setup_logging

logger = get_logger("storesync")


async def _sync(pipeline: Pipeline) -> int:
    await pipeline.connect()
    try:
        result = await pipeline.orchestrator.run_full_sync()
    finally:
        await pipeline.stop()
    print(json.dumps(result, indent=2, default=str))
    return 1 if result.get("errors") else 0


async def _preload(pipeline: Pipeline) -> int:
    await pipeline.client.connect()
    try:
        result = await pipeline.preloader.preload_all()
        for period in pipeline.config.preloader.periods:
            loaded = pipeline.preloader.get_stats(period)
            if loaded is not None:
                logger.info(f"{period}: {json.dumps(loaded.to_dict(), default=str)}")
    finally:
        await pipeline.client.close()
    print(json.dumps(result, indent=2, default=str))
    return 1 if result.get("errors") else 0


async def _status(pipeline: Pipeline) -> int:
    await pipeline.repository.connect()
    try:
        status = await pipeline.orchestrator.get_status()
    finally:
        await pipeline.repository.close()
    print(json.dumps(status, indent=2, default=str))
    return 0


async def _run(pipeline: Pipeline, initial_sync: bool) -> int:
    await pipeline.start(run_initial_sync=initial_sync)
    try:
        await asyncio.Event().wait()
    finally:
        await pipeline.stop()
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="storesync", description="Storefront sync and stats pipeline")
    parser.add_argument("--log-level", default=config.logging.level, help="Log level (default: %(default)s)")
    parser.add_argument("--json-logs", action="store_true", default=config.logging.json_format)

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("sync", help="Run one full sync")
    commands.add_parser("preload", help="Preload period stats once")
    commands.add_parser("status", help="Show last sync results and record counts")
    run = commands.add_parser("run", help="Run background jobs until interrupted")
    run.add_argument("--initial-sync", action="store_true", help="Run a full sync before scheduling")

    args = parser.parse_args(argv)
    setup_logging(level=args.log_level, json_format=args.json_logs)

    try:
        pipeline = Pipeline()
    except ConfigurationError as e:
        logger.critical(f"Configuration error: {e}")
        return 2

    if args.command == "sync":
        runner = _sync(pipeline)
    elif args.command == "preload":
        runner = _preload(pipeline)
    elif args.command == "status":
        runner = _status(pipeline)
    else:
        runner = _run(pipeline, args.initial_sync)

    try:
        return asyncio.run(runner)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
