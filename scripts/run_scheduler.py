#!/usr/bin/env python3
"""
Scheduler runner — one sweep, or the sweep loop at the configured interval.

Usage:
    # One sweep, print the report as JSON and exit:
    python scripts/run_scheduler.py --once

    # Run until interrupted:
    python scripts/run_scheduler.py

    # Use another config file:
    FOLLOWUP_CONFIG=/etc/followups/settings.yaml python scripts/run_scheduler.py
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def run(once: bool, config_path: str = None) -> int:
    from dotenv import load_dotenv
    load_dotenv()

    import structlog
    from config.logging import configure_logging
    from config.settings import load_settings
    from followups.bootstrap import build_engine
    from models.errors import ConfigurationError

    try:
        settings = load_settings(config_path)
    except ConfigurationError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        for err in e.details.get("errors", []):
            print(f"  - {err}", file=sys.stderr)
        return 2

    configure_logging(settings.log_format, settings.debug)
    logger = structlog.get_logger()

    engine = build_engine(settings)
    await engine.start(run_scheduler=not once)
    try:
        if once:
            report = await engine.scheduler.run_once()
            print(report.model_dump_json(indent=2))
            return 0 if report.ok else 1

        stop = asyncio.Event()
        try:
            await stop.wait()
        except asyncio.CancelledError:
            logger.info("scheduler_runner_interrupted")
        return 0
    finally:
        await engine.close()


def main():
    parser = argparse.ArgumentParser(description="Follow-up queue scheduler sweep")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    parser.add_argument("--config", default=None, help="Path to settings YAML")
    args = parser.parse_args()

    try:
        sys.exit(asyncio.run(run(once=args.once, config_path=args.config)))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
