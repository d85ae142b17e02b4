#!/usr/bin/env python3
"""
Entry point for the contract monitor.

Usage:
    python scripts/run_monitor.py

    # Log notifications instead of posting them:
    python scripts/run_monitor.py --dry-run

    # One sampling pass and one report cycle, then exit:
    python scripts/run_monitor.py --once --dry-run
"""

import argparse
import asyncio
import dataclasses
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import structlog
from dotenv import load_dotenv

from contract_monitor.config import load_config
from contract_monitor.errors import ConfigurationError
from contract_monitor.main import ContractMonitor, create_monitor
from contract_monitor.shutdown import GracefulShutdownHandler


def setup_logging(log_level: str = "INFO", log_file: str = None) -> None:
    """Configure structured logging for the monitor."""
    import logging

    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
        handlers=handlers,
    )

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


async def run_once(monitor: ContractMonitor) -> None:
    """Sample, report, exit. The first pass only captures the baseline."""
    try:
        await monitor.refresh_instruments()
        await monitor.run_sampling_cycle()
        await monitor.run_report_cycle()
    finally:
        await monitor.aclose()


async def run_forever(monitor: ContractMonitor) -> None:
    shutdown = GracefulShutdownHandler()
    shutdown.register_cleanup(monitor.aclose)
    shutdown.register_cleanup(monitor.stop)
    shutdown.install()

    runner = asyncio.create_task(monitor.run())
    waiter = asyncio.create_task(shutdown.wait())

    try:
        await asyncio.wait({runner, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        monitor.stop()
        waiter.cancel()
        await asyncio.gather(runner, waiter, return_exceptions=True)
        await shutdown.run_cleanup()

    if runner.done() and not runner.cancelled() and runner.exception() is not None:
        raise runner.exception()


def main():
    parser = argparse.ArgumentParser(
        description="Contract Monitor - open interest, price and funding rate alerts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Webhook URLs are read from config/settings.yaml, which may reference
environment variables (loaded from .env), e.g. ${DISCORD_WEBHOOK_URL}.
        """,
    )

    parser.add_argument(
        "--config",
        type=str,
        default="config/settings.yaml",
        help="Path to configuration file",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Path to log file",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log notifications instead of posting them",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sampling and report cycle, then exit",
    )

    args = parser.parse_args()

    # Load environment variables
    load_dotenv()

    setup_logging(args.log_level, args.log_file)
    logger = structlog.get_logger(__name__)

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        logger.error("invalid_configuration", error=str(e))
        sys.exit(2)

    if args.dry_run:
        config = dataclasses.replace(config, dry_run=True)
    if args.once:
        config = dataclasses.replace(config, health=dataclasses.replace(config.health, enabled=False))

    logger.info(
        "starting_contract_monitor",
        config=args.config,
        dry_run=config.dry_run,
        once=args.once,
    )

    monitor = create_monitor(config)

    try:
        asyncio.run(run_once(monitor) if args.once else run_forever(monitor))
    except KeyboardInterrupt:
        logger.info("contract_monitor_interrupted")
    except Exception as e:
        logger.exception("contract_monitor_crashed", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
