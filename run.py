#!/usr/bin/env python3
"""
Vault Risk Monitor Startup Script

Usage:
    python run.py [--port PORT] [--host HOST] [--env ENV]

Environment Variables:
    RISK_MONITOR_PORT: Port to run the service on (default: 8001)
    ENV: Environment (development/production)
    LOG_LEVEL: Logging level (DEBUG/INFO/WARNING/ERROR)
    CHECK_INTERVAL_MS: Housekeeping interval of the risk monitor
"""

import argparse
import sys

import structlog
import uvicorn

from app.config import settings, build_monitor_config
from app.error_handling import ValidationError

logger = structlog.get_logger()


def parse_arguments():
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Vault Risk Monitor - credit vault liquidation-risk monitoring"
    )

    parser.add_argument(
        "--port", "-p",
        type=int,
        default=settings.RISK_MONITOR_PORT,
        help=f"Port to run the service on (default: {settings.RISK_MONITOR_PORT})"
    )

    parser.add_argument(
        "--host", "-H",
        type=str,
        default="0.0.0.0",
        help="Host to bind the service to (default: 0.0.0.0)"
    )

    parser.add_argument(
        "--env", "-e",
        type=str,
        choices=["development", "production"],
        default=settings.ENV if settings.ENV in ("development", "production") else "development",
        help=f"Environment mode (default: {settings.ENV})"
    )

    parser.add_argument(
        "--reload", "-r",
        action="store_true",
        help="Enable auto-reload for development"
    )

    parser.add_argument(
        "--log-level", "-l",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=settings.LOG_LEVEL,
        help=f"Log level (default: {settings.LOG_LEVEL})"
    )

    return parser.parse_args()


def validate_environment() -> bool:
    """Check that the monitor configuration built from the environment is usable"""
    try:
        build_monitor_config(settings)
    except ValidationError as e:
        print(f"Environment validation failed: {e}")
        return False

    return True


def main():
    """Main entry point"""
    args = parse_arguments()

    if not validate_environment():
        sys.exit(1)

    logger.info("Starting vault risk monitor",
                host=args.host,
                port=args.port,
                env=args.env,
                check_interval_ms=settings.CHECK_INTERVAL_MS)

    try:
        # The monitor is single-process; alerts and market data live in memory
        uvicorn.run(
            "app.main:app",
            host=args.host,
            port=args.port,
            log_level=args.log_level.lower(),
            access_log=True,
            reload=args.reload or args.env == "development",
            workers=1
        )
    except KeyboardInterrupt:
        logger.info("Received shutdown signal")


if __name__ == "__main__":
    main()
