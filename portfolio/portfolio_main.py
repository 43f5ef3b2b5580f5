#!/usr/bin/env python3
"""
portfolio_main.py — Portfolio Analytics Service entry point.

Serves the valuation history, analytics and market overview API.

Usage:
    python portfolio_main.py [--port 8090] [--host 0.0.0.0]

Environment:
    See service_config.py for the supported variables.
"""

import argparse
import os
import sys

from loguru import logger

from service_config import ServiceConfig


def setup_logging(log_level: str = "INFO") -> None:
    logger.remove()
    logger.add(
        sys.stdout,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
        level=log_level,
        colorize=True,
    )
    logger.add(
        "logs/portfolio.log",
        rotation="10 MB",
        retention="7 days",
        level="DEBUG",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
    )


def main() -> None:
    config = ServiceConfig.from_env()

    parser = argparse.ArgumentParser(description="Portfolio Analytics Service")
    parser.add_argument("--host", default="0.0.0.0", help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=config.port,
                        help=f"HTTP port (default: {config.port})")
    args = parser.parse_args()

    os.makedirs("logs", exist_ok=True)
    setup_logging(config.log_level)

    import uvicorn
    from portfolio_api import app

    logger.info("Portfolio Analytics Service listening on {}:{}", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port, log_level=config.log_level.lower())


if __name__ == "__main__":
    main()
