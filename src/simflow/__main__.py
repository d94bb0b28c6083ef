"""Run the SimFlow API: ``python -m simflow [--host H] [--port P] [--reload]``."""

from __future__ import annotations

import argparse
from collections.abc import Sequence

import uvicorn

from simflow.config import settings
from simflow.logging_config import configure_logging


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Command-line overrides; anything omitted falls back to the environment."""
    parser = argparse.ArgumentParser(prog="simflow", description="Run the SimFlow API")
    parser.add_argument("--host", default=settings.HOST, help="Bind address")
    parser.add_argument("--port", type=int, default=settings.PORT, help="Bind port")
    parser.add_argument(
        "--reload",
        action="store_true",
        default=settings.DEBUG,
        help="Restart on code changes (defaults to DEBUG)",
    )
    parser.add_argument(
        "--log-level",
        default=settings.log_level,
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)
    configure_logging(args.log_level)
    uvicorn.run(
        "simflow.api.app:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_config=None,
    )


if __name__ == "__main__":
    main()
