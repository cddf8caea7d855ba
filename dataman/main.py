"""
dataman - Main entry point.

Usage:
    python -m dataman.main register
    python -m dataman.main datasets

Configuration is entirely via environment variables; ``--data-dir`` overrides
``DATAMAN_DATA_DIR``. See config.py for all available settings.

Invariants:
    - Logging is configured before the registry is opened
    - Configuration errors exit with status 1 before any store is touched
"""

from __future__ import annotations

import logging
import sys
from dataclasses import replace

import json_log_formatter

from .config import DatamanConfig, ObservabilityConfig
from .tools.registry_cli import RegistryCLI, build_parser, execute

logger = logging.getLogger(__name__)


def setup_logging(config: ObservabilityConfig) -> None:
    """Configure root logging.

    Args:
        config: Observability configuration
    """
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    if config.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Returns:
        Process exit code
    """
    args = build_parser().parse_args(argv)

    try:
        config = DatamanConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    if args.data_dir:
        config.storage = replace(config.storage, data_dir=args.data_dir)

    setup_logging(config.observability)
    config.log_config()

    return execute(args, RegistryCLI(config))


if __name__ == "__main__":
    sys.exit(main())
