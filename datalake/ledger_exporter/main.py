"""
Ledger Exporter - command-line entry point.

Usage:
    ledger-exporter --config config.yaml --start 2 --end 255
    ledger-exporter --config config.yaml --from-last 1000

Exit codes:
    0   Export finished, or stopped by SIGINT/SIGTERM
    1   Fatal error (source, upload, ...)
    2   Invalid arguments, configuration, or datastore manifest mismatch

Configuration is read from the YAML file given with --config; object-store
credentials and logging come from environment variables. See config.py.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

import json_log_formatter

from .app import ExporterApp
from .config import AppConfig, ObservabilityConfig
from .errors import ExportCancelled, ExporterError, InvalidConfigError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INVALID = 2


def setup_logging(config: ObservabilityConfig, verbose: bool = False) -> None:
    """Configure logging based on configuration.

    Args:
        config: Observability configuration
        verbose: Force DEBUG level
    """
    level = logging.DEBUG if verbose else getattr(logging, config.log_level.upper(), logging.INFO)

    if config.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _uint32(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {value!r}") from None
    if number < 0 or number > 2**32 - 1:
        raise argparse.ArgumentTypeError(f"must be an unsigned 32-bit integer: {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ledger-exporter",
        description="Export ledgers into an object-store datalake",
    )
    parser.add_argument("--start", type=_uint32, help="Starting ledger (inclusive)")
    parser.add_argument("--end", type=_uint32, help="Ending ledger (inclusive); 0 streams without end")
    parser.add_argument(
        "--from-last",
        type=_uint32,
        help="Start N ledgers before the network tip and keep following it",
    )
    parser.add_argument("--config", default="config.yaml", help="Path to the YAML config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    return parser


async def run_exporter(
    config: AppConfig,
    start: Optional[int],
    end: Optional[int],
    from_last: Optional[int],
) -> int:
    """Run one export and map its outcome to an exit code."""
    app = ExporterApp(config)

    loop = asyncio.get_running_loop()

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        app.request_shutdown(f"received signal {signal.Signals(sig).name}")

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        await app.run(start=start, end=end, from_last=from_last)
        return EXIT_OK
    except ExportCancelled as e:
        logger.info(f"Export stopped: {e.reason}")
        return EXIT_OK
    except InvalidConfigError as e:
        logger.error(f"Invalid configuration: {e}", extra={"code": e.code})
        return EXIT_INVALID
    except ExporterError as e:
        logger.error(f"Export failed: {e}", exc_info=True, extra={"code": e.code})
        return EXIT_FAILURE
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
        await app.close()


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.from_last is not None and (args.start is not None or args.end is not None):
        parser.error("--from-last cannot be combined with --start or --end")
    if args.from_last is None and args.start is None:
        parser.error("one of --start or --from-last is required")

    try:
        config = AppConfig.from_file(args.config)
    except InvalidConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(EXIT_INVALID)

    setup_logging(config.observability, verbose=args.verbose)

    try:
        exit_code = asyncio.run(run_exporter(config, args.start, args.end, args.from_last))
    except InvalidConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        exit_code = EXIT_INVALID
    except Exception as e:
        logger.error(f"Ledger exporter crashed: {e}", exc_info=True)
        exit_code = EXIT_FAILURE

    logging.shutdown()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
