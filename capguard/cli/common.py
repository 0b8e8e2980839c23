from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from capguard.core.devices.identity import parse_vidpid
from capguard.core.errors import PreflightFailed
from capguard.core.logging_config import LEVELS, configure_logging
from capguard.core.paths import ensure_directories, session_log_file


def vidpid_arg(value: str) -> str:
    try:
        vendor_id, product_id = parse_vidpid(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc
    return f"{vendor_id}:{product_id}"


def add_logging_arguments(
    parser: argparse.ArgumentParser,
    *,
    default_log_level: str = "info",
    default_console_output: bool = True,
) -> None:
    parser.add_argument(
        "--log-level",
        choices=sorted(LEVELS),
        default=default_log_level,
        help="Logging verbosity (default: %(default)s)",
    )
    parser.add_argument(
        "--log-dir",
        type=Path,
        default=None,
        help="Directory for the per-session log file",
    )

    console_group = parser.add_mutually_exclusive_group()
    console_group.add_argument(
        "--console",
        dest="console_output",
        action="store_true",
        default=default_console_output,
        help="Also log to console (in addition to file)",
    )
    console_group.add_argument(
        "--no-console",
        dest="console_output",
        action="store_false",
        help="Log to file only (no console output)",
    )


def add_device_arguments(parser: argparse.ArgumentParser, *, device_required: bool = False) -> None:
    parser.add_argument(
        "--device",
        type=str,
        default=None,
        required=device_required,
        help="Capture device node, e.g. /dev/video0 or a /dev/v4l/by-id link",
    )
    parser.add_argument(
        "--vidpid",
        type=vidpid_arg,
        default=None,
        help="USB vendor:product id of the capture device, e.g. 3188:1000",
    )
    parser.add_argument(
        "--hub",
        dest="hub_port",
        type=str,
        default=None,
        help="Hub port for power cycling, e.g. 1-1.4 or 1-1:4 (needs uhubctl)",
    )


def setup_cli_logging(args: Any, log_dir: Path, prefix: str) -> Path:
    """Configure console + rotating file logging for one CLI session."""
    ensure_directories(log_dir)
    log_file = session_log_file(log_dir, prefix)
    configure_logging(
        args.log_level,
        force=True,
        console=args.console_output,
        log_file=log_file,
    )
    return log_file


def install_exception_handlers(
    logger: logging.Logger,
    loop: Optional[asyncio.AbstractEventLoop] = None
) -> None:
    def handle_exception(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return
        logger.critical(
            "Uncaught exception",
            exc_info=(exc_type, exc_value, exc_traceback)
        )

    sys.excepthook = handle_exception

    if loop is not None:
        def handle_asyncio_exception(loop, context):
            exception = context.get('exception')
            message = context.get('message', 'Unhandled asyncio exception')
            if exception:
                logger.error("Asyncio exception: %s", message, exc_info=exception)
            else:
                logger.error("Asyncio error: %s, context: %s", message, context)

        loop.set_exception_handler(handle_asyncio_exception)


def log_session_startup(
    logger: logging.Logger,
    log_file: Path,
    title: str,
    **extra_info
) -> None:
    logger.info("=" * 60)
    logger.info("========== %s ==========", title.upper())
    logger.info("=" * 60)
    logger.info("Log file: %s", log_file)

    for key, value in extra_info.items():
        display_key = key.replace('_', ' ').upper()
        logger.info("%s: %s", display_key, value if value not in (None, "", []) else "none")

    logger.info("=" * 60)


def log_session_shutdown(logger: logging.Logger, title: str, exit_code: int) -> None:
    logger.info("=" * 60)
    logger.info("%s exiting (status %d)", title, exit_code)
    logger.info("=" * 60)


def log_preflight_failure(logger: logging.Logger, exc: PreflightFailed) -> None:
    logger.error("Pre-flight failed: %s", exc)
    for hint in exc.hints:
        logger.error("  %s", hint)
