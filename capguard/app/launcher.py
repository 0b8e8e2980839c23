"""``capguard launch`` - run the consumer under full supervision."""

import argparse
import asyncio
import shlex
from pathlib import Path
from typing import Any, Dict, Optional

from capguard.cli.common import (
    add_device_arguments,
    add_logging_arguments,
    install_exception_handlers,
    log_preflight_failure,
    log_session_shutdown,
    log_session_startup,
    setup_cli_logging,
)
from capguard.core.errors import PreflightFailed
from capguard.core.logging_utils import get_module_logger
from capguard.core.paths import session_log_file
from capguard.core.settings import CaptureSettings
from capguard.core.supervision_system import EXIT_PREFLIGHT_FAILED, SupervisionSystem


logger = get_module_logger("Launcher")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="capguard launch",
        description="Launch the consumer application with USB capture device crash recovery",
        allow_abbrev=False,
        epilog="Arguments not recognised here are passed through to the consumer.",
    )
    add_device_arguments(parser)

    parser.add_argument(
        "--basedir",
        type=Path,
        default=None,
        help="Project directory holding ffmpeg/feed.sh (default: install location)",
    )
    parser.add_argument(
        "--consumer-args",
        "--obs-args",
        dest="consumer_args",
        type=str,
        default=None,
        help='Extra consumer arguments as one string, e.g. "--scene Live"',
    )
    parser.add_argument(
        "--no-loopback",
        dest="use_loopback",
        action="store_false",
        default=None,
        help="Do not load v4l2loopback or run the bridging process",
    )
    parser.add_argument(
        "--no-device-required",
        dest="require_device",
        action="store_false",
        default=None,
        help="Start even when no capture device is configured or present",
    )

    resume_group = parser.add_mutually_exclusive_group()
    resume_group.add_argument(
        "--auto-resume",
        dest="auto_resume",
        action="store_true",
        default=None,
        help="Resume an active stream after a crash (default)",
    )
    resume_group.add_argument(
        "--no-auto-resume",
        dest="auto_resume",
        action="store_false",
        help="Relaunch without resuming the stream",
    )

    add_logging_arguments(parser, default_log_level=None, default_console_output=None)
    return parser


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = build_parser()
    args, extra = parser.parse_known_args(argv)
    args.extra_consumer_args = extra
    return args


def settings_from_args(args: argparse.Namespace, env: Optional[Dict[str, str]] = None) -> CaptureSettings:
    consumer_args = shlex.split(args.consumer_args) if args.consumer_args else []
    consumer_args.extend(getattr(args, "extra_consumer_args", []))

    overrides: Dict[str, Any] = {
        "device": args.device,
        "vidpid": args.vidpid,
        "hub_port": args.hub_port,
        "basedir": args.basedir,
        "use_loopback": args.use_loopback,
        "require_device": args.require_device,
        "auto_resume": args.auto_resume,
        "log_level": args.log_level,
        "console_output": args.console_output,
        "log_dir": args.log_dir,
    }
    if consumer_args:
        overrides["consumer_args"] = consumer_args
    return CaptureSettings.load(overrides, env=env)


async def main(argv: Optional[list[str]] = None) -> int:
    """
    Entry point for a supervised consumer session.

    Exit status: 0 when the consumer exits cleanly, 1 when its crash
    threshold is exceeded, 2 when pre-flight checks fail, 128+N after
    signal N.
    """
    args = parse_args(argv)
    try:
        settings = settings_from_args(args)
    except PreflightFailed as exc:
        log_preflight_failure(logger, exc)
        return EXIT_PREFLIGHT_FAILED

    log_file = setup_cli_logging(settings, settings.log_dir, "capguard")
    install_exception_handlers(logger.logger, asyncio.get_running_loop())

    log_session_startup(
        logger,
        log_file,
        "capguard safe launch",
        project_dir=settings.basedir,
        device=settings.device,
        vidpid=settings.vidpid,
        consumer_args=" ".join(settings.consumer_args),
        loopback=settings.loopback_device if settings.use_loopback else "disabled",
        auto_resume=settings.auto_resume,
    )

    try:
        system = SupervisionSystem(
            settings,
            bridge_log=session_log_file(settings.log_dir, "bridge"),
        )
    except PreflightFailed as exc:
        log_preflight_failure(logger, exc)
        log_session_shutdown(logger, "capguard safe launch", EXIT_PREFLIGHT_FAILED)
        return EXIT_PREFLIGHT_FAILED
    system.install_signal_handlers()
    exit_code = await system.run()

    log_session_shutdown(logger, "capguard safe launch", exit_code)
    return exit_code


def run(argv: Optional[list[str]] = None) -> int:
    return asyncio.run(main(argv))
