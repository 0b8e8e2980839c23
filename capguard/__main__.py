"""Allow ``python -m capguard`` and the ``capguard`` console script.

The first argument selects a command; anything else (including no argument)
runs the supervised launcher.
"""

from __future__ import annotations

import sys
from typing import Callable, Dict, Optional, Sequence


def _commands() -> Dict[str, Callable[[Optional[list[str]]], int]]:
    from capguard.app import launcher, monitor_cli, repair_cli, simulate_disconnect

    return {
        "launch": launcher.run,
        "repair": repair_cli.run,
        "monitor": monitor_cli.run,
        "simulate-disconnect": simulate_disconnect.run,
    }


def dispatch(argv: Sequence[str]) -> int:
    commands = _commands()
    args = list(argv)
    if args and args[0] in commands:
        return commands[args[0]](args[1:])
    return commands["launch"](args)


def main() -> None:
    try:
        sys.exit(dispatch(sys.argv[1:]))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
