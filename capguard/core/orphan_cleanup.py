"""Cleanup utilities for orphaned bridging processes and busy device nodes.

A bridging process can outlive the supervisor that spawned it (crash, kill -9
of the launcher, a shell wrapper that forked its own child). These helpers
find such processes by their invocation signature and terminate them, and
report which processes still hold a capture device node open.
"""

import os
from typing import Iterable, List, Optional, Sequence

import psutil

from capguard.core.logging_utils import get_module_logger

logger = get_module_logger("OrphanCleanup")


def cmdline_matches(cmdline: Sequence[str], signature: Sequence[str]) -> bool:
    """True when ``signature`` appears as a contiguous run inside ``cmdline``."""
    if not signature or not cmdline:
        return False
    joined = " ".join(cmdline)
    return " ".join(signature) in joined


def find_signature_processes(
    signature: Sequence[str],
    exclude_pids: Iterable[int] = (),
) -> List[psutil.Process]:
    """Find live processes whose command line contains ``signature``.

    The current process and its parent are never returned.
    """
    matches = []
    skip = {os.getpid(), os.getppid(), *exclude_pids}

    for proc in psutil.process_iter(['pid', 'cmdline']):
        try:
            if proc.pid in skip:
                continue
            cmdline = proc.info.get('cmdline') or []
            if cmdline_matches(cmdline, signature):
                matches.append(proc)
                logger.debug("Signature match: pid=%d, cmd=%s", proc.pid, " ".join(cmdline)[:80])
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue

    return matches


def terminate_processes(processes: Sequence[psutil.Process], timeout: float = 2.0) -> int:
    """Terminate ``processes``, force-killing any that outlive ``timeout``.

    Returns:
        Number of processes that were signalled
    """
    if not processes:
        return 0

    signalled = []
    for proc in processes:
        try:
            logger.warning("Terminating orphaned process: pid=%d", proc.pid)
            proc.terminate()
            signalled.append(proc)
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            logger.warning("Not permitted to terminate pid=%d", proc.pid)

    gone, alive = psutil.wait_procs(signalled, timeout=timeout)
    if gone:
        logger.debug("Gracefully terminated %d process(es)", len(gone))

    for proc in alive:
        try:
            logger.warning("Force killing unresponsive process: pid=%d", proc.pid)
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied) as exc:
            logger.debug("Could not kill pid=%d: %s", proc.pid, exc)

    if alive:
        psutil.wait_procs(alive, timeout=1.0)

    return len(signalled)


def cleanup_signature_processes(
    signature: Sequence[str],
    timeout: float = 2.0,
    exclude_pids: Iterable[int] = (),
) -> int:
    """Kill every process matching ``signature`` (``pkill -f`` equivalent)."""
    orphaned = find_signature_processes(signature, exclude_pids=exclude_pids)
    if not orphaned:
        return 0
    logger.info("Found %d orphaned process(es) matching %s", len(orphaned), " ".join(signature)[:80])
    return terminate_processes(orphaned, timeout=timeout)


def _open_fd_targets(pid: int, proc_root: str = "/proc") -> List[str]:
    # open_files() only reports regular files; device nodes need the fd links
    fd_dir = os.path.join(proc_root, str(pid), "fd")
    targets = []
    for entry in os.listdir(fd_dir):
        try:
            targets.append(os.readlink(os.path.join(fd_dir, entry)))
        except OSError:
            continue
    return targets


def find_device_holders(node_path: str) -> List[psutil.Process]:
    """Processes that currently hold ``node_path`` open."""
    holders = []
    for proc in psutil.process_iter(['pid', 'name']):
        try:
            if node_path in _open_fd_targets(proc.pid):
                holders.append(proc)
        except (PermissionError, FileNotFoundError):
            continue
    return holders


def describe_process(proc: psutil.Process) -> Optional[str]:
    try:
        cmdline = proc.cmdline()
        return f"pid={proc.pid} {' '.join(cmdline[:4]) if cmdline else proc.name()}"
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return None
