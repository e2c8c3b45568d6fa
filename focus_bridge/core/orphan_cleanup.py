"""Cleanup of native engine processes orphaned by a previous run.

If the supervising app crashes, a natively spawned engine keeps running,
holding the camera open. Before spawning a new one we terminate any engine
process whose parent is gone (re-parented to init).
"""

import os
from pathlib import Path
from typing import List

import psutil

from .logging_utils import get_module_logger

logger = get_module_logger("OrphanCleanup")


def _matches_binary(cmdline: List[str], binary_name: str) -> bool:
    if not cmdline:
        return False
    return Path(cmdline[0]).name == binary_name


def find_orphaned_bridge_processes(binary_name: str) -> List[psutil.Process]:
    """Find engine processes named ``binary_name`` whose parent has died."""
    orphaned = []
    current_pid = os.getpid()

    for proc in psutil.process_iter(['pid', 'name', 'cmdline']):
        try:
            if proc.pid == current_pid:
                continue

            cmdline = proc.info.get('cmdline') or []
            if not _matches_binary(cmdline, binary_name):
                continue

            try:
                parent = proc.parent()
            except psutil.NoSuchProcess:
                parent = None

            if parent is None or parent.pid == 1:
                orphaned.append(proc)
                logger.debug("Found orphaned engine: pid=%d, cmd=%s", proc.pid, ' '.join(cmdline)[:80])

        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue

    return orphaned


def cleanup_orphaned_bridges(binary_name: str, timeout: float = 5.0) -> int:
    """Terminate orphaned engine processes, force-killing stragglers.

    Args:
        binary_name: File name of the engine executable (e.g. ``focus_bridge``)
        timeout: Seconds to wait for graceful exit before SIGKILL

    Returns:
        Number of processes signalled
    """
    orphaned = find_orphaned_bridge_processes(binary_name)
    if not orphaned:
        return 0

    logger.info("Found %d orphaned engine process(es)", len(orphaned))
    signalled = []
    for proc in orphaned:
        try:
            logger.warning("Terminating orphaned engine: pid=%d", proc.pid)
            proc.terminate()
            signalled.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue

    if signalled:
        _gone, alive = psutil.wait_procs(signalled, timeout=timeout)
        for proc in alive:
            try:
                logger.warning("Force killing unresponsive engine: pid=%d", proc.pid)
                proc.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass
        if alive:
            psutil.wait_procs(alive, timeout=1.0)

    return len(signalled)
