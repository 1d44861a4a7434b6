"""Signal escalation for processes inside an execution target."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from core.models import KillResult
from core.process_identity import command_matches, query_process
from utils.constants import (
    FORCE_KILL_VERIFY_ATTEMPTS,
    FORCE_KILL_VERIFY_DELAY_SECONDS,
    TERMINATION_VERIFY_ATTEMPTS,
    TERMINATION_VERIFY_DELAY_SECONDS,
)

logger = logging.getLogger(__name__)


def _is_ours(actual: Optional[str], expected_command: Optional[str]) -> bool:
    if actual is None:
        return False
    return expected_command is None or command_matches(actual, expected_command)


async def wait_terminated(target, pid: int, expected_command: Optional[str] = None,
                          attempts: int = TERMINATION_VERIFY_ATTEMPTS,
                          delay: float = TERMINATION_VERIFY_DELAY_SECONDS) -> bool:
    """Poll until ``pid`` is gone or no longer matches ``expected_command``.

    A failed query counts as gone.
    """
    for attempt in range(1, attempts + 1):
        try:
            actual = await query_process(target, pid)
        except Exception as e:
            logger.info(f"[Process Termination] PID {pid}: query failed, treating as gone ({e})")
            return True
        if not _is_ours(actual, expected_command):
            if attempt > 1:
                logger.info(f"[Process Termination] PID {pid}: verified terminated after {attempt} attempts")
            return True
        if attempt < attempts:
            await asyncio.sleep(delay)
    logger.warning(f"[Process Termination] PID {pid}: still running after {attempts} checks")
    return False


async def terminate(target, pid: int, expected_command: Optional[str] = None,
                    grace_attempts: int = TERMINATION_VERIFY_ATTEMPTS,
                    grace_delay: float = TERMINATION_VERIFY_DELAY_SECONDS) -> KillResult:
    """TERM, wait out the grace period, KILL, then confirm.

    Returns ``killed=False, reason="not_running"`` when the PID was already
    gone (or reused by an unrelated process) before any signal was sent.
    """
    try:
        actual = await query_process(target, pid)
    except Exception as e:
        logger.warning(f"[Process Termination] PID {pid}: target unreachable: {e}")
        return KillResult(pid=pid, killed=False, reason="target_unavailable")
    if not _is_ours(actual, expected_command):
        return KillResult(pid=pid, killed=False, reason="not_running")

    try:
        await target.signal_process(pid, "TERM")
    except Exception as e:
        logger.warning(f"[Process Termination] PID {pid}: SIGTERM failed: {e}")

    if await wait_terminated(target, pid, expected_command, grace_attempts, grace_delay):
        return KillResult(pid=pid, killed=True, reason="terminated")

    logger.warning(f"[Process Termination] PID {pid}: graceful kill failed, using force kill")
    try:
        await target.force_kill(pid)
    except Exception as e:
        logger.error(f"[Process Termination] PID {pid}: force kill failed: {e}")

    if await wait_terminated(target, pid, expected_command,
                             FORCE_KILL_VERIFY_ATTEMPTS, FORCE_KILL_VERIFY_DELAY_SECONDS):
        return KillResult(pid=pid, killed=True, reason="terminated")

    logger.error(f"[Process Termination] PID {pid}: process still running after force kill")
    return KillResult(pid=pid, killed=False, reason="still_running")
