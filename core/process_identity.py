"""Process identity verification against a target's process table."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from core.models import ProcessCheckResult
from utils.constants import PROCESS_QUERY_TIMEOUT_MS

logger = logging.getLogger(__name__)

PROCESS_TABLE_COMMAND = "ps -eo pid=,args="


def command_matches(actual: str, expected: str) -> bool:
    """Loose comparison of a live command line with the one we launched.

    Shells and wrappers rewrite command lines (``sh -c``, ``nohup``, re-exec),
    so either the expected text appears inside the actual line or the first
    tokens agree. This accepts some false positives on PID reuse.
    """
    actual = (actual or "").strip()
    expected = (expected or "").strip()
    if not actual or not expected:
        return False
    if expected in actual:
        return True
    return actual.split()[0] == expected.split()[0]


def parse_ps_line(line: str):
    """``"  123 cmd args"`` -> ``(123, "cmd args")``; None for junk lines."""
    parts = line.strip().split(None, 1)
    if not parts or not parts[0].isdigit():
        return None
    return int(parts[0]), (parts[1] if len(parts) > 1 else "")


def parse_process_table(stdout: str) -> Dict[int, str]:
    table: Dict[int, str] = {}
    for line in (stdout or "").splitlines():
        parsed = parse_ps_line(line)
        if parsed is not None:
            table[parsed[0]] = parsed[1]
    return table


async def query_process(target, pid: int) -> Optional[str]:
    """Return the command line of ``pid`` or None when it is not running.

    Raises whatever the target raises; ``verify`` is the non-raising wrapper.
    """
    result = await target.run(f"ps -p {int(pid)} -o pid=,args=", timeout_ms=PROCESS_QUERY_TIMEOUT_MS)
    for line in result.stdout.splitlines():
        parsed = parse_ps_line(line)
        if parsed is not None and parsed[0] == int(pid):
            return parsed[1]
    return None


async def read_process_table(target) -> Dict[int, str]:
    """One round trip for the whole table: pid -> command line."""
    result = await target.run(PROCESS_TABLE_COMMAND, timeout_ms=PROCESS_QUERY_TIMEOUT_MS)
    if result.exit_code != 0 and not result.stdout.strip():
        raise RuntimeError(f"process table query failed: {result.stderr.strip() or result.exit_code}")
    return parse_process_table(result.stdout)


def evaluate(pid: int, expected_command: str, actual: Optional[str]) -> ProcessCheckResult:
    if actual is None:
        return ProcessCheckResult(pid=pid, running=False, matches=False)
    return ProcessCheckResult(
        pid=pid,
        running=True,
        matches=command_matches(actual, expected_command),
        actual_command=actual,
    )


async def verify(pid: int, expected_command: str, target) -> ProcessCheckResult:
    """Check that ``pid`` is alive and still the process we started.

    Never raises: an unreachable target or failed query reads as not running.
    """
    if target is None:
        return ProcessCheckResult(pid=pid, running=False, reason="no_target")
    try:
        actual = await query_process(target, pid)
    except Exception as e:
        logger.debug(f"Process query for PID {pid} failed: {e}")
        return ProcessCheckResult(pid=pid, running=False, reason=f"query_failed:{e}")
    return evaluate(pid, expected_command, actual)
