"""Batch process status checks against a single execution target."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Sequence

from core.models import ProcessCheckRequest, ProcessCheckResult
from core.process_identity import evaluate, read_process_table, verify

logger = logging.getLogger(__name__)


def _unavailable(requests: Sequence[ProcessCheckRequest], reason: str) -> List[ProcessCheckResult]:
    return [ProcessCheckResult(pid=r.pid, running=False, reason=reason) for r in requests]


async def check_batch(requests: Sequence[ProcessCheckRequest], target) -> List[ProcessCheckResult]:
    """Check every request with as few round trips as possible.

    Results come back in request order. An absent or unreachable target
    answers every request with ``running=False`` without querying anything.
    """
    requests = list(requests)
    if not requests:
        return []
    if target is None:
        return _unavailable(requests, "no_target")

    try:
        available = await target.is_available()
    except Exception as e:
        logger.warning(f"Availability probe for {getattr(target, 'target_id', '?')} failed: {e}")
        available = False
    if not available:
        return _unavailable(requests, "target_unavailable")

    try:
        table = await read_process_table(target)
    except Exception as e:
        logger.info(f"Process table query failed, checking {len(requests)} PIDs individually: {e}")
        return await _check_individually(requests, target)

    return [evaluate(r.pid, r.expected_command, table.get(r.pid)) for r in requests]


async def _check_individually(requests: List[ProcessCheckRequest], target) -> List[ProcessCheckResult]:
    # verify() never raises, so one bad PID cannot sink the others
    return list(await asyncio.gather(*(verify(r.pid, r.expected_command, target) for r in requests)))

