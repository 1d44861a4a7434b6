"""Per-session registry of processes started by tool calls."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import defaultdict
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from core.batch_checker import check_batch
from core.models import KillResult, ProcessCheckRequest, ProcessCheckResult, ProcessState, TrackedProcess
from core.process_termination import terminate
from core.sandbox_errors import DuplicateProcessError

logger = logging.getLogger(__name__)

# sandbox_id -> target (None when the sandbox is gone)
TargetResolver = Callable[[str], Awaitable[Optional[object]]]

_REDIRECT_RE = re.compile(r'(?<![0-9&])(?:[12]?>>?)\s*([^\s;&|<>()]+)')
_TEE_RE = re.compile(r'\btee\s+(?:-a\s+)?([^\s;&|<>()]+)')
_OUTPUT_FLAG_RE = re.compile(r'(?:^|\s)(?:-o[NXGA]?|--output(?:-file)?)(?:=|\s+)([^\s;&|<>()]+)')
_IGNORED_PATHS = {"/dev/null", "/dev/stdout", "/dev/stderr"}


class BackgroundProcessTracker:
    """Background processes of one chat session, keyed by (sandbox_id, pid).

    Mutations are serialized by an asyncio lock; target round trips happen
    outside of it.
    """

    def __init__(self, session_id: str = ""):
        self.session_id = session_id
        self._processes: Dict[Tuple[str, int], TrackedProcess] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def extract_output_files(command: str) -> List[str]:
        """Files a command writes to: redirections, ``tee`` and ``-o``-style flags."""
        found: List[str] = []
        for pattern in (_REDIRECT_RE, _TEE_RE, _OUTPUT_FLAG_RE):
            for match in pattern.finditer(command or ""):
                path = match.group(1).strip("'\"")
                if path and not path.startswith("&") and path not in _IGNORED_PATHS and path not in found:
                    found.append(path)
        return found

    async def register(
        self,
        pid: int,
        expected_command: str,
        tool_call_id: str,
        sandbox_id: str,
        is_background: bool = True,
    ) -> TrackedProcess:
        key = (sandbox_id, int(pid))
        async with self._lock:
            if key in self._processes:
                raise DuplicateProcessError(f"PID {pid} is already tracked for sandbox {sandbox_id}")
            proc = TrackedProcess(
                pid=int(pid),
                expected_command=expected_command,
                tool_call_id=tool_call_id,
                sandbox_id=sandbox_id,
                is_background=is_background,
                output_files=self.extract_output_files(expected_command),
            )
            self._processes[key] = proc
        logger.info(f"Tracking PID {pid} in {sandbox_id} for tool call {tool_call_id}")
        return proc

    def get(self, pid: int, sandbox_id: str) -> Optional[TrackedProcess]:
        return self._processes.get((sandbox_id, int(pid)))

    def list_processes(self, sandbox_id: Optional[str] = None) -> List[TrackedProcess]:
        procs = sorted(self._processes.values(), key=lambda p: p.started_at)
        if sandbox_id is None:
            return procs
        return [p for p in procs if p.sandbox_id == sandbox_id]

    def processes_writing(self, paths: Iterable[str], sandbox_id: Optional[str] = None) -> List[TrackedProcess]:
        """Tracked, not-known-stopped processes whose output files include any of ``paths``."""
        wanted = set(paths)
        return [
            p for p in self.list_processes(sandbox_id)
            if p.state != ProcessState.STOPPED and wanted.intersection(p.output_files)
        ]

    async def remove(self, pid: int, sandbox_id: str) -> bool:
        async with self._lock:
            return self._processes.pop((sandbox_id, int(pid)), None) is not None

    async def forget_sandbox(self, sandbox_id: str) -> int:
        """Drop every entry of a torn-down sandbox; returns how many were dropped."""
        async with self._lock:
            keys = [k for k in self._processes if k[0] == sandbox_id]
            for key in keys:
                del self._processes[key]
        if keys:
            logger.info(f"Forgot {len(keys)} tracked processes for sandbox {sandbox_id}")
        return len(keys)

    async def refresh_status(self, resolve_target: TargetResolver) -> List[ProcessCheckResult]:
        """Re-check every tracked process, one batch per sandbox.

        Updates states in place and never removes entries.
        """
        by_sandbox: Dict[str, List[TrackedProcess]] = defaultdict(list)
        for proc in self.list_processes():
            by_sandbox[proc.sandbox_id].append(proc)

        results: List[ProcessCheckResult] = []
        for sandbox_id, procs in by_sandbox.items():
            target = await resolve_target(sandbox_id)
            checks = await check_batch(
                [ProcessCheckRequest(pid=p.pid, expected_command=p.expected_command) for p in procs],
                target,
            )
            now = time.time()
            async with self._lock:
                for proc, check in zip(procs, checks):
                    if self._processes.get(proc.key) is not proc:
                        continue
                    proc.state = ProcessState.RUNNING if check.running and check.matches else ProcessState.STOPPED
                    proc.actual_command = check.actual_command
                    proc.last_checked_at = now
            results.extend(checks)
        return results

    async def kill(self, pid: int, sandbox_id: str, resolve_target: TargetResolver) -> KillResult:
        """Terminate a tracked (or untracked) process and deregister it once confirmed."""
        proc = self.get(pid, sandbox_id)
        expected = proc.expected_command if proc else None
        target = await resolve_target(sandbox_id)
        if target is None:
            return KillResult(pid=int(pid), killed=False, reason="target_unavailable")

        result = await terminate(target, int(pid), expected)
        if result.reason in ("terminated", "not_running"):
            await self.remove(pid, sandbox_id)
        return result
