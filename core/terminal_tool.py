"""Assistant-facing terminal operations on top of an ExecutionContext."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, List, Optional

from core.execution import ExecutionContext
from core.models import CommandOutcome, ProcessCheckRequest
from core.sandbox_errors import SandboxExecutionError
from utils.helpers import truncate_output

logger = logging.getLogger(__name__)

MAX_COMMAND_EXECUTION_MS = 6 * 60 * 1000


def _combine(stdout: str, stderr: str) -> str:
    if stdout and stderr:
        sep = "" if stdout.endswith("\n") else "\n"
        return truncate_output(stdout + sep + stderr)
    return truncate_output(stdout or stderr or "")


class TerminalTool:
    def __init__(self, context: ExecutionContext, max_execution_ms: int = MAX_COMMAND_EXECUTION_MS):
        self.context = context
        self.max_execution_ms = int(max_execution_ms)

    def _busy_files_note(self, command: str) -> Optional[str]:
        mentioned = {
            path for p in self.context.tracker.list_processes()
            for path in p.output_files if path in command
        }
        busy = self.context.tracker.processes_writing(mentioned) if mentioned else []
        if not busy:
            return None
        pids = ", ".join(str(p.pid) for p in busy)
        return f"Background process(es) {pids} may still be writing to files this command reads."

    async def run_terminal_cmd(
        self,
        command: str,
        tool_call_id: str,
        is_background: bool = False,
        abort_event: Optional[asyncio.Event] = None,
    ) -> dict:
        try:
            if is_background:
                launched = await self.context.run_background(command, tool_call_id)
                return {"result": {"pid": launched["pid"], "output": "", "output_files": launched["output_files"]}}

            result = await self.context.run(command, timeout_ms=self.max_execution_ms, abort_event=abort_event)
        except SandboxExecutionError as e:
            logger.warning(f"[Terminal Command] {tool_call_id} failed ({e.category.value}): {e}")
            return {"result": {"output": "", "error": e.user_message}, "ok": False, "reason": e.category.value}

        payload = {"exitCode": result.exit_code, "output": _combine(result.stdout, result.stderr)}
        if result.outcome == CommandOutcome.ABORTED:
            payload["error"] = "Command execution aborted by user"
        elif result.outcome == CommandOutcome.ABANDONED:
            payload["error"] = result.stderr
        note = self._busy_files_note(command)
        if note:
            payload["note"] = note
        return {"result": payload}

    async def check_processes(self, processes: Iterable[dict]) -> dict:
        requests: List[ProcessCheckRequest] = []
        for item in processes:
            requests.append(ProcessCheckRequest(pid=int(item["pid"]), expected_command=str(item.get("command", ""))))
        results = await self.context.check_status(requests)
        return {"results": [r.to_dict() for r in results]}

    async def kill_process(self, pid: int) -> dict:
        result = await self.context.kill(int(pid))
        return result.to_dict()
