"""
Base class for execution targets
"""
import asyncio
import re
from abc import ABC, abstractmethod
from typing import Dict, Optional

from core.models import CommandResult
from utils.bash_commands import single_quote
from utils.constants import DEFAULT_COMMAND_TIMEOUT_MS, PROCESS_QUERY_TIMEOUT_MS

_PID_RE = re.compile(r'(\d+)\s*$')


class ExecutionTarget(ABC):
    """Where commands run: a cloud sandbox or a remote client connection.

    Tool code only talks to this interface; the per-turn execution context
    picks the concrete target.
    """

    kind = "abstract"

    @property
    @abstractmethod
    def target_id(self) -> str:
        """Stable identifier used to key tracked processes (sandbox or connection id)."""

    @abstractmethod
    async def run(
        self,
        command: str,
        *,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS,
        abort_event: Optional[asyncio.Event] = None,
    ) -> CommandResult:
        """Run a command to completion, bounded by ``timeout_ms``.

        A non-zero exit code is a normal result, never an exception.
        """

    @abstractmethod
    async def start_background(
        self,
        command: str,
        *,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> int:
        """Start a detached command and return its PID."""

    @abstractmethod
    async def is_available(self) -> bool:
        """Cheap liveness probe; never raises."""

    @abstractmethod
    def describe(self) -> Optional[str]:
        """Environment description for the assistant's system prompt."""

    async def connect(self):
        """Acquire whatever the target needs before its first command."""
        return None

    async def attach_existing(self) -> bool:
        """Attach without provisioning anything; False when there is nothing to attach to."""
        return True

    async def signal_process(self, pid: int, signal_name: str = "TERM") -> bool:
        """Send a signal by name; True if ``kill`` reported success."""
        result = await self.run(
            f"kill -{signal_name} {int(pid)}",
            timeout_ms=PROCESS_QUERY_TIMEOUT_MS,
        )
        return result.exit_code == 0

    async def force_kill(self, pid: int) -> bool:
        return await self.signal_process(pid, "KILL")

    async def close(self) -> None:
        pass

    @staticmethod
    def background_wrapper(command: str) -> str:
        """Detach ``command`` from the invoking shell and print its PID."""
        return f"nohup sh -c {single_quote(command)} > /dev/null 2>&1 & echo $!"

    @staticmethod
    def parse_background_pid(stdout: str) -> int:
        match = _PID_RE.search((stdout or "").strip())
        if not match:
            raise ValueError(f"Could not read PID from background launch output: {stdout!r}")
        return int(match.group(1))
