"""Execution target backed by a local sandbox client connection."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, Optional

from core.command_store import CommandStore
from core.models import Command, CommandOutcome, CommandResult, ConnectionMode
from core.sandbox_errors import ErrorCategory, SandboxExecutionError, TargetUnavailableError
from targets.base import ExecutionTarget
from utils.constants import (
    DEFAULT_COMMAND_TIMEOUT_MS,
    DEFAULT_IMAGE,
    EXIT_CODE_ABORTED,
    EXIT_CODE_TIMEOUT,
    POLL_INTERVAL_SECONDS,
)

logger = logging.getLogger(__name__)

_PLATFORM_NAMES = {"darwin": "macOS", "win32": "Windows", "linux": "Linux"}


class RemoteConnectionTarget(ExecutionTarget):
    """Queue commands for a polling client and wait for its results.

    The client cannot be pushed to, so timeouts and aborts are backend-side
    give-ups: the command is marked abandoned and a synthetic result returned.
    """

    kind = "remote"

    def __init__(
        self,
        store: CommandStore,
        user_id: str,
        connection_id: str,
        poll_interval_seconds: float = POLL_INTERVAL_SECONDS,
        result_grace_ms: int = 0,
    ):
        self.store = store
        self.user_id = user_id
        self.connection_id = connection_id
        self.poll_interval_seconds = float(poll_interval_seconds)
        self.result_grace_ms = max(0, int(result_grace_ms))

    @property
    def target_id(self) -> str:
        return f"local:{self.connection_id}"

    async def is_available(self) -> bool:
        return self.store.is_connected(self.connection_id)

    def _ensure_connected(self) -> None:
        if not self.store.is_connected(self.connection_id):
            raise TargetUnavailableError(
                f"Local sandbox connection {self.connection_id} is not connected",
                "The local sandbox is disconnected. Start the local sandbox client and try again.",
            )

    def _synthetic(self, command_id: str, started: float, exit_code: int, stderr: str,
                   outcome: CommandOutcome) -> CommandResult:
        return CommandResult(
            command_id=command_id,
            stdout="",
            stderr=stderr,
            exit_code=exit_code,
            duration_ms=int((time.monotonic() - started) * 1000),
            outcome=outcome,
        )

    def _take_result(self, command_id: str) -> Optional[CommandResult]:
        result = self.store.get_result(command_id)
        if result is not None:
            self.store.delete_result(command_id)
        return result

    async def run(
        self,
        command: str,
        *,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS,
        abort_event: Optional[asyncio.Event] = None,
    ) -> CommandResult:
        self._ensure_connected()
        cmd = Command(
            command_id=Command.new_id(),
            text=command,
            cwd=cwd,
            env=dict(env or {}),
            timeout_ms=int(timeout_ms),
        )
        self.store.enqueue(self.user_id, self.connection_id, cmd)
        started = time.monotonic()
        deadline = started + (cmd.timeout_ms + self.result_grace_ms) / 1000.0

        try:
            while True:
                result = self._take_result(cmd.command_id)
                if result is not None:
                    return result

                if abort_event is not None and abort_event.is_set():
                    self.store.mark_abandoned(cmd.command_id)
                    return self._synthetic(cmd.command_id, started, EXIT_CODE_ABORTED,
                                           "Command aborted", CommandOutcome.ABORTED)

                if not self.store.is_connected(self.connection_id):
                    self.store.mark_abandoned(cmd.command_id)
                    raise TargetUnavailableError(
                        f"Local sandbox connection {self.connection_id} dropped while running a command",
                        "The local sandbox disconnected while the command was running.",
                    )

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    if not self.store.mark_abandoned(cmd.command_id):
                        result = self._take_result(cmd.command_id)
                        if result is not None:
                            return result
                    logger.warning(f"Command {cmd.command_id} timed out after {cmd.timeout_ms}ms on {self.target_id}")
                    return self._synthetic(
                        cmd.command_id, started, EXIT_CODE_TIMEOUT,
                        f"Command timed out after {cmd.timeout_ms}ms waiting for the local sandbox",
                        CommandOutcome.ABANDONED,
                    )

                wait = min(self.poll_interval_seconds, remaining)
                if abort_event is None:
                    await asyncio.sleep(wait)
                else:
                    try:
                        await asyncio.wait_for(abort_event.wait(), timeout=wait)
                    except asyncio.TimeoutError:
                        pass
        except asyncio.CancelledError:
            self.store.mark_abandoned(cmd.command_id)
            raise

    async def start_background(
        self,
        command: str,
        *,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> int:
        result = await self.run(self.background_wrapper(command), cwd=cwd, env=env)
        if result.outcome != CommandOutcome.COMPLETED or result.exit_code != 0:
            raise SandboxExecutionError(
                f"Background launch failed (exit {result.exit_code}): {result.stderr.strip()}",
                ErrorCategory.COMMAND_FAILURE,
                result.stderr.strip() or "Failed to start background command",
            )
        try:
            return self.parse_background_pid(result.stdout)
        except ValueError as e:
            raise SandboxExecutionError(str(e), ErrorCategory.UNKNOWN) from e

    def describe(self) -> Optional[str]:
        conn = self.store.get_connection(self.connection_id)
        if conn is None:
            return None

        if conn.mode == ConnectionMode.DANGEROUS and conn.os_info:
            info = conn.os_info
            platform_name = _PLATFORM_NAMES.get(info.platform, info.platform)
            return (
                f"You are executing commands on {platform_name} {info.release} ({info.arch}) in DANGEROUS MODE.\n"
                f"Commands run directly on the host OS \"{info.hostname}\" without Docker isolation. Be careful with:\n"
                "- File system operations (no sandbox protection)\n"
                "- Network operations (direct access to host network)\n"
                "- Process management (can affect host system)"
            )

        if conn.mode == ConnectionMode.DOCKER and conn.image_name and conn.image_name != DEFAULT_IMAGE:
            return (
                f"You are executing commands in a custom Docker container using image \"{conn.image_name}\".\n"
                "This is a user-provided image - available tools and environment may vary.\n"
                "Commands run inside the Docker container with network access."
            )

        if conn.mode == ConnectionMode.DOCKER:
            return (
                "You are executing commands in the sandbox Docker container.\n"
                "This container includes common pentesting tools like nmap, sqlmap, ffuf, gobuster, nuclei, "
                "hydra, nikto, wpscan, subfinder, httpx, and more.\n"
                "Commands run inside the Docker container with network access."
            )
        return None
