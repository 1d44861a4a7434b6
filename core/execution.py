"""Per-turn execution context: target selection plus process bookkeeping."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Sequence

from core.batch_checker import check_batch
from core.command_store import CommandStore
from core.models import CommandResult, KillResult, ProcessCheckRequest, ProcessCheckResult
from core.process_tracker import BackgroundProcessTracker
from core.sandbox_errors import TargetUnavailableError
from targets.base import ExecutionTarget
from targets.cloud import CloudSandboxTarget
from targets.remote import RemoteConnectionTarget
from utils.constants import (
    DEFAULT_COMMAND_TIMEOUT_MS,
    DEFAULT_SANDBOX_TIMEOUT_SECONDS,
    DEFAULT_TEMPLATE,
    POLL_INTERVAL_SECONDS,
)

logger = logging.getLogger(__name__)

CLOUD_PREFERENCE = "e2b"


class ExecutionContext:
    """Where one assistant turn runs its commands.

    The target is resolved on first use and reused for the rest of the turn.
    ``preference`` is either ``"e2b"`` (cloud sandbox) or a local sandbox
    connection id; a dead preferred connection falls back to the cloud sandbox
    unless ``fallback_to_cloud`` is off.
    """

    def __init__(
        self,
        user_id: str,
        tracker: BackgroundProcessTracker,
        store: Optional[CommandStore] = None,
        cloud_factory: Optional[Callable[[], ExecutionTarget]] = None,
        preference: Optional[str] = None,
        fallback_to_cloud: bool = True,
        poll_interval_seconds: float = POLL_INTERVAL_SECONDS,
        result_grace_ms: int = 0,
    ):
        self.user_id = str(user_id)
        self.tracker = tracker
        self.store = store
        self.cloud_factory = cloud_factory
        self.preference = (preference or CLOUD_PREFERENCE).strip()
        self.fallback_to_cloud = bool(fallback_to_cloud)
        self.poll_interval_seconds = float(poll_interval_seconds)
        self.result_grace_ms = int(result_grace_ms)
        self._target: Optional[ExecutionTarget] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls,
        config: dict,
        user_id: str,
        tracker: BackgroundProcessTracker,
        store: Optional[CommandStore] = None,
        preference: Optional[str] = None,
    ) -> "ExecutionContext":
        """Build a context from the ``e2b``, ``sandbox`` and ``local_sandbox`` config sections."""
        e2b_cfg = config.get("e2b", {})
        sandbox_cfg = config.get("sandbox", {})
        local_cfg = config.get("local_sandbox", {})

        def cloud_factory() -> ExecutionTarget:
            return CloudSandboxTarget(
                user_id,
                template=str(e2b_cfg.get("template", DEFAULT_TEMPLATE)),
                timeout_seconds=int(e2b_cfg.get("timeout_seconds", DEFAULT_SANDBOX_TIMEOUT_SECONDS)),
                enforce_version=bool(e2b_cfg.get("enforce_version", True)),
                max_retries=int(e2b_cfg.get("max_retries", 3)),
            )

        return cls(
            user_id,
            tracker,
            store=store,
            cloud_factory=cloud_factory,
            preference=preference or sandbox_cfg.get("default_preference"),
            fallback_to_cloud=bool(sandbox_cfg.get("fallback_to_cloud", True)),
            poll_interval_seconds=float(local_cfg.get("result_poll_interval_seconds", POLL_INTERVAL_SECONDS)),
            result_grace_ms=int(local_cfg.get("result_grace_ms", 0)),
        )

    def _remote_target(self, connection_id: str) -> Optional[RemoteConnectionTarget]:
        if self.store is None:
            return None
        conn = self.store.get_connection(connection_id)
        if conn is None or conn.user_id != self.user_id or not self.store.is_connected(connection_id):
            return None
        return RemoteConnectionTarget(
            self.store,
            self.user_id,
            connection_id,
            poll_interval_seconds=self.poll_interval_seconds,
            result_grace_ms=self.result_grace_ms,
        )

    async def _cloud_target(self) -> ExecutionTarget:
        if self.cloud_factory is None:
            raise TargetUnavailableError("No cloud sandbox is configured")
        target = self.cloud_factory()
        await target.connect()
        return target

    async def target(self) -> ExecutionTarget:
        async with self._lock:
            if self._target is not None:
                return self._target

            if self.preference != CLOUD_PREFERENCE:
                remote = self._remote_target(self.preference)
                if remote is not None:
                    self._target = remote
                    return remote
                if not self.fallback_to_cloud:
                    raise TargetUnavailableError(
                        f"Local sandbox {self.preference} is not connected",
                        "The selected local sandbox is not connected. Start the client or switch to the cloud sandbox.",
                    )
                logger.info(f"Local sandbox {self.preference} unavailable for {self.user_id}, using cloud sandbox")

            self._target = await self._cloud_target()
            return self._target

    async def existing_target(self) -> Optional[ExecutionTarget]:
        """The turn's target if one already exists; never provisions a sandbox."""
        async with self._lock:
            if self._target is not None:
                return self._target

            if self.preference != CLOUD_PREFERENCE:
                remote = self._remote_target(self.preference)
                if remote is not None:
                    self._target = remote
                    return remote
                if not self.fallback_to_cloud:
                    return None

            if self.cloud_factory is None:
                return None
            cloud = self.cloud_factory()
            if not await cloud.attach_existing():
                logger.info(f"No existing sandbox for {self.user_id}")
                return None
            self._target = cloud
            return cloud

    async def resolve_target(self, sandbox_id: str) -> Optional[ExecutionTarget]:
        """Tracker callback: the current target when it owns ``sandbox_id``."""
        target = await self.existing_target()
        if target is None or target.target_id != sandbox_id:
            return None
        return target

    async def run(
        self,
        command: str,
        *,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS,
        abort_event: Optional[asyncio.Event] = None,
    ) -> CommandResult:
        target = await self.target()
        return await target.run(command, cwd=cwd, env=env, timeout_ms=timeout_ms, abort_event=abort_event)

    async def run_background(
        self,
        command: str,
        tool_call_id: str,
        *,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> dict:
        target = await self.target()
        pid = await target.start_background(command, cwd=cwd, env=env)
        proc = await self.tracker.register(pid, command, tool_call_id, target.target_id)
        return {"pid": pid, "output_files": list(proc.output_files)}

    async def kill(self, pid: int) -> KillResult:
        target = await self.existing_target()
        if target is None:
            return KillResult(pid=int(pid), killed=False, reason="target_unavailable")
        return await self.tracker.kill(pid, target.target_id, self.resolve_target)

    async def check_status(self, requests: Sequence[ProcessCheckRequest]) -> List[ProcessCheckResult]:
        return await check_batch(requests, await self.existing_target())

    async def sandbox_context(self) -> Optional[str]:
        target = await self.existing_target()
        return target.describe() if target is not None else None

    async def close(self) -> None:
        target, self._target = self._target, None
        if target is not None:
            await target.close()
