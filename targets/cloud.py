"""Execution target backed by an E2B cloud sandbox."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, Optional

from e2b import AsyncSandbox, NotFoundException, SandboxQuery, SandboxState, TimeoutException
from e2b.sandbox.commands.command_handle import CommandExitException

from core.models import CommandOutcome, CommandResult
from core.retry import retry_with_backoff
from core.sandbox_errors import ErrorCategory, classify, normalize
from targets.base import ExecutionTarget
from utils.constants import (
    DEFAULT_COMMAND_TIMEOUT_MS,
    DEFAULT_SANDBOX_TIMEOUT_SECONDS,
    DEFAULT_TEMPLATE,
    EXIT_CODE_ABORTED,
    EXIT_CODE_TIMEOUT,
    PAUSE_RETRIES,
    PAUSE_RETRY_DELAY_SECONDS,
    SANDBOX_HOME,
    SANDBOX_VERSION,
)

logger = logging.getLogger(__name__)


class CloudSandboxTarget(ExecutionTarget):
    """One persistent sandbox per user and template, reused across turns.

    Sandboxes are found by metadata. A running one is paused and resumed to
    refresh its lifetime; one with an outdated version tag is replaced.
    """

    kind = "cloud"

    def __init__(
        self,
        user_id: str,
        template: str = DEFAULT_TEMPLATE,
        timeout_seconds: int = DEFAULT_SANDBOX_TIMEOUT_SECONDS,
        enforce_version: bool = True,
        max_retries: int = 3,
        pause_retry_delay: float = PAUSE_RETRY_DELAY_SECONDS,
        sandbox_cls=AsyncSandbox,
    ):
        self.user_id = str(user_id)
        self.template = template
        self.timeout_seconds = int(timeout_seconds)
        self.enforce_version = bool(enforce_version)
        self.max_retries = int(max_retries)
        self.pause_retry_delay = float(pause_retry_delay)
        self._sandbox_cls = sandbox_cls
        self._sandbox = None
        self._sandbox_id: Optional[str] = None
        self._lock = asyncio.Lock()

    @property
    def target_id(self) -> str:
        if self._sandbox_id is None:
            raise RuntimeError("Cloud sandbox is not connected yet")
        return self._sandbox_id

    @property
    def metadata(self) -> Dict[str, str]:
        return {
            "userID": self.user_id,
            "template": self.template,
            "sandboxVersion": SANDBOX_VERSION,
        }

    # ── Lifecycle ──

    async def _find_existing(self):
        paginator = self._sandbox_cls.list(
            query=SandboxQuery(
                metadata={"userID": self.user_id, "template": self.template},
                state=[SandboxState.RUNNING, SandboxState.PAUSED],
            )
        )
        items = await paginator.next_items()
        return items[0] if items else None

    async def _kill_quietly(self, sandbox_id: str, reason: str) -> None:
        try:
            await self._sandbox_cls.kill(sandbox_id)
        except Exception as e:
            logger.warning(f"[{self.user_id}] Failed to kill {reason} sandbox {sandbox_id}: {e}")

    async def _pause_with_retries(self, sandbox) -> bool:
        for attempt in range(1, PAUSE_RETRIES + 1):
            try:
                await sandbox.beta_pause()
                return True
            except Exception as e:
                logger.warning(f"[{self.user_id}] Sandbox pause attempt {attempt}/{PAUSE_RETRIES} failed: {e}")
                if attempt < PAUSE_RETRIES:
                    await asyncio.sleep(self.pause_retry_delay)
        return False

    async def _reuse(self, info):
        """Resume an existing sandbox, or None when it has to be replaced."""
        sandbox_id = info.sandbox_id
        version = (info.metadata or {}).get("sandboxVersion")
        if self.enforce_version and version != SANDBOX_VERSION:
            logger.info(f"[{self.user_id}] Sandbox version mismatch (expected {SANDBOX_VERSION}), deleting old sandbox")
            await self._kill_quietly(sandbox_id, "outdated")
            return None

        if info.state == SandboxState.RUNNING:
            try:
                running = await self._sandbox_cls.connect(sandbox_id)
                if not await self._pause_with_retries(running):
                    logger.error(f"[{self.user_id}] Failed to pause sandbox after {PAUSE_RETRIES} attempts, creating new one")
                    return None
                return await self._sandbox_cls.connect(sandbox_id, timeout=self.timeout_seconds)
            except Exception as e:
                logger.error(f"[{self.user_id}] Error in pause-resume flow for sandbox {sandbox_id}: {e}")
                return None

        try:
            return await self._sandbox_cls.connect(sandbox_id, timeout=self.timeout_seconds)
        except Exception as e:
            if isinstance(e, NotFoundException) or "not found" in str(e).lower():
                logger.error(f"[{self.user_id}] Sandbox {sandbox_id} expired/deleted, creating new one")
                await self._kill_quietly(sandbox_id, "expired")
            else:
                logger.error(f"[{self.user_id}] Unexpected error resuming sandbox {sandbox_id}: {e}")
            return None

    async def _create_or_connect(self):
        existing = await self._find_existing()
        if existing is not None:
            sandbox = await self._reuse(existing)
            if sandbox is not None:
                logger.info(f"[{self.user_id}] Reusing sandbox {sandbox.sandbox_id}")
                return sandbox
        sandbox = await self._sandbox_cls.create(
            template=self.template,
            timeout=self.timeout_seconds,
            metadata=self.metadata,
        )
        logger.info(f"[{self.user_id}] Created sandbox {sandbox.sandbox_id}")
        return sandbox

    async def _wait_ready(self, sandbox) -> None:
        async def _probe():
            if not await sandbox.is_running():
                raise RuntimeError("Sandbox is not running")
            await sandbox.commands.run("echo ready", user="root", cwd=SANDBOX_HOME, timeout=3)

        await retry_with_backoff(_probe, max_retries=5, retry_all=True, label="sandbox readiness check")

    async def connect(self):
        """Acquire (create, resume or reuse) the sandbox; safe to call repeatedly."""
        async with self._lock:
            if self._sandbox is not None:
                return self._sandbox
            try:
                sandbox = await retry_with_backoff(
                    self._create_or_connect,
                    max_retries=self.max_retries,
                    label=f"sandbox acquisition for {self.user_id}",
                )
                await self._wait_ready(sandbox)
            except Exception as e:
                raise normalize(e, "cloud sandbox unavailable") from e
            self._sandbox = sandbox
            self._sandbox_id = sandbox.sandbox_id
            return sandbox

    async def attach_existing(self) -> bool:
        """Connect to the user's current sandbox, never creating, pausing or killing one."""
        async with self._lock:
            if self._sandbox is not None:
                return True
            try:
                info = await self._find_existing()
                if info is None:
                    return False
                version = (info.metadata or {}).get("sandboxVersion")
                if self.enforce_version and version != SANDBOX_VERSION:
                    return False
                sandbox = await self._sandbox_cls.connect(info.sandbox_id, timeout=self.timeout_seconds)
            except Exception as e:
                logger.info(f"[{self.user_id}] No existing sandbox to attach to: {e}")
                return False
            self._sandbox = sandbox
            self._sandbox_id = sandbox.sandbox_id
            return True

    def _forget_if_gone(self, error: BaseException) -> None:
        if classify(error) == ErrorCategory.PERMANENT:
            self._sandbox = None

    # ── Commands ──

    async def run(
        self,
        command: str,
        *,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS,
        abort_event: Optional[asyncio.Event] = None,
    ) -> CommandResult:
        sandbox = await self.connect()
        started = time.monotonic()

        def _elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        call = sandbox.commands.run(
            command,
            envs=env or None,
            cwd=cwd or SANDBOX_HOME,
            user="root",
            timeout=timeout_ms / 1000.0,
        )
        try:
            if abort_event is None:
                result = await call
            else:
                result = await self._run_abortable(call, abort_event)
                if result is None:
                    return CommandResult(command_id="", stderr="Command aborted", exit_code=EXIT_CODE_ABORTED,
                                         duration_ms=_elapsed(), outcome=CommandOutcome.ABORTED)
        except CommandExitException as e:
            return CommandResult(command_id="", stdout=e.stdout or "", stderr=e.stderr or "",
                                 exit_code=int(e.exit_code), duration_ms=_elapsed())
        except TimeoutException:
            return CommandResult(command_id="", stderr=f"Command timed out after {timeout_ms}ms",
                                 exit_code=EXIT_CODE_TIMEOUT, duration_ms=_elapsed())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._forget_if_gone(e)
            raise normalize(e, "cloud sandbox command failed") from e

        return CommandResult(command_id="", stdout=result.stdout or "", stderr=result.stderr or "",
                             exit_code=int(result.exit_code or 0), duration_ms=_elapsed())

    @staticmethod
    async def _run_abortable(call, abort_event: asyncio.Event):
        """Await ``call`` unless ``abort_event`` fires first; None on abort."""
        task = asyncio.ensure_future(call)
        waiter = asyncio.ensure_future(abort_event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, Exception):
            pass
        return None

    async def start_background(
        self,
        command: str,
        *,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> int:
        sandbox = await self.connect()
        try:
            handle = await sandbox.commands.run(
                command,
                background=True,
                envs=env or None,
                cwd=cwd or SANDBOX_HOME,
                user="root",
                timeout=0,
            )
        except Exception as e:
            self._forget_if_gone(e)
            raise normalize(e, "cloud sandbox background command failed") from e
        return int(handle.pid)

    async def force_kill(self, pid: int) -> bool:
        sandbox = await self.connect()
        try:
            return bool(await sandbox.commands.kill(int(pid)))
        except Exception as e:
            self._forget_if_gone(e)
            raise normalize(e, f"force kill of PID {pid} failed") from e

    async def is_available(self) -> bool:
        if self._sandbox is None:
            return False
        try:
            return bool(await self._sandbox.is_running())
        except Exception as e:
            logger.info(f"[{self.user_id}] Sandbox liveness probe failed: {e}")
            return False

    def describe(self) -> Optional[str]:
        return None

    async def close(self) -> None:
        """Pause the sandbox so it can be resumed by the next turn."""
        sandbox, self._sandbox = self._sandbox, None
        if sandbox is None:
            return
        try:
            await sandbox.beta_pause()
        except Exception as e:
            logger.error(f"Background pause failed for sandbox {sandbox.sandbox_id}: {e}")
