"""Polling agent that executes backend commands on the user's machine."""

from __future__ import annotations

import asyncio
import logging
import platform
import socket
import sys
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Set

from core.models import Command, ConnectionMode, OsInfo
from local_sandbox.backend import BackendClient, BackendError
from local_sandbox.runner import CommandRunner, ContainerRunner, DockerRuntime, HostRunner, ProvisioningError
from utils.constants import (
    CLIENT_VERSION,
    DEFAULT_IMAGE,
    HEARTBEAT_INTERVAL_SECONDS,
    POLL_INTERVAL_SECONDS,
)
from utils.helpers import exc_text

logger = logging.getLogger(__name__)


class ClientState(str, Enum):
    STARTING = "starting"
    PROVISIONING = "provisioning"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    TERMINATED = "terminated"


class ClientConnectError(RuntimeError):
    """Authentication with the backend was rejected or failed."""


@dataclass
class ClientConfig:
    token: str
    name: str
    backend_url: str
    image: str = DEFAULT_IMAGE
    dangerous: bool = False
    poll_interval_seconds: float = POLL_INTERVAL_SECONDS
    heartbeat_interval_seconds: float = HEARTBEAT_INTERVAL_SECONDS

    @property
    def mode(self) -> ConnectionMode:
        return ConnectionMode.DANGEROUS if self.dangerous else ConnectionMode.DOCKER


def current_os_info() -> OsInfo:
    return OsInfo(
        platform=sys.platform,
        arch=platform.machine(),
        release=platform.release(),
        hostname=socket.gethostname(),
    )


class LocalSandboxClient:
    """starting -> provisioning -> connecting -> connected -> disconnecting -> terminated.

    Heartbeat and poll run as independent tasks; commands execute one at a
    time in arrival order.
    """

    def __init__(
        self,
        config: ClientConfig,
        backend: BackendClient,
        docker: Optional[DockerRuntime] = None,
        runner: Optional[CommandRunner] = None,
    ):
        self.config = config
        self.backend = backend
        self.docker = docker or DockerRuntime()
        self.runner = runner
        self.state = ClientState.STARTING
        self.container_id: Optional[str] = None
        self.user_id: Optional[str] = None
        self.connection_id: Optional[str] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._seen: Set[str] = set()
        self._shutdown_lock = asyncio.Lock()

    # ── Startup ──

    async def provision(self) -> None:
        self.state = ClientState.PROVISIONING
        if self.config.dangerous:
            logger.warning("⚠️  DANGEROUS MODE - commands will run directly on your OS!")
            if self.runner is None:
                self.runner = HostRunner()
            return

        if not await self.docker.is_available():
            raise ProvisioningError("Docker not found. Please install Docker or use --dangerous mode.")
        logger.info("✅ Docker is available")

        if self.config.image == DEFAULT_IMAGE:
            logger.info(f"Pulling pre-built image: {self.config.image} (first run may take a few minutes)")
            await self.docker.pull(self.config.image)
            logger.info("✅ Image ready")

        self.container_id = await self.docker.create_container(self.config.image)
        logger.info(f"✅ Container: {self.container_id[:12]}")
        shell = await self.docker.detect_shell(self.container_id)
        if self.runner is None:
            self.runner = ContainerRunner(self.container_id, shell)

    async def connect(self) -> None:
        self.state = ClientState.CONNECTING
        try:
            result = await self.backend.connect(
                token=self.config.token,
                connection_name=self.config.name,
                client_version=CLIENT_VERSION,
                mode=self.config.mode.value,
                container_id=self.container_id,
                image_name=None if self.config.dangerous else self.config.image,
                os_info=current_os_info() if self.config.dangerous else None,
            ) or {}
        except BackendError as e:
            raise ClientConnectError(str(e)) from e
        if not result.get("success"):
            raise ClientConnectError(result.get("error") or "Authentication failed")

        self.user_id = result.get("userId")
        self.connection_id = result.get("connectionId")
        self.state = ClientState.CONNECTED
        logger.info("✅ Authenticated")
        logger.info(f"🎉 Local sandbox is ready! Connection: {self.connection_id} "
                    f"Mode: {'DANGEROUS' if self.config.dangerous else 'Docker'}")

    async def start(self) -> None:
        """Provision, authenticate, then start the background loops."""
        logger.info("🚀 Starting local sandbox...")
        await self.provision()
        await self.connect()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        self._poll_task = asyncio.create_task(self._poll_loop())

    # ── Loops ──

    async def _heartbeat_loop(self) -> None:
        while self.state == ClientState.CONNECTED:
            await asyncio.sleep(self.config.heartbeat_interval_seconds)
            try:
                result = await self.backend.heartbeat(self.connection_id) or {}
                if not result.get("success"):
                    logger.warning("⚠️  Heartbeat failed, connection may be stale")
            except asyncio.CancelledError:
                raise
            except BackendError as e:
                logger.warning(f"Heartbeat error: {e}")
            except Exception:
                logger.exception("Unexpected heartbeat error")

    async def _poll_loop(self) -> None:
        while self.state == ClientState.CONNECTED:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except BackendError as e:
                logger.debug(f"Poll error: {e}")
            except Exception:
                logger.exception("Unexpected poll error")
            await asyncio.sleep(self.config.poll_interval_seconds)

    async def poll_once(self) -> int:
        """Fetch pending commands and run each claimed one; returns how many ran."""
        commands = await self.backend.get_pending_commands(self.connection_id)
        # claimed commands leave the pending list, so older ids can be forgotten
        self._seen &= {command.command_id for command in commands}
        executed = 0
        for command in commands:
            if self.state != ClientState.CONNECTED:
                break
            if command.command_id in self._seen:
                continue
            try:
                claimed = await self.backend.mark_command_executing(command.command_id)
            except BackendError as e:
                logger.warning(f"Could not claim command {command.command_id}: {e}")
                continue
            self._seen.add(command.command_id)
            if not claimed:
                continue
            await self.execute_command(command)
            executed += 1
        return executed

    async def execute_command(self, command: Command) -> None:
        logger.info(f"▶ Executing: {command.text}")
        started = time.monotonic()
        try:
            output = await self.runner.execute(command)
            stdout, stderr, exit_code = output.stdout, output.stderr, output.exit_code
        except asyncio.CancelledError:
            raise
        except Exception as e:
            stdout, stderr, exit_code = "", exc_text(e), 1
            logger.error(f"✗ Command failed: {stderr}")
        duration_ms = int((time.monotonic() - started) * 1000)

        try:
            await self.backend.submit_result(
                command_id=command.command_id,
                user_id=self.user_id,
                stdout=stdout,
                stderr=stderr,
                exit_code=exit_code,
                duration_ms=duration_ms,
            )
        except BackendError as e:
            logger.error(f"Failed to submit result for {command.command_id}: {e}")
            return
        logger.info(f"✅ Command completed in {duration_ms}ms (exit {exit_code})")

    # ── Shutdown ──

    async def _cancel(self, task: Optional[asyncio.Task]) -> None:
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def shutdown(self) -> None:
        """Stop loops, disconnect, remove the container. Safe to call more than once."""
        async with self._shutdown_lock:
            if self.state == ClientState.TERMINATED:
                return
            self.state = ClientState.DISCONNECTING
            logger.info("🧹 Cleaning up...")

            await self._cancel(self._heartbeat_task)
            await self._cancel(self._poll_task)
            self._heartbeat_task = self._poll_task = None

            if self.connection_id:
                try:
                    await self.backend.disconnect(self.connection_id)
                    logger.info("✅ Disconnected")
                except BackendError as e:
                    logger.warning(f"Disconnect failed: {e}")

            if self.container_id:
                try:
                    await self.docker.remove(self.container_id)
                    logger.info("✅ Container removed")
                except (ProvisioningError, OSError) as e:
                    logger.error(f"Error removing container: {e}")

            try:
                await self.backend.close()
            except Exception as e:
                logger.warning(f"Closing backend session failed: {e}")
            self.state = ClientState.TERMINATED
