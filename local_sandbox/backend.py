"""HTTP client for the backend's local sandbox functions."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import aiohttp

from core.models import Command, OsInfo
from utils.helpers import exc_text

NAMESPACE = "localSandbox"


class BackendError(Exception):
    """Transport failure or an error envelope from the backend."""


class BackendClient:
    def __init__(self, base_url: str, timeout_seconds: float = 10.0, session: Optional[aiohttp.ClientSession] = None):
        self.base_url = str(base_url).rstrip("/")
        self.timeout_seconds = float(timeout_seconds)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            )
            self._owns_session = True
        return self._session

    async def _call(self, kind: str, name: str, args: Dict[str, Any]) -> Any:
        body = {
            "path": f"{NAMESPACE}:{name}",
            "args": {k: v for k, v in args.items() if v is not None},
            "format": "json",
        }
        session = await self._get_session()
        try:
            async with session.post(f"{self.base_url}/api/{kind}", json=body) as resp:
                try:
                    data = await resp.json(content_type=None)
                except Exception as e:
                    raise BackendError(f"response_decode_failed:{exc_text(e)} (HTTP {resp.status})") from e
        except BackendError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise BackendError(f"request_failed:{exc_text(e)}") from e

        if not isinstance(data, dict):
            raise BackendError("response_not_object")
        if data.get("status") != "success":
            raise BackendError(str(data.get("errorMessage") or f"{name} failed"))
        return data.get("value")

    async def query(self, name: str, **args) -> Any:
        return await self._call("query", name, args)

    async def mutation(self, name: str, **args) -> Any:
        return await self._call("mutation", name, args)

    # ── Functions ──

    async def connect(
        self,
        token: str,
        connection_name: str,
        client_version: str,
        mode: str,
        container_id: Optional[str] = None,
        image_name: Optional[str] = None,
        os_info: Optional[OsInfo] = None,
    ) -> Dict[str, Any]:
        return await self.mutation(
            "connect",
            token=token,
            connectionName=connection_name,
            containerId=container_id,
            imageName=image_name,
            clientVersion=client_version,
            mode=mode,
            osInfo=os_info.to_dict() if os_info else None,
        )

    async def heartbeat(self, connection_id: str) -> Dict[str, Any]:
        return await self.mutation("heartbeat", connectionId=connection_id)

    async def disconnect(self, connection_id: str) -> Dict[str, Any]:
        return await self.mutation("disconnect", connectionId=connection_id)

    async def get_pending_commands(self, connection_id: str) -> List[Command]:
        value = await self.query("getPendingCommands", connectionId=connection_id) or {}
        return [Command.from_dict(item) for item in value.get("commands", [])]

    async def mark_command_executing(self, command_id: str) -> bool:
        """True when this call claimed the command."""
        value = await self.mutation("markCommandExecuting", commandId=command_id) or {}
        return bool(value.get("claimed"))

    async def submit_result(
        self,
        command_id: str,
        user_id: str,
        stdout: str,
        stderr: str,
        exit_code: int,
        duration_ms: int,
    ) -> Dict[str, Any]:
        return await self.mutation(
            "submitResult",
            commandId=command_id,
            userId=user_id,
            stdout=stdout,
            stderr=stderr,
            exitCode=int(exit_code),
            duration=int(duration_ms),
        )

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
