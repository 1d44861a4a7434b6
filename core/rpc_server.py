"""HTTP RPC surface used by local sandbox clients.

Requests use a query/mutation envelope:
``POST /api/mutation {"path": "localSandbox:connect", "args": {...}, "format": "json"}``
and are answered with ``{"status": "success", "value": ...}`` or
``{"status": "error", "errorMessage": "..."}``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from aiohttp import web

from core.command_store import CommandStore
from utils.constants import MAINTENANCE_INTERVAL_SECONDS

logger = logging.getLogger(__name__)

NAMESPACE = "localSandbox"


class RpcError(Exception):
    """Bad request shape or unknown function."""


def _require(args: Dict[str, Any], name: str) -> Any:
    value = args.get(name)
    if value is None or value == "":
        raise RpcError(f"Missing required argument: {name}")
    return value


class LocalSandboxRpcServer:
    """aiohttp application exposing CommandStore to remote clients."""

    def __init__(
        self,
        store: CommandStore,
        *,
        host: str = "127.0.0.1",
        port: int = 8787,
        maintenance_interval_seconds: float = MAINTENANCE_INTERVAL_SECONDS,
    ):
        self.store = store
        self.host = str(host)
        self.port = int(port)
        self.maintenance_interval_seconds = float(maintenance_interval_seconds)
        self.started_at = time.time()
        self._runner: Optional[web.AppRunner] = None
        self._maintenance_task: Optional[asyncio.Task] = None
        self._queries: Dict[str, Callable[[Dict[str, Any]], Any]] = {
            "getPendingCommands": self._get_pending_commands,
            "listConnections": self._list_connections,
        }
        self._mutations: Dict[str, Callable[[Dict[str, Any]], Any]] = {
            "connect": self._connect,
            "heartbeat": self._heartbeat,
            "disconnect": self._disconnect,
            "markCommandExecuting": self._mark_command_executing,
            "submitResult": self._submit_result,
            "regenerateToken": self._regenerate_token,
        }

    # ── Functions ──

    def _connect(self, args):
        return self.store.connect(
            token=str(_require(args, "token")),
            connection_name=str(args.get("connectionName") or "local"),
            client_version=str(args.get("clientVersion") or ""),
            mode=str(args.get("mode") or "docker"),
            container_id=args.get("containerId"),
            image_name=args.get("imageName"),
            os_info=args.get("osInfo"),
        )

    def _heartbeat(self, args):
        return self.store.heartbeat(str(_require(args, "connectionId")))

    def _disconnect(self, args):
        return self.store.disconnect(str(_require(args, "connectionId")))

    def _get_pending_commands(self, args):
        return self.store.get_pending_commands(str(_require(args, "connectionId")))

    def _list_connections(self, args):
        # unknown tokens see nothing rather than an error
        user_id = self.store.verify_token(str(args.get("token") or ""))
        if user_id is None:
            return []
        return [c.to_dict() for c in self.store.list_connections(user_id)]

    def _regenerate_token(self, args):
        user_id = self.store.verify_token(str(_require(args, "token")))
        if user_id is None:
            return {"success": False, "error": "Invalid token"}
        return {"success": True, "token": self.store.regenerate_token(user_id)}

    def _mark_command_executing(self, args):
        return self.store.mark_command_executing(str(_require(args, "commandId")))

    def _submit_result(self, args):
        return self.store.submit_result(
            command_id=str(_require(args, "commandId")),
            user_id=str(_require(args, "userId")),
            stdout=str(args.get("stdout") or ""),
            stderr=str(args.get("stderr") or ""),
            exit_code=int(args.get("exitCode", -1)),
            duration_ms=int(args.get("duration") or 0),
        )

    # ── HTTP ──

    def _dispatch(self, table: Dict[str, Callable], payload: Any):
        if not isinstance(payload, dict):
            raise RpcError("Request body must be a JSON object")
        path = str(payload.get("path") or "")
        namespace, _, name = path.partition(":")
        if namespace != NAMESPACE or name not in table:
            raise RpcError(f"Unknown function: {path}")
        args = payload.get("args") or {}
        if not isinstance(args, dict):
            raise RpcError("args must be an object")
        return table[name](args)

    async def _handle(self, request: web.Request, table: Dict[str, Callable]) -> web.Response:
        try:
            payload = await request.json()
        except Exception as e:
            return web.json_response({"status": "error", "errorMessage": f"invalid_json:{e}"}, status=400)
        try:
            value = self._dispatch(table, payload)
        except (RpcError, ValueError, TypeError) as e:
            return web.json_response({"status": "error", "errorMessage": str(e)}, status=400)
        except Exception as e:
            logger.exception(f"RPC {payload.get('path')} failed")
            return web.json_response({"status": "error", "errorMessage": str(e)}, status=500)
        return web.json_response({"status": "success", "value": value})

    async def handle_query(self, request: web.Request) -> web.Response:
        return await self._handle(request, self._queries)

    async def handle_mutation(self, request: web.Request) -> web.Response:
        return await self._handle(request, self._mutations)

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "uptime_seconds": round(time.time() - self.started_at, 1),
            "connections": self.store.connection_counts(),
        })

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/api/query", self.handle_query)
        app.router.add_post("/api/mutation", self.handle_mutation)
        app.router.add_get("/health", self.handle_health)
        return app

    # ── Lifecycle ──

    def run_maintenance(self) -> Dict[str, int]:
        stale = self.store.cleanup_stale_connections()
        removed = self.store.cleanup_old_commands()
        removed["stale_connections"] = stale
        return removed

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self.maintenance_interval_seconds)
            try:
                removed = self.run_maintenance()
            except Exception as e:
                logger.error(f"Maintenance sweep failed: {e}")
                continue
            if any(removed.values()):
                logger.info(f"Maintenance sweep: {removed}")

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        self._maintenance_task = asyncio.create_task(self._maintenance_loop())

    async def stop(self) -> None:
        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
            self._maintenance_task = None
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
