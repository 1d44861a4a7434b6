"""In-memory backend state for local sandbox connections, commands and results."""

from __future__ import annotations

import logging
import secrets
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from core.models import (
    Command,
    CommandOutcome,
    CommandResult,
    CommandStatus,
    ConnectionMode,
    OsInfo,
    RemoteConnection,
)
from utils.constants import (
    COMPLETED_COMMAND_RETENTION_SECONDS,
    CONNECTION_LIVENESS_SECONDS,
    DISCONNECTED_RETENTION_SECONDS,
    MAX_PENDING_COMMANDS,
    STALE_CONNECTION_SECONDS,
    TOKEN_PREFIX,
    TOKEN_RE,
)

logger = logging.getLogger(__name__)


@dataclass
class _CommandRecord:
    command: Command
    user_id: str
    connection_id: str
    status: CommandStatus = CommandStatus.PENDING
    created_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None


@dataclass
class _ResultRecord:
    result: CommandResult
    user_id: str
    completed_at: float = field(default_factory=time.time)


class CommandStore:
    """Shared registry behind the local sandbox RPC functions.

    All methods are synchronous and guarded by one lock; callers on the event
    loop never hold it across an await.
    """

    def __init__(
        self,
        liveness_seconds: float = CONNECTION_LIVENESS_SECONDS,
        stale_seconds: float = STALE_CONNECTION_SECONDS,
        clock=time.time,
    ):
        self.liveness_seconds = float(liveness_seconds)
        self.stale_seconds = float(stale_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._tokens: Dict[str, str] = {}          # token -> user_id
        self._user_tokens: Dict[str, str] = {}     # user_id -> token
        self._connections: Dict[str, RemoteConnection] = {}
        self._commands: Dict[str, _CommandRecord] = {}
        self._results: Dict[str, _ResultRecord] = {}

    # ── Tokens ──

    @staticmethod
    def generate_token() -> str:
        return TOKEN_PREFIX + secrets.token_hex(32)

    def set_token(self, user_id: str, token: str) -> None:
        """Install a configured token for a user, replacing any previous one."""
        if not TOKEN_RE.match(token or ""):
            raise ValueError(f"Invalid local sandbox token format for user {user_id}")
        with self._lock:
            old = self._user_tokens.pop(user_id, None)
            if old:
                self._tokens.pop(old, None)
            self._tokens[token] = user_id
            self._user_tokens[user_id] = token

    def regenerate_token(self, user_id: str) -> str:
        """Rotate a user's token and disconnect every connection made with the old one."""
        token = self.generate_token()
        with self._lock:
            old = self._user_tokens.pop(user_id, None)
            if old:
                self._tokens.pop(old, None)
            self._tokens[token] = user_id
            self._user_tokens[user_id] = token
            for conn in self._connections.values():
                if conn.user_id == user_id and conn.status == "connected":
                    conn.status = "disconnected"
        logger.info(f"Regenerated local sandbox token for user {user_id}")
        return token

    def verify_token(self, token: str) -> Optional[str]:
        if not TOKEN_RE.match(token or ""):
            return None
        with self._lock:
            return self._tokens.get(token)

    # ── Connections ──

    def connect(
        self,
        token: str,
        connection_name: str,
        client_version: str,
        mode: str,
        container_id: Optional[str] = None,
        image_name: Optional[str] = None,
        os_info: Optional[dict] = None,
    ) -> dict:
        user_id = self.verify_token(token)
        if user_id is None:
            return {"success": False, "error": "Invalid token"}
        try:
            parsed_mode = ConnectionMode.parse(mode)
        except ValueError as e:
            return {"success": False, "error": str(e)}

        conn = RemoteConnection(
            connection_id=uuid.uuid4().hex,
            user_id=user_id,
            name=str(connection_name or "local"),
            mode=parsed_mode,
            client_version=str(client_version or ""),
            container_id=container_id or None,
            image_name=image_name or None,
            os_info=OsInfo.from_dict(os_info) if parsed_mode == ConnectionMode.DANGEROUS else None,
            created_at=self._clock(),
            last_heartbeat_at=self._clock(),
        )
        with self._lock:
            self._connections[conn.connection_id] = conn
        logger.info(f"Local sandbox connected: {conn.name} ({conn.mode.value}) for user {user_id}")
        return {"success": True, "userId": user_id, "connectionId": conn.connection_id}

    def heartbeat(self, connection_id: str) -> dict:
        with self._lock:
            conn = self._connections.get(connection_id)
            if conn is None or conn.status != "connected":
                return {"success": False, "error": "Connection not found or disconnected"}
            conn.last_heartbeat_at = self._clock()
            return {"success": True}

    def disconnect(self, connection_id: str) -> dict:
        with self._lock:
            conn = self._connections.get(connection_id)
            if conn is not None and conn.status == "connected":
                conn.status = "disconnected"
                logger.info(f"Local sandbox disconnected: {conn.name}")
        return {"success": True}

    def get_connection(self, connection_id: str) -> Optional[RemoteConnection]:
        with self._lock:
            return self._connections.get(connection_id)

    def is_connected(self, connection_id: str) -> bool:
        with self._lock:
            conn = self._connections.get(connection_id)
            return conn is not None and conn.is_live(self.liveness_seconds, self._clock())

    def list_connections(self, user_id: str) -> List[RemoteConnection]:
        """Live connections of a user (heartbeat within the liveness window)."""
        now = self._clock()
        with self._lock:
            return [
                c for c in self._connections.values()
                if c.user_id == user_id and c.is_live(self.liveness_seconds, now)
            ]

    def connection_counts(self) -> Dict[str, int]:
        now = self._clock()
        with self._lock:
            live = sum(1 for c in self._connections.values() if c.is_live(self.liveness_seconds, now))
            return {"total": len(self._connections), "live": live}

    # ── Commands ──

    def enqueue(self, user_id: str, connection_id: str, command: Command) -> None:
        with self._lock:
            conn = self._connections.get(connection_id)
            if conn is None or conn.user_id != user_id:
                raise KeyError(f"Unknown connection {connection_id} for user {user_id}")
            if command.command_id in self._commands:
                raise ValueError(f"Duplicate command id {command.command_id}")
            self._commands[command.command_id] = _CommandRecord(
                command=command,
                user_id=user_id,
                connection_id=connection_id,
                created_at=self._clock(),
            )

    def get_pending_commands(self, connection_id: str) -> dict:
        """Oldest pending commands first, capped per poll."""
        with self._lock:
            pending = sorted(
                (r for r in self._commands.values()
                 if r.connection_id == connection_id and r.status == CommandStatus.PENDING),
                key=lambda r: r.created_at,
            )[:MAX_PENDING_COMMANDS]
            return {"commands": [r.command.to_dict() for r in pending]}

    def mark_command_executing(self, command_id: str) -> dict:
        """Claim a pending command. Only the first claim reports ``claimed: True``."""
        with self._lock:
            record = self._commands.get(command_id)
            if record is None:
                return {"success": False, "claimed": False}
            if record.status != CommandStatus.PENDING:
                return {"success": True, "claimed": False}
            record.status = CommandStatus.EXECUTING
            return {"success": True, "claimed": True}

    def command_status(self, command_id: str) -> Optional[CommandStatus]:
        with self._lock:
            record = self._commands.get(command_id)
            return record.status if record else None

    def submit_result(
        self,
        command_id: str,
        user_id: str,
        stdout: str,
        stderr: str,
        exit_code: int,
        duration_ms: int,
    ) -> dict:
        """Record a command's result. Repeats overwrite; an abandoned command's result is dropped."""
        with self._lock:
            record = self._commands.get(command_id)
            if record is not None and record.user_id != user_id:
                return {"success": False, "error": "Command does not belong to this user"}
            if record is not None and record.status == CommandStatus.ABANDONED:
                logger.info(f"Discarding late result for abandoned command {command_id}")
                return {"success": True}
            now = self._clock()
            self._results[command_id] = _ResultRecord(
                result=CommandResult(
                    command_id=command_id,
                    stdout=str(stdout or ""),
                    stderr=str(stderr or ""),
                    exit_code=int(exit_code),
                    duration_ms=int(duration_ms or 0),
                    outcome=CommandOutcome.COMPLETED,
                ),
                user_id=user_id,
                completed_at=now,
            )
            if record is not None:
                record.status = CommandStatus.COMPLETED
                record.completed_at = now
            return {"success": True}

    def get_result(self, command_id: str) -> Optional[CommandResult]:
        with self._lock:
            record = self._results.get(command_id)
            return record.result if record else None

    def delete_result(self, command_id: str) -> None:
        with self._lock:
            self._results.pop(command_id, None)

    def mark_abandoned(self, command_id: str) -> bool:
        """Backend gave up waiting. Returns False if a result already landed."""
        with self._lock:
            record = self._commands.get(command_id)
            if record is None or record.status == CommandStatus.COMPLETED:
                return False
            record.status = CommandStatus.ABANDONED
            record.completed_at = self._clock()
            return True

    # ── Maintenance ──

    def cleanup_stale_connections(self) -> int:
        """Disconnect connections that stopped heartbeating."""
        now = self._clock()
        stale = 0
        with self._lock:
            for conn in self._connections.values():
                if conn.status == "connected" and now - conn.last_heartbeat_at > self.stale_seconds:
                    conn.status = "disconnected"
                    stale += 1
        if stale:
            logger.info(f"Marked {stale} stale local sandbox connections as disconnected")
        return stale

    def cleanup_old_commands(
        self,
        command_retention_seconds: float = COMPLETED_COMMAND_RETENTION_SECONDS,
        connection_retention_seconds: float = DISCONNECTED_RETENTION_SECONDS,
    ) -> Dict[str, int]:
        now = self._clock()
        with self._lock:
            old_commands = [
                cid for cid, r in self._commands.items()
                if r.status in (CommandStatus.COMPLETED, CommandStatus.ABANDONED)
                and now - (r.completed_at or r.created_at) > command_retention_seconds
            ]
            for cid in old_commands:
                del self._commands[cid]
            old_results = [
                cid for cid, r in self._results.items()
                if now - r.completed_at > command_retention_seconds
            ]
            for cid in old_results:
                del self._results[cid]
            old_connections = [
                cid for cid, c in self._connections.items()
                if c.status == "disconnected" and now - c.last_heartbeat_at > connection_retention_seconds
            ]
            for cid in old_connections:
                del self._connections[cid]
        return {
            "commands": len(old_commands),
            "results": len(old_results),
            "connections": len(old_connections),
        }
