"""Shared data types for commands, processes and remote connections."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from utils.constants import DEFAULT_COMMAND_TIMEOUT_MS


class ConnectionMode(str, Enum):
    """How a remote client runs commands."""
    DOCKER = "docker"        # inside a long-lived container
    DANGEROUS = "dangerous"  # directly on the user's host

    @classmethod
    def parse(cls, value: str) -> "ConnectionMode":
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            raise ValueError(f"Unknown connection mode: {value!r}") from None


class CommandStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class CommandOutcome(str, Enum):
    """Whether a result came from the executor or was synthesized by the backend."""
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    ABORTED = "aborted"


class ProcessState(str, Enum):
    REGISTERED = "registered"
    RUNNING = "verified_running"
    STOPPED = "verified_stopped"


@dataclass(frozen=True)
class Command:
    """A unit of work dispatched to an execution target."""
    command_id: str
    text: str
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS

    @staticmethod
    def new_id() -> str:
        return uuid.uuid4().hex

    def to_dict(self) -> Dict[str, Any]:
        return {
            "commandId": self.command_id,
            "command": self.text,
            "cwd": self.cwd,
            "env": dict(self.env),
            "timeout": self.timeout_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Command":
        return cls(
            command_id=str(data["commandId"]),
            text=str(data["command"]),
            cwd=data.get("cwd") or None,
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
            timeout_ms=int(data.get("timeout") or DEFAULT_COMMAND_TIMEOUT_MS),
        )


@dataclass
class CommandResult:
    command_id: str
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    duration_ms: int = 0
    outcome: CommandOutcome = CommandOutcome.COMPLETED

    @property
    def ok(self) -> bool:
        return self.outcome == CommandOutcome.COMPLETED and self.exit_code == 0


@dataclass
class OsInfo:
    platform: str
    arch: str
    release: str
    hostname: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "platform": self.platform,
            "arch": self.arch,
            "release": self.release,
            "hostname": self.hostname,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["OsInfo"]:
        if not data:
            return None
        return cls(
            platform=str(data.get("platform", "")),
            arch=str(data.get("arch", "")),
            release=str(data.get("release", "")),
            hostname=str(data.get("hostname", "")),
        )


@dataclass
class RemoteConnection:
    """A registered local sandbox client, as the backend sees it."""
    connection_id: str
    user_id: str
    name: str
    mode: ConnectionMode
    client_version: str
    container_id: Optional[str] = None
    image_name: Optional[str] = None
    os_info: Optional[OsInfo] = None
    status: str = "connected"
    created_at: float = field(default_factory=time.time)
    last_heartbeat_at: float = field(default_factory=time.time)

    def is_live(self, liveness_seconds: float, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return self.status == "connected" and (now - self.last_heartbeat_at) <= liveness_seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connectionId": self.connection_id,
            "name": self.name,
            "mode": self.mode.value,
            "containerId": self.container_id,
            "imageName": self.image_name,
            "clientVersion": self.client_version,
            "osInfo": self.os_info.to_dict() if self.os_info else None,
            "status": self.status,
            "lastHeartbeat": self.last_heartbeat_at,
            "createdAt": self.created_at,
        }


@dataclass
class TrackedProcess:
    """A process started by a tool call that may outlive the call."""
    pid: int
    expected_command: str
    tool_call_id: str
    sandbox_id: str
    is_background: bool = True
    started_at: float = field(default_factory=time.time)
    output_files: List[str] = field(default_factory=list)
    state: ProcessState = ProcessState.REGISTERED
    actual_command: Optional[str] = None
    last_checked_at: Optional[float] = None

    @property
    def key(self):
        return (self.sandbox_id, self.pid)


@dataclass(frozen=True)
class ProcessCheckRequest:
    pid: int
    expected_command: str


@dataclass
class ProcessCheckResult:
    pid: int
    running: bool
    matches: bool = False
    actual_command: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"pid": self.pid, "running": self.running, "matches": self.matches}
        if self.actual_command is not None:
            data["actual_command"] = self.actual_command
        if self.reason:
            data["reason"] = self.reason
        return data


@dataclass
class KillResult:
    pid: int
    killed: bool
    reason: str  # terminated / not_running / still_running / target_unavailable

    def to_dict(self) -> Dict[str, Any]:
        return {"pid": self.pid, "killed": self.killed, "reason": self.reason}
