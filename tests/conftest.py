"""Global fixtures for the sandbox execution test suite."""

import asyncio
import re
from types import SimpleNamespace
from typing import Dict, List, Optional, Set

import pytest
from e2b import NotFoundException

from core.command_store import CommandStore
from core.models import CommandResult
from core.process_identity import PROCESS_TABLE_COMMAND
from core.process_tracker import BackgroundProcessTracker
from targets.base import ExecutionTarget

_PS_ONE_RE = re.compile(r'^ps -p (\d+) -o pid=,args=$')
_KILL_RE = re.compile(r'^kill -(\w+) (\d+)$')

TEST_TOKEN = "hsb_" + "ab" * 32


# ── FakeTarget ──


class FakeTarget(ExecutionTarget):
    """In-memory process table that understands the ps/kill commands we issue."""

    kind = "fake"

    def __init__(self, target_id: str = "sbx-1", processes: Optional[Dict[int, str]] = None,
                 available: bool = True):
        self._id = target_id
        self.processes: Dict[int, str] = dict(processes or {})
        self.available = available
        self.commands: List[str] = []
        self.outputs: Dict[str, CommandResult] = {}
        self.fail_table = False
        self.fail_pids: Set[int] = set()
        self.ignore_term: Set[int] = set()
        self.force_killed: List[int] = []
        self.next_pid = 4000

    @property
    def target_id(self) -> str:
        return self._id

    @property
    def table_queries(self) -> int:
        return sum(1 for c in self.commands if c == PROCESS_TABLE_COMMAND)

    @property
    def pid_queries(self) -> int:
        return sum(1 for c in self.commands if _PS_ONE_RE.match(c))

    async def run(self, command, *, cwd=None, env=None, timeout_ms=30000, abort_event=None):
        self.commands.append(command)
        if command == PROCESS_TABLE_COMMAND:
            if self.fail_table:
                raise RuntimeError("ps: unsupported option")
            lines = [f"{pid:>7} {cmd}" for pid, cmd in sorted(self.processes.items())]
            return CommandResult(command_id="", stdout="\n".join(lines) + "\n")

        match = _PS_ONE_RE.match(command)
        if match:
            pid = int(match.group(1))
            if pid in self.fail_pids:
                raise RuntimeError(f"query for {pid} failed")
            if pid in self.processes:
                return CommandResult(command_id="", stdout=f"{pid:>7} {self.processes[pid]}\n")
            return CommandResult(command_id="", exit_code=1)

        match = _KILL_RE.match(command)
        if match:
            sig, pid = match.group(1), int(match.group(2))
            if pid not in self.processes:
                return CommandResult(command_id="", stderr="No such process", exit_code=1)
            if sig == "TERM" and pid in self.ignore_term:
                return CommandResult(command_id="")
            del self.processes[pid]
            return CommandResult(command_id="")

        return self.outputs.get(command, CommandResult(command_id=""))

    async def start_background(self, command, *, cwd=None, env=None):
        pid = self.next_pid
        self.next_pid += 1
        self.processes[pid] = f"sh -c {command}"
        return pid

    async def force_kill(self, pid):
        self.force_killed.append(pid)
        return self.processes.pop(int(pid), None) is not None

    async def is_available(self):
        return self.available

    def describe(self):
        return "fake target"


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ── Fake E2B SDK ──


class FakeCommands:
    def __init__(self):
        self.calls = []
        self.errors = {}
        self.slow = set()
        self.killed = []

    async def run(self, cmd, envs=None, cwd=None, user=None, timeout=None, background=False):
        self.calls.append({"cmd": cmd, "envs": envs, "cwd": cwd, "user": user,
                           "timeout": timeout, "background": background})
        if cmd in self.errors:
            raise self.errors[cmd]
        if cmd in self.slow:
            await asyncio.sleep(30)
        if background:
            return SimpleNamespace(pid=777)
        return SimpleNamespace(stdout=f"out:{cmd}\n", stderr="", exit_code=0)

    async def kill(self, pid):
        self.killed.append(pid)
        return True


class FakeSandbox:
    def __init__(self, sandbox_id):
        self.sandbox_id = sandbox_id
        self.commands = FakeCommands()
        self.pauses = 0
        self.pause_errors = 0

    async def beta_pause(self):
        self.pauses += 1
        if self.pause_errors:
            self.pause_errors -= 1
            raise RuntimeError("pause failed")
        return True

    async def is_running(self):
        return True


class FakePaginator:
    def __init__(self, items):
        self.items = items

    async def next_items(self):
        return list(self.items)


class FakeSandboxApi:
    """Replacement for the AsyncSandbox class-level API."""

    def __init__(self, existing=None, create_error=None):
        self.existing = list(existing or [])
        self.create_error = create_error
        self.sandboxes = {}
        self.created = []
        self.connects = []
        self.killed = []
        self.queries = []

    def list(self, query=None):
        self.queries.append(query)
        return FakePaginator(self.existing)

    async def connect(self, sandbox_id, timeout=None):
        self.connects.append((sandbox_id, timeout))
        if sandbox_id not in self.sandboxes:
            raise NotFoundException(f"Sandbox {sandbox_id} not found")
        return self.sandboxes[sandbox_id]

    async def create(self, template=None, timeout=None, metadata=None):
        if self.create_error:
            raise self.create_error
        sandbox = FakeSandbox(f"new-{len(self.created) + 1}")
        self.created.append({"template": template, "timeout": timeout, "metadata": metadata})
        self.sandboxes[sandbox.sandbox_id] = sandbox
        return sandbox

    async def kill(self, sandbox_id):
        self.killed.append(sandbox_id)
        self.sandboxes.pop(sandbox_id, None)
        return True

    def add_existing(self, sandbox_id, state, version="v2"):
        self.sandboxes[sandbox_id] = FakeSandbox(sandbox_id)
        self.existing.append(SimpleNamespace(
            sandbox_id=sandbox_id,
            state=state,
            metadata={"userID": "user-1", "template": "terminal-agent-sandbox", "sandboxVersion": version},
        ))
        return self.sandboxes[sandbox_id]


@pytest.fixture
def fake_target():
    return FakeTarget()


@pytest.fixture
def tracker():
    return BackgroundProcessTracker("session-1")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    s = CommandStore(clock=clock)
    s.set_token("user-1", TEST_TOKEN)
    return s


@pytest.fixture
def connection_id(store):
    result = store.connect(TEST_TOKEN, "laptop", "1.0.0", "docker", container_id="c0ffee")
    assert result["success"] is True
    return result["connectionId"]
