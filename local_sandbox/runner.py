"""Command execution for the local sandbox client: docker container or host shell."""

from __future__ import annotations

import asyncio
import logging
import re
import shlex
from dataclasses import dataclass
from typing import List, Optional, Sequence

from core.models import Command
from utils.constants import CONTAINER_CAPABILITIES, DEFAULT_SHELL, EXIT_CODE_TIMEOUT
from utils.helpers import truncate_output

logger = logging.getLogger(__name__)

_ENV_NAME_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


class ProvisioningError(RuntimeError):
    """The container runtime is missing or refused to start the sandbox."""


@dataclass
class ProcessOutput:
    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False


def build_shell_command(command: Command) -> str:
    """Prefix a command with its environment exports and working directory change."""
    full = command.text
    if command.cwd and command.cwd.strip():
        full = f"cd {shlex.quote(command.cwd)} 2>/dev/null && {full}"
    if command.env:
        exports = []
        for key, value in command.env.items():
            if not _ENV_NAME_RE.match(key):
                raise ValueError(f"Invalid environment variable name: {key!r}")
            exports.append(f"export {key}={shlex.quote(value)}")
        full = "; ".join(exports) + "; " + full
    return full


def parse_shell_detection(output: str) -> str:
    """First line of ``command -v bash || command -v sh``, else /bin/sh."""
    if not output or not output.strip():
        return DEFAULT_SHELL
    return output.strip().splitlines()[0].strip() or DEFAULT_SHELL


async def run_process(argv: Sequence[str], timeout_seconds: Optional[float] = None) -> ProcessOutput:
    """Run argv to completion, killing it on timeout. Never raises on non-zero exit."""
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return ProcessOutput(
            stdout="",
            stderr=f"Command timed out after {int((timeout_seconds or 0) * 1000)}ms",
            exit_code=EXIT_CODE_TIMEOUT,
            timed_out=True,
        )
    except asyncio.CancelledError:
        if process.returncode is None:
            process.kill()
            await process.wait()
        raise
    return ProcessOutput(
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        exit_code=int(process.returncode if process.returncode is not None else -1),
    )


class CommandRunner:
    """Runs one Command and returns truncated output."""

    def argv(self, shell_command: str) -> List[str]:
        raise NotImplementedError

    async def execute(self, command: Command) -> ProcessOutput:
        shell_command = build_shell_command(command)
        output = await run_process(self.argv(shell_command), timeout_seconds=command.timeout_ms / 1000.0)
        output.stdout = truncate_output(output.stdout)
        output.stderr = truncate_output(output.stderr)
        return output


class HostRunner(CommandRunner):
    """Direct execution on the user's machine. No isolation."""

    def __init__(self, shell: str = "/bin/bash"):
        self.shell = shell

    def argv(self, shell_command: str) -> List[str]:
        return [self.shell, "-c", shell_command]


class ContainerRunner(CommandRunner):
    def __init__(self, container_id: str, shell: str = DEFAULT_SHELL):
        self.container_id = container_id
        self.shell = shell

    def argv(self, shell_command: str) -> List[str]:
        return ["docker", "exec", self.container_id, self.shell, "-c", shell_command]


class DockerRuntime:
    """Thin wrapper around the docker CLI."""

    def __init__(self, docker: str = "docker"):
        self.docker = docker

    async def is_available(self) -> bool:
        try:
            output = await run_process([self.docker, "--version"], timeout_seconds=15)
        except (FileNotFoundError, PermissionError):
            return False
        return output.exit_code == 0

    async def pull(self, image: str) -> None:
        # progress goes straight to the user's terminal
        process = await asyncio.create_subprocess_exec(self.docker, "pull", image)
        code = await process.wait()
        if code != 0:
            raise ProvisioningError(f"Failed to pull image {image} (exit code {code})")

    @staticmethod
    def run_args(image: str, capabilities: bool = True) -> List[str]:
        args = ["run", "-d"]
        if capabilities:
            args.extend(f"--cap-add={cap}" for cap in CONTAINER_CAPABILITIES)
        args.extend(["--network", "host", image, "tail", "-f", "/dev/null"])
        return args

    async def create_container(self, image: str) -> str:
        output = await run_process([self.docker, *self.run_args(image)], timeout_seconds=120)
        container_id = output.stdout.strip()
        if output.exit_code != 0 or not container_id:
            raise ProvisioningError(f"Failed to create container: {output.stderr.strip() or output.exit_code}")
        return container_id

    async def detect_shell(self, container_id: str) -> str:
        output = await run_process(
            [self.docker, "exec", container_id, "sh", "-c", "command -v bash || command -v sh"],
            timeout_seconds=15,
        )
        return parse_shell_detection(output.stdout)

    async def remove(self, container_id: str) -> None:
        output = await run_process([self.docker, "rm", "-f", container_id], timeout_seconds=30)
        if output.exit_code != 0:
            raise ProvisioningError(f"Failed to remove container {container_id}: {output.stderr.strip()}")
