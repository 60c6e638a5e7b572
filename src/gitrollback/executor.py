"""Subprocess execution for git and health-check commands."""

from __future__ import annotations

import asyncio
import os
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Protocol

from gitrollback.logger import get_logger
from gitrollback.models import CommandResult

__all__ = [
    "Executor",
    "LocalExecutor",
]

logger = get_logger(__name__)


class Executor(Protocol):
    """Runs commands for the engine.

    git is always invoked through run() with an argument vector; operator
    supplied health checks go through run_shell(). Tests substitute a mock.
    """

    async def run(
        self,
        argv: Sequence[str],
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult: ...

    async def run_shell(self, cmd: str, timeout: float | None = None) -> CommandResult: ...

    async def terminate_all(self) -> None: ...


class LocalExecutor:
    """Runs commands on this machine with asyncio subprocesses.

    stdin is /dev/null, so anything that prompts fails instead of hanging.
    """

    def __init__(self, cwd: Path | None = None) -> None:
        self._cwd = cwd
        self._running: set[asyncio.subprocess.Process] = set()

    async def run(
        self,
        argv: Sequence[str],
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        """Execute argv directly, without a shell.

        Args:
            argv: Program and arguments
            timeout: Seconds to wait before the process is terminated
            env: Variables added to the inherited environment

        Raises:
            TimeoutError: The process ran longer than timeout
        """
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self._cwd,
            env={**os.environ, **env} if env else None,
        )
        return await self._collect(proc, argv[0], timeout)

    async def run_shell(self, cmd: str, timeout: float | None = None) -> CommandResult:
        """Execute cmd through /bin/sh in the repository directory."""
        proc = await asyncio.create_subprocess_shell(
            cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self._cwd,
        )
        return await self._collect(proc, cmd, timeout)

    async def _collect(self, proc: asyncio.subprocess.Process, label: str, timeout: float | None) -> CommandResult:
        self._running.add(proc)
        try:
            async with asyncio.timeout(timeout):
                stdout, stderr = await proc.communicate()
        except TimeoutError:
            logger.warning("Command timed out", command=label, timeout=timeout)
            await self._stop(proc)
            raise
        except asyncio.CancelledError:
            await self._stop(proc)
            raise
        finally:
            self._running.discard(proc)

        return CommandResult(
            exit_code=proc.returncode or 0,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )

    @staticmethod
    async def _stop(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            proc.terminate()
            await proc.wait()

    async def terminate_all(self) -> None:
        """Terminate every command still running."""
        running = [proc for proc in self._running if proc.returncode is None]
        for proc in running:
            proc.terminate()
        await asyncio.gather(*(proc.wait() for proc in running), return_exceptions=True)
        self._running.clear()
