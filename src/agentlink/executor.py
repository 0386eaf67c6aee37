"""Executor boundary: how prompts reach the local agent.

The service never talks to an AI engine directly. It resolves one
:class:`Executor` at startup and hands it to everything that needs it.
The shipped adapter runs a configured command with the prompt appended.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from asyncio.subprocess import PIPE
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from agentlink.config import Settings, get_settings
from agentlink.logger import logger


@dataclass
class ExecutionResult:
    text: str
    is_error: bool = False


class Executor(Protocol):
    async def execute(self, prompt: str, session_key: str, timeout: float) -> ExecutionResult: ...


class ShellExecutor:
    """Runs ``argv + [prompt]`` in the workspace directory.

    A non-zero exit status yields ``is_error=True`` with stderr (or stdout)
    as the text. A timeout kills the process and raises ``TimeoutError``.
    """

    def __init__(self, argv: list[str], workspace_dir: Path) -> None:
        if not argv:
            raise ValueError("executor command must not be empty")
        self.argv = list(argv)
        self.workspace_dir = workspace_dir

    async def execute(self, prompt: str, session_key: str, timeout: float) -> ExecutionResult:
        env = {**os.environ, "AGENTLINK_SESSION_KEY": session_key}
        process = await asyncio.create_subprocess_exec(
            *self.argv,
            prompt,
            cwd=str(self.workspace_dir),
            env=env,
            stdout=PIPE,
            stderr=PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            with contextlib.suppress(Exception):
                await process.communicate()
            logger.error("Executor timed out", session_key=session_key, timeout=timeout)
            raise

        out = stdout.decode(errors="replace").strip()
        err = stderr.decode(errors="replace").strip()
        if process.returncode != 0:
            logger.warning(
                "Executor exited with error",
                session_key=session_key,
                exit_code=process.returncode,
                stderr_tail=err[-500:],
            )
            return ExecutionResult(text=err or out or f"exit code {process.returncode}", is_error=True)
        return ExecutionResult(text=out)


def resolve_executor(settings: Settings | None = None) -> Executor | None:
    """Build the configured executor once, or None when none is configured."""
    s = settings or get_settings()
    if not s.executor.command:
        logger.warning("No executor configured; prompts will be reported as failed")
        return None
    executor = ShellExecutor(s.executor.command, s.workspace_dir)
    logger.info("Executor resolved", command=s.executor.command[0], workspace=str(s.workspace_dir))
    return executor
