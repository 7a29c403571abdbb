"""External agent executor: spawn a work session and poll its history."""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)


class ExecutorError(Exception):
    """Raised when the executor fails or is not configured."""


@dataclass
class SpawnResult:
    session_key: str
    status: str


class Executor(Protocol):
    def is_configured(self) -> bool: ...

    async def spawn(
        self,
        task: str,
        label: str,
        cleanup: str = "keep",
        timeout_seconds: int | None = None,
    ) -> SpawnResult: ...

    async def get_history(self, session_key: str, limit: int = 10) -> list[dict]: ...


class AgentCLIExecutor:
    """Drives an agent CLI binary through subprocesses.

    An empty history means the session has not produced output yet.
    """

    def __init__(self, binary: str | None):
        self.binary = binary

    def is_configured(self) -> bool:
        return bool(self.binary)

    async def spawn(
        self,
        task: str,
        label: str,
        cleanup: str = "keep",
        timeout_seconds: int | None = None,
    ) -> SpawnResult:
        args = ["agent", "--message", task, "--label", label, "--cleanup", cleanup, "--json"]
        if timeout_seconds:
            args += ["--timeout", str(timeout_seconds)]
        data = await self._run_json(args)
        session_key = data.get("sessionKey") if isinstance(data, dict) else None
        if not session_key:
            raise ExecutorError(f"Executor did not return a session key for '{label}'")
        return SpawnResult(session_key=session_key, status=data.get("status", "spawned"))

    async def get_history(self, session_key: str, limit: int = 10) -> list[dict]:
        data = await self._run_json(["sessions", "list", "--json"])
        sessions = data if isinstance(data, list) else data.get("sessions", [])
        for session in sessions:
            if session.get("key") == session_key:
                messages = session.get("messages") or []
                return messages[-limit:]
        return []

    async def _run_json(self, args: list[str]):
        if not self.binary:
            raise ExecutorError("Executor not configured: AWM_EXECUTOR_BIN not set")

        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ExecutorError(f"Could not run {self.binary}: {e}") from e

        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise ExecutorError(
                f"{self.binary} {args[0]} failed ({proc.returncode}): {stderr.decode().strip()}"
            )
        try:
            return json.loads(stdout.decode())
        except json.JSONDecodeError as e:
            raise ExecutorError(f"{self.binary} {args[0]} returned invalid JSON") from e
