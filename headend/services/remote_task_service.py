"""Asynchronous coordination of blocking SSH operations.

This module provides static concurrency control with:
- A global maximum of concurrent SSH channels
- Per-host serialization for transfer operations (uploads, tool downloads)
- An explicit timeout on every call, surfaced as a transport failure
"""

from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from time import perf_counter
from typing import Any, Callable, Dict, Optional, TypeVar

from ..core.config import Settings, settings as default_settings
from ..core.errors import RemoteCommandError, TransportError
from .ssh_service import CommandResult, ProgressCallback, RemoteExecutor

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RemoteTaskCategory(str, Enum):
    """Task categories that determine execution behavior.

    SHORT: status checks, queries and VM lifecycle commands
        - Only bound by the global connection limit

    TRANSFER: long-running data movement (uploads, wget/curl downloads)
        - Per-host serialization (only one transfer per host at a time)
    """

    SHORT = "short"
    TRANSFER = "transfer"


class RemoteTaskTimeoutError(TransportError, TimeoutError):
    """Raised when a remote task exceeds its allotted execution window."""


class RemoteTaskService:
    """Run blocking executor calls in worker threads under concurrency limits."""

    def __init__(self, max_connections: Optional[int] = None) -> None:
        self._max_connections = max(1, max_connections or default_settings.max_ssh_connections)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._global_semaphore: Optional[asyncio.Semaphore] = None
        self._host_transfer_locks: Dict[str, asyncio.Lock] = {}

        # Metrics
        self._inflight = 0
        self._completed = 0
        self._timed_out = 0

    def _bind_loop(self) -> asyncio.Semaphore:
        # asyncio primitives belong to the loop they were first used on.
        loop = asyncio.get_running_loop()
        if self._loop is not loop or self._global_semaphore is None:
            self._loop = loop
            self._global_semaphore = asyncio.Semaphore(self._max_connections)
            self._host_transfer_locks = {}
        return self._global_semaphore

    def _transfer_lock(self, hostname: str) -> asyncio.Lock:
        host_key = hostname.lower().strip()
        lock = self._host_transfer_locks.get(host_key)
        if lock is None:
            lock = asyncio.Lock()
            self._host_transfer_locks[host_key] = lock
        return lock

    async def run_blocking(
        self,
        hostname: str,
        func: Callable[..., T],
        *args: Any,
        description: str,
        category: RemoteTaskCategory = RemoteTaskCategory.SHORT,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> T:
        """Run a blocking callable under concurrency control.

        Args:
            hostname: Target host for the operation
            func: Blocking callable to execute
            *args: Positional arguments for func
            description: Human-readable description for logging
            category: Task category (SHORT or TRANSFER)
            timeout: Optional timeout in seconds
            **kwargs: Keyword arguments for func

        Returns:
            Result from func execution

        Raises:
            RemoteTaskTimeoutError: If task exceeds timeout
        """

        semaphore = self._bind_loop()
        if category == RemoteTaskCategory.TRANSFER:
            async with self._transfer_lock(hostname):
                async with semaphore:
                    return await self._execute(hostname, func, args, kwargs, description, category, timeout)

        async with semaphore:
            return await self._execute(hostname, func, args, kwargs, description, category, timeout)

    async def _execute(
        self,
        hostname: str,
        func: Callable[..., T],
        args: tuple,
        kwargs: Dict[str, Any],
        description: str,
        category: RemoteTaskCategory,
        timeout: Optional[float],
    ) -> T:
        logger.debug("Starting remote %s task on %s: %s", category.value, hostname, description)

        self._inflight += 1
        start_time = perf_counter()
        run_coro = asyncio.to_thread(func, *args, **kwargs)
        try:
            if timeout is not None and timeout > 0:
                result = await asyncio.wait_for(run_coro, timeout=timeout)
            else:
                result = await run_coro
        except asyncio.TimeoutError as exc:
            self._timed_out += 1
            message = f"Remote task '{description}' on {hostname} timed out after {timeout:.1f}s"
            logger.warning(message)
            raise RemoteTaskTimeoutError(message) from exc
        finally:
            self._inflight -= 1

        self._completed += 1
        logger.debug(
            "Remote %s task on %s completed in %.2fs: %s",
            category.value,
            hostname,
            perf_counter() - start_time,
            description,
        )
        return result

    def get_metrics(self) -> Dict[str, Any]:
        """Return a snapshot of the service state for diagnostics."""

        return {
            "max_connections": self._max_connections,
            "inflight": self._inflight,
            "completed": self._completed,
            "timed_out": self._timed_out,
            "hosts_with_active_transfer": len(
                [h for h, lock in self._host_transfer_locks.items() if lock.locked()]
            ),
        }


class RemoteHost:
    """An executor bound to the task coordinator, exposing awaitable commands."""

    def __init__(
        self,
        executor: RemoteExecutor,
        *,
        tasks: Optional[RemoteTaskService] = None,
        config: Optional[Settings] = None,
    ) -> None:
        self.executor = executor
        self.tasks = tasks or remote_task_service
        self.settings = config or default_settings

    @property
    def hostname(self) -> str:
        return self.executor.host

    async def run(
        self,
        command: str,
        *,
        timeout: Optional[float] = None,
        description: Optional[str] = None,
        category: RemoteTaskCategory = RemoteTaskCategory.SHORT,
    ) -> CommandResult:
        """Run a command; a non-zero exit status is returned, not raised."""

        effective_timeout = timeout if timeout is not None else self.settings.command_timeout
        return await self.tasks.run_blocking(
            self.hostname,
            self.executor.run,
            command,
            effective_timeout,
            description=description or command.split(" ", 1)[0],
            category=category,
            # Leave the executor room to report its own timeout first.
            timeout=effective_timeout + 5.0 if effective_timeout else None,
        )

    async def run_checked(
        self,
        command: str,
        *,
        timeout: Optional[float] = None,
        description: Optional[str] = None,
        category: RemoteTaskCategory = RemoteTaskCategory.SHORT,
    ) -> CommandResult:
        """Run a command and raise ``RemoteCommandError`` on a non-zero exit status."""

        result = await self.run(command, timeout=timeout, description=description, category=category)
        if not result.ok:
            raise RemoteCommandError(command, result.exit_code, result.stdout, result.stderr)
        return result

    async def run_json(
        self,
        command: str,
        *,
        timeout: Optional[float] = None,
        description: Optional[str] = None,
    ) -> Any:
        """Run a command that prints JSON and return the decoded payload."""

        result = await self.run_checked(command, timeout=timeout, description=description)
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise RemoteCommandError(
                command, result.exit_code, result.stdout, f"invalid JSON output: {exc}"
            ) from exc

    async def upload(
        self,
        local_path: str,
        remote_path: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        await self.tasks.run_blocking(
            self.hostname,
            self.executor.upload,
            local_path,
            remote_path,
            on_progress,
            description=f"upload {remote_path}",
            category=RemoteTaskCategory.TRANSFER,
            timeout=self.settings.transfer_timeout,
        )


remote_task_service = RemoteTaskService()

__all__ = [
    "remote_task_service",
    "RemoteHost",
    "RemoteTaskService",
    "RemoteTaskCategory",
    "RemoteTaskTimeoutError",
]
