"""Direct-to-host downloads tracked as background Proxmox tasks.

The download is submitted as a detached ``pvesh ... download-url`` process so a
dropped SSH session cannot kill it. The resulting task is then located by
matching the filename in recent task logs and polled until it reaches a
terminal state. Each poll carries a log cursor forward so only new log lines
are surfaced.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..core.errors import AcquisitionError, DeploymentError
from .remote_task_service import RemoteHost
from .ssh_service import shell_quote

logger = logging.getLogger(__name__)

LogCallback = Callable[[str], None]

_DOWNLOAD_TASK_TYPES = ("download", "imgdownload")
_PROGRESS_MARKERS = ("%", "downloading", "Saving to", "Length:", "ERROR", "error")


class DownloadTaskState(str, Enum):
    """Lifecycle of a remote download task."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(slots=True)
class DownloadTask:
    """Polling state for one remote download."""

    node: str
    storage: str
    filename: str
    url: str
    state: DownloadTaskState = DownloadTaskState.PENDING
    upid: Optional[str] = None
    log_cursor: int = 0
    exit_status: Optional[str] = None
    started_at: Optional[float] = None
    log_lines: List[str] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return self.state in (
            DownloadTaskState.SUCCEEDED,
            DownloadTaskState.FAILED,
            DownloadTaskState.TIMED_OUT,
        )


def is_progress_line(line: str) -> bool:
    return any(marker in line for marker in _PROGRESS_MARKERS)


class DownloadTaskService:
    """Submit, locate and poll ``download-url`` tasks on a node."""

    def __init__(
        self,
        host: RemoteHost,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._host = host
        self._settings = host.settings
        self._sleep = sleep
        self._clock = clock

    async def download(
        self,
        node: str,
        storage: str,
        filename: str,
        url: str,
        log: Optional[LogCallback] = None,
    ) -> DownloadTask:
        """Run the whole protocol; raises ``AcquisitionError`` unless the task succeeds."""

        emit = log or (lambda message: None)
        task = DownloadTask(node=node, storage=storage, filename=filename, url=url)

        await self.submit(task)
        emit("Proxmox download task submitted, waiting for it to register...")
        await self._sleep(self._settings.download_task_register_delay)

        await self.locate(task)
        emit(f"Download task started (UPID: {task.upid})")

        while not task.terminal:
            await self._sleep(self._settings.download_task_poll_interval)
            for line in await self.poll(task):
                emit(f"Proxmox: {line}")

        if task.state == DownloadTaskState.TIMED_OUT:
            hours = self._settings.download_task_deadline / 3600
            raise AcquisitionError(f"download timed out after {hours:g} hours (UPID: {task.upid})")
        if task.state == DownloadTaskState.FAILED:
            raise AcquisitionError(f"download task failed: {task.exit_status}")
        return task

    async def submit(self, task: DownloadTask) -> None:
        """Start the download as a detached background process."""

        command = (
            f"nohup pvesh create /nodes/{shell_quote(task.node)}/storage/{shell_quote(task.storage)}/download-url"
            f" --content iso --filename {shell_quote(task.filename)} --url {shell_quote(task.url)}"
            " --verify-certificates 0 >/dev/null 2>&1 & echo started"
        )
        try:
            result = await self._host.run(
                command,
                timeout=self._settings.direct_download_submit_timeout,
                description=f"submit download of {task.filename}",
            )
        except DeploymentError as exc:
            raise AcquisitionError(f"starting pvesh download-url: {exc}") from exc
        if "started" not in result.stdout:
            raise AcquisitionError(f"failed to start pvesh background task: {result.stdout.strip()}")
        task.started_at = self._clock()
        logger.info("Submitted direct download of %s to %s on %s", task.filename, task.storage, task.node)

    async def locate(self, task: DownloadTask) -> str:
        """Find the task whose log mentions the filename, retrying while it registers."""

        attempts = max(1, self._settings.download_task_lookup_attempts)
        for attempt in range(attempts):
            if attempt > 0:
                await self._sleep(self._settings.download_task_lookup_interval)
            upid = await self._find_task(task)
            if upid:
                task.upid = upid
                task.state = DownloadTaskState.RUNNING
                logger.info("Located download task %s for %s", upid, task.filename)
                return upid
            logger.debug("Download task for %s not visible yet (attempt %d/%d)", task.filename, attempt + 1, attempts)

        raise AcquisitionError(f"download task did not start: no download task found for {task.filename}")

    async def _find_task(self, task: DownloadTask) -> Optional[str]:
        node = shell_quote(task.node)
        try:
            tasks = await self._host.run_json(
                f"pvesh get /nodes/{node}/tasks --output-format json --limit 20 2>/dev/null"
            )
        except DeploymentError as exc:
            logger.debug("Task list query failed: %s", exc)
            return None

        for entry in tasks or []:
            if entry.get("type") not in _DOWNLOAD_TASK_TYPES:
                continue
            upid = str(entry.get("upid", ""))
            try:
                result = await self._host.run(
                    f"pvesh get /nodes/{node}/tasks/{shell_quote(upid)}/log --output-format json --limit 5 2>/dev/null"
                )
            except DeploymentError:
                # The task exists; its log is just not readable yet.
                return upid
            if task.filename in result.stdout:
                return upid
        return None

    async def poll(self, task: DownloadTask) -> List[str]:
        """Advance the task by one poll and return new progress lines."""

        if task.terminal:
            return []
        if task.started_at is not None and self._clock() - task.started_at > self._settings.download_task_deadline:
            task.state = DownloadTaskState.TIMED_OUT
            return []

        node = shell_quote(task.node)
        upid = shell_quote(task.upid or "")
        try:
            status: Dict[str, Any] = await self._host.run_json(
                f"pvesh get /nodes/{node}/tasks/{upid}/status --output-format json"
            )
        except DeploymentError as exc:
            logger.debug("Status poll for %s failed, retrying: %s", task.upid, exc)
            return []

        lines = await self._read_new_log_lines(task)

        if status.get("status") == "stopped":
            task.exit_status = str(status.get("exitstatus", ""))
            task.state = DownloadTaskState.SUCCEEDED if task.exit_status == "OK" else DownloadTaskState.FAILED
        return lines

    async def _read_new_log_lines(self, task: DownloadTask) -> List[str]:
        node = shell_quote(task.node)
        upid = shell_quote(task.upid or "")
        try:
            entries = await self._host.run_json(
                f"pvesh get /nodes/{node}/tasks/{upid}/log --output-format json"
                f" --start {task.log_cursor} --limit 50 2>/dev/null"
            )
        except DeploymentError:
            return []

        surfaced: List[str] = []
        for entry in entries or []:
            number = int(entry.get("n", 0))
            if number <= task.log_cursor:
                continue
            task.log_cursor = number
            line = str(entry.get("t", "")).strip()
            if line:
                task.log_lines.append(line)
                if is_progress_line(line):
                    surfaced.append(line)
        return surfaced


__all__ = [
    "DownloadTask",
    "DownloadTaskService",
    "DownloadTaskState",
    "is_progress_line",
]
