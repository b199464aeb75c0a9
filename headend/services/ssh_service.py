"""SSH service for executing shell commands and transfers on the hypervisor."""
from __future__ import annotations

import logging
import shlex
import socket
import threading
from dataclasses import dataclass
from pathlib import Path
from time import perf_counter
from typing import Callable, Optional, Protocol

import paramiko

from ..core.config import Settings, settings as default_settings
from ..core.errors import TransportError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class SSHServiceError(TransportError):
    """Base exception for SSH service failures."""


class SSHAuthenticationError(SSHServiceError):
    """Raised when authentication to the host fails."""


class SSHTransportError(SSHServiceError):
    """Raised for connection, channel and SFTP failures."""


@dataclass(slots=True)
class CommandResult:
    """Collected output of a remote command."""

    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class RemoteExecutor(Protocol):
    """Minimal remote shell capability consumed by the deployment services."""

    host: str

    def run(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        ...

    def upload(
        self,
        local_path: str,
        remote_path: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        ...

    def download(self, remote_path: str, local_path: str) -> None:
        ...


def shell_quote(value: object) -> str:
    """Quote a value for safe inclusion in a POSIX shell command."""

    return shlex.quote(str(value))


def _format_output_preview(output: str, *, max_length: int = 400) -> str:
    """Return a newline-prefixed preview of command output."""
    if not output:
        return ""

    sanitized = output.replace("\r\n", "\n").strip()
    if not sanitized:
        return ""

    if len(sanitized) > max_length:
        preview = sanitized[: max_length - 3] + "..."
    else:
        preview = sanitized

    return "\n" + preview


class SSHService:
    """paramiko-backed executor bound to one hypervisor host.

    The connection is opened lazily on first use and shared by every call;
    paramiko multiplexes concurrent channels over the single transport.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        *,
        config: Optional[Settings] = None,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ) -> None:
        self._settings = config or default_settings
        self.host = host or self._settings.proxmox_host
        self._client_factory = client_factory
        self._client: Optional[paramiko.SSHClient] = None
        self._lock = threading.Lock()

    def __enter__(self) -> "SSHService":
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def connect(self) -> paramiko.SSHClient:
        """Open the SSH connection if it is not already active."""

        with self._lock:
            if self._client is not None and self._is_active(self._client):
                return self._client

            if self._client is not None:
                self._dispose(self._client)
                self._client = None

            client = self._client_factory()
            client.load_system_host_keys()
            if self._settings.ssh_allow_unknown_hosts:
                client.set_missing_host_key_policy(paramiko.AutoAddPolicy())  # nosec B507
            else:
                client.set_missing_host_key_policy(paramiko.RejectPolicy())

            key_path = self._settings.ssh_key_path
            logger.info(
                "Opening SSH connection to %s (port=%s, username=%s, key=%s)",
                self.host,
                self._settings.ssh_port,
                self._settings.ssh_username,
                key_path or "<agent/default>",
            )
            start_time = perf_counter()
            try:
                client.connect(
                    hostname=self.host,
                    port=self._settings.ssh_port,
                    username=self._settings.ssh_username,
                    password=self._settings.ssh_password or None,
                    key_filename=str(Path(key_path).expanduser()) if key_path else None,
                    timeout=self._settings.ssh_connect_timeout,
                    allow_agent=True,
                    look_for_keys=not key_path,
                )
            except paramiko.AuthenticationException as exc:
                logger.error("Authentication failed while connecting to %s: %s", self.host, exc)
                self._dispose(client)
                raise SSHAuthenticationError(f"authentication to {self.host} failed: {exc}") from exc
            except (paramiko.SSHException, EOFError, OSError) as exc:
                logger.error("Failed to connect to %s: %s", self.host, exc)
                self._dispose(client)
                raise SSHTransportError(f"connecting to {self.host}: {exc}") from exc

            logger.debug("SSH connection to %s opened in %.2fs", self.host, perf_counter() - start_time)
            self._client = client
            return client

    def close(self) -> None:
        """Close the SSH connection."""

        with self._lock:
            if self._client is not None:
                self._dispose(self._client)
                self._client = None
                logger.debug("Closed SSH connection to %s", self.host)

    def run(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        """Execute a shell command and return collected output."""

        truncated = command.replace("\n", " ")
        if len(truncated) > 120:
            truncated = f"{truncated[:117]}..."
        logger.info("Executing command on %s: %s", self.host, truncated)
        logger.debug("Full command on %s: %s", self.host, command)

        effective_timeout = timeout if timeout is not None else self._settings.command_timeout
        client = self.connect()
        start_time = perf_counter()
        try:
            _, stdout_stream, stderr_stream = client.exec_command(command, timeout=effective_timeout)
            stdout = stdout_stream.read().decode("utf-8", errors="replace")
            stderr = stderr_stream.read().decode("utf-8", errors="replace")
            exit_code = stdout_stream.channel.recv_exit_status()
        except socket.timeout as exc:
            logger.warning("Command on %s timed out after %.1fs", self.host, effective_timeout)
            raise SSHTransportError(
                f"command on {self.host} timed out after {effective_timeout:.1f}s"
            ) from exc
        except (paramiko.SSHException, EOFError, OSError) as exc:
            logger.error("Command execution failed on %s: %s", self.host, exc)
            raise SSHTransportError(f"running command on {self.host}: {exc}") from exc

        duration = perf_counter() - start_time
        logger.info(
            "Command on %s completed in %.2fs with exit code %s (stdout=%d bytes, stderr=%d bytes)",
            self.host,
            duration,
            exit_code,
            len(stdout.encode("utf-8")),
            len(stderr.encode("utf-8")),
        )
        stdout_preview = _format_output_preview(stdout)
        if stdout_preview:
            logger.debug("Command stdout preview on %s:%s", self.host, stdout_preview)
        stderr_preview = _format_output_preview(stderr)
        if stderr_preview:
            level = logger.warning if exit_code != 0 else logger.debug
            level("Command stderr preview on %s:%s", self.host, stderr_preview)

        return CommandResult(stdout=stdout, stderr=stderr, exit_code=exit_code)

    def upload(
        self,
        local_path: str,
        remote_path: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        """Copy a local file to the host over SFTP."""

        logger.info("Uploading %s to %s:%s", local_path, self.host, remote_path)
        client = self.connect()
        start_time = perf_counter()
        try:
            with client.open_sftp() as sftp:
                sftp.put(local_path, remote_path, callback=on_progress)
        except (paramiko.SSHException, EOFError, OSError) as exc:
            logger.error("Upload of %s to %s failed: %s", local_path, self.host, exc)
            raise SSHTransportError(f"uploading {local_path} to {self.host}:{remote_path}: {exc}") from exc
        logger.info("Upload to %s:%s completed in %.2fs", self.host, remote_path, perf_counter() - start_time)

    def download(self, remote_path: str, local_path: str) -> None:
        """Copy a file from the host over SFTP."""

        logger.info("Downloading %s:%s to %s", self.host, remote_path, local_path)
        client = self.connect()
        try:
            with client.open_sftp() as sftp:
                sftp.get(remote_path, local_path)
        except (paramiko.SSHException, EOFError, OSError) as exc:
            logger.error("Download of %s from %s failed: %s", remote_path, self.host, exc)
            raise SSHTransportError(f"downloading {self.host}:{remote_path}: {exc}") from exc

    @staticmethod
    def _is_active(client: paramiko.SSHClient) -> bool:
        transport = client.get_transport()
        return transport is not None and transport.is_active()

    @staticmethod
    def _dispose(client: paramiko.SSHClient) -> None:
        try:
            client.close()
        except Exception:  # pragma: no cover - best effort cleanup
            logger.debug("Failed to close SSH client cleanly", exc_info=True)


__all__ = [
    "CommandResult",
    "ProgressCallback",
    "RemoteExecutor",
    "SSHAuthenticationError",
    "SSHService",
    "SSHServiceError",
    "SSHTransportError",
    "shell_quote",
]
