"""Configuration validation utilities."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .config import (
    settings,
    set_config_validation_result,
    get_config_validation_result,
)


@dataclass
class ConfigIssue:
    """Represents a single configuration issue."""

    message: str
    hint: Optional[str] = None


@dataclass
class ConfigValidationResult:
    """Outcome of running configuration checks."""

    checked_at: datetime
    errors: List[ConfigIssue] = field(default_factory=list)
    warnings: List[ConfigIssue] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)


def _warn(result: ConfigValidationResult, message: str, hint: Optional[str] = None) -> None:
    result.warnings.append(ConfigIssue(message=message, hint=hint))


def _error(result: ConfigValidationResult, message: str, hint: Optional[str] = None) -> None:
    result.errors.append(ConfigIssue(message=message, hint=hint))


def run_config_checks(force: bool = False) -> ConfigValidationResult:
    """Validate configuration combinations and cache the result."""

    if not force:
        cached = get_config_validation_result()
        if cached is not None:
            return cached

    result = ConfigValidationResult(checked_at=datetime.now(timezone.utc))

    if not settings.proxmox_host.strip():
        _error(
            result,
            "PROXMOX_HOST is required.",
            "Set PROXMOX_HOST to the hostname or address of the hypervisor.",
        )

    if not settings.has_ssh_credentials():
        _warn(
            result,
            "Neither SSH_KEY_PATH nor SSH_PASSWORD is set; relying on the SSH agent and default keys.",
            "Provide SSH_KEY_PATH to make authentication explicit.",
        )
    elif settings.ssh_key_path and not Path(settings.ssh_key_path).expanduser().is_file():
        _error(
            result,
            f"SSH_KEY_PATH points to a missing file: {settings.ssh_key_path}",
            "Mount the private key or correct SSH_KEY_PATH.",
        )

    if settings.ssh_allow_unknown_hosts:
        _warn(
            result,
            "SSH_ALLOW_UNKNOWN_HOSTS is enabled; unknown host keys are accepted.",
            "Add the hypervisor to known_hosts and disable SSH_ALLOW_UNKNOWN_HOSTS.",
        )

    if settings.download_task_poll_interval > settings.download_task_deadline:
        _warn(
            result,
            "DOWNLOAD_TASK_POLL_INTERVAL exceeds DOWNLOAD_TASK_DEADLINE.",
            "Direct downloads will time out before the first status poll.",
        )

    if settings.progress_log_interval <= 0:
        _warn(
            result,
            "PROGRESS_LOG_INTERVAL is not positive; every transfer update will be logged.",
            "Use an interval of a few seconds to keep log streams readable.",
        )

    if settings.max_ssh_connections < 1:
        _error(
            result,
            "MAX_SSH_CONNECTIONS must be at least 1.",
        )

    set_config_validation_result(result)
    return result
