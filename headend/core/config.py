"""Configuration management using Pydantic settings."""

from typing import TYPE_CHECKING, Optional

from pydantic_settings import BaseSettings


DEFAULT_ISO_DIRECTORY = "/var/lib/vz/template/iso"
DEPLOYER_TAG = "versa-deployer"


class Settings(BaseSettings):
    """Deployer settings loaded from environment variables."""

    # Hypervisor connection
    proxmox_host: str = ""
    ssh_port: int = 22
    ssh_username: str = "root"
    ssh_password: Optional[str] = None
    ssh_key_path: Optional[str] = None
    ssh_connect_timeout: float = 30.0
    ssh_allow_unknown_hosts: bool = True

    # Per-command timeouts in seconds
    command_timeout: float = 30.0
    vm_create_timeout: float = 300.0
    vm_action_timeout: float = 120.0
    hash_scan_timeout: float = 600.0
    transfer_timeout: float = 7200.0
    direct_download_submit_timeout: float = 30.0

    # Direct-to-host download task tracking
    download_task_register_delay: float = 5.0  # wait before looking for the task
    download_task_lookup_attempts: int = 5
    download_task_lookup_interval: float = 3.0
    download_task_poll_interval: float = 10.0
    download_task_deadline: float = 7200.0
    min_transfer_bytes: int = 1024 * 1024  # smaller results are failed transfers

    # Image handling
    image_cache_dir: str = "images"
    default_iso_directory: str = DEFAULT_ISO_DIRECTORY
    progress_log_interval: float = 20.0

    # Rollback
    rollback_stop_timeout: int = 10  # passed to qm stop --timeout
    rollback_stop_grace: float = 2.0

    # Remote task execution
    max_ssh_connections: int = 8

    # Web console
    console_port: int = 8006

    class Config:
        env_file = ".env"
        case_sensitive = False

    def has_ssh_credentials(self) -> bool:
        """Check if an explicit key or password is configured."""
        return bool(self.ssh_key_path or self.ssh_password)


settings = Settings()


if TYPE_CHECKING:  # pragma: no cover - only for type hints
    from .config_validation import ConfigValidationResult

# Cache of the configuration validation result so it can be reused across modules
_config_validation_result: Optional["ConfigValidationResult"] = None


def set_config_validation_result(result: "ConfigValidationResult") -> None:
    """Persist the configuration validation result for reuse."""

    global _config_validation_result
    _config_validation_result = result


def get_config_validation_result() -> Optional["ConfigValidationResult"]:
    """Return the cached configuration validation result, if available."""

    return _config_validation_result
