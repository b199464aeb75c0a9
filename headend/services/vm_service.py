"""Service for controlling Proxmox virtual machines over SSH."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from ..core.errors import CreationError, DeploymentError, TransportError
from ..core.topology import VMConfig
from .discovery_service import DiscoveryService
from .remote_task_service import RemoteHost
from .ssh_service import shell_quote

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class VMActionResult:
    """Result payload for a VM lifecycle action."""

    stdout: str
    stderr: str


class VMControlError(CreationError):
    """Raised when a VM lifecycle action fails."""

    def __init__(self, action: str, vmid: int, node: Optional[str], message: str):
        super().__init__(message)
        self.action = action
        self.vmid = vmid
        self.node = node


class VMService:
    """Execute VM lifecycle actions with ``qm`` or the node API.

    ``qm`` only manages guests on the node the shell is attached to; guests on
    other cluster nodes go through ``pvesh`` under ``/nodes/{node}/qemu``.
    """

    def __init__(
        self,
        host: RemoteHost,
        local_node: Optional[str] = None,
        console_host: Optional[str] = None,
    ) -> None:
        self._host = host
        self._settings = host.settings
        self.local_node = local_node
        self.console_host = console_host or host.hostname

    def is_local(self, node: Optional[str]) -> bool:
        return not node or self.local_node is None or node == self.local_node

    async def allocate_vmid(self) -> int:
        """Ask the cluster for the next free VM identifier."""

        result = await self._host.run_checked("pvesh get /cluster/nextid", description="next vmid")
        text = result.stdout.strip().strip('"')
        try:
            return int(text)
        except ValueError as exc:
            raise CreationError(f"parsing VMID from {text!r}") from exc

    async def create_vm(self, config: VMConfig) -> VMActionResult:
        options = " ".join(config.create_options())
        if self.is_local(config.node):
            command = f"qm create {config.vmid} {options}"
        else:
            command = f"pvesh create /nodes/{shell_quote(config.node)}/qemu --vmid {config.vmid} {options}"
        return await self._run_command(
            config.vmid, config.node, "create", command, timeout=self._settings.vm_create_timeout
        )

    async def start_vm(self, vmid: int, node: Optional[str] = None) -> VMActionResult:
        if self.is_local(node):
            command = f"qm start {vmid}"
        else:
            command = f"pvesh create /nodes/{shell_quote(node)}/qemu/{vmid}/status/start"
        return await self._run_command(vmid, node, "start", command)

    async def stop_vm(self, vmid: int, node: Optional[str] = None, timeout: Optional[int] = None) -> VMActionResult:
        """Stop a VM, forcing it off after ``timeout`` seconds."""

        stop_timeout = timeout if timeout is not None else self._settings.rollback_stop_timeout
        if self.is_local(node):
            command = f"qm stop {vmid} --timeout {stop_timeout}"
        else:
            command = f"pvesh create /nodes/{shell_quote(node)}/qemu/{vmid}/status/stop --timeout {stop_timeout}"
        return await self._run_command(vmid, node, "stop", command)

    async def destroy_vm(self, vmid: int, node: Optional[str] = None) -> VMActionResult:
        """Stop if running, then destroy and purge the VM's disks."""

        if self.is_local(node):
            stop = f"qm stop {vmid} 2>/dev/null || true"
            command = f"qm destroy {vmid} --purge"
        else:
            base = f"/nodes/{shell_quote(node)}/qemu/{vmid}"
            stop = f"pvesh create {base}/status/stop 2>/dev/null || true"
            command = f"pvesh delete {base} --purge 1"
        try:
            await self._host.run(stop, timeout=self._settings.vm_action_timeout, description=f"stop {vmid}")
        except TransportError as exc:
            logger.debug("Pre-destroy stop of VM %s failed: %s", vmid, exc)
        return await self._run_command(vmid, node, "destroy", command)

    async def get_vm_status(self, vmid: int, node: Optional[str] = None) -> str:
        """Return the power state, e.g. ``running`` or ``stopped``."""

        if self.is_local(node):
            result = await self._run_command(vmid, node, "status", f"qm status {vmid}")
            output = result.stdout.strip()
            _, separator, status = output.partition(":")
            return status.strip() if separator else output

        payload = await self._host.run_json(
            f"pvesh get /nodes/{shell_quote(node)}/qemu/{vmid}/status/current --output-format json"
        )
        return str(payload.get("status", ""))

    def console_url(self, vmid: int) -> str:
        return f"https://{self.console_host}:{self._settings.console_port}/#v1:0:qemu/{vmid}"

    async def destroy_tagged(self, tag: str) -> List[int]:
        """Destroy every VM carrying ``tag`` and return the destroyed identifiers."""

        destroyed: List[int] = []
        for vmid, node in await self._tagged_vms(tag):
            try:
                await self.destroy_vm(vmid, node)
            except DeploymentError as exc:
                logger.warning("Failed to destroy VM %s tagged %s: %s", vmid, tag, exc)
                continue
            destroyed.append(vmid)
        logger.info("Destroyed %d VM(s) tagged %s", len(destroyed), tag)
        return destroyed

    async def _tagged_vms(self, tag: str) -> List[Tuple[int, Optional[str]]]:
        vms = await DiscoveryService(self._host).get_vms()
        return [(vm.vmid, vm.node or None) for vm in vms if tag in vm.tags]

    async def _run_command(
        self,
        vmid: int,
        node: Optional[str],
        action: str,
        command: str,
        *,
        timeout: Optional[float] = None,
    ) -> VMActionResult:
        logger.info("Executing %s action for VM %s on node %s", action, vmid, node or self.local_node or "local")
        try:
            result = await self._host.run(
                command,
                timeout=timeout or self._settings.vm_action_timeout,
                description=f"{action} vm {vmid}",
            )
        except TransportError as exc:
            logger.error("SSH transport error while executing %s for VM %s: %s", action, vmid, exc)
            raise VMControlError(action, vmid, node, f"SSH communication failed: {exc}") from exc

        if not result.ok:
            logger.error("Command for action %s on VM %s exited with %s", action, vmid, result.exit_code)
            preview = result.stderr.strip() or result.stdout.strip()
            message = preview[:500] if preview else "Unknown error"
            raise VMControlError(action, vmid, node, f"{action} VM {vmid}: {message}")

        logger.info("VM action %s for %s completed successfully", action, vmid)
        return VMActionResult(stdout=result.stdout, stderr=result.stderr)


__all__ = [
    "VMActionResult",
    "VMControlError",
    "VMService",
]
