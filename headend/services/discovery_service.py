"""Environment discovery for a Proxmox host reached over SSH."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..core.config import DEPLOYER_TAG
from ..core.errors import ConfigurationError, DeploymentError
from ..core.models import (
    EnvironmentInfo,
    NetworkInfo,
    NodeInfo,
    NodeStatus,
    StorageInfo,
    VMInfo,
)
from .remote_task_service import RemoteHost

logger = logging.getLogger(__name__)

_GIB = 1024 * 1024 * 1024
_KIB_PER_GIB = 1024 * 1024


def parse_version(output: str) -> str:
    """Extract the manager version from ``pveversion`` output."""

    text = output.strip()
    if text.startswith("pve-manager/"):
        parts = text.split("/")
        if len(parts) >= 2:
            return parts[1]
    return text


def parse_cluster_name(output: str) -> str:
    """Extract the cluster name from ``pvecm status`` output."""

    cluster_name = ""
    for line in output.splitlines():
        if line.startswith("Cluster name:"):
            return line.split(":", 1)[1].strip()
        if "Name:" in line and not cluster_name:
            cluster_name = line.split(":", 1)[1].strip()
    return cluster_name


def _node_status(value: str) -> NodeStatus:
    try:
        return NodeStatus(value)
    except ValueError:
        return NodeStatus.UNKNOWN


def parse_nodes(payload: List[Dict[str, Any]], local_hostname: str, running_vms: int) -> List[NodeInfo]:
    """Convert ``pvesh get /nodes`` JSON into node facts."""

    nodes: List[NodeInfo] = []
    for entry in payload:
        name = str(entry.get("node", ""))
        max_cpu = int(entry.get("maxcpu") or 0)
        status = str(entry.get("status", "")).lower()
        is_local = name == local_hostname
        nodes.append(
            NodeInfo(
                name=name,
                status=_node_status(status),
                cpu_cores=max_cpu,
                cpu_used=int(float(entry.get("cpu") or 0.0) * max_cpu),
                ram_gb=int(entry.get("maxmem") or 0) // _GIB,
                ram_used_gb=int(entry.get("mem") or 0) // _GIB,
                running_vms=running_vms if is_local else 0,
                is_local=is_local,
            )
        )
    return nodes


def parse_meminfo(output: str) -> Tuple[int, int]:
    """Return (total_gb, used_gb) from ``/proc/meminfo`` lines."""

    total_gb = available_gb = 0
    for line in output.splitlines():
        fields = line.split()
        if len(fields) < 2 or not fields[1].isdigit():
            continue
        if line.startswith("MemTotal:"):
            total_gb = int(fields[1]) // _KIB_PER_GIB
        elif line.startswith("MemAvailable:"):
            available_gb = int(fields[1]) // _KIB_PER_GIB
    return total_gb, max(0, total_gb - available_gb)


def parse_storage_status(output: str) -> Dict[str, StorageInfo]:
    """Parse ``pvesm status`` (sizes in KiB) into storage facts keyed by name."""

    result: Dict[str, StorageInfo] = {}
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("Name"):
            continue
        fields = line.split()
        if len(fields) < 6:
            continue
        try:
            total, used, available = (int(value) for value in fields[3:6])
        except ValueError:
            continue
        result[fields[0]] = StorageInfo(
            name=fields[0],
            type=fields[1],
            total_gb=total // _KIB_PER_GIB,
            used_gb=used // _KIB_PER_GIB,
            available_gb=available // _KIB_PER_GIB,
            active=fields[2] == "active",
        )
    return result


def merge_storage(config: List[Dict[str, Any]], status: Dict[str, StorageInfo]) -> List[StorageInfo]:
    """Combine ``pvesh get /storage`` configuration with ``pvesm status`` sizes."""

    storage: List[StorageInfo] = []
    for entry in config:
        if int(entry.get("disable") or 0) == 1:
            continue
        name = str(entry.get("storage", ""))
        content = [item.strip() for item in str(entry.get("content", "")).split(",") if item.strip()]
        info = StorageInfo(
            name=name,
            type=str(entry.get("type", "")),
            content=content,
            shared=int(entry.get("shared") or 0) == 1,
        )
        sizes = status.get(name)
        if sizes is not None:
            info = info.model_copy(
                update={
                    "total_gb": sizes.total_gb,
                    "used_gb": sizes.used_gb,
                    "available_gb": sizes.available_gb,
                    "active": sizes.active,
                }
            )
        storage.append(info)
    return storage


def parse_vlan_list(value: str) -> List[int]:
    """Expand a ``bridge-vids`` value such as ``2-4 100``."""

    vlans: List[int] = []
    for part in value.split():
        if "-" in part:
            start, _, end = part.partition("-")
            if start.isdigit() and end.isdigit():
                vlans.extend(range(int(start), int(end) + 1))
        elif part.isdigit():
            vlans.append(int(part))
    return vlans


def parse_network_interfaces(content: str) -> List[NetworkInfo]:
    """Parse ``vmbr`` bridge stanzas from ``/etc/network/interfaces``."""

    networks: List[NetworkInfo] = []
    current: Optional[Dict[str, Any]] = None

    def flush() -> None:
        if current is not None:
            networks.append(NetworkInfo(**current))

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if line.startswith("#"):
            if current is not None:
                current["comments"] = line[1:].strip()
            continue
        if line.startswith("iface "):
            parts = line.split()
            flush()
            current = {"name": parts[1]} if len(parts) >= 2 and parts[1].startswith("vmbr") else None
            continue
        if current is None:
            continue

        key, _, value = line.partition(" ")
        value = value.strip()
        if key == "address":
            current["cidr"] = value
        elif key == "gateway":
            current["gateway"] = value
        elif key in ("bridge-ports", "bridge_ports"):
            current["interface"] = value
        elif key in ("bridge-vlan-aware", "bridge_vlan_aware"):
            current["vlan_aware"] = value == "yes"
        elif key in ("bridge-vids", "bridge_vids"):
            current["vlans"] = parse_vlan_list(value)

    flush()
    return networks


def parse_qm_list(output: str) -> List[VMInfo]:
    """Parse the ``qm list`` table."""

    vms: List[VMInfo] = []
    for index, line in enumerate(output.splitlines()):
        fields = line.split()
        if index == 0 or len(fields) < 3 or not fields[0].isdigit():
            continue
        vms.append(VMInfo(vmid=int(fields[0]), name=fields[1], status=fields[2]))
    return vms


def parse_tags(value: str) -> List[str]:
    """Split a Proxmox tag string (``;``, ``,`` or space separated)."""

    normalized = value.replace(",", ";").replace(" ", ";")
    return [tag for tag in (part.strip() for part in normalized.split(";")) if tag]


def parse_cluster_resources(payload: List[Dict[str, Any]]) -> List[VMInfo]:
    """Convert ``pvesh get /cluster/resources --type vm`` JSON into VM facts."""

    vms: List[VMInfo] = []
    for entry in payload:
        if entry.get("type") not in (None, "qemu"):
            continue
        vmid = entry.get("vmid")
        if vmid is None:
            continue
        vms.append(
            VMInfo(
                vmid=int(vmid),
                name=str(entry.get("name", "")),
                status=str(entry.get("status", "")),
                node=str(entry.get("node", "")),
                tags=parse_tags(str(entry.get("tags", ""))),
            )
        )
    return vms


class DiscoveryService:
    """Collect node, storage, network and VM facts from the hypervisor."""

    def __init__(self, host: RemoteHost) -> None:
        self._host = host

    async def discover(self) -> EnvironmentInfo:
        """Run discovery; only the version query is required to succeed."""

        try:
            version = await self.get_version()
        except DeploymentError as exc:
            raise ConfigurationError(f"not a Proxmox host: {exc}") from exc

        is_cluster, cluster_name = await self.get_cluster_info()
        info = EnvironmentInfo(version=version, is_cluster=is_cluster, cluster_name=cluster_name)
        logger.info(
            "Discovered Proxmox %s on %s (cluster=%s)",
            version,
            self._host.hostname,
            cluster_name or is_cluster,
        )

        sections: Dict[str, Any] = {}
        lock = asyncio.Lock()

        async def collect(section: str, query: Callable[[], Awaitable[Any]]) -> None:
            try:
                value = await query()
            except DeploymentError as exc:
                logger.warning("Discovery of %s on %s failed: %s", section, self._host.hostname, exc)
                return
            async with lock:
                sections[section] = value

        await asyncio.gather(
            collect("nodes", self.get_nodes),
            collect("storage", self.get_storage),
            collect("networks", self.get_networks),
            collect("existing_vms", self.get_vms),
        )
        return info.model_copy(update=sections)

    async def get_version(self) -> str:
        result = await self._host.run_checked("pveversion", description="pveversion")
        return parse_version(result.stdout)

    async def get_cluster_info(self) -> Tuple[bool, str]:
        try:
            result = await self._host.run("pvecm status 2>/dev/null", description="pvecm status")
        except DeploymentError:
            return False, ""
        if not result.ok:
            return False, ""
        return True, parse_cluster_name(result.stdout)

    async def get_nodes(self) -> List[NodeInfo]:
        hostname = (await self._host.run_checked("hostname -s")).stdout.strip()
        running = await self._count_running_vms()

        try:
            payload = await self._host.run_json("pvesh get /nodes --output-format json")
        except DeploymentError as exc:
            logger.info("Node API unavailable on %s (%s); using local system facts", self._host.hostname, exc)
            payload = []

        if payload:
            return parse_nodes(payload, hostname, running)

        cpu_result = await self._host.run("nproc")
        cpu_cores = int(cpu_result.stdout.strip()) if cpu_result.stdout.strip().isdigit() else 0
        load_result = await self._host.run("cut -d ' ' -f1 /proc/loadavg")
        try:
            cpu_used = min(cpu_cores, int(float(load_result.stdout.strip())))
        except ValueError:
            cpu_used = 0
        mem_result = await self._host.run("grep -E '^(MemTotal|MemAvailable):' /proc/meminfo")
        ram_gb, ram_used_gb = parse_meminfo(mem_result.stdout)

        return [
            NodeInfo(
                name=hostname,
                status=NodeStatus.ONLINE,
                cpu_cores=cpu_cores,
                cpu_used=cpu_used,
                ram_gb=ram_gb,
                ram_used_gb=ram_used_gb,
                running_vms=running,
                is_local=True,
            )
        ]

    async def _count_running_vms(self) -> int:
        result = await self._host.run("qm list 2>/dev/null | grep -c running || true")
        text = result.stdout.strip()
        return int(text) if text.isdigit() else 0

    async def get_storage(self) -> List[StorageInfo]:
        status_result = await self._host.run_checked("pvesm status", description="pvesm status")
        status = parse_storage_status(status_result.stdout)
        try:
            config = await self._host.run_json("pvesh get /storage --output-format json")
        except DeploymentError as exc:
            logger.info("Storage API unavailable on %s (%s); using pvesm status only", self._host.hostname, exc)
            return list(status.values())
        return merge_storage(config, status)

    async def get_networks(self) -> List[NetworkInfo]:
        result = await self._host.run_checked("cat /etc/network/interfaces")
        networks = parse_network_interfaces(result.stdout)
        if networks:
            return networks

        bridges = await self._host.run("ls -1 /sys/class/net/ | grep '^vmbr' || true")
        return [NetworkInfo(name=name.strip()) for name in bridges.stdout.splitlines() if name.strip()]

    async def get_vms(self) -> List[VMInfo]:
        try:
            payload = await self._host.run_json(
                "pvesh get /cluster/resources --type vm --output-format json"
            )
        except DeploymentError as exc:
            logger.info("Cluster resource API unavailable on %s (%s); using qm list", self._host.hostname, exc)
        else:
            return parse_cluster_resources(payload)

        result = await self._host.run_checked("qm list")
        vms = parse_qm_list(result.stdout)
        tagged: List[VMInfo] = []
        for vm in vms:
            tags_result = await self._host.run(f"qm config {vm.vmid} 2>/dev/null | grep '^tags:' || true")
            line = tags_result.stdout.strip()
            tags = parse_tags(line.split(":", 1)[1]) if line.startswith("tags:") else []
            tagged.append(vm.model_copy(update={"tags": tags}))
        return tagged

    async def find_existing_deployments(self) -> List[VMInfo]:
        """Return VMs carrying the deployer tag."""

        vms = await self.get_vms()
        return [vm for vm in vms if DEPLOYER_TAG in vm.tags]


__all__ = [
    "DiscoveryService",
    "merge_storage",
    "parse_cluster_name",
    "parse_cluster_resources",
    "parse_meminfo",
    "parse_network_interfaces",
    "parse_nodes",
    "parse_qm_list",
    "parse_storage_status",
    "parse_tags",
    "parse_version",
    "parse_vlan_list",
]
