"""VM network topology and create-argument builder."""
from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .component_specs import vm_description, vm_name, vm_tags
from .models import ComponentConfig, ComponentType, NetworkConfig


@dataclass(slots=True)
class VMNetwork:
    """A single virtual NIC."""

    bridge: str
    vlan: int = 0  # 0 for native/untagged
    model: str = "virtio"
    firewall: bool = False
    name: str = ""
    interface_id: str = ""

    def to_option(self) -> str:
        value = f"{self.model or 'virtio'},bridge={self.bridge}"
        if self.vlan > 0:
            value += f",tag={self.vlan}"
        if self.firewall:
            value += ",firewall=1"
        return value


@dataclass(slots=True)
class VMConfig:
    """Everything needed to issue one VM create command."""

    vmid: int
    name: str
    description: str
    node: Optional[str]
    cpu: int
    ram_gb: int
    disk_gb: int
    storage: str
    iso_storage: Optional[str] = None
    iso_file: Optional[str] = None
    networks: List[VMNetwork] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    start_on_boot: bool = False

    def create_options(self) -> List[str]:
        """Return the shell-quoted option list shared by ``qm create`` and the node API."""

        options = [
            f"--name {shlex.quote(self.name)}",
            f"--memory {self.ram_gb * 1024}",
            f"--cores {self.cpu}",
            "--cpu cputype=host",
            "--ostype l26",
            "--scsihw virtio-scsi-pci",
        ]
        if self.description:
            options.append(f"--description {shlex.quote(self.description)}")
        if self.iso_file and self.iso_storage:
            volume = f"{self.iso_storage}:iso/{self.iso_file},media=cdrom"
            options.append(f"--ide2 {shlex.quote(volume)}")
        options.append(f"--boot {shlex.quote('order=scsi0;ide2')}")
        for index, network in enumerate(self.networks):
            options.append(f"--net{index} {shlex.quote(network.to_option())}")
        options.append(f"--scsi0 {shlex.quote(f'{self.storage}:{self.disk_gb}')}")
        options.append("--serial0 socket")
        if self.tags:
            options.append(f"--tags {shlex.quote(';'.join(self.tags))}")
        if self.start_on_boot:
            options.append("--onboot 1")
        return options


class _NetworkBuilder:
    def __init__(self) -> None:
        self.networks: List[VMNetwork] = []
        self._base_index = 0

    def base(self, bridge: str, vlan: int, name: str) -> None:
        # Base slots keep their index even when unconfigured so stored
        # interface orders stay valid.
        if bridge:
            self.networks.append(
                VMNetwork(bridge=bridge, vlan=vlan, name=name, interface_id=f"base:{self._base_index}")
            )
        self._base_index += 1

    def wan(self, index: int, bridge: str, vlan: int, name: str) -> None:
        self.networks.append(VMNetwork(bridge=bridge, vlan=vlan, name=name, interface_id=f"wan:{index}"))

    def extra(self, index: int, bridge: str, vlan: int, name: str) -> None:
        self.networks.append(VMNetwork(bridge=bridge, vlan=vlan, name=name, interface_id=f"extra:{index}"))


def build_networks_for_component(
    component: ComponentType,
    config: NetworkConfig,
    ha_mode: bool = False,
) -> List[VMNetwork]:
    """Return the ordered NIC list for a component role."""

    builder = _NetworkBuilder()
    builder.base(config.northbound_bridge, config.northbound_vlan, "northbound")

    if component == ComponentType.DIRECTOR:
        builder.base(config.director_router_bridge, config.director_router_vlan, "director-router")
    elif component == ComponentType.ANALYTICS:
        builder.base(config.director_router_bridge, config.director_router_vlan, "analytics-south")
        if config.analytics_cluster_bridge:
            builder.extra(0, config.analytics_cluster_bridge, config.analytics_cluster_vlan, "analytics-cluster")
    elif component == ComponentType.CONTROLLER:
        builder.base(config.controller_router_bridge, config.controller_router_vlan, "controller-router")
        for index, bridge in enumerate(config.controller_wan_bridges):
            vlan = config.controller_wan_vlans[index] if index < len(config.controller_wan_vlans) else 0
            builder.wan(index, bridge, vlan, f"controller-wan-{index + 1}")
    elif component == ComponentType.ROUTER:
        builder.base(config.director_router_bridge, config.director_router_vlan, "director-router")
        builder.base(config.controller_router_bridge, config.controller_router_vlan, "controller-router")
        if ha_mode and config.router_ha_bridge:
            builder.extra(0, config.router_ha_bridge, config.router_ha_vlan, "router-ha")
    elif component == ComponentType.CONCERTO:
        builder.base(config.director_router_bridge, config.director_router_vlan, "concerto-south")
    elif component == ComponentType.FLEXVNF:
        if config.controller_wan_bridges:
            vlan = config.controller_wan_vlans[0] if config.controller_wan_vlans else 0
            builder.wan(0, config.controller_wan_bridges[0], vlan, "flexvnf-wan")

    return apply_interface_order(builder.networks, config.interface_order.get(component.value, []))


def apply_interface_order(networks: List[VMNetwork], order: List[str]) -> List[VMNetwork]:
    """Reorder NICs by identifier; NICs missing from ``order`` keep their place at the end."""

    if not order:
        return networks

    by_id: Dict[str, VMNetwork] = {network.interface_id: network for network in networks}
    reordered: List[VMNetwork] = []
    for interface_id in order:
        network = by_id.pop(interface_id, None)
        if network is not None:
            reordered.append(network)
    reordered.extend(network for network in networks if network.interface_id in by_id)
    return reordered


def build_vm_config(
    component: ComponentConfig,
    *,
    prefix: str,
    index: int,
    vmid: int,
    storage: str,
    networks: List[VMNetwork],
    node: Optional[str] = None,
    iso_storage: Optional[str] = None,
    iso_file: Optional[str] = None,
    start_on_boot: bool = False,
) -> VMConfig:
    """Derive the VM configuration for one component instance."""

    return VMConfig(
        vmid=vmid,
        name=vm_name(component, prefix, index),
        description=vm_description(component),
        node=node if node is not None else component.node_for_instance(index),
        cpu=component.cpu,
        ram_gb=component.ram_gb,
        disk_gb=component.disk_gb,
        storage=storage,
        iso_storage=iso_storage,
        iso_file=iso_file,
        networks=list(networks),
        tags=vm_tags(component, prefix, index),
        start_on_boot=start_on_boot,
    )


__all__ = [
    "VMConfig",
    "VMNetwork",
    "apply_interface_order",
    "build_networks_for_component",
    "build_vm_config",
]
