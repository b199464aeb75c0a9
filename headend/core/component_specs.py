"""Default VM sizing, naming and tagging for HeadEnd components."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List

from .config import DEPLOYER_TAG
from .models import ComponentConfig, ComponentType


@dataclass(frozen=True, slots=True)
class VMSpec:
    """Recommended sizing for a component role."""

    cpu: int
    ram_gb: int
    disk_gb: int
    description: str


DEFAULT_VM_SPECS: Dict[ComponentType, VMSpec] = {
    ComponentType.DIRECTOR: VMSpec(
        cpu=8,
        ram_gb=16,
        disk_gb=100,
        description="Versa Director - Central management and orchestration",
    ),
    ComponentType.ANALYTICS: VMSpec(
        cpu=4,
        ram_gb=8,
        disk_gb=200,
        description="Versa Analytics - Log collection and reporting",
    ),
    ComponentType.CONTROLLER: VMSpec(
        cpu=4,
        ram_gb=8,
        disk_gb=50,
        description="Versa Controller - SD-WAN controller",
    ),
    ComponentType.CONCERTO: VMSpec(
        cpu=4,
        ram_gb=8,
        disk_gb=50,
        description="Versa Concerto - Multi-tenant orchestration",
    ),
    ComponentType.ROUTER: VMSpec(
        cpu=4,
        ram_gb=4,
        disk_gb=20,
        description="Versa Router - HeadEnd router component",
    ),
    ComponentType.FLEXVNF: VMSpec(
        cpu=4,
        ram_gb=4,
        disk_gb=20,
        description="Versa FlexVNF - Branch CPE device",
    ),
}

def component_tag(component: ComponentType) -> str:
    """Return the per-role tag, e.g. ``versa-router``."""
    return f"versa-{component.value}"


def deployment_tag(prefix: str) -> str:
    """Return the tag shared by every VM of one deployment."""
    return f"versa-deploy-{prefix}"


def vm_name(component: ComponentConfig, prefix: str, index: int) -> str:
    """Name an instance; the ordinal suffix is added for multi-instance roles."""
    name = f"{prefix}-{component.type.value}"
    if index > 0 or component.instance_count > 1:
        name = f"{name}-{index + 1}"
    return name


def vm_tags(component: ComponentConfig, prefix: str, index: int) -> List[str]:
    tags = [DEPLOYER_TAG, component_tag(component.type), deployment_tag(prefix)]
    if component.instance_count > 1:
        tags.append(f"versa-ha-{index + 1}")
    return tags


def vm_description(component: ComponentConfig) -> str:
    description = DEFAULT_VM_SPECS[component.type].description
    if component.version:
        description += f" (v{component.version})"
    return description


def default_component(component: ComponentType, count: int = 1) -> ComponentConfig:
    """Build a component configuration sized with the role defaults."""
    spec = DEFAULT_VM_SPECS[component]
    return ComponentConfig(
        type=component,
        count=count,
        cpu=spec.cpu,
        ram_gb=spec.ram_gb,
        disk_gb=spec.disk_gb,
    )


__all__ = [
    "DEFAULT_VM_SPECS",
    "VMSpec",
    "component_tag",
    "default_component",
    "deployment_tag",
    "vm_description",
    "vm_name",
    "vm_tags",
]
