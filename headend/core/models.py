"""Data models for deployments, discovery facts and images."""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, List, Tuple
from enum import Enum


class ComponentType(str, Enum):
    """HeadEnd component role."""
    DIRECTOR = "director"
    ANALYTICS = "analytics"
    CONTROLLER = "controller"
    CONCERTO = "concerto"
    ROUTER = "router"
    FLEXVNF = "flexvnf"


class DeploymentStage(str, Enum):
    """Stages reported through the progress stream."""
    DISCOVERY = "discovery"
    VALIDATION = "validation"
    IMAGE_PREP = "image_prep"
    VM_CREATION = "vm_creation"
    STARTUP = "startup"
    COMPLETE = "complete"
    ROLLBACK = "rollback"


class DistributionStrategy(str, Enum):
    """Node placement strategy."""
    AUTO_BALANCE = "auto_balance"
    ALL_ON_ONE = "all_on_one"
    MANUAL = "manual"
    HA_SEPARATE = "ha_separate"


class NodeStatus(str, Enum):
    """Cluster node availability."""
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class ResolutionMethod(str, Enum):
    """How an image binding was obtained."""
    EXISTING = "existing"
    CONTENT_HASH = "content_hash"
    DIRECT_DOWNLOAD = "direct_download"
    TOOL_DOWNLOAD = "tool_download"
    UPLOAD = "upload"


# ---------------------------------------------------------------------------
# Deployment request
# ---------------------------------------------------------------------------


class NetworkConfig(BaseModel):
    """Bridge and VLAN assignments for the HeadEnd networks.

    A VLAN of 0 means native/untagged. ``interface_order`` maps a component
    role to an ordered list of interface identifiers (``base:0``, ``wan:1``,
    ``extra:0``) used to reorder the generated NICs.
    """
    northbound_bridge: str = ""
    northbound_vlan: int = Field(default=0, ge=0, le=4094)
    director_router_bridge: str = ""
    director_router_vlan: int = Field(default=0, ge=0, le=4094)
    controller_router_bridge: str = ""
    controller_router_vlan: int = Field(default=0, ge=0, le=4094)
    controller_wan_bridges: List[str] = Field(default_factory=list)
    controller_wan_vlans: List[int] = Field(default_factory=list)
    analytics_cluster_bridge: str = ""
    analytics_cluster_vlan: int = Field(default=0, ge=0, le=4094)
    router_ha_bridge: str = ""
    router_ha_vlan: int = Field(default=0, ge=0, le=4094)
    interface_order: Dict[str, List[str]] = Field(default_factory=dict)


class IPConfig(BaseModel):
    """Manual management addresses keyed by VM name."""
    manual_ips: Dict[str, str] = Field(default_factory=dict)


class ComponentConfig(BaseModel):
    """One logical role and its per-instance requirements.

    ``node`` pins every instance to a node. ``instance_nodes`` carries
    per-ordinal placements produced by the distributor and takes precedence
    over ``node`` for the ordinals it covers.
    """
    type: ComponentType
    count: int = Field(default=1, ge=0)
    cpu: int = Field(default=0, ge=0, description="vCPU cores per instance")
    ram_gb: int = Field(default=0, ge=0, description="RAM per instance in GB")
    disk_gb: int = Field(default=0, ge=0, description="Disk per instance in GB")
    node: Optional[str] = None
    instance_nodes: List[str] = Field(default_factory=list)
    image: Optional[str] = Field(default=None, description="Required image filename")
    version: str = ""

    @property
    def instance_count(self) -> int:
        """Number of instances; zero is treated as one."""
        return self.count if self.count > 0 else 1

    def node_for_instance(self, index: int) -> Optional[str]:
        """Return the node assigned to the given ordinal, if any."""
        if index < len(self.instance_nodes) and self.instance_nodes[index]:
            return self.instance_nodes[index]
        return self.node


class DeploymentConfig(BaseModel):
    """Declarative deployment request."""
    prefix: str = Field(..., min_length=1, description="Namespace for VM names and tags")
    ha_mode: bool = False
    storage_pool: str = Field(..., min_length=1)
    networks: NetworkConfig = Field(default_factory=NetworkConfig)
    ip_config: IPConfig = Field(default_factory=IPConfig)
    components: List[ComponentConfig] = Field(default_factory=list)
    start_on_boot: bool = False

    def total_resources(self) -> Tuple[int, int, int]:
        """Return total (cpu, ram_gb, disk_gb) across all instances."""
        cpu = ram = disk = 0
        for component in self.components:
            count = component.instance_count
            cpu += component.cpu * count
            ram += component.ram_gb * count
            disk += component.disk_gb * count
        return cpu, ram, disk

    def vm_count(self) -> int:
        return sum(component.instance_count for component in self.components)

    def required_images(self) -> List[str]:
        """Distinct image filenames in configuration order."""
        seen: List[str] = []
        for component in self.components:
            if component.image and component.image not in seen:
                seen.append(component.image)
        return seen


# ---------------------------------------------------------------------------
# Discovery facts
# ---------------------------------------------------------------------------


class NodeInfo(BaseModel):
    """A cluster node and its capacity."""
    name: str
    status: NodeStatus = NodeStatus.UNKNOWN
    cpu_cores: int = 0
    cpu_used: int = 0  # cores in use
    ram_gb: int = 0
    ram_used_gb: int = 0
    running_vms: int = 0
    is_local: bool = False

    @property
    def online(self) -> bool:
        return self.status == NodeStatus.ONLINE

    @property
    def free_cpu(self) -> int:
        return max(0, self.cpu_cores - self.cpu_used)

    @property
    def free_ram_gb(self) -> int:
        return max(0, self.ram_gb - self.ram_used_gb)


class StorageInfo(BaseModel):
    """A storage pool and its capabilities."""
    name: str
    type: str = ""
    total_gb: int = 0
    used_gb: int = 0
    available_gb: int = 0
    content: List[str] = Field(default_factory=list)
    shared: bool = False
    active: bool = True

    @property
    def supports_iso(self) -> bool:
        """Whether the pool holds installer media."""
        return "iso" in self.content

    @property
    def supports_vm_disks(self) -> bool:
        """Whether the pool holds VM disk images."""
        return "images" in self.content or "rootdir" in self.content


class NetworkInfo(BaseModel):
    """A Linux bridge defined on the host."""
    name: str
    interface: str = ""
    cidr: str = ""
    gateway: str = ""
    vlan_aware: bool = False
    vlans: List[int] = Field(default_factory=list)
    comments: str = ""


class VMInfo(BaseModel):
    """An existing VM on the host."""
    vmid: int
    name: str
    status: str = ""
    node: str = ""
    tags: List[str] = Field(default_factory=list)


class EnvironmentInfo(BaseModel):
    """Aggregated discovery result."""
    version: str = ""
    is_cluster: bool = False
    cluster_name: str = ""
    nodes: List[NodeInfo] = Field(default_factory=list)
    storage: List[StorageInfo] = Field(default_factory=list)
    networks: List[NetworkInfo] = Field(default_factory=list)
    existing_vms: List[VMInfo] = Field(default_factory=list)

    def find_node(self, name: str) -> Optional[NodeInfo]:
        for node in self.nodes:
            if node.name == name:
                return node
        return None

    def find_storage(self, name: str) -> Optional[StorageInfo]:
        for storage in self.storage:
            if storage.name == name:
                return storage
        return None

    def online_nodes(self) -> List[NodeInfo]:
        return [node for node in self.nodes if node.online]

    def default_node(self) -> Optional[str]:
        """First online node, falling back to the first node listed."""
        for node in self.nodes:
            if node.online:
                return node.name
        return self.nodes[0].name if self.nodes else None

    def local_node(self) -> Optional[str]:
        for node in self.nodes:
            if node.is_local:
                return node.name
        return None

    def iso_storages(self) -> List[StorageInfo]:
        """Active ISO-capable pools, most available space first."""
        candidates = [s for s in self.storage if s.active and s.supports_iso]
        return sorted(candidates, key=lambda s: s.available_gb, reverse=True)


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------


class ImageFile(BaseModel):
    """An installer image offered by an image source."""
    filename: str
    component: Optional[ComponentType] = None
    version: str = ""
    size: int = 0
    md5: Optional[str] = None
    source_name: str = ""
    source_type: str = ""
    source_url: str = ""


class ResolvedImage(BaseModel):
    """Where a requested image actually lives after acquisition."""
    model_config = ConfigDict(frozen=True)

    requested: str
    storage: str
    filename: str
    method: ResolutionMethod


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class VMResult(BaseModel):
    """Outcome for one created VM instance."""
    vmid: int
    name: str
    component: ComponentType
    node: Optional[str] = None
    status: str = "created"
    ip: Optional[str] = None
    console_url: Optional[str] = None


class DeploymentResult(BaseModel):
    """Accumulated outcome of a deployment run."""
    success: bool = False
    vms: List[VMResult] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    duration_seconds: float = 0.0
    rolled_back: bool = False
