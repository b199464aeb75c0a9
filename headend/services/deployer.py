"""Deployment orchestration: validation, image preparation, VM creation and startup.

A run moves strictly forward through
``validation -> image_prep -> vm_creation -> startup -> complete``. Every VM
identifier is recorded the moment its create command succeeds; a failure while
preparing images or creating VMs destroys the recorded VMs in reverse order.
Failures while starting VMs are reported on the result and leave the VMs in
place, so the operator can inspect them or call :meth:`Deployer.rollback`.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from ..core.component_specs import deployment_tag
from ..core.config import Settings, settings as default_settings
from ..core.errors import (
    AcquisitionError,
    ConfigurationError,
    CreationError,
    DeploymentError,
    ResourceError,
)
from ..core.models import (
    DeploymentConfig,
    DeploymentResult,
    DeploymentStage,
    DistributionStrategy,
    EnvironmentInfo,
    ImageFile,
    ResolvedImage,
    VMInfo,
    VMResult,
)
from ..core.topology import build_networks_for_component, build_vm_config
from .discovery_service import DiscoveryService
from .distribution import DistributionPlan, Distributor
from .download_task_service import DownloadTaskService
from .event_sink import DeploymentEventSink, LoggingEventSink
from .image_cache import ImageCache
from .image_resolver import ImageResolver
from .image_sources import ImageSource, ImageSourceError
from .remote_task_service import RemoteHost, RemoteTaskService
from .ssh_service import RemoteExecutor
from .storage_service import StorageService
from .vm_service import VMService

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CreatedIdentity:
    """A VM known to exist on the host because its create command succeeded."""

    vmid: int
    node: Optional[str] = None


class CreatedIdentityLedger:
    """Ordered, thread-safe record of created VMs used for rollback."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: List[CreatedIdentity] = []

    def append(self, identity: CreatedIdentity) -> None:
        with self._lock:
            self._items.append(identity)

    def snapshot(self) -> List[CreatedIdentity]:
        with self._lock:
            return list(self._items)

    def clear(self) -> None:
        with self._lock:
            self._items = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class Deployer:
    """Drive one HeadEnd deployment against a single hypervisor host."""

    def __init__(
        self,
        executor: RemoteExecutor,
        *,
        image_sources: Iterable[ImageSource] = (),
        sink: Optional[DeploymentEventSink] = None,
        config: Optional[Settings] = None,
        task_service: Optional[RemoteTaskService] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.settings = config or default_settings
        self.sink: DeploymentEventSink = sink or LoggingEventSink()
        self.host = RemoteHost(executor, tasks=task_service, config=self.settings)
        self.discovery = DiscoveryService(self.host)
        self.storage = StorageService(self.host)
        self.vms = VMService(self.host)
        self.downloads = DownloadTaskService(self.host, sleep=sleep)
        self.image_sources: List[ImageSource] = list(image_sources)
        self.image_cache = ImageCache(self.settings.image_cache_dir, self.image_sources)
        self.resolver = ImageResolver.default_chain(
            self.storage,
            self.downloads,
            self.image_cache,
            self._log,
            self.settings.progress_log_interval,
        )
        self._sleep = sleep

        self.config: Optional[DeploymentConfig] = None
        self.environment: Optional[EnvironmentInfo] = None
        self.resolved_images: Dict[str, ResolvedImage] = {}
        self._known_images: Optional[List[ImageFile]] = None
        self._ledger = CreatedIdentityLedger()

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def set_config(self, config: DeploymentConfig) -> None:
        self.config = config

    def set_environment(self, environment: EnvironmentInfo) -> None:
        self.environment = environment
        self.vms.local_node = environment.local_node()

    def set_known_images(self, images: Iterable[ImageFile]) -> None:
        """Use an explicit image catalog instead of listing the sources."""
        self._known_images = list(images)

    @property
    def created_identities(self) -> List[CreatedIdentity]:
        return self._ledger.snapshot()

    async def discover(self) -> EnvironmentInfo:
        self._progress(DeploymentStage.DISCOVERY, 0, 1)
        self._log("Discovering Proxmox environment...")
        environment = await self.discovery.discover()
        self.set_environment(environment)
        self._log(
            f"Found {len(environment.nodes)} node(s), {len(environment.storage)} storage pool(s), "
            f"{len(environment.existing_vms)} existing VM(s)"
        )
        self._progress(DeploymentStage.DISCOVERY, 1, 1)
        return environment

    async def find_existing_deployments(self) -> List[VMInfo]:
        return await self.discovery.find_existing_deployments()

    async def destroy_deployment(self, prefix: str) -> List[int]:
        """Destroy every VM of an earlier deployment by its prefix tag."""

        tag = deployment_tag(prefix)
        self._log(f"Destroying VMs tagged {tag}...")
        return await self.vms.destroy_tagged(tag)

    def plan_distribution(self, strategy: Optional[DistributionStrategy] = None) -> DistributionPlan:
        """Place the configured components on nodes; the configuration is left untouched."""

        config, environment = self._require_state()
        return Distributor(environment.nodes).plan(config.components, strategy, config.ha_mode)

    def apply_distribution(self, strategy: Optional[DistributionStrategy] = None) -> DistributionPlan:
        """Plan placement and replace the configuration with the placed copy."""

        config, environment = self._require_state()
        plan = self.plan_distribution(strategy)
        self.config = config.model_copy(update={"components": plan.components})
        for warning in Distributor(environment.nodes).capacity_warnings(plan.components):
            self._log(f"WARNING: {warning}")
        return plan

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def validate(self) -> None:
        """Check the configuration against discovered capacity. Read-only."""

        config, environment = self._require_state()
        self._log("Validating deployment configuration...")

        total_cpu, total_ram, total_disk = config.total_resources()

        storage = environment.find_storage(config.storage_pool)
        if storage is None:
            raise ResourceError(f"storage pool '{config.storage_pool}' not found")
        if storage.available_gb < total_disk:
            raise ResourceError(
                f"insufficient storage: need {total_disk}GB but only {storage.available_gb}GB available"
            )

        ram_by_node: Dict[str, int] = {}
        for component in config.components:
            for index in range(component.instance_count):
                node_name = component.node_for_instance(index) or environment.default_node()
                if not node_name:
                    raise ResourceError(f"no node available for {component.type.value}")
                ram_by_node[node_name] = ram_by_node.get(node_name, 0) + component.ram_gb

        for node_name, required_ram in ram_by_node.items():
            node = environment.find_node(node_name)
            if node is None:
                raise ResourceError(f"node '{node_name}' not found")
            if not node.online:
                raise ResourceError(f"node '{node_name}' is not online")
            if required_ram > node.free_ram_gb:
                raise ResourceError(
                    f"insufficient RAM on node '{node_name}': need {required_ram}GB "
                    f"but only {node.free_ram_gb}GB available"
                )

        self._log(
            f"Validation passed: {total_cpu} vCPU, {total_ram}GB RAM, {total_disk}GB disk required"
        )

    async def deploy(self) -> DeploymentResult:
        """Run the full pipeline.

        Returns the result once the startup stage has run, even when some VMs
        failed to start. Validation, image and creation failures are raised
        with ``exc.result`` holding the partial result.
        """

        started = time.monotonic()
        result = DeploymentResult()
        self.resolved_images = {}
        stale = len(self._ledger)
        if stale:
            logger.warning("Discarding %d created VM(s) tracked from a previous run", stale)
            self._ledger.clear()

        try:
            self._progress(DeploymentStage.VALIDATION, 0, 1)
            self.validate()
            self._progress(DeploymentStage.VALIDATION, 1, 1)

            try:
                await self.prepare_images()
                vm_results = await self.create_vms()
            except BaseException as exc:
                if isinstance(exc, CreationError):
                    result.vms = list(exc.partial_results)
                if isinstance(exc, asyncio.CancelledError):
                    result.errors.append("deployment cancelled")
                    await asyncio.shield(self.rollback())
                else:
                    result.errors.append(str(exc) or type(exc).__name__)
                    await self.rollback()
                result.rolled_back = True
                for vm in result.vms:
                    vm.status = "rolled_back"
                raise

            result.vms = vm_results
            await self._start_vms(result)
            result.success = not result.errors
            if result.success:
                self._ledger.clear()
            self._progress(DeploymentStage.COMPLETE, 1, 1)
            return result
        except DeploymentError as exc:
            if not result.errors:
                result.errors.append(str(exc))
            exc.result = result
            raise
        finally:
            result.duration_seconds = time.monotonic() - started
            self.sink.on_result(result)

    async def prepare_images(self) -> Dict[str, ResolvedImage]:
        """Resolve every distinct required image exactly once."""

        config, environment = self._require_state()
        required = config.required_images()
        self.resolved_images = {}
        if not required:
            return self.resolved_images

        storages = environment.iso_storages()
        if not storages:
            raise AcquisitionError("no ISO storage available")

        catalog = await self._image_catalog()
        node = environment.local_node() or environment.default_node()
        self.resolved_images = await self.resolver.resolve_all(
            required,
            catalog,
            storages,
            node,
            on_progress=lambda done, total: self._progress(DeploymentStage.IMAGE_PREP, done, total),
        )
        return self.resolved_images

    async def create_vms(self) -> List[VMResult]:
        """Create every instance in configuration order, one at a time.

        VM identifiers come from a shared counter on the host, so creation is
        never parallel.
        """

        config, environment = self._require_state()
        results: List[VMResult] = []
        total = config.vm_count()
        created = 0

        for component in config.components:
            iso_storage: Optional[str] = None
            iso_file: Optional[str] = None
            if component.image:
                resolved = self.resolved_images.get(component.image)
                if resolved is None:
                    raise CreationError(f"image {component.image} has not been prepared", results)
                iso_storage, iso_file = resolved.storage, resolved.filename

            networks = build_networks_for_component(component.type, config.networks, config.ha_mode)
            for index in range(component.instance_count):
                self._progress(DeploymentStage.VM_CREATION, created, total)
                try:
                    vmid = await self.vms.allocate_vmid()
                except DeploymentError as exc:
                    raise CreationError(f"getting next VMID: {exc}", results) from exc

                node = component.node_for_instance(index) or environment.default_node()
                vm_config = build_vm_config(
                    component,
                    prefix=config.prefix,
                    index=index,
                    vmid=vmid,
                    storage=config.storage_pool,
                    networks=networks,
                    node=node,
                    iso_storage=iso_storage,
                    iso_file=iso_file,
                    start_on_boot=config.start_on_boot,
                )
                self._log(f"Creating VM: {vm_config.name} (VMID {vmid}) on {node}")
                try:
                    await self.vms.create_vm(vm_config)
                except DeploymentError as exc:
                    raise CreationError(f"creating VM {vm_config.name}: {exc}", results) from exc

                self._ledger.append(CreatedIdentity(vmid=vmid, node=node))
                results.append(
                    VMResult(
                        vmid=vmid,
                        name=vm_config.name,
                        component=component.type,
                        node=node,
                        ip=config.ip_config.manual_ips.get(vm_config.name),
                    )
                )
                created += 1

        self._progress(DeploymentStage.VM_CREATION, created, total)
        return results

    async def rollback(self) -> List[int]:
        """Stop and destroy every tracked VM, newest first. Best effort.

        The ledger is cleared afterwards even if some destroys failed; those
        VMs need manual cleanup.
        """

        identities = self._ledger.snapshot()
        if not identities:
            return []

        self._log("Rolling back deployment...")
        total = len(identities)
        self._progress(DeploymentStage.ROLLBACK, 0, total)
        destroyed: List[int] = []

        for done, identity in enumerate(reversed(identities), start=1):
            self._log(f"Destroying VM {identity.vmid}...")
            try:
                await self.vms.stop_vm(identity.vmid, identity.node, timeout=self.settings.rollback_stop_timeout)
            except DeploymentError as exc:
                self._log(f"Note: VM {identity.vmid} stop returned: {exc}")
            await self._sleep(self.settings.rollback_stop_grace)

            try:
                await self.vms.destroy_vm(identity.vmid, identity.node)
            except DeploymentError as exc:
                logger.warning("Rollback could not destroy VM %s: %s", identity.vmid, exc)
                self._log(f"Warning: failed to destroy VM {identity.vmid}: {exc}")
            else:
                destroyed.append(identity.vmid)
                self._log(f"VM {identity.vmid} destroyed")
            self._progress(DeploymentStage.ROLLBACK, done, total)

        self._ledger.clear()
        failed = total - len(destroyed)
        if failed:
            self._log(f"Rollback completed with {failed} error(s)")
        else:
            self._log("Rollback complete")
        return destroyed

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _start_vms(self, result: DeploymentResult) -> None:
        total = len(result.vms)
        self._progress(DeploymentStage.STARTUP, 0, total)
        for index, vm in enumerate(result.vms):
            self._log(f"Starting {vm.name}...")
            try:
                await self.vms.start_vm(vm.vmid, vm.node)
            except DeploymentError as exc:
                logger.warning("Failed to start VM %s (%s): %s", vm.name, vm.vmid, exc)
                self._log(f"WARNING: Failed to start {vm.name}: {exc}")
                result.errors.append(f"failed to start {vm.name}: {exc}")
                vm.status = "stopped"
            else:
                try:
                    status = await self.vms.get_vm_status(vm.vmid, vm.node)
                except DeploymentError as exc:
                    logger.warning("Could not read status of VM %s: %s", vm.name, exc)
                    status = "unknown"
                vm.status = status
                if status == "running":
                    self._log(f"VM {vm.name} is running")
                else:
                    message = f"VM {vm.name} status is '{status}' after start (expected 'running')"
                    result.warnings.append(message)
                    self._log(f"WARNING: {message}")
            vm.console_url = self.vms.console_url(vm.vmid)
            self._progress(DeploymentStage.STARTUP, index + 1, total)

    async def _image_catalog(self) -> Dict[str, ImageFile]:
        if self._known_images is None:
            images: List[ImageFile] = []
            for source in self.image_sources:
                try:
                    listed = await asyncio.to_thread(source.list)
                except ImageSourceError as exc:
                    logger.warning("Could not list image source %s: %s", source.name, exc)
                    self._log(f"WARNING: image source {source.name} unavailable: {exc}")
                    continue
                images.extend(listed)
            self._known_images = images
        catalog: Dict[str, ImageFile] = {}
        for image in self._known_images:
            catalog.setdefault(image.filename, image)
        return catalog

    def _require_state(self) -> Tuple[DeploymentConfig, EnvironmentInfo]:
        if self.config is None:
            raise ConfigurationError("no deployment configuration set")
        if self.environment is None:
            raise ConfigurationError("discovery not performed")
        return self.config, self.environment

    def _log(self, message: str) -> None:
        self.sink.on_log(message)

    def _progress(self, stage: DeploymentStage, current: int, total: int) -> None:
        self.sink.on_progress(stage, current, total)


__all__ = [
    "CreatedIdentity",
    "CreatedIdentityLedger",
    "Deployer",
]
