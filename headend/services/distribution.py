"""Placement of component instances onto cluster nodes.

The distributor is pure: it works on a snapshot of node capacities taken at
construction time and returns new component configurations without touching
its inputs. Run it again with fresh discovery data for every planning pass.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from ..core.models import ComponentConfig, DistributionStrategy, NodeInfo

logger = logging.getLogger(__name__)

CPU_WEIGHT = 0.4
RAM_WEIGHT = 0.6
ASSIGNED_VM_PENALTY = 5.0


@dataclass(slots=True)
class NodeScore:
    """Capacity of one node during a single planning pass."""

    name: str
    total_cpu: int
    total_ram_gb: int
    available_cpu: int
    available_ram_gb: int
    assigned_vms: int = 0
    score: float = 0.0

    @classmethod
    def from_node(cls, node: NodeInfo) -> "NodeScore":
        score = cls(
            name=node.name,
            total_cpu=node.cpu_cores,
            total_ram_gb=node.ram_gb,
            available_cpu=node.cpu_cores - node.cpu_used,
            available_ram_gb=node.ram_gb - node.ram_used_gb,
        )
        score.recalculate()
        return score

    def recalculate(self) -> float:
        cpu_percent = self.available_cpu / self.total_cpu * 100 if self.total_cpu > 0 else 0.0
        ram_percent = self.available_ram_gb / self.total_ram_gb * 100 if self.total_ram_gb > 0 else 0.0
        self.score = CPU_WEIGHT * cpu_percent + RAM_WEIGHT * ram_percent - ASSIGNED_VM_PENALTY * self.assigned_vms
        return self.score

    def allocate(self, cpu: int, ram_gb: int, instances: int = 1) -> None:
        """Simulate placing ``instances`` VMs of the given size on this node."""
        self.available_cpu -= cpu * instances
        self.available_ram_gb -= ram_gb * instances
        self.assigned_vms += instances
        self.recalculate()


@dataclass(slots=True)
class DistributionPlan:
    """Outcome of one planning pass."""

    components: List[ComponentConfig]
    strategy: DistributionStrategy
    initial_scores: Dict[str, float] = field(default_factory=dict)
    final_scores: Dict[str, float] = field(default_factory=dict)


def recommend_strategy(nodes: Iterable[NodeInfo], ha_mode: bool = False) -> DistributionStrategy:
    online = sum(1 for node in nodes if node.online)
    if online == 0:
        return DistributionStrategy.MANUAL
    if online == 1:
        return DistributionStrategy.ALL_ON_ONE
    if ha_mode:
        return DistributionStrategy.HA_SEPARATE
    return DistributionStrategy.AUTO_BALANCE


class Distributor:
    """Assign nodes to component instances according to a strategy."""

    def __init__(self, nodes: Iterable[NodeInfo]) -> None:
        self.nodes: List[NodeInfo] = [node.model_copy() for node in nodes]

    @property
    def online_nodes(self) -> List[NodeInfo]:
        return [node for node in self.nodes if node.online]

    def node_scores(self) -> List[NodeScore]:
        """Fresh scores for every online node, in discovery order."""
        return [NodeScore.from_node(node) for node in self.online_nodes]

    def distribute(
        self,
        components: Iterable[ComponentConfig],
        strategy: Optional[DistributionStrategy] = None,
        ha_mode: bool = False,
    ) -> List[ComponentConfig]:
        return self.plan(components, strategy, ha_mode).components

    def plan(
        self,
        components: Iterable[ComponentConfig],
        strategy: Optional[DistributionStrategy] = None,
        ha_mode: bool = False,
    ) -> DistributionPlan:
        """Return placed copies of ``components``; the inputs are never modified."""

        placed = [component.model_copy(deep=True) for component in components]
        chosen = strategy or recommend_strategy(self.nodes, ha_mode)
        if chosen == DistributionStrategy.AUTO_BALANCE and ha_mode:
            chosen = DistributionStrategy.HA_SEPARATE

        scores = self.node_scores()
        initial = {score.name: score.score for score in scores}

        if not scores or chosen == DistributionStrategy.MANUAL:
            pass
        elif chosen == DistributionStrategy.ALL_ON_ONE:
            self._all_on_one(placed, scores)
        elif chosen == DistributionStrategy.HA_SEPARATE:
            self._ha_separate(placed, scores)
        else:
            self._auto_balance(placed, scores)

        final = {score.name: score.score for score in scores}
        logger.info(
            "Planned %d component(s) with strategy %s across %d online node(s)",
            len(placed),
            chosen.value,
            len(scores),
        )
        return DistributionPlan(components=placed, strategy=chosen, initial_scores=initial, final_scores=final)

    @staticmethod
    def _best(scores: List[NodeScore]) -> NodeScore:
        # sorted() is stable, so equal scores keep discovery order.
        return sorted(scores, key=lambda score: score.score, reverse=True)[0]

    def _assign_whole(self, component: ComponentConfig, scores: List[NodeScore]) -> None:
        best = self._best(scores)
        component.node = best.name
        component.instance_nodes = []
        best.allocate(component.cpu, component.ram_gb, component.instance_count)

    def _auto_balance(self, components: List[ComponentConfig], scores: List[NodeScore]) -> None:
        for component in components:
            self._assign_whole(component, scores)

    def _all_on_one(self, components: List[ComponentConfig], scores: List[NodeScore]) -> None:
        target = scores[0]
        by_name = {score.name: score for score in scores}
        for component in components:
            if component.node:
                pinned = by_name.get(component.node)
                if pinned is not None:
                    pinned.allocate(component.cpu, component.ram_gb, component.instance_count)
                continue
            component.node = target.name
            target.allocate(component.cpu, component.ram_gb, component.instance_count)

    def _ha_separate(self, components: List[ComponentConfig], scores: List[NodeScore]) -> None:
        for component in components:
            count = component.instance_count
            if count <= 1 or len(scores) < 2:
                self._assign_whole(component, scores)
                continue

            ordered = sorted(scores, key=lambda score: score.score, reverse=True)
            instance_nodes: List[str] = []
            for index in range(count):
                target = ordered[index % len(ordered)]
                instance_nodes.append(target.name)
                target.allocate(component.cpu, component.ram_gb)
            component.instance_nodes = instance_nodes
            component.node = instance_nodes[0]

    def _assigned_totals(self, components: Iterable[ComponentConfig]) -> Dict[str, Dict[str, int]]:
        totals: Dict[str, Dict[str, int]] = {}
        for component in components:
            for index in range(component.instance_count):
                node = component.node_for_instance(index)
                if not node:
                    continue
                entry = totals.setdefault(node, {"cpu": 0, "ram_gb": 0})
                entry["cpu"] += component.cpu
                entry["ram_gb"] += component.ram_gb
        return totals

    def capacity_warnings(self, components: Iterable[ComponentConfig]) -> List[str]:
        """Describe nodes whose assigned CPU or RAM exceeds their free capacity.

        CPU overcommit usually still works, so these are warnings rather than
        validation failures.
        """

        warnings: List[str] = []
        by_name = {node.name: node for node in self.nodes}
        for name, totals in self._assigned_totals(components).items():
            node = by_name.get(name)
            if node is None:
                continue
            if totals["cpu"] > node.free_cpu:
                warnings.append(
                    f"node '{name}': {totals['cpu']} vCPU assigned but only {node.free_cpu} cores free (overcommit)"
                )
            if totals["ram_gb"] > node.free_ram_gb:
                warnings.append(
                    f"node '{name}': {totals['ram_gb']}GB RAM assigned but only {node.free_ram_gb}GB free"
                )
        return warnings

    def node_utilization(self, components: Iterable[ComponentConfig]) -> Dict[str, float]:
        """Projected RAM utilization percentage per node after deployment."""

        totals = self._assigned_totals(components)
        utilization: Dict[str, float] = {}
        for node in self.nodes:
            if node.ram_gb <= 0:
                utilization[node.name] = 0.0
                continue
            assigned = totals.get(node.name, {}).get("ram_gb", 0)
            utilization[node.name] = (node.ram_used_gb + assigned) / node.ram_gb * 100
        return utilization


__all__ = [
    "DistributionPlan",
    "Distributor",
    "NodeScore",
    "recommend_strategy",
]
