import pytest

from headend.core.models import ComponentConfig, ComponentType, DistributionStrategy, NodeInfo, NodeStatus
from headend.services.distribution import Distributor, NodeScore, recommend_strategy


def _node(name, cpu=32, ram=128, cpu_used=0, ram_used=0, status=NodeStatus.ONLINE):
    return NodeInfo(
        name=name,
        status=status,
        cpu_cores=cpu,
        cpu_used=cpu_used,
        ram_gb=ram,
        ram_used_gb=ram_used,
    )


def _headend(router_count=1):
    return [
        ComponentConfig(type=ComponentType.DIRECTOR, cpu=8, ram_gb=16, disk_gb=100),
        ComponentConfig(type=ComponentType.ANALYTICS, cpu=4, ram_gb=8, disk_gb=200),
        ComponentConfig(type=ComponentType.CONTROLLER, cpu=4, ram_gb=8, disk_gb=50),
        ComponentConfig(type=ComponentType.ROUTER, count=router_count, cpu=4, ram_gb=4, disk_gb=20),
    ]


def test_score_weights_ram_over_cpu():
    score = NodeScore.from_node(_node("pve1", cpu=10, ram=100, ram_used=50))
    assert score.score == pytest.approx(0.4 * 100 + 0.6 * 50)

    score.allocate(cpu=2, ram_gb=10)
    assert score.score == pytest.approx(0.4 * 80 + 0.6 * 40 - 5)


def test_score_with_zero_capacity_is_not_a_division_error():
    score = NodeScore.from_node(_node("empty", cpu=0, ram=0))
    assert score.score == 0


def test_auto_balance_scores_never_increase():
    distributor = Distributor([_node("pve1"), _node("pve2", cpu=16, ram=64), _node("pve3", ram=256)])

    plan = distributor.plan(_headend(), DistributionStrategy.AUTO_BALANCE)

    assert plan.strategy == DistributionStrategy.AUTO_BALANCE
    for name, before in plan.initial_scores.items():
        assert plan.final_scores[name] <= before
    assert all(component.node for component in plan.components)


def test_auto_balance_spreads_to_highest_scoring_node_first():
    distributor = Distributor([_node("small", cpu=8, ram=32, ram_used=16), _node("big")])

    placed = distributor.distribute(_headend()[:1], DistributionStrategy.AUTO_BALANCE)

    assert placed[0].node == "big"


def test_ties_keep_discovery_order():
    distributor = Distributor([_node("pve1"), _node("pve2")])

    placed = distributor.distribute(_headend()[:1], DistributionStrategy.AUTO_BALANCE)

    assert placed[0].node == "pve1"


def test_ha_separate_places_pair_on_different_nodes():
    distributor = Distributor([_node("pve1"), _node("pve2"), _node("pve3", status=NodeStatus.OFFLINE)])

    plan = distributor.plan(_headend(router_count=2), DistributionStrategy.HA_SEPARATE)
    router = plan.components[-1]

    assert len(router.instance_nodes) == 2
    assert len(set(router.instance_nodes)) == 2
    assert "pve3" not in router.instance_nodes
    assert router.node_for_instance(0) != router.node_for_instance(1)


def test_ha_mode_upgrades_auto_balance():
    distributor = Distributor([_node("pve1"), _node("pve2")])

    plan = distributor.plan(_headend(router_count=2), DistributionStrategy.AUTO_BALANCE, ha_mode=True)

    assert plan.strategy == DistributionStrategy.HA_SEPARATE


def test_all_on_one_respects_pins():
    components = _headend()
    components[0] = components[0].model_copy(update={"node": "pve2"})
    distributor = Distributor([_node("pve1"), _node("pve2")])

    placed = distributor.distribute(components, DistributionStrategy.ALL_ON_ONE)

    assert placed[0].node == "pve2"
    assert {component.node for component in placed[1:]} == {"pve1"}


def test_manual_leaves_assignments_alone():
    components = _headend()
    distributor = Distributor([_node("pve1"), _node("pve2")])

    placed = distributor.distribute(components, DistributionStrategy.MANUAL)

    assert [component.node for component in placed] == [None] * len(components)


def test_planning_never_mutates_inputs():
    components = _headend(router_count=2)
    nodes = [_node("pve1"), _node("pve2")]
    distributor = Distributor(nodes)

    first = distributor.plan(components, DistributionStrategy.HA_SEPARATE)
    second = distributor.plan(components, DistributionStrategy.HA_SEPARATE)

    assert all(component.node is None and not component.instance_nodes for component in components)
    assert nodes[0].cpu_used == 0
    assert [c.instance_nodes for c in first.components] == [c.instance_nodes for c in second.components]
    assert first.initial_scores == second.initial_scores


def test_zero_count_places_like_one():
    distributor = Distributor([_node("pve1"), _node("pve2", ram=64)])
    zero = [ComponentConfig(type=ComponentType.ROUTER, count=0, cpu=4, ram_gb=4)]
    one = [ComponentConfig(type=ComponentType.ROUTER, count=1, cpu=4, ram_gb=4)]

    zero_plan = distributor.plan(zero, DistributionStrategy.AUTO_BALANCE)
    one_plan = distributor.plan(one, DistributionStrategy.AUTO_BALANCE)

    assert zero_plan.components[0].node == one_plan.components[0].node
    assert zero_plan.final_scores == one_plan.final_scores


@pytest.mark.parametrize(
    "nodes, ha_mode, expected",
    [
        ([], False, DistributionStrategy.MANUAL),
        ([_node("pve1", status=NodeStatus.OFFLINE)], False, DistributionStrategy.MANUAL),
        ([_node("pve1")], True, DistributionStrategy.ALL_ON_ONE),
        ([_node("pve1"), _node("pve2")], True, DistributionStrategy.HA_SEPARATE),
        ([_node("pve1"), _node("pve2")], False, DistributionStrategy.AUTO_BALANCE),
    ],
)
def test_recommend_strategy(nodes, ha_mode, expected):
    assert recommend_strategy(nodes, ha_mode) == expected


def test_no_online_nodes_returns_components_unchanged():
    distributor = Distributor([_node("pve1", status=NodeStatus.OFFLINE)])

    plan = distributor.plan(_headend(), DistributionStrategy.AUTO_BALANCE)

    assert all(component.node is None for component in plan.components)
    assert plan.initial_scores == {}


def test_capacity_warnings_and_utilization():
    distributor = Distributor([_node("pve1", cpu=8, ram=32, ram_used=8)])
    components = [
        ComponentConfig(type=ComponentType.DIRECTOR, cpu=8, ram_gb=16, node="pve1"),
        ComponentConfig(type=ComponentType.ROUTER, count=2, cpu=4, ram_gb=8, node="pve1"),
    ]

    warnings = distributor.capacity_warnings(components)
    utilization = distributor.node_utilization(components)

    assert any("16 vCPU" in warning for warning in warnings)
    assert any("32GB RAM" in warning for warning in warnings)
    assert utilization["pve1"] == pytest.approx((8 + 32) / 32 * 100)
