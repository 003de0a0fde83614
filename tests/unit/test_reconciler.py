from evpn_fabric.agents import CommandResult
from evpn_fabric.config import (
    FabricConfig,
    IpDomain,
    MacDomain,
    ReconcileSettings,
    parse_subnets,
)
from evpn_fabric.reconciler import ConvergenceReconciler, ReconcileState, RoutingTableProbe
from evpn_fabric.results import AgentHandle, AgentKind, NodeTarget

TOGGLE = [
    "configure terminal",
    "router bgp 64512 vrf tenant-a",
    "address-family l2vpn evpn",
    "no route-target import 64512:20102",
    "route-target import 64512:20102",
    "no route-target export 64512:20102",
    "route-target export 64512:20102",
    "exit-address-family",
    "exit",
    "end",
]


def build_config(ip=True) -> FabricConfig:
    return FabricConfig(
        network_name="tenant-a",
        peer_address="192.0.2.10",
        asn=64512,
        subnets=parse_subnets("10.0.0.0/16"),
        mac_domain=MacDomain(vni=10101, vlan_id=101),
        ip_domain=IpDomain(vni=20102, vlan_id=202, vrf_name="tenant-a") if ip else None,
    )


def build_reconciler(node, sleep, settings, probe=None, config=None) -> ConvergenceReconciler:
    handle = AgentHandle(kind=AgentKind.LOCAL)
    target = NodeTarget(node.name, node.address, handle, handle)
    return ConvergenceReconciler(
        target, node.routing, config or build_config(), settings, probe=probe, sleep=sleep
    )


class CountingProbe:
    def __init__(self, answers):
        self.answers = list(answers)
        self.calls = 0

    def has_routes(self, vrf_name, routing):
        self.calls += 1
        return self.answers.pop(0)


def test_toggles_exact_pair_after_settle(node, sleep):
    settings = ReconcileSettings(settle_interval=10, retry_interval=5, max_attempts=2)
    reconciler = build_reconciler(node, sleep, settings)

    outcome = reconciler.reconcile()

    assert node.transactions == [TOGGLE, TOGGLE]
    assert sleep.calls == [10, 5]
    assert outcome.state is ReconcileState.APPLIED
    assert outcome.attempts == 2


def test_not_needed_without_ip_domain(node, sleep):
    reconciler = build_reconciler(node, sleep, ReconcileSettings(), config=build_config(ip=False))

    outcome = reconciler.reconcile()

    assert outcome.state is ReconcileState.NOT_NEEDED
    assert node.transactions == []
    assert sleep.calls == []


def test_failed_toggle_is_swallowed(node, sleep):
    node.rejected.add("no route-target import 64512:20102")
    reconciler = build_reconciler(node, sleep, ReconcileSettings(max_attempts=3))

    outcome = reconciler.reconcile()

    assert outcome.state is ReconcileState.SKIPPED
    assert outcome.attempts == 1
    assert reconciler.state is ReconcileState.SKIPPED


def test_route_check_stops_loop_once_routes_arrive(node, sleep):
    probe = CountingProbe([False, True])
    settings = ReconcileSettings(settle_interval=10, retry_interval=5, max_attempts=5)
    reconciler = build_reconciler(node, sleep, settings, probe=probe)

    outcome = reconciler.reconcile()

    assert outcome.state is ReconcileState.CONVERGED
    assert outcome.attempts == 2
    assert probe.calls == 2
    assert sleep.calls == [10, 5]


def test_route_check_exhausts_attempts(node, sleep):
    probe = CountingProbe([False, False, False])
    reconciler = build_reconciler(node, sleep, ReconcileSettings(max_attempts=3), probe=probe)

    outcome = reconciler.reconcile()

    assert outcome.state is ReconcileState.EXHAUSTED
    assert outcome.attempts == 3
    assert len(node.transactions) == 3


def test_routing_table_check_looks_for_bgp_entries(node):
    probe = RoutingTableProbe()
    node.vrf_routes["tenant-a"] = {
        "10.0.0.0/16": [{"prefix": "10.0.0.0/16", "protocol": "connected"}],
    }
    assert probe.has_routes("tenant-a", node.routing) is False

    node.vrf_routes["tenant-a"]["10.1.0.0/16"] = [{"prefix": "10.1.0.0/16", "protocol": "bgp"}]
    assert probe.has_routes("tenant-a", node.routing) is True


class BrokenRouting:
    def show(self, command):
        return CommandResult(("vtysh",), 0, stdout="% VRF tenant-a not found")


def test_routing_table_check_tolerates_bad_output():
    assert RoutingTableProbe().has_routes("tenant-a", BrokenRouting()) is False
