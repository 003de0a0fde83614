from evpn_fabric.config import FabricConfig, IpDomain, MacDomain, parse_subnets
from evpn_fabric.frr import EVPNConfigRenderer, Transaction, render_plan


def build_config(subnets="10.0.0.0/16", mac=True, ip=True) -> FabricConfig:
    return FabricConfig(
        network_name="tenant-a",
        peer_address="192.0.2.10",
        asn=64512,
        subnets=parse_subnets(subnets),
        mac_domain=MacDomain(vni=10101, vlan_id=101) if mac else None,
        ip_domain=IpDomain(vni=20102, vlan_id=202, vrf_name="tenant-a") if ip else None,
    )


def all_commands(transactions):
    return [cmd for txn in transactions for cmd in txn.commands()]


def test_transaction_wraps_body_in_configure_and_end():
    txn = Transaction("demo")
    with txn.block("router bgp 1"):
        txn.add("bgp router-id 10.0.0.1")

    assert txn.commands() == [
        "configure terminal",
        "router bgp 1",
        "bgp router-id 10.0.0.1",
        "exit",
        "end",
    ]
    assert txn.render().splitlines()[2] == " bgp router-id 10.0.0.1"
    assert "bgp router-id 10.0.0.1" in txn


def test_empty_transaction_is_falsy():
    assert not Transaction("empty")


def test_ip_domain_route_targets():
    renderer = EVPNConfigRenderer(build_config(mac=False))

    txn = renderer.vrf_instance()

    assert txn.commands()[1] == "router bgp 64512 vrf tenant-a"
    assert "rd 64512:20102" in txn
    assert "route-target import 64512:20102" in txn
    assert "route-target export 64512:20102" in txn
    assert "advertise ipv4 unicast" in txn
    assert "advertise ipv6 unicast" not in txn


def test_vrf_binding_and_activation():
    renderer = EVPNConfigRenderer(build_config())

    assert renderer.vrf_binding().commands() == [
        "configure terminal",
        "vrf tenant-a",
        "vni 20102",
        "exit-vrf",
        "end",
    ]
    activation = renderer.global_activation().commands()
    assert activation[:5] == [
        "configure terminal",
        "router bgp 64512",
        "address-family l2vpn evpn",
        "neighbor 192.0.2.10 activate",
        "advertise-all-vni",
    ]
    assert activation[5:10] == [
        "vni 10101",
        "rd 64512:10101",
        "route-target import 64512:10101",
        "route-target export 64512:10101",
        "exit-vni",
    ]


def test_mac_only_issues_no_vrf_statements():
    renderer = EVPNConfigRenderer(build_config(ip=False))

    phases = renderer.setup_phases()
    commands = all_commands(phases)

    assert [txn.name for txn in phases] == ["global-activation"]
    assert not any(cmd.startswith("vrf ") for cmd in commands)
    assert not any(" vrf " in cmd for cmd in commands)
    assert not any("unicast" in cmd for cmd in commands)
    assert not renderer.route_target_toggle()


def test_dual_stack_redistribution():
    renderer = EVPNConfigRenderer(build_config(subnets="10.0.0.0/16,fd00::/48"))

    commands = renderer.vrf_instance().commands()

    v4 = commands.index("address-family ipv4 unicast")
    v6 = commands.index("address-family ipv6 unicast")
    assert commands[v4 + 1] == "redistribute connected"
    assert commands[v6 + 1] == "redistribute connected"
    assert "advertise ipv4 unicast" in commands
    assert "advertise ipv6 unicast" in commands


def test_route_target_toggle_removes_then_reapplies():
    renderer = EVPNConfigRenderer(build_config())

    commands = renderer.route_target_toggle().commands()

    assert commands[1:3] == ["router bgp 64512 vrf tenant-a", "address-family l2vpn evpn"]
    assert commands[3:7] == [
        "no route-target import 64512:20102",
        "route-target import 64512:20102",
        "no route-target export 64512:20102",
        "route-target export 64512:20102",
    ]


def test_teardown_order_keeps_vrf_definition():
    renderer = EVPNConfigRenderer(build_config())

    phases = renderer.teardown_phases()

    assert [txn.name for txn in phases] == [
        "vrf-instance-removal",
        "vrf-binding-removal",
        "mac-vni-removal",
        "global-deactivation",
    ]
    commands = all_commands(phases)
    assert "no router bgp 64512 vrf tenant-a" in commands
    assert "no vni 20102" in commands
    assert "no vni 10101" in commands
    assert "no vrf tenant-a" not in commands
    assert commands.index("no advertise-all-vni") < commands.index(
        "no neighbor 192.0.2.10 activate"
    )


def test_render_plan_labels_each_transaction():
    renderer = EVPNConfigRenderer(build_config(mac=False))

    text = render_plan(renderer.setup_phases())

    assert "! --- vrf-binding ---" in text
    assert "! --- global-activation ---" in text
    assert "! --- vrf-instance ---" in text
    assert text.endswith("!\n")
