"""In-memory stand-ins for cluster nodes and their agents.

``FakeNode`` keeps just enough kernel, switch and FRR state to check ordering,
idempotency and round-trip properties without any system utilities.
"""

from __future__ import annotations

import copy
import json
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

import pytest

from evpn_fabric.agents import CommandResult
from evpn_fabric.frr import CONFIGURE, END, Statement
from evpn_fabric.locator import ClusterQueryError
from evpn_fabric.results import NodeTarget

ASN = 64512
PEER = "192.0.2.10"


class CommandFailed(Exception):
    def __init__(self, returncode: int, message: str) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.message = message


def _option(args: Sequence[str], key: str) -> Optional[str]:
    if key not in args:
        return None
    return args[args.index(key) + 1]


class FakeNode:
    def __init__(self, name: str, address: str, vrfs: Iterable[str] = ("tenant-a",)) -> None:
        self.name = name
        self.address = address
        self.links: Dict[str, Dict[str, Any]] = {
            "lo": {"kind": "loopback", "up": True, "master": None, "parent": None},
            "eth0": {"kind": "device", "up": True, "master": None, "parent": None},
        }
        for vrf in vrfs:
            self.links[vrf] = {"kind": "vrf", "up": True, "master": None, "parent": None}
        self.bridge_vlans: Dict[Tuple[str, int], Dict[str, Any]] = {}
        self.vnis: Set[int] = set()
        self.ovs_ports: Dict[str, str] = {}
        self.lsps: Dict[str, Dict[str, Any]] = {}
        self.frr: Set[Tuple[str, ...]] = {
            (f"router bgp {ASN}", f"neighbor {PEER} remote-as {ASN}"),
        }
        self.saved_frr: Set[Tuple[str, ...]] = set(self.frr)
        self.vrf_routes: Dict[str, Dict[str, list]] = {}

        self.commands: List[Tuple[str, ...]] = []
        self.transactions: List[List[str]] = []
        self.failing: Dict[str, str] = {}
        self.rejected: Set[str] = set()

        self.network = FakeNetworkAgent(self)
        self.routing = FakeRoutingAgent(self)

    def snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(
            {
                "links": self.links,
                "bridge_vlans": self.bridge_vlans,
                "vnis": self.vnis,
                "ovs_ports": self.ovs_ports,
                "lsps": self.lsps,
                "frr": self.frr,
            }
        )

    def need(self, dev: str) -> Dict[str, Any]:
        if dev not in self.links:
            raise CommandFailed(1, f'Cannot find device "{dev}"')
        return self.links[dev]

    def delete_link(self, dev: str) -> None:
        link = self.links.pop(dev)
        for name, other in list(self.links.items()):
            if name not in self.links:
                continue
            if other.get("parent") == dev:
                self.delete_link(name)
            elif other.get("master") == dev:
                other["master"] = None
                self._drop_vlans(name)
        self._drop_vlans(dev)
        if link["kind"] == "vxlan":
            self.vnis.clear()

    def _drop_vlans(self, dev: str) -> None:
        self.bridge_vlans = {k: v for k, v in self.bridge_vlans.items() if k[0] != dev}

    def frr_has(self, *path: str) -> bool:
        return any(p[: len(path)] == path for p in self.frr)


class FakeNetworkAgent:
    def __init__(self, node: FakeNode) -> None:
        self.node = node

    def run(self, argv: Sequence[str]) -> CommandResult:
        argv = tuple(str(a) for a in argv)
        self.node.commands.append(argv)
        if argv[0] in self.node.failing:
            return CommandResult(argv, 1, stderr=self.node.failing[argv[0]])
        handlers = {
            "ip": self._ip,
            "bridge": self._bridge,
            "ovs-vsctl": self._ovs,
            "ovn-nbctl": self._ovn,
        }
        try:
            stdout = handlers[argv[0]](argv[1:])
        except CommandFailed as exc:
            return CommandResult(argv, exc.returncode, stderr=exc.message)
        return CommandResult(argv, 0, stdout=stdout or "")

    def _ip(self, args: Tuple[str, ...]) -> Optional[str]:
        node = self.node
        if args[0] == "-o":
            args = args[1:]
        assert args[0] == "link"
        op, dev, rest = args[1], args[2], args[3:]
        if op == "show":
            if dev not in node.links:
                raise CommandFailed(1, f'Device "{dev}" does not exist.')
            link = node.links[dev]
            master = f" master {link['master']}" if link.get("master") else ""
            return (
                f"{list(node.links).index(dev) + 1}: {dev}: <BROADCAST,MULTICAST,UP> "
                f"mtu 1400 qdisc noqueue{master} state UNKNOWN mode DEFAULT\n"
            )
        if op == "del":
            node.need(dev)
            node.delete_link(dev)
        elif op == "add":
            if dev in node.links:
                raise CommandFailed(2, "RTNETLINK answers: File exists")
            parent = _option(rest, "link")
            if parent is not None:
                node.need(parent)
            node.links[dev] = {
                "kind": _option(rest, "type"),
                "up": False,
                "master": None,
                "parent": parent,
                "local": _option(rest, "local"),
            }
        elif op == "set":
            link = node.need(dev)
            i = 0
            while i < len(rest):
                token = rest[i]
                if token == "up":
                    link["up"] = True
                    i += 1
                    continue
                value = rest[i + 1]
                if token == "master":
                    node.need(value)
                link[token] = value
                i += 2
        else:
            raise CommandFailed(1, f"unsupported ip link op {op}")

    def _bridge(self, args: Tuple[str, ...]) -> None:
        node = self.node
        # Options follow the object and operation words ("vni add dev ... vni N").
        obj, op, options = args[0], args[1], args[2:]
        dev = _option(options, "dev")
        node.need(dev)
        if obj == "link":
            node.links[dev]["bridge_flags"] = options[2:]
        elif obj == "vni":
            vni = int(_option(options, "vni"))
            if op == "add":
                node.vnis.add(vni)
            elif vni not in node.vnis:
                raise CommandFailed(2, "RTNETLINK answers: No such file or directory")
            else:
                node.vnis.discard(vni)
        elif obj == "vlan":
            vid = int(_option(options, "vid"))
            if op == "del":
                if (dev, vid) not in node.bridge_vlans:
                    raise CommandFailed(2, "RTNETLINK answers: No such file or directory")
                del node.bridge_vlans[(dev, vid)]
                return
            entry = node.bridge_vlans.setdefault((dev, vid), {})
            for flag in ("self", "pvid", "untagged"):
                if flag in options:
                    entry[flag] = True
            if "tunnel_info" in options:
                tunnel_id = int(_option(options, "id"))
                if tunnel_id not in node.vnis:
                    raise CommandFailed(2, "Error: VNI is not configured on the device")
                for (other_dev, other_vid), other in node.bridge_vlans.items():
                    if other_dev != dev:
                        continue
                    if other_vid != vid and other.get("tunnel_id") == tunnel_id:
                        raise CommandFailed(2, "Error: tunnel id already mapped")
                if entry.get("tunnel_id") not in (None, tunnel_id):
                    raise CommandFailed(2, "Error: VLAN already has a tunnel id")
                entry["tunnel_id"] = tunnel_id

    def _ovs(self, args: Tuple[str, ...]) -> None:
        node = self.node
        if args[:2] == ("--if-exists", "del-port"):
            port = args[3]
            if node.ovs_ports.pop(port, None) is not None and port in node.links:
                node.delete_link(port)
            return
        assert args[0] == "add-port"
        port = args[2]
        if port in node.ovs_ports:
            raise CommandFailed(
                1, f"ovs-vsctl: cannot create a port named {port} because a port "
                f"named {port} already exists on bridge {args[1]}"
            )
        iface_id = next(a for a in args if a.startswith("external-ids:iface-id="))
        node.ovs_ports[port] = iface_id.split("=", 1)[1]
        node.links[port] = {"kind": "internal", "up": False, "master": None, "parent": None}

    def _ovn(self, args: Tuple[str, ...]) -> None:
        node = self.node
        if args[:2] == ("--if-exists", "lsp-del"):
            node.lsps.pop(args[2], None)
        elif args[0] == "lsp-add":
            switch, lsp = args[1], args[2]
            if lsp in node.lsps:
                raise CommandFailed(1, f"ovn-nbctl: {lsp}: a port with this name already exists")
            node.lsps[lsp] = {"switch": switch, "addresses": []}
        elif args[0] == "lsp-set-addresses":
            lsp = args[1]
            if lsp not in node.lsps:
                raise CommandFailed(1, f"ovn-nbctl: {lsp}: port name not found")
            node.lsps[lsp]["addresses"] = list(args[2:])


class FakeRoutingAgent:
    """Applies vtysh statements to a flat set of configuration paths."""

    def __init__(self, node: FakeNode) -> None:
        self.node = node
        self.persisted = 0

    def apply(self, statements: Sequence[Union[Statement, str]]) -> CommandResult:
        node = self.node
        stmts = [s if isinstance(s, Statement) else Statement(s) for s in statements]
        node.transactions.append([s.text for s in stmts])
        argv = ("vtysh",)
        for stmt in stmts:
            if stmt.text in node.rejected:
                return CommandResult(argv, 1, stdout=f"% Unknown command: {stmt.text}")

        stack: List[str] = []
        for i, stmt in enumerate(stmts):
            if stmt.text in (CONFIGURE, END):
                stack = []
                continue
            del stack[stmt.depth:]
            following = stmts[i + 1] if i + 1 < len(stmts) else None
            if following is not None and following.depth > stmt.depth:
                stack.append(stmt.text)
                continue
            if stmt.text.startswith("exit"):
                continue
            if stmt.text.startswith("no "):
                target = (*stack, stmt.text[3:])
                node.frr = {p for p in node.frr if p[: len(target)] != target}
            else:
                node.frr.add((*stack, stmt.text))
        return CommandResult(argv, 0)

    def show(self, command: str) -> CommandResult:
        if command == "show vrf":
            names = [n for n, link in self.node.links.items() if link["kind"] == "vrf"]
            names += [p[0][4:] for p in self.node.frr if p[0].startswith("vrf ")]
            lines = [f"vrf {name} id 5 table 1001" for name in dict.fromkeys(names)]
            return CommandResult(("vtysh", "-c", command), 0, stdout="\n".join(lines))
        vrf = command.split(" vrf ")[1].split()[0]
        routes = self.node.vrf_routes.get(vrf, {})
        return CommandResult(("vtysh", "-c", command), 0, stdout=json.dumps(routes))

    def persist(self) -> CommandResult:
        self.persisted += 1
        self.node.saved_frr = set(self.node.frr)
        return CommandResult(("vtysh", "-c", "write memory"), 0)


class FakeCluster:
    """``ClusterClient`` over a static node / pod inventory."""

    def __init__(self) -> None:
        self.nodes: Dict[str, List[str]] = {}
        self.pods: Dict[Tuple[str, str], str] = {}

    def add_node(
        self,
        name: str,
        addresses: Sequence[str],
        namespaces: Sequence[str] = ("ovn-kubernetes", "frr-k8s-system"),
    ) -> None:
        self.nodes[name] = list(addresses)
        for namespace in namespaces:
            self.pods[(namespace, name)] = f"{namespace.split('-')[0]}-{name}"

    def list_nodes(self) -> List[str]:
        return list(self.nodes)

    def node_addresses(self, node: str) -> List[str]:
        if node not in self.nodes:
            raise ClusterQueryError(f'nodes "{node}" not found')
        return list(self.nodes[node])

    def find_pod(self, namespace: str, selector: str, node: str) -> Optional[str]:
        return self.pods.get((namespace, node))


class FakeFleet:
    def __init__(self, names: Sequence[str] = ("node-1", "node-2", "node-3")) -> None:
        self.cluster = FakeCluster()
        self.nodes: Dict[str, FakeNode] = {}
        for index, name in enumerate(names, start=2):
            address = f"172.18.0.{index}"
            self.cluster.add_node(name, [f"fc00:f853:ccd:e793::{index}", address])
            self.nodes[name] = FakeNode(name, address)

    def agents(self, target: NodeTarget) -> Tuple[FakeNetworkAgent, FakeRoutingAgent]:
        node = self.nodes[target.name]
        return node.network, node.routing

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {name: node.snapshot() for name, node in self.nodes.items()}


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fleet() -> FakeFleet:
    return FakeFleet()


@pytest.fixture
def node() -> FakeNode:
    return FakeNode("node-1", "172.18.0.2")
