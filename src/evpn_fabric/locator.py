"""Resolve fleet members into reachable node targets."""

from __future__ import annotations

import ipaddress
import json
import logging
import socket
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from . import agents
from .agents import CommandResult
from .config import AgentSelector, ClusterSettings
from .errors import AgentNotFound, FabricError, NodeUnresolvable
from .netlink import local_management_address
from .results import AgentHandle, AgentKind, NodeTarget

LOG = logging.getLogger(__name__)

NETWORK_AGENT = "network-control"
ROUTING_AGENT = "routing"
NETWORK_ID_ANNOTATION = "k8s.ovn.org/network-id"

Runner = Callable[[Sequence[str]], CommandResult]


class ClusterQueryError(FabricError):
    """Raised when the cluster API cannot answer a query."""


class ClusterClient(Protocol):
    def list_nodes(self) -> List[str]:
        """Return the names of every node in the cluster."""

    def node_addresses(self, node: str) -> List[str]:
        """Return the node's internal addresses in declaration order."""

    def find_pod(self, namespace: str, selector: str, node: str) -> Optional[str]:
        """Return the first pod matching ``selector`` scheduled on ``node``."""


def pick_management_address(addresses: Iterable[str]) -> Optional[str]:
    """Prefer the first IPv4 address; fall back to the first IPv6 one."""

    ipv6: Optional[str] = None
    for value in addresses:
        try:
            parsed = ipaddress.ip_address(value)
        except ValueError:
            LOG.debug("ignoring malformed node address %r", value)
            continue
        if parsed.version == 4:
            return value
        if ipv6 is None:
            ipv6 = value
    return ipv6


class KubectlClient:
    """:class:`ClusterClient` backed by ``kubectl ... -o json``."""

    def __init__(self, settings: ClusterSettings, runner: Runner = agents.run) -> None:
        self._settings = settings
        self._runner = runner

    def _get(self, *args: str) -> dict:
        cmd = [self._settings.kubectl]
        if self._settings.kubeconfig:
            cmd.extend(["--kubeconfig", self._settings.kubeconfig])
        cmd.extend(["get", *args, "-o", "json"])
        result = self._runner(cmd)
        if not result.ok:
            raise ClusterQueryError(result.diagnostic())
        try:
            return json.loads(result.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise ClusterQueryError(f"unparseable kubectl output: {exc}") from exc

    def list_nodes(self) -> List[str]:
        payload = self._get("nodes")
        return [item["metadata"]["name"] for item in payload.get("items", [])]

    def node_addresses(self, node: str) -> List[str]:
        payload = self._get("node", node)
        addresses = payload.get("status", {}).get("addresses", [])
        return [a["address"] for a in addresses if a.get("type") == "InternalIP"]

    def find_pod(self, namespace: str, selector: str, node: str) -> Optional[str]:
        payload = self._get(
            "pods",
            "-n",
            namespace,
            "-l",
            selector,
            "--field-selector",
            f"spec.nodeName={node}",
        )
        for item in payload.get("items", []):
            if item.get("status", {}).get("phase", "Running") == "Running":
                return item["metadata"]["name"]
        return None

    def network_id(self, network_name: str) -> str:
        """Return the numeric ID the network manager assigned to the network.

        It is read from the annotation on the network attachment definition
        that shares the network's name and namespace.
        """

        payload = self._get("net-attach-def", "-n", network_name, network_name)
        annotations = payload.get("metadata", {}).get("annotations") or {}
        value = annotations.get(NETWORK_ID_ANNOTATION)
        if not value:
            raise ClusterQueryError(
                f"network {network_name} has no {NETWORK_ID_ANNOTATION} annotation"
            )
        return str(value)


class NodeLocator:
    """Resolve cluster nodes to their address and agent handles."""

    def __init__(self, client: ClusterClient, settings: ClusterSettings) -> None:
        self._client = client
        self._settings = settings

    def members(self) -> List[str]:
        if self._settings.members:
            return list(self._settings.members)
        return self._client.list_nodes()

    def _locate_agent(self, node: str, agent_type: str, where: AgentSelector) -> AgentHandle:
        try:
            pod = self._client.find_pod(where.namespace, where.selector, node)
        except ClusterQueryError as exc:
            LOG.debug("pod lookup for %s agent on %s failed: %s", agent_type, node, exc)
            pod = None
        if not pod:
            raise AgentNotFound(node, agent_type)
        return AgentHandle(
            kind=AgentKind.POD,
            name=pod,
            namespace=where.namespace,
            container=where.container,
        )

    def resolve(self, node: str) -> NodeTarget:
        try:
            addresses = self._client.node_addresses(node)
        except ClusterQueryError as exc:
            raise NodeUnresolvable(node, str(exc)) from exc
        address = pick_management_address(addresses)
        if address is None:
            raise NodeUnresolvable(node)

        network = self._locate_agent(node, NETWORK_AGENT, self._settings.network_agent)
        routing = self._locate_agent(node, ROUTING_AGENT, self._settings.routing_agent)
        return NodeTarget(
            name=node,
            address=address,
            network_agent=network,
            routing_agent=routing,
        )

    def resolve_all(
        self, members: Iterable[str]
    ) -> Tuple[List[NodeTarget], Dict[str, FabricError]]:
        targets: List[NodeTarget] = []
        failures: Dict[str, FabricError] = {}
        for node in members:
            try:
                target = self.resolve(node)
            except (NodeUnresolvable, AgentNotFound) as exc:
                LOG.warning("Excluding node %s: %s", node, exc)
                failures[node] = exc
                continue
            LOG.info(
                "Resolved node %s (address=%s, network agent=%s, routing agent=%s)",
                node,
                target.address,
                target.network_agent.name,
                target.routing_agent.name,
            )
            targets.append(target)
        return targets, failures


class LocalNodeLocator(NodeLocator):
    """Resolve the node the orchestrator itself runs on.

    The network-control agent is the local shell; the routing agent is the FRR
    container found through ``crictl``.  The VTEP address comes from
    ``node_ip`` when supplied, otherwise from the host's own interfaces.
    """

    def __init__(
        self,
        settings: ClusterSettings,
        node_ip: Optional[str] = None,
        runner: Runner = agents.run,
        address_lookup: Optional[Callable[[], Optional[str]]] = None,
    ) -> None:
        super().__init__(client=None, settings=settings)  # type: ignore[arg-type]
        self._node_ip = node_ip
        self._runner = runner
        self._address_lookup = address_lookup

    def members(self) -> List[str]:
        return [socket.gethostname()]

    def _local_address(self) -> Optional[str]:
        if self._node_ip:
            return self._node_ip
        if self._address_lookup is not None:
            return self._address_lookup()
        return local_management_address()

    def resolve(self, node: str) -> NodeTarget:
        address = self._local_address()
        if not address:
            raise NodeUnresolvable(node)

        name = self._settings.routing_agent.container
        result = self._runner([self._settings.crictl, "ps", "--name", name, "-q"])
        container = result.stdout.split()[0] if result.ok and result.stdout.strip() else None
        if container is None:
            raise AgentNotFound(node, ROUTING_AGENT)

        return NodeTarget(
            name=node,
            address=address,
            network_agent=AgentHandle(kind=AgentKind.LOCAL),
            routing_agent=AgentHandle(kind=AgentKind.CONTAINER, name=container),
        )
