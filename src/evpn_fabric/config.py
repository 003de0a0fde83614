"""Configuration data structures for the EVPN fabric orchestrator.

These dataclasses describe the desired end-state of one logical network and the
knobs that control how the orchestrator drives a fleet towards it.  They are
frozen on purpose: a :class:`FabricConfig` is built once per invocation and
shared by value with every per-node worker.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterable, Optional, Sequence, Tuple

from .errors import ConfigValidationError

MAX_ASN = 4294967295
MAX_VNI = 16777215
MAX_VLAN_ID = 4094
MAX_IFNAME_LEN = 15

BRIDGE_DEVICE = "br0"
VXLAN_DEVICE = "vxlan0"
VXLAN_PORT = 4789
INTEGRATION_BRIDGE = "br-int"


class AddressFamily(str, Enum):
    """IP families a subnet (and a VRF advertisement) can belong to."""

    IPV4 = "ipv4"
    IPV6 = "ipv6"


@dataclass(frozen=True)
class Subnet:
    """A subnet prefix tagged with its address family."""

    prefix: str
    family: AddressFamily

    @classmethod
    def parse(cls, value: str) -> "Subnet":
        text = value.strip()
        try:
            network = ipaddress.ip_network(text, strict=False)
        except ValueError as exc:
            raise ConfigValidationError(f"invalid subnet '{value}': {exc}") from exc
        family = AddressFamily.IPV4 if network.version == 4 else AddressFamily.IPV6
        return cls(prefix=str(network), family=family)


def parse_subnets(values: Iterable[str] | str) -> Tuple[Subnet, ...]:
    """Parse a comma-separated string (or an iterable) of subnet prefixes."""

    if isinstance(values, str):
        values = values.split(",")
    return tuple(Subnet.parse(v) for v in values if v.strip())


@dataclass(frozen=True)
class RouteTargets:
    """Route distinguisher and symmetric route-targets for one VNI."""

    rd: str
    import_rt: str
    export_rt: str

    @classmethod
    def for_vni(cls, asn: int, vni: int) -> "RouteTargets":
        value = f"{asn}:{vni}"
        return cls(rd=value, import_rt=value, export_rt=value)

    def as_tuple(self) -> Tuple[str, str, str]:
        return self.rd, self.import_rt, self.export_rt


@dataclass(frozen=True)
class MacDomain:
    """MAC-VRF binding: extends the layer-2 segment across the overlay."""

    vni: int
    vlan_id: int

    @property
    def port_name(self) -> str:
        """Name of the switch-internal port attached to the bridge."""

        return f"evpn{self.vni}"


@dataclass(frozen=True)
class IpDomain:
    """IP-VRF binding: routes between subnets through a VRF (type-5 routes).

    The VRF device belongs to the network lifecycle manager, which names it
    per node.  Either ``vrf_name`` pins it explicitly or ``network_id`` lets
    each node look it up from the network's management port.
    """

    vni: int
    vlan_id: int
    vrf_name: Optional[str] = None
    network_id: Optional[str] = None

    @property
    def svi_name(self) -> str:
        return f"{BRIDGE_DEVICE}.{self.vlan_id}"

    @property
    def management_port(self) -> str:
        return f"ovn-k8s-mp{self.network_id}"

    @property
    def fallback_vrf_name(self) -> str:
        return f"mp{self.network_id}-udn-vrf"

    @property
    def resolved(self) -> bool:
        return self.vrf_name is not None


@dataclass(frozen=True)
class IPFamilySet:
    """Which IP families the fabric's subnets cover."""

    ipv4: bool = False
    ipv6: bool = False

    @classmethod
    def from_subnets(cls, subnets: Iterable[Subnet]) -> "IPFamilySet":
        families = {s.family for s in subnets}
        return cls(
            ipv4=AddressFamily.IPV4 in families,
            ipv6=AddressFamily.IPV6 in families,
        )

    def families(self) -> Tuple[AddressFamily, ...]:
        """Return the enabled families in a stable (v4 first) order."""

        enabled = []
        if self.ipv4:
            enabled.append(AddressFamily.IPV4)
        if self.ipv6:
            enabled.append(AddressFamily.IPV6)
        return tuple(enabled)


def _check_range(name: str, value: int, upper: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigValidationError(f"{name} must be an integer, got {value!r}")
    if not 1 <= value <= upper:
        raise ConfigValidationError(f"{name} must be within 1..{upper}, got {value}")


def _check_ifname(name: str, value: str) -> None:
    if not value or len(value) > MAX_IFNAME_LEN:
        raise ConfigValidationError(
            f"{name} '{value}' must be 1..{MAX_IFNAME_LEN} characters long"
        )
    if "/" in value or any(ch.isspace() for ch in value):
        raise ConfigValidationError(f"{name} '{value}' is not a valid interface name")


@dataclass(frozen=True)
class FabricConfig:
    """Desired end-state for one logical network.

    Attributes
    ----------
    network_name:
        Name of the cluster network the fabric extends.
    peer_address:
        External BGP EVPN peer every node activates.
    asn:
        BGP autonomous system number, also the administrator part of RD/RTs.
    subnets:
        Subnets of the network; they decide which unicast families the VRF
        redistributes and advertises.
    mac_domain / ip_domain:
        Optional MAC-VRF and IP-VRF bindings.  Both share the single VXLAN
        device of a node but must use disjoint VLAN/VNI pairs.
    """

    network_name: str
    peer_address: str
    asn: int
    subnets: Tuple[Subnet, ...] = ()
    mac_domain: Optional[MacDomain] = None
    ip_domain: Optional[IpDomain] = None

    def __post_init__(self) -> None:
        if not self.network_name:
            raise ConfigValidationError("network name is required")
        try:
            ipaddress.ip_address(self.peer_address)
        except ValueError as exc:
            raise ConfigValidationError(
                f"invalid peer address '{self.peer_address}'"
            ) from exc
        _check_range("BGP ASN", self.asn, MAX_ASN)

        if self.mac_domain is not None:
            _check_range("MAC-VRF VNI", self.mac_domain.vni, MAX_VNI)
            _check_range("MAC-VRF VLAN ID", self.mac_domain.vlan_id, MAX_VLAN_ID)
        if self.ip_domain is not None:
            _check_range("IP-VRF VNI", self.ip_domain.vni, MAX_VNI)
            _check_range("IP-VRF VLAN ID", self.ip_domain.vlan_id, MAX_VLAN_ID)
            if self.ip_domain.vrf_name is not None:
                _check_ifname("VRF name", self.ip_domain.vrf_name)
            elif not (self.ip_domain.network_id or "").isdigit():
                raise ConfigValidationError(
                    "IP-VRF needs a VRF name or a numeric network ID, got "
                    f"{self.ip_domain.network_id!r}"
                )
            if not self.subnets:
                raise ConfigValidationError(
                    "IP-VRF needs at least one subnet to redistribute and advertise"
                )

        if self.mac_domain is not None and self.ip_domain is not None:
            if self.mac_domain.vlan_id == self.ip_domain.vlan_id:
                raise ConfigValidationError(
                    f"VLAN ID {self.mac_domain.vlan_id} cannot map to both "
                    f"VNI {self.mac_domain.vni} and VNI {self.ip_domain.vni}"
                )
            if self.mac_domain.vni == self.ip_domain.vni:
                raise ConfigValidationError(
                    f"VNI {self.mac_domain.vni} cannot back both the MAC-VRF "
                    "and the IP-VRF"
                )

    @property
    def ip_families(self) -> IPFamilySet:
        return IPFamilySet.from_subnets(self.subnets)

    @property
    def _dotted_network(self) -> str:
        return self.network_name.replace("-", ".")

    @property
    def logical_switch(self) -> str:
        return f"cluster_udn_{self._dotted_network}_ovn_layer2_switch"

    @property
    def logical_switch_port(self) -> str:
        return f"cluster_udn_{self._dotted_network}_evpn_port"

    def with_vrf(self, vrf_name: str) -> "FabricConfig":
        """Return a copy whose IP-VRF is pinned to ``vrf_name``."""

        if self.ip_domain is None or self.ip_domain.vrf_name == vrf_name:
            return self
        return replace(self, ip_domain=replace(self.ip_domain, vrf_name=vrf_name))

    def mac_route_targets(self) -> Optional[RouteTargets]:
        if self.mac_domain is None:
            return None
        return RouteTargets.for_vni(self.asn, self.mac_domain.vni)

    def ip_route_targets(self) -> Optional[RouteTargets]:
        if self.ip_domain is None:
            return None
        return RouteTargets.for_vni(self.asn, self.ip_domain.vni)


@dataclass(frozen=True)
class ReconcileSettings:
    """Timed waits and retry bounds used while the control plane converges.

    All durations are in seconds.  None of the waits observes a converged-state
    signal unless ``poll_routes`` is enabled, so they are best treated as
    tunables for the environment at hand.
    """

    vrf_settle_interval: float = 2.0
    activation_settle_interval: float = 5.0
    settle_interval: float = 10.0
    retry_interval: float = 5.0
    max_attempts: int = 2
    fleet_settle_interval: float = 5.0
    poll_routes: bool = False

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigValidationError("max_attempts must be at least 1")
        for name in (
            "vrf_settle_interval",
            "activation_settle_interval",
            "settle_interval",
            "retry_interval",
            "fleet_settle_interval",
        ):
            if getattr(self, name) < 0:
                raise ConfigValidationError(f"{name} cannot be negative")


@dataclass(frozen=True)
class AgentSelector:
    """Where to find one kind of node-local agent in the cluster."""

    namespace: str
    selector: str
    container: str


@dataclass(frozen=True)
class ClusterSettings:
    """How the orchestrator reaches the cluster and its per-node agents."""

    kubectl: str = "kubectl"
    kubeconfig: Optional[str] = None
    network_agent: AgentSelector = AgentSelector(
        namespace="ovn-kubernetes",
        selector="app=ovnkube-node",
        container="ovnkube-controller",
    )
    routing_agent: AgentSelector = AgentSelector(
        namespace="frr-k8s-system",
        selector="app=frr-k8s",
        container="frr",
    )
    crictl: str = "crictl"
    max_workers: int = 8
    members: Sequence[str] = field(default_factory=tuple)
