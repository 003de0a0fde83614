"""Settings and fabric parameters for the EVPN fabric CLI.

Orchestrator settings (timings, cluster access, fleet membership) come from an
optional YAML file.  The fabric itself is described by environment variables
so the same invocation can be driven from a test harness or a Kubernetes Job.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import yaml

from evpn_fabric.config import (
    AgentSelector,
    ClusterSettings,
    FabricConfig,
    IpDomain,
    MacDomain,
    ReconcileSettings,
    parse_subnets,
)
from evpn_fabric.errors import ConfigValidationError


@dataclass
class AgentConfig:
    reconcile: ReconcileSettings = field(default_factory=ReconcileSettings)
    cluster: ClusterSettings = field(default_factory=ClusterSettings)

    @property
    def members(self) -> List[str]:
        return list(self.cluster.members)


# ------------------------------------------------------------------
# YAML settings
# ------------------------------------------------------------------
def _section(data: Mapping[str, Any], name: str) -> Dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigValidationError(f"'{name}' section must be a mapping")
    return section


def _parse_reconcile(section: Mapping[str, Any]) -> ReconcileSettings:
    defaults = ReconcileSettings()
    intervals = (
        "vrf_settle_interval",
        "activation_settle_interval",
        "settle_interval",
        "retry_interval",
        "fleet_settle_interval",
    )
    try:
        values: Dict[str, Any] = {
            name: float(section.get(name, getattr(defaults, name))) for name in intervals
        }
        values["max_attempts"] = int(section.get("max_attempts", defaults.max_attempts))
    except (TypeError, ValueError) as exc:
        raise ConfigValidationError(f"invalid 'reconcile' section: {exc}") from exc
    values["poll_routes"] = bool(section.get("poll_routes", defaults.poll_routes))
    return ReconcileSettings(**values)


def _parse_selector(entry: Any, default: AgentSelector) -> AgentSelector:
    if entry is None:
        return default
    if not isinstance(entry, dict):
        raise ConfigValidationError("agent selector must be a mapping")
    return AgentSelector(
        namespace=str(entry.get("namespace", default.namespace)),
        selector=str(entry.get("selector", default.selector)),
        container=str(entry.get("container", default.container)),
    )


def _parse_members(section: Mapping[str, Any]) -> Tuple[str, ...]:
    members = section.get("members") or []
    if not isinstance(members, list):
        raise ConfigValidationError("'fleet.members' must be a list")
    return tuple(str(m) for m in members)


def _parse_cluster(section: Mapping[str, Any], members: Tuple[str, ...]) -> ClusterSettings:
    defaults = ClusterSettings()
    kubeconfig = section.get("kubeconfig", defaults.kubeconfig)
    try:
        max_workers = int(section.get("max_workers", defaults.max_workers))
    except (TypeError, ValueError) as exc:
        raise ConfigValidationError(f"invalid 'cluster.max_workers': {exc}") from exc
    if max_workers < 1:
        raise ConfigValidationError("'cluster.max_workers' must be at least 1")

    return ClusterSettings(
        kubectl=str(section.get("kubectl", defaults.kubectl)),
        kubeconfig=str(kubeconfig) if kubeconfig else None,
        network_agent=_parse_selector(section.get("network_agent"), defaults.network_agent),
        routing_agent=_parse_selector(section.get("routing_agent"), defaults.routing_agent),
        crictl=str(section.get("crictl", defaults.crictl)),
        max_workers=max_workers,
        members=members,
    )


def load_config(path: Optional[Path]) -> AgentConfig:
    """Load orchestrator settings; a missing or empty file means defaults."""

    if path is None or not path.exists():
        return AgentConfig()

    data = yaml.safe_load(path.read_text())
    if data is None:
        return AgentConfig()
    if not isinstance(data, dict):
        raise ConfigValidationError("Agent configuration must be a mapping")

    reconcile = _parse_reconcile(_section(data, "reconcile"))
    members = _parse_members(_section(data, "fleet"))
    cluster = _parse_cluster(_section(data, "cluster"), members)
    return AgentConfig(reconcile=reconcile, cluster=cluster)


# ------------------------------------------------------------------
# Environment
# ------------------------------------------------------------------
ENV_NETWORK_NAME = "NETWORK_NAME"
ENV_PEER_ADDRESS = "EXTERNAL_FRR_IP"
ENV_ASN = "BGP_ASN"
ENV_SUBNETS = "CUDN_SUBNETS"
ENV_MAC_VNI = "MACVRF_VNI"
ENV_MAC_VID = "MACVRF_VID"
ENV_IP_VNI = "IPVRF_VNI"
ENV_IP_VID = "IPVRF_VID"
ENV_VRF_NAME = "IPVRF_VRF_NAME"
ENV_CLEANUP = "CLEANUP"
ENV_NODE_IP = "NODE_IP"
ENV_NETWORK_ID = "NETWORK_ID"


def _get(environ: Mapping[str, str], name: str) -> str:
    return (environ.get(name) or "").strip()


def _require(environ: Mapping[str, str], name: str) -> str:
    value = _get(environ, name)
    if not value:
        raise ConfigValidationError(f"Required environment variable {name} is not set")
    return value


def _int(environ: Mapping[str, str], name: str) -> Optional[int]:
    value = _get(environ, name)
    if not value:
        return None
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigValidationError(f"{name} must be an integer, got '{value}'") from exc


def _pair(
    environ: Mapping[str, str], vni_name: str, vid_name: str
) -> Optional[Tuple[int, int]]:
    vni, vid = _int(environ, vni_name), _int(environ, vid_name)
    if vni is None and vid is None:
        return None
    if vni is None or vid is None:
        raise ConfigValidationError(f"{vni_name} and {vid_name} must be set together")
    return vni, vid


def fabric_config_from_env(
    environ: Optional[Mapping[str, str]] = None,
    *,
    lookup_network_id: Optional[Callable[[str], str]] = None,
) -> FabricConfig:
    """Build the fabric description from ``NETWORK_NAME`` & co.

    The IP-VRF's VRF is named by ``IPVRF_VRF_NAME`` when set.  Otherwise it is
    discovered per node from the network ID, taken from ``NETWORK_ID`` or,
    failing that, from ``lookup_network_id(network_name)``.

    Raises :class:`ConfigValidationError` for anything missing or malformed.
    """

    env = os.environ if environ is None else environ
    network_name = _require(env, ENV_NETWORK_NAME)
    peer_address = _require(env, ENV_PEER_ADDRESS)
    asn = _int(env, ENV_ASN)
    if asn is None:
        raise ConfigValidationError(f"Required environment variable {ENV_ASN} is not set")
    subnets = parse_subnets(_require(env, ENV_SUBNETS))
    if not subnets:
        raise ConfigValidationError(f"{ENV_SUBNETS} does not name any subnet")

    mac = _pair(env, ENV_MAC_VNI, ENV_MAC_VID)
    ip = _pair(env, ENV_IP_VNI, ENV_IP_VID)
    if mac is None and ip is None:
        raise ConfigValidationError(
            f"Neither {ENV_MAC_VNI}/{ENV_MAC_VID} nor {ENV_IP_VNI}/{ENV_IP_VID} is set"
        )

    ip_domain = None
    if ip is not None:
        vrf_name = _get(env, ENV_VRF_NAME) or None
        network_id = _get(env, ENV_NETWORK_ID) or None
        if vrf_name is None and network_id is None:
            if lookup_network_id is None:
                raise ConfigValidationError(
                    f"Set {ENV_VRF_NAME} or {ENV_NETWORK_ID} to locate the IP-VRF"
                )
            network_id = lookup_network_id(network_name)
        ip_domain = IpDomain(vni=ip[0], vlan_id=ip[1], vrf_name=vrf_name, network_id=network_id)

    return FabricConfig(
        network_name=network_name,
        peer_address=peer_address,
        asn=asn,
        subnets=subnets,
        mac_domain=MacDomain(vni=mac[0], vlan_id=mac[1]) if mac else None,
        ip_domain=ip_domain,
    )


def cleanup_requested(environ: Optional[Mapping[str, str]] = None) -> bool:
    env = os.environ if environ is None else environ
    return _get(env, ENV_CLEANUP).lower() == "true"


def node_ip(environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    env = os.environ if environ is None else environ
    return _get(env, ENV_NODE_IP) or None
