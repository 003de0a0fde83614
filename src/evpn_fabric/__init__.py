"""EVPN fabric provisioning for cluster nodes.

This package brings every node of a cluster network into a converged EVPN
state and tears that state down again.  It does not implement BGP, VXLAN or
bridging itself; it sequences calls into two node-local agents:

* a network-control agent that programs the VXLAN bridge, the VLAN/VNI
  tunnel mappings, the VRF sub-interface and the OVS / OVN ports; and
* a routing agent (FRR's ``vtysh``) that receives the BGP EVPN
  configuration in ordered transactions.

FRR converges asynchronously, so setup is followed by a bounded
route-target re-application (:mod:`evpn_fabric.reconciler`) that makes late
route-targets take effect.  :class:`FleetCoordinator` runs the whole thing
across the fleet and reports a per-node breakdown.
"""

from .config import (  # noqa: F401
    ClusterSettings,
    FabricConfig,
    IpDomain,
    MacDomain,
    ReconcileSettings,
    parse_subnets,
)
from .coordinator import FleetCoordinator  # noqa: F401
from .errors import ConfigValidationError, FabricError  # noqa: F401
from .results import NodeResult, RunResult, RunState  # noqa: F401

__all__ = [
    "ClusterSettings",
    "ConfigValidationError",
    "FabricConfig",
    "FabricError",
    "FleetCoordinator",
    "IpDomain",
    "MacDomain",
    "NodeResult",
    "ReconcileSettings",
    "RunResult",
    "RunState",
    "parse_subnets",
]
