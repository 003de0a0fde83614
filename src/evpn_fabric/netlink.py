"""Netlink helpers used when the orchestrator runs on the node itself."""

from __future__ import annotations

import logging
import socket
from typing import Dict, Optional

import pyroute2
from pyroute2 import NetlinkError

from .agents import RoutingAgent
from .config import AddressFamily

LOG = logging.getLogger(__name__)

# From /usr/include/linux/rtnetlink.h: RTPROT_BGP = 186
RTPROT_BGP = 186
RT_SCOPE_UNIVERSE = 0


def local_management_address() -> Optional[str]:
    """Return the first global IPv4 address of this host, else the first IPv6.

    Loopback and link-local addresses are never returned.
    """

    found: Dict[AddressFamily, str] = {}
    with pyroute2.IPRoute() as ipr:
        for msg in ipr.get_addr():
            if msg.get("scope") != RT_SCOPE_UNIVERSE:
                continue
            address = msg.get_attr("IFA_ADDRESS")
            if not address:
                continue
            if msg.get("family") == socket.AF_INET:
                found.setdefault(AddressFamily.IPV4, address)
            elif msg.get("family") == socket.AF_INET6:
                found.setdefault(AddressFamily.IPV6, address)
    return found.get(AddressFamily.IPV4) or found.get(AddressFamily.IPV6)


def vrf_table(vrf_name: str) -> Optional[int]:
    """Return the routing table ID bound to a VRF device."""

    try:
        with pyroute2.IPRoute() as ipr:
            links = ipr.link_lookup(ifname=vrf_name)
            if not links:
                return None
            link_info = ipr.get_links(links[0])[0]
            linkinfo = link_info.get_attr("IFLA_LINKINFO")
            info_data = linkinfo.get_attr("IFLA_INFO_DATA") if linkinfo else None
            if info_data:
                return info_data.get_attr("IFLA_VRF_TABLE")
    except (NetlinkError, OSError) as exc:
        LOG.debug("Could not get VRF table for %s: %s", vrf_name, exc)
    return None


def bgp_route_count(table_id: int) -> int:
    """Count BGP-installed routes (both families) in a routing table."""

    count = 0
    try:
        with pyroute2.IPRoute() as ipr:
            for family in (socket.AF_INET, socket.AF_INET6):
                count += len(
                    ipr.get_routes(family=family, table=table_id, protocol=RTPROT_BGP)
                )
    except (NetlinkError, OSError) as exc:
        LOG.debug("Error reading BGP routes from table %d: %s", table_id, exc)
    return count


class NetlinkRouteProbe:
    """Route-presence probe reading the local kernel's VRF table."""

    def has_routes(self, vrf_name: str, routing: RoutingAgent) -> bool:
        table = vrf_table(vrf_name)
        if table is None:
            LOG.debug("VRF %s has no routing table yet", vrf_name)
            return False
        return bgp_route_count(table) > 0
