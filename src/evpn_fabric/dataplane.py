"""Kernel and virtual-switch plumbing for one node.

The node ends up with a single VLAN-aware bridge (``br0``) and one VXLAN device
(``vxlan0``) in single-VXLAN-device mode.  Each MAC-VRF or IP-VRF binding adds
a VLAN-to-VNI tunnel mapping on top of them.  MAC learning is disabled and
neighbour suppression enabled because every forwarding entry comes from BGP.
"""

from __future__ import annotations

import logging
import re
from typing import List, Sequence

from .agents import CommandResult, NetworkAgent
from .config import (
    BRIDGE_DEVICE,
    INTEGRATION_BRIDGE,
    VXLAN_DEVICE,
    VXLAN_PORT,
    FabricConfig,
    IpDomain,
)
from .errors import DataPlaneApplyError
from .results import NodeTarget

LOG = logging.getLogger(__name__)

_MASTER_RE = re.compile(r"\bmaster (\S+)")

NOT_FOUND_MARKERS = (
    "cannot find device",
    "does not exist",
    "no such device",
    "no such file or directory",
    "not found",
)


def is_missing(result: CommandResult) -> bool:
    """Return True when a failed command only complained about absence."""

    text = f"{result.stderr}\n{result.stdout}".lower()
    return any(marker in text for marker in NOT_FOUND_MARKERS)


class DataPlaneConfigurator:
    """Issue bridge / VLAN / VNI / VRF / switch-port commands on one node."""

    def __init__(self, node: NodeTarget, agent: NetworkAgent) -> None:
        self._node = node
        self._agent = agent

    def _run(self, step: str, argv: Sequence[str], *, missing_ok: bool = False) -> None:
        result = self._agent.run(argv)
        if result.ok:
            return
        if missing_ok and is_missing(result):
            LOG.debug("%s: %s already absent on %s", step, argv[-1], self._node.name)
            return
        raise DataPlaneApplyError(step, result.diagnostic())

    def _attempt(
        self,
        errors: List[DataPlaneApplyError],
        step: str,
        argv: Sequence[str],
    ) -> None:
        try:
            self._run(step, argv, missing_ok=True)
        except DataPlaneApplyError as exc:
            LOG.warning("Teardown step failed on %s: %s", self._node.name, exc)
            errors.append(exc)

    def _map_vlan_to_vni(self, step: str, vlan_id: int, vni: int) -> None:
        vid, vni_s = str(vlan_id), str(vni)
        self._run(step, ["bridge", "vlan", "add", "dev", BRIDGE_DEVICE, "vid", vid, "self"])
        self._run(step, ["bridge", "vlan", "add", "dev", VXLAN_DEVICE, "vid", vid])
        self._run(step, ["bridge", "vni", "add", "dev", VXLAN_DEVICE, "vni", vni_s])
        self._run(
            step,
            ["bridge", "vlan", "add", "dev", VXLAN_DEVICE, "vid", vid, "tunnel_info", "id", vni_s],
        )

    def _unmap_vlan_from_vni(
        self, errors: List[DataPlaneApplyError], step: str, vlan_id: int, vni: int
    ) -> None:
        vid, vni_s = str(vlan_id), str(vni)
        self._attempt(errors, step, ["bridge", "vlan", "del", "dev", VXLAN_DEVICE, "vid", vid])
        self._attempt(errors, step, ["bridge", "vni", "del", "dev", VXLAN_DEVICE, "vni", vni_s])
        self._attempt(
            errors, step, ["bridge", "vlan", "del", "dev", BRIDGE_DEVICE, "vid", vid, "self"]
        )

    def discover_vrf(self, ip: IpDomain) -> str:
        """Return the VRF that enslaves the network's management port.

        Falls back to the network manager's default VRF name when the port is
        missing or not enslaved.
        """

        if ip.vrf_name is not None:
            return ip.vrf_name

        result = self._agent.run(["ip", "-o", "link", "show", ip.management_port])
        match = _MASTER_RE.search(result.stdout) if result.ok else None
        if match:
            vrf = match.group(1)
            LOG.debug("%s on %s is enslaved to %s", ip.management_port, self._node.name, vrf)
        else:
            vrf = ip.fallback_vrf_name
            LOG.info(
                "No VRF found for %s on %s, using %s",
                ip.management_port, self._node.name, vrf,
            )
        return vrf

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------
    def apply_bridge(self, config: FabricConfig) -> None:
        """(Re)create the bridge and VXLAN device bound to the node address.

        Any previous instance is deleted first so that changed parameters, such
        as a new local address, always take effect.
        """

        step = "bridge"
        LOG.info("Setting up EVPN bridge on %s (VTEP %s)", self._node.name, self._node.address)
        self._run(step, ["ip", "link", "del", VXLAN_DEVICE], missing_ok=True)
        self._run(step, ["ip", "link", "del", BRIDGE_DEVICE], missing_ok=True)

        self._run(
            step,
            [
                "ip", "link", "add", BRIDGE_DEVICE, "type", "bridge",
                "vlan_filtering", "1", "vlan_default_pvid", "0",
            ],
        )
        self._run(step, ["ip", "link", "set", BRIDGE_DEVICE, "addrgenmode", "none"])
        self._run(
            step,
            [
                "ip", "link", "add", VXLAN_DEVICE, "type", "vxlan",
                "dstport", str(VXLAN_PORT), "local", self._node.address,
                "nolearning", "external", "vnifilter",
            ],
        )
        self._run(
            step,
            ["ip", "link", "set", VXLAN_DEVICE, "addrgenmode", "none", "master", BRIDGE_DEVICE],
        )
        self._run(step, ["ip", "link", "set", BRIDGE_DEVICE, "up"])
        self._run(step, ["ip", "link", "set", VXLAN_DEVICE, "up"])
        self._run(
            step,
            [
                "bridge", "link", "set", "dev", VXLAN_DEVICE,
                "vlan_tunnel", "on", "neigh_suppress", "on", "learning", "off",
            ],
        )

    def apply_mac_domain(self, config: FabricConfig) -> None:
        """Extend the network's logical switch onto the bridge.

        No-op when the fabric has no MAC-VRF binding.
        """

        mac = config.mac_domain
        if mac is None:
            LOG.debug("MAC-VRF not configured, skipping on %s", self._node.name)
            return

        step = "mac-domain"
        LOG.info(
            "Setting up MAC-VRF on %s (VNI %s, VLAN %s)", self._node.name, mac.vni, mac.vlan_id
        )
        self._map_vlan_to_vni(step, mac.vlan_id, mac.vni)

        port = mac.port_name
        lsp = config.logical_switch_port
        self._run(step, ["ovs-vsctl", "--if-exists", "del-port", INTEGRATION_BRIDGE, port])
        self._run(
            step,
            [
                "ovs-vsctl", "add-port", INTEGRATION_BRIDGE, port,
                "--", "set", "interface", port, "type=internal",
                f"external-ids:iface-id={lsp}",
            ],
        )
        self._run(step, ["ip", "link", "set", port, "master", BRIDGE_DEVICE])
        self._run(
            step,
            ["bridge", "vlan", "add", "dev", port, "vid", str(mac.vlan_id), "pvid", "untagged"],
        )
        self._run(step, ["ip", "link", "set", port, "up"])

        self._run(step, ["ovn-nbctl", "--if-exists", "lsp-del", lsp])
        self._run(step, ["ovn-nbctl", "lsp-add", config.logical_switch, lsp])
        self._run(step, ["ovn-nbctl", "lsp-set-addresses", lsp, "unknown"])

    def apply_ip_domain(self, config: FabricConfig) -> None:
        """Attach a VLAN sub-interface of the bridge to the existing VRF.

        No-op when the fabric has no IP-VRF binding.  The VRF device is owned
        by the network lifecycle manager and must already exist.
        """

        ip = config.ip_domain
        if ip is None:
            LOG.debug("IP-VRF not configured, skipping on %s", self._node.name)
            return

        step = "ip-domain"
        LOG.info(
            "Setting up IP-VRF on %s (VNI %s, VLAN %s, VRF %s)",
            self._node.name, ip.vni, ip.vlan_id, ip.vrf_name,
        )
        self._map_vlan_to_vni(step, ip.vlan_id, ip.vni)

        svi = ip.svi_name
        self._run(step, ["ip", "link", "del", svi], missing_ok=True)
        self._run(
            step,
            [
                "ip", "link", "add", svi, "link", BRIDGE_DEVICE,
                "type", "vlan", "id", str(ip.vlan_id),
            ],
        )
        self._run(step, ["ip", "link", "set", svi, "addrgenmode", "none"])
        self._run(step, ["ip", "link", "set", svi, "master", ip.vrf_name])
        self._run(step, ["ip", "link", "set", svi, "up"])

    # ------------------------------------------------------------------
    # Teardown (best effort: every step runs, failures are returned)
    # ------------------------------------------------------------------
    def remove_ip_domain(self, config: FabricConfig) -> List[DataPlaneApplyError]:
        errors: List[DataPlaneApplyError] = []
        ip = config.ip_domain
        if ip is None:
            return errors
        step = "ip-domain-removal"
        self._attempt(errors, step, ["ip", "link", "del", ip.svi_name])
        self._unmap_vlan_from_vni(errors, step, ip.vlan_id, ip.vni)
        return errors

    def remove_mac_domain(self, config: FabricConfig) -> List[DataPlaneApplyError]:
        errors: List[DataPlaneApplyError] = []
        mac = config.mac_domain
        if mac is None:
            return errors
        step = "mac-domain-removal"
        self._attempt(
            errors,
            step,
            ["ovs-vsctl", "--if-exists", "del-port", INTEGRATION_BRIDGE, mac.port_name],
        )
        self._attempt(
            errors, step, ["ovn-nbctl", "--if-exists", "lsp-del", config.logical_switch_port]
        )
        self._unmap_vlan_from_vni(errors, step, mac.vlan_id, mac.vni)
        return errors

    def remove_bridge(self) -> List[DataPlaneApplyError]:
        errors: List[DataPlaneApplyError] = []
        self._attempt(errors, "bridge-removal", ["ip", "link", "del", VXLAN_DEVICE])
        self._attempt(errors, "bridge-removal", ["ip", "link", "del", BRIDGE_DEVICE])
        return errors
