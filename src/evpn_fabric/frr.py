"""FRR configuration transactions for EVPN provisioning.

Configuration is assembled as a typed list of :class:`Statement` objects by a
block-structured :class:`Transaction` builder and submitted to the routing
agent as one vtysh invocation.  Nothing here is ever passed through a shell, so
VRF names or peer addresses need no quoting.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, List, Sequence

from .config import AddressFamily, FabricConfig, IPFamilySet, RouteTargets

CONFIGURE = "configure terminal"
END = "end"

VRF_BINDING_REMOVAL = "vrf-binding-removal"


@dataclass(frozen=True)
class Statement:
    """One configuration-mode statement and its nesting depth."""

    text: str
    depth: int = 0

    def __str__(self) -> str:
        return self.text


class Transaction:
    """Ordered batch of statements applied atomically by the routing agent."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._body: List[Statement] = []
        self._depth = 0

    def add(self, *lines: str) -> "Transaction":
        for line in lines:
            self._body.append(Statement(line, self._depth))
        return self

    @contextmanager
    def block(self, opener: str, closer: str = "exit") -> Iterator["Transaction"]:
        self.add(opener)
        self._depth += 1
        try:
            yield self
        finally:
            self._depth -= 1
            self.add(closer)

    def statements(self) -> List[Statement]:
        return [Statement(CONFIGURE), *self._body, Statement(END)]

    def commands(self) -> List[str]:
        return [s.text for s in self.statements()]

    def __contains__(self, text: str) -> bool:
        return any(s.text == text for s in self._body)

    def __bool__(self) -> bool:
        return bool(self._body)

    def render(self) -> str:
        """Render as indented text, the way ``show running-config`` prints it."""

        return "\n".join(" " * s.depth + s.text for s in self.statements())


def _address_family(family: AddressFamily) -> str:
    return f"address-family {family.value} unicast"


class EVPNConfigRenderer:
    """Build the transactions that converge (and tear down) one node's FRR.

    Setup is split in three phases because FRR only discovers the VNI-to-VRF
    association when ``advertise-all-vni`` is activated after the VRF binding,
    and only honours VRF route-targets configured after that discovery.
    """

    def __init__(self, config: FabricConfig, families: IPFamilySet | None = None) -> None:
        self._config = config
        self._families = families if families is not None else config.ip_families

    @property
    def _router(self) -> str:
        return f"router bgp {self._config.asn}"

    def _vrf_router(self, vrf_name: str) -> str:
        return f"router bgp {self._config.asn} vrf {vrf_name}"

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------
    def vrf_binding(self) -> Transaction:
        txn = Transaction("vrf-binding")
        ip = self._config.ip_domain
        if ip is not None:
            with txn.block(f"vrf {ip.vrf_name}", "exit-vrf"):
                txn.add(f"vni {ip.vni}")
        return txn

    def global_activation(self) -> Transaction:
        txn = Transaction("global-activation")
        with txn.block(self._router):
            with txn.block("address-family l2vpn evpn", "exit-address-family"):
                txn.add(
                    f"neighbor {self._config.peer_address} activate",
                    "advertise-all-vni",
                )
                mac = self._config.mac_domain
                targets = self._config.mac_route_targets()
                if mac is not None and targets is not None:
                    with txn.block(f"vni {mac.vni}", "exit-vni"):
                        self._add_route_targets(txn, targets)
        return txn

    def vrf_instance(self) -> Transaction:
        txn = Transaction("vrf-instance")
        ip = self._config.ip_domain
        targets = self._config.ip_route_targets()
        if ip is None or targets is None:
            return txn
        families = self._families.families()
        with txn.block(self._vrf_router(ip.vrf_name)):
            for family in families:
                with txn.block(_address_family(family), "exit-address-family"):
                    txn.add("redistribute connected")
            with txn.block("address-family l2vpn evpn", "exit-address-family"):
                self._add_route_targets(txn, targets)
                for family in families:
                    txn.add(f"advertise {family.value} unicast")
        return txn

    def route_target_toggle(self) -> Transaction:
        """Remove and re-add the VRF route-targets to force re-evaluation."""

        txn = Transaction("route-target-toggle")
        ip = self._config.ip_domain
        targets = self._config.ip_route_targets()
        if ip is None or targets is None:
            return txn
        with txn.block(self._vrf_router(ip.vrf_name)):
            with txn.block("address-family l2vpn evpn", "exit-address-family"):
                txn.add(
                    f"no route-target import {targets.import_rt}",
                    f"route-target import {targets.import_rt}",
                    f"no route-target export {targets.export_rt}",
                    f"route-target export {targets.export_rt}",
                )
        return txn

    def setup_phases(self) -> Sequence[Transaction]:
        return [
            txn
            for txn in (self.vrf_binding(), self.global_activation(), self.vrf_instance())
            if txn
        ]

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------
    def vrf_instance_removal(self) -> Transaction:
        # Dropping the VRF router also drops its route-target bindings.
        txn = Transaction("vrf-instance-removal")
        ip = self._config.ip_domain
        if ip is not None:
            txn.add(f"no {self._vrf_router(ip.vrf_name)}")
        return txn

    def vrf_binding_removal(self) -> Transaction:
        # The VRF definition belongs to the network lifecycle manager; only the
        # VNI binding we created is removed.
        txn = Transaction(VRF_BINDING_REMOVAL)
        ip = self._config.ip_domain
        if ip is not None:
            with txn.block(f"vrf {ip.vrf_name}", "exit-vrf"):
                txn.add(f"no vni {ip.vni}")
        return txn

    def mac_vni_removal(self) -> Transaction:
        txn = Transaction("mac-vni-removal")
        mac = self._config.mac_domain
        if mac is not None:
            with txn.block(self._router):
                with txn.block("address-family l2vpn evpn", "exit-address-family"):
                    txn.add(f"no vni {mac.vni}")
        return txn

    def global_deactivation(self) -> Transaction:
        txn = Transaction("global-deactivation")
        with txn.block(self._router):
            with txn.block("address-family l2vpn evpn", "exit-address-family"):
                txn.add(
                    "no advertise-all-vni",
                    f"no neighbor {self._config.peer_address} activate",
                )
        return txn

    def teardown_phases(self) -> Sequence[Transaction]:
        return [
            txn
            for txn in (
                self.vrf_instance_removal(),
                self.vrf_binding_removal(),
                self.mac_vni_removal(),
                self.global_deactivation(),
            )
            if txn
        ]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _add_route_targets(txn: Transaction, targets: RouteTargets) -> None:
        txn.add(
            f"rd {targets.rd}",
            f"route-target import {targets.import_rt}",
            f"route-target export {targets.export_rt}",
        )


def render_plan(transactions: Sequence[Transaction]) -> str:
    """Concatenate transactions into one reviewable text document."""

    parts: List[str] = []
    for txn in transactions:
        parts.extend([f"! --- {txn.name} ---", txn.render(), "!"])
    return "\n".join(parts) + "\n"
