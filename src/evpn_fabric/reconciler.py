"""Compensate for FRR not re-evaluating routes against late route-targets.

FRR checks route-target membership only when a route arrives.  A type-5 route
received before the VRF's import route-target is configured stays in the global
EVPN table forever, so the VRF routing table remains empty even though the
configuration is correct.  Removing and re-adding the (unchanged) route-targets
forces FRR to walk its table again and import what it skipped.

This narrows the race between external advertisement and local configuration;
it does not close it.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol

from .agents import RoutingAgent
from .config import FabricConfig, IPFamilySet, ReconcileSettings
from .errors import ReconciliationSkipped
from .frr import EVPNConfigRenderer
from .results import NodeTarget

LOG = logging.getLogger(__name__)


class ReconcileState(str, Enum):
    NOT_NEEDED = "not-needed"
    SETTLING = "settling"
    TOGGLING = "toggling"
    PROBING = "probing"
    APPLIED = "applied"
    CONVERGED = "converged"
    EXHAUSTED = "exhausted"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ReconcileOutcome:
    state: ReconcileState
    attempts: int = 0


class RouteProbe(Protocol):
    def has_routes(self, vrf_name: str, routing: RoutingAgent) -> bool:
        """Return True once the VRF holds at least one BGP-learned route."""


class RoutingTableProbe:
    """Ask FRR whether the VRF's RIB contains BGP routes."""

    COMMANDS = ("show ip route vrf {} json", "show ipv6 route vrf {} json")

    def has_routes(self, vrf_name: str, routing: RoutingAgent) -> bool:
        for template in self.COMMANDS:
            result = routing.show(template.format(vrf_name))
            if not result.ok:
                LOG.debug(
                    "route probe failed for VRF %s: %s", vrf_name, result.diagnostic()
                )
                continue
            try:
                table = json.loads(result.stdout or "{}")
            except json.JSONDecodeError:
                LOG.debug("route probe returned non-JSON output for VRF %s", vrf_name)
                continue
            for entries in table.values():
                if not isinstance(entries, list):
                    continue
                if any(entry.get("protocol") == "bgp" for entry in entries):
                    return True
        return False


class ConvergenceReconciler:
    """Bounded remove-then-reapply of the IP-VRF route-targets on one node.

    Sequence: wait ``settle_interval``, then up to ``max_attempts`` toggles
    separated by ``retry_interval``.  With a probe the loop ends as soon as
    BGP routes show up in the VRF.  A toggle FRR rejects is expected on a fresh
    deployment and ends the loop quietly.
    """

    def __init__(
        self,
        node: NodeTarget,
        agent: RoutingAgent,
        config: FabricConfig,
        settings: ReconcileSettings,
        probe: Optional[RouteProbe] = None,
        families: Optional[IPFamilySet] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._node = node
        self._agent = agent
        self._config = config
        self._settings = settings
        self._probe = probe
        self._sleep = sleep
        self._renderer = EVPNConfigRenderer(config, families)
        self.state = ReconcileState.NOT_NEEDED

    def _toggle(self) -> None:
        txn = self._renderer.route_target_toggle()
        result = self._agent.apply(txn.statements())
        if not result.ok:
            raise ReconciliationSkipped(result.diagnostic())

    def _finish(self, state: ReconcileState, attempts: int) -> ReconcileOutcome:
        self.state = state
        return ReconcileOutcome(state=state, attempts=attempts)

    def reconcile(self) -> ReconcileOutcome:
        ip = self._config.ip_domain
        if ip is None:
            return self._finish(ReconcileState.NOT_NEEDED, 0)

        self.state = ReconcileState.SETTLING
        LOG.info(
            "Waiting %.1fs for BGP routes to arrive on %s",
            self._settings.settle_interval,
            self._node.name,
        )
        self._sleep(self._settings.settle_interval)

        attempts = 0
        while True:
            self.state = ReconcileState.TOGGLING
            attempts += 1
            LOG.info(
                "Forcing route re-evaluation for VRF %s on %s (attempt %d)",
                ip.vrf_name,
                self._node.name,
                attempts,
            )
            try:
                self._toggle()
            except ReconciliationSkipped as exc:
                LOG.info(
                    "Route re-evaluation skipped on %s (fresh install): %s",
                    self._node.name,
                    exc,
                )
                return self._finish(ReconcileState.SKIPPED, attempts)

            if self._probe is not None:
                self.state = ReconcileState.PROBING
                if self._probe.has_routes(ip.vrf_name, self._agent):
                    return self._finish(ReconcileState.CONVERGED, attempts)

            if attempts >= self._settings.max_attempts:
                break
            self._sleep(self._settings.retry_interval)

        if self._probe is not None:
            LOG.warning(
                "VRF %s on %s still has no BGP routes after %d attempts",
                ip.vrf_name,
                self._node.name,
                attempts,
            )
            return self._finish(ReconcileState.EXHAUSTED, attempts)
        return self._finish(ReconcileState.APPLIED, attempts)
