"""Routing-daemon configuration for one node."""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional

from .agents import RoutingAgent
from .config import FabricConfig, IPFamilySet, ReconcileSettings
from .errors import ControlPlaneApplyError
from .frr import VRF_BINDING_REMOVAL, EVPNConfigRenderer, Transaction
from .results import NodeTarget

LOG = logging.getLogger(__name__)


class ControlPlaneConfigurator:
    """Apply and remove the EVPN configuration of one node's FRR.

    Setup ordering matters and FRR does not report getting it wrong: the
    VRF-to-VNI binding has to settle before ``advertise-all-vni`` is activated,
    and the VRF route-targets have to be configured only once the activation
    has discovered the VNI-to-VRF association.  Otherwise FRR comes up without
    ever importing or exporting the VRF's routes.

    Transactions are not retried here; see
    :class:`~evpn_fabric.reconciler.ConvergenceReconciler`.
    """

    def __init__(
        self,
        node: NodeTarget,
        agent: RoutingAgent,
        config: FabricConfig,
        settings: ReconcileSettings,
        families: Optional[IPFamilySet] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._node = node
        self._agent = agent
        self._config = config
        self._settings = settings
        self._sleep = sleep
        self._renderer = EVPNConfigRenderer(config, families)

    @property
    def renderer(self) -> EVPNConfigRenderer:
        return self._renderer

    def _submit(self, txn: Transaction) -> None:
        LOG.debug("Applying %s on %s:\n%s", txn.name, self._node.name, txn.render())
        result = self._agent.apply(txn.statements())
        if not result.ok:
            raise ControlPlaneApplyError(txn.name, result.diagnostic())

    def _vrf_known(self, vrf_name: Optional[str]) -> bool:
        result = self._agent.show("show vrf")
        if not result.ok:
            LOG.debug(
                "Could not list VRFs on %s: %s", self._node.name, result.diagnostic()
            )
            return True
        return any(
            line.split()[:2] == ["vrf", vrf_name] for line in result.stdout.splitlines()
        )

    def _wait(self, reason: str, seconds: float) -> None:
        LOG.debug("Waiting %.1fs on %s for %s", seconds, self._node.name, reason)
        self._sleep(seconds)

    def apply(self) -> None:
        has_ip_domain = self._config.ip_domain is not None
        LOG.info("Configuring FRR for EVPN on %s", self._node.name)

        if has_ip_domain:
            self._submit(self._renderer.vrf_binding())
            self._wait("VRF-to-VNI binding", self._settings.vrf_settle_interval)

        self._submit(self._renderer.global_activation())

        if has_ip_domain:
            self._wait("VNI discovery", self._settings.activation_settle_interval)
            self._submit(self._renderer.vrf_instance())

    def remove(self) -> List[ControlPlaneApplyError]:
        """Remove the bindings this orchestrator created, then persist.

        Every transaction is attempted even when an earlier one fails; the
        failures are returned for the caller to record.
        """

        errors: List[ControlPlaneApplyError] = []
        LOG.info("Removing EVPN configuration from FRR on %s", self._node.name)
        ip = self._config.ip_domain
        for txn in self._renderer.teardown_phases():
            # Entering "vrf X" would recreate a VRF its owner already removed.
            if txn.name == VRF_BINDING_REMOVAL and ip is not None:
                if not self._vrf_known(ip.vrf_name):
                    LOG.info(
                        "VRF %s is gone from FRR on %s, skipping %s",
                        ip.vrf_name, self._node.name, txn.name,
                    )
                    continue
            try:
                self._submit(txn)
            except ControlPlaneApplyError as exc:
                LOG.warning("FRR teardown step failed on %s: %s", self._node.name, exc)
                errors.append(exc)

        result = self._agent.persist()
        if not result.ok:
            errors.append(ControlPlaneApplyError("persist", result.diagnostic()))
        return errors
