"""Fleet-wide setup and teardown of the EVPN fabric.

The coordinator resolves every fleet member, runs one worker per resolved node
and aggregates the per-node outcomes.  Workers never block each other and a
failing node never aborts the others; nodes that were already configured are
left in their applied state.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from threading import Event
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .agents import NetworkAgent, RoutingAgent
from .config import FabricConfig, IPFamilySet, ReconcileSettings
from .controlplane import ControlPlaneConfigurator
from .dataplane import DataPlaneConfigurator
from .errors import ControlPlaneApplyError, DataPlaneApplyError, RunCancelled
from .locator import NodeLocator
from .reconciler import ConvergenceReconciler, RouteProbe
from .results import (
    NodeResult,
    NodeResultBuilder,
    NodeTarget,
    RunResult,
    RunState,
    StageFailure,
)

LOG = logging.getLogger(__name__)

AgentFactory = Callable[[NodeTarget], Tuple[NetworkAgent, RoutingAgent]]


class FleetCoordinator:
    """Drive per-node setup / teardown across the whole fleet."""

    def __init__(
        self,
        locator: NodeLocator,
        agent_factory: AgentFactory,
        settings: Optional[ReconcileSettings] = None,
        *,
        max_workers: int = 8,
        probe: Optional[RouteProbe] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._locator = locator
        self._agent_factory = agent_factory
        self._settings = settings or ReconcileSettings()
        self._max_workers = max(1, max_workers)
        self._probe = probe
        self._sleep = sleep
        self._cancel = Event()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def setup(self, config: FabricConfig, members: Optional[Iterable[str]] = None) -> RunResult:
        return self._run(config, members, teardown=False)

    def teardown(
        self, config: FabricConfig, members: Optional[Iterable[str]] = None
    ) -> RunResult:
        return self._run(config, members, teardown=True)

    def cancel(self) -> None:
        """Stop starting new node workers; running workers finish their node."""

        LOG.warning("Cancellation requested; in-flight nodes will finish")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ------------------------------------------------------------------
    # Run orchestration
    # ------------------------------------------------------------------
    def _run(
        self,
        config: FabricConfig,
        members: Optional[Iterable[str]],
        *,
        teardown: bool,
    ) -> RunResult:
        # A cancel applies to the run in progress, or to the next one when
        # no run is active.
        try:
            return self._execute(config, members, teardown=teardown)
        finally:
            self._cancel.clear()

    def _execute(
        self,
        config: FabricConfig,
        members: Optional[Iterable[str]],
        *,
        teardown: bool,
    ) -> RunResult:
        history: List[RunState] = [RunState.NOT_STARTED]
        families = config.ip_families
        if members is None:
            members = self._locator.members()
        ordered_members = list(dict.fromkeys(members))
        mode = "teardown" if teardown else "setup"
        LOG.info(
            "Starting EVPN %s of network %s on %d node(s)",
            mode,
            config.network_name,
            len(ordered_members),
        )

        history.append(RunState.RESOLVING)
        targets, unresolved = self._locator.resolve_all(ordered_members)
        results: Dict[str, NodeResult] = {
            node: NodeResult(
                node=node,
                succeeded=False,
                failures=(StageFailure.from_exception("resolve", exc),),
            )
            for node, exc in unresolved.items()
        }

        history.append(RunState.PER_NODE_TEARDOWN if teardown else RunState.PER_NODE_SETUP)
        worker = self._teardown_node if teardown else self._setup_node
        results.update(self._dispatch(worker, targets, config, families))

        if not teardown:
            history.append(RunState.RECONCILING)
            if self.cancelled:
                LOG.info("Run cancelled; skipping fleet-wide settle wait")
            elif any(r.succeeded for r in results.values()):
                LOG.info(
                    "Waiting %.1fs for fleet-wide convergence",
                    self._settings.fleet_settle_interval,
                )
                self._sleep(self._settings.fleet_settle_interval)

        node_results = tuple(results[m] for m in ordered_members if m in results)
        if all(r.succeeded for r in node_results):
            state = RunState.DONE
        else:
            state = RunState.PARTIALLY_FAILED
        history.append(state)

        failed = [r.node for r in node_results if not r.succeeded]
        if failed:
            LOG.warning("EVPN %s finished with failures on: %s", mode, ", ".join(failed))
        else:
            LOG.info("EVPN %s finished on every node", mode)
        return RunResult(state=state, nodes=node_results, history=tuple(history))

    def _dispatch(
        self,
        worker: Callable[[NodeTarget, FabricConfig, IPFamilySet], NodeResult],
        targets: List[NodeTarget],
        config: FabricConfig,
        families: IPFamilySet,
    ) -> Dict[str, NodeResult]:
        results: Dict[str, NodeResult] = {}
        if not targets:
            return results

        workers = min(self._max_workers, len(targets))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="evpn-node") as pool:
            futures = {
                pool.submit(worker, target, config, families): target for target in targets
            }
            for future in as_completed(futures):
                target = futures[future]
                try:
                    results[target.name] = future.result()
                except Exception as exc:  # noqa: BLE001 - reported per node
                    LOG.exception("Worker for node %s crashed", target.name)
                    results[target.name] = NodeResult(
                        node=target.name,
                        succeeded=False,
                        failures=(StageFailure.from_exception("worker", exc),),
                    )
        return results

    # ------------------------------------------------------------------
    # Per-node workers
    # ------------------------------------------------------------------
    def _not_started(self, builder: NodeResultBuilder) -> bool:
        if not self.cancelled:
            return False
        builder.fail("cancelled", RunCancelled("run cancelled before node was touched"))
        return True

    @staticmethod
    def _node_config(config: FabricConfig, dataplane: DataPlaneConfigurator) -> FabricConfig:
        # The VRF is named per node by the network manager.
        if config.ip_domain is None:
            return config
        return config.with_vrf(dataplane.discover_vrf(config.ip_domain))

    def _setup_node(
        self, target: NodeTarget, config: FabricConfig, families: IPFamilySet
    ) -> NodeResult:
        builder = NodeResultBuilder(target.name)
        if self._not_started(builder):
            return builder.build()

        network, routing = self._agent_factory(target)

        dataplane = DataPlaneConfigurator(target, network)
        config = self._node_config(config, dataplane)
        try:
            dataplane.apply_bridge(config)
            dataplane.apply_mac_domain(config)
            dataplane.apply_ip_domain(config)
        except DataPlaneApplyError as exc:
            LOG.warning("Data-plane setup failed on %s: %s", target.name, exc)
            builder.fail("data-plane", exc)
            return builder.build()

        controlplane = ControlPlaneConfigurator(
            target, routing, config, self._settings, families=families, sleep=self._sleep
        )
        try:
            controlplane.apply()
        except ControlPlaneApplyError as exc:
            LOG.warning("Control-plane setup failed on %s: %s", target.name, exc)
            builder.fail("control-plane", exc)
            return builder.build()

        reconciler = ConvergenceReconciler(
            target,
            routing,
            config,
            self._settings,
            probe=self._probe,
            families=families,
            sleep=self._sleep,
        )
        outcome = reconciler.reconcile()
        LOG.info(
            "EVPN setup complete on %s (reconciliation %s after %d attempt(s))",
            target.name,
            outcome.state.value,
            outcome.attempts,
        )
        return builder.build()

    def _teardown_node(
        self, target: NodeTarget, config: FabricConfig, families: IPFamilySet
    ) -> NodeResult:
        builder = NodeResultBuilder(target.name)
        if self._not_started(builder):
            return builder.build()

        network, routing = self._agent_factory(target)
        dataplane = DataPlaneConfigurator(target, network)
        config = self._node_config(config, dataplane)

        # Route-targets and the VRF router go before the SVI they route through.
        controlplane = ControlPlaneConfigurator(
            target, routing, config, self._settings, families=families, sleep=self._sleep
        )
        for exc in controlplane.remove():
            builder.fail("control-plane", exc)

        for exc in dataplane.remove_ip_domain(config):
            builder.fail("data-plane", exc)
        for exc in dataplane.remove_mac_domain(config):
            builder.fail("data-plane", exc)
        for exc in dataplane.remove_bridge():
            builder.fail("data-plane", exc)

        LOG.info("EVPN teardown complete on %s", target.name)
        return builder.build()
