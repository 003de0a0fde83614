"""Entry point for the ``evpn-fabric`` command."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Optional, TextIO

from oslo_config import cfg

from evpn_fabric.agents import AgentFactory
from evpn_fabric.config import FabricConfig
from evpn_fabric.coordinator import FleetCoordinator
from evpn_fabric.errors import ConfigValidationError
from evpn_fabric.frr import EVPNConfigRenderer, render_plan
from evpn_fabric.locator import ClusterQueryError, KubectlClient, LocalNodeLocator, NodeLocator
from evpn_fabric.netlink import NetlinkRouteProbe
from evpn_fabric.reconciler import RouteProbe, RoutingTableProbe
from evpn_fabric.results import RunResult

from .config import AgentConfig, cleanup_requested, fabric_config_from_env, load_config, node_ip
from .opts import load_oslo_settings

LOG = logging.getLogger(__name__)

EXIT_DONE = 0
EXIT_PARTIALLY_FAILED = 1
EXIT_CONFIG_ERROR = 2

COMMANDS = ("setup", "teardown", "render", "auto")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="evpn-fabric",
        description="Provision or remove the EVPN fabric of a cluster network",
    )
    parser.add_argument(
        "command",
        nargs="?",
        choices=COMMANDS,
        default="auto",
        help="auto runs teardown when CLEANUP=true and setup otherwise",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("/etc/evpn-fabric/evpn-fabric.yaml"),
        help="Path to the orchestrator settings file",
    )
    parser.add_argument(
        "--oslo-config-file",
        type=Path,
        default=None,
        help="Read [evpn_reconcile] timings from an oslo.config INI file",
    )
    parser.add_argument(
        "--node",
        dest="nodes",
        action="append",
        default=[],
        help="Restrict the run to this node (repeatable)",
    )
    parser.add_argument(
        "--local",
        action="store_true",
        help="Configure only the node this command runs on",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def _render(fabric: FabricConfig, out: TextIO) -> int:
    ip = fabric.ip_domain
    if ip is not None and not ip.resolved:
        out.write(
            f"! VRF of {ip.management_port} is resolved per node; "
            f"showing the fallback {ip.fallback_vrf_name}\n"
        )
        fabric = fabric.with_vrf(ip.fallback_vrf_name)
    renderer = EVPNConfigRenderer(fabric)
    out.write(render_plan(renderer.setup_phases()))
    out.write(render_plan([renderer.route_target_toggle()]))
    out.write(render_plan(renderer.teardown_phases()))
    return EXIT_DONE


def _build_coordinator(settings: AgentConfig, local: bool) -> FleetCoordinator:
    cluster = settings.cluster
    probe: Optional[RouteProbe] = None
    locator: NodeLocator
    if local:
        locator = LocalNodeLocator(cluster, node_ip=node_ip())
        probe = NetlinkRouteProbe()
    else:
        locator = NodeLocator(KubectlClient(cluster), cluster)
        probe = RoutingTableProbe()

    return FleetCoordinator(
        locator,
        AgentFactory(cluster),
        settings.reconcile,
        max_workers=cluster.max_workers,
        probe=probe if settings.reconcile.poll_routes else None,
    )


def print_summary(result: RunResult, out: TextIO) -> None:
    out.write(f"EVPN fabric run finished: {result.state.value}\n")
    for node in result.nodes:
        if node.succeeded:
            out.write(f"  {node.node}: ok\n")
            continue
        out.write(f"  {node.node}: FAILED\n")
        for failure in node.failures:
            out.write(f"    [{failure.stage}] {failure.cause}: {failure.detail}\n")


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    try:
        settings = load_config(args.config)
        if args.oslo_config_file is not None:
            settings.reconcile = load_oslo_settings(args.oslo_config_file)
        lookup = None
        if args.command != "render":
            lookup = KubectlClient(settings.cluster).network_id
        fabric = fabric_config_from_env(lookup_network_id=lookup)
    except (ConfigValidationError, cfg.Error) as exc:
        LOG.error("Invalid configuration: %s", exc)
        return EXIT_CONFIG_ERROR
    except ClusterQueryError as exc:
        LOG.error("Could not look up the network ID: %s", exc)
        return EXIT_CONFIG_ERROR

    if args.command == "render":
        return _render(fabric, sys.stdout)

    teardown = args.command == "teardown" or (
        args.command == "auto" and cleanup_requested()
    )
    coordinator = _build_coordinator(settings, args.local)

    def _shutdown(signum, frame):  # pragma: no cover - signal handler
        LOG.info("received signal %s, finishing in-flight nodes", signum)
        coordinator.cancel()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    members = args.nodes or None
    try:
        if teardown:
            result = coordinator.teardown(fabric, members)
        else:
            result = coordinator.setup(fabric, members)
    except ClusterQueryError as exc:
        LOG.error("Could not list cluster nodes: %s", exc)
        return EXIT_PARTIALLY_FAILED

    print_summary(result, sys.stdout)
    return EXIT_DONE if result.succeeded else EXIT_PARTIALLY_FAILED


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
