"""Error taxonomy for the EVPN fabric orchestrator.

Errors are split by blast radius so callers can react correctly:

* ``ConfigValidationError`` is fatal and raised before any node is touched.
* ``NodeUnresolvable`` / ``AgentNotFound`` exclude a single node from a run.
* ``DataPlaneApplyError`` / ``ControlPlaneApplyError`` abort the remaining
  stages of one node and carry the underlying diagnostic text.
* ``ReconciliationSkipped`` is the expected outcome of a route-target toggle on
  a fresh deployment and is never surfaced as a failure.
"""

from __future__ import annotations


class FabricError(Exception):
    """Base class for all orchestrator exceptions."""


class ConfigValidationError(FabricError, ValueError):
    """Raised when a required fabric parameter is missing or malformed."""


class NodeUnresolvable(FabricError):
    """Raised when a fleet member has no usable management address."""

    def __init__(self, node: str, reason: str = "no management address") -> None:
        super().__init__(f"node '{node}' is unresolvable: {reason}")
        self.node = node
        self.reason = reason


class AgentNotFound(FabricError):
    """Raised when a node-local agent cannot be located."""

    def __init__(self, node: str, agent_type: str) -> None:
        super().__init__(f"{agent_type} agent not found on node '{node}'")
        self.node = node
        self.agent_type = agent_type


class DataPlaneApplyError(FabricError):
    """Raised when a kernel or virtual-switch command fails on a node."""

    def __init__(self, step: str, diagnostic: str) -> None:
        super().__init__(f"{step}: {diagnostic}")
        self.step = step
        self.diagnostic = diagnostic


class ControlPlaneApplyError(FabricError):
    """Raised when the routing daemon rejects a configuration transaction."""

    def __init__(self, phase: str, diagnostic: str) -> None:
        super().__init__(f"{phase}: {diagnostic}")
        self.phase = phase
        self.diagnostic = diagnostic


class ReconciliationSkipped(FabricError):
    """Raised when a route-target toggle had nothing to remove."""


class RunCancelled(FabricError):
    """Recorded for nodes whose worker had not started when a run was cancelled."""
