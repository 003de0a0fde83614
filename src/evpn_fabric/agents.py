"""Command surface of the per-node agents.

Each node exposes two agents: a network-control agent that accepts imperative
``ip`` / ``bridge`` / ``ovs-vsctl`` / ``ovn-nbctl`` commands, and a routing
agent wrapping ``vtysh``.  Both are reached by prefixing the command with the
exec wrapper that matches the agent handle (``kubectl exec`` for pods,
``crictl exec`` for containers on the local node, nothing for the local
shell).
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from typing import List, Protocol, Sequence, Tuple, Union

from .config import ClusterSettings
from .frr import Statement
from .results import AgentHandle, AgentKind, NodeTarget

LOG = logging.getLogger(__name__)

VTYSH = "vtysh"


@dataclass(frozen=True)
class CommandResult:
    argv: Tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def diagnostic(self) -> str:
        text = (self.stderr or self.stdout).strip()
        return text or f"exit status {self.returncode}"


class NetworkAgent(Protocol):
    """Imperative kernel / virtual-switch command surface of one node."""

    def run(self, argv: Sequence[str]) -> CommandResult:
        """Run one command and return its outcome without raising."""


class RoutingAgent(Protocol):
    """Configuration surface of one node's routing daemon."""

    def apply(self, statements: Sequence[Union[Statement, str]]) -> CommandResult:
        """Submit a batch of configuration-mode statements as one invocation."""

    def show(self, command: str) -> CommandResult:
        """Run a read-only command such as ``show ip route vrf X json``."""

    def persist(self) -> CommandResult:
        """Write the running configuration to the daemon's durable store."""


def run(cmd: Sequence[str]) -> CommandResult:
    argv = tuple(str(part) for part in cmd)
    LOG.debug("Executing: %s", " ".join(argv))
    try:
        proc = subprocess.run(argv, check=False, text=True, capture_output=True)
    except OSError as exc:
        return CommandResult(argv=argv, returncode=127, stderr=str(exc))
    return CommandResult(
        argv=argv,
        returncode=proc.returncode,
        stdout=proc.stdout or "",
        stderr=proc.stderr or "",
    )


class ShellAgent:
    """Network-control agent reached through an exec prefix."""

    def __init__(self, prefix: Sequence[str] = ()) -> None:
        self._prefix = list(prefix)

    def run(self, argv: Sequence[str]) -> CommandResult:
        return run([*self._prefix, *argv])


class VtyshAgent:
    """Routing agent driving FRR through ``vtysh -c ...`` invocations."""

    def __init__(self, prefix: Sequence[str] = ()) -> None:
        self._prefix = list(prefix)

    def _vtysh(self, commands: Sequence[str]) -> CommandResult:
        argv: List[str] = [*self._prefix, VTYSH]
        for command in commands:
            argv.extend(["-c", command])
        return run(argv)

    def apply(self, statements: Sequence[Union[Statement, str]]) -> CommandResult:
        return self._vtysh([str(s) for s in statements])

    def show(self, command: str) -> CommandResult:
        return self._vtysh([command])

    def persist(self) -> CommandResult:
        return self._vtysh(["write memory"])


def exec_prefix(handle: AgentHandle, settings: ClusterSettings) -> List[str]:
    """Return the argv prefix that runs a command inside ``handle``."""

    if handle.kind is AgentKind.POD:
        prefix = [settings.kubectl]
        if settings.kubeconfig:
            prefix.extend(["--kubeconfig", settings.kubeconfig])
        prefix.extend(["exec", "-n", handle.namespace, handle.name])
        if handle.container:
            prefix.extend(["-c", handle.container])
        prefix.append("--")
        return prefix
    if handle.kind is AgentKind.CONTAINER:
        return [settings.crictl, "exec", handle.name]
    return []


class AgentFactory:
    """Build the agent pair for a resolved node."""

    def __init__(self, settings: ClusterSettings) -> None:
        self._settings = settings

    def __call__(self, target: NodeTarget) -> Tuple[NetworkAgent, RoutingAgent]:
        network = ShellAgent(exec_prefix(target.network_agent, self._settings))
        routing = VtyshAgent(exec_prefix(target.routing_agent, self._settings))
        return network, routing
