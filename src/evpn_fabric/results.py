"""Run-scoped types: fleet members, per-node outcomes and run results."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple


class AgentKind(str, Enum):
    POD = "pod"
    CONTAINER = "container"
    LOCAL = "local"


@dataclass(frozen=True)
class AgentHandle:
    """How to reach one node-local agent.

    ``pod`` handles are addressed through ``kubectl exec``; ``container``
    handles through ``crictl exec`` on the node itself; ``local`` handles run
    commands directly in the orchestrator's own namespace.
    """

    kind: AgentKind
    name: str = ""
    namespace: str = ""
    container: str = ""


@dataclass(frozen=True)
class NodeTarget:
    """A resolved fleet member.  Built fresh for every run."""

    name: str
    address: str
    network_agent: AgentHandle
    routing_agent: AgentHandle


@dataclass(frozen=True)
class StageFailure:
    stage: str
    cause: str
    detail: str = ""

    @classmethod
    def from_exception(cls, stage: str, exc: BaseException) -> "StageFailure":
        return cls(stage=stage, cause=type(exc).__name__, detail=str(exc))


@dataclass(frozen=True)
class NodeResult:
    """Outcome of one node's setup or teardown."""

    node: str
    succeeded: bool
    failures: Tuple[StageFailure, ...] = ()

    def error_types(self) -> List[str]:
        return [failure.cause for failure in self.failures]


@dataclass
class NodeResultBuilder:
    """Mutable accumulator a worker fills in before freezing its result."""

    node: str
    failures: List[StageFailure] = field(default_factory=list)

    def fail(self, stage: str, exc: BaseException) -> StageFailure:
        failure = StageFailure.from_exception(stage, exc)
        self.failures.append(failure)
        return failure

    def build(self) -> NodeResult:
        return NodeResult(
            node=self.node,
            succeeded=not self.failures,
            failures=tuple(self.failures),
        )


class RunState(str, Enum):
    NOT_STARTED = "NotStarted"
    RESOLVING = "Resolving"
    PER_NODE_SETUP = "PerNodeSetup"
    PER_NODE_TEARDOWN = "PerNodeTeardown"
    RECONCILING = "Reconciling"
    DONE = "Done"
    PARTIALLY_FAILED = "PartiallyFailed"


@dataclass(frozen=True)
class RunResult:
    state: RunState
    nodes: Tuple[NodeResult, ...]
    history: Tuple[RunState, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.state is RunState.DONE

    def result_for(self, node: str) -> Optional[NodeResult]:
        return next((r for r in self.nodes if r.node == node), None)
