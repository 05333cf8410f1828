"""
Orchestration error taxonomy.

Every error is recoverable from the engine's point of view: the caller
(HTTP route, node, periodic pass) gets a typed exception, no state is
changed, and other tasks keep being processed.

Waiting/routing outcomes that are NOT errors are plain reason codes:
- REASON_NO_ELIGIBLE_NODE: task stays Scheduled until a node comes online
- REASON_BUDGET_EXCEEDED: gate routes the task to Pending Approval
"""
from __future__ import annotations

REASON_NO_ELIGIBLE_NODE = "no_eligible_node"
REASON_BUDGET_EXCEEDED = "budget exceeded"


class OrchestratorError(Exception):
    """Base class for engine errors."""
    pass


class NotFound(OrchestratorError):
    """Unknown task / node / account id."""
    pass


class InvalidTransition(OrchestratorError):
    """Requested status change is not an edge of the lifecycle graph."""

    def __init__(self, task_id: int, current: str | None, requested: str, detail: str | None = None):
        self.task_id = task_id
        self.current = current
        self.requested = requested
        msg = f"Task {task_id}: transition {current!r} -> {requested!r} not allowed"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)


class ClaimConflict(OrchestratorError):
    """Lost a concurrent compare-and-set, or the caller does not hold the claim."""
    pass


class NodeNotEligible(OrchestratorError):
    """Node is offline or its type/location does not match the task."""
    pass


class NodeInUse(OrchestratorError):
    """Node still holds an in-flight claim and cannot be deleted."""
    pass


class TaskNotEditable(OrchestratorError):
    """Edit attempted outside Pending / Scheduled / Rejected."""
    pass


class InvalidLineage(OrchestratorError):
    """Repost of a task that is itself a variant."""
    pass
