"""Per-node progress counters for a pipeline run.

Nodes run strictly in order (delta detection → parse/normalize → persist →
classify). A node may only start or report work once every node before it
has completed.
"""

from __future__ import annotations

import logging

from bookimport.errors import InvalidTransition, NotFound
from bookimport.locks import KeyedLocks
from bookimport.models.run import NODE_NAMES, NodeProgress, NodeStatus, initial_nodes

logger = logging.getLogger(__name__)

_ACTIVE = {NodeStatus.RUNNING, NodeStatus.COMPLETED}
_FINISHED = {NodeStatus.COMPLETED, NodeStatus.FAILED}


def percent_complete(nodes: list[NodeProgress]) -> float:
    """Σ processed / Σ total over nodes that have been sized (total > 0)."""
    sized = [n for n in nodes if n.total > 0]
    total = sum(n.total for n in sized)
    if total == 0:
        return 0.0
    return round(100.0 * sum(n.processed for n in sized) / total, 2)


def check_ordering(run_id: str, nodes: list[NodeProgress]) -> None:
    """Reject a snapshot where node N+1 is active while node N is still pending."""
    if len(nodes) != len(NODE_NAMES):
        raise ValueError(f"Expected {len(NODE_NAMES)} nodes, got {len(nodes)}")
    for i in range(1, len(nodes)):
        if nodes[i - 1].status == NodeStatus.PENDING and nodes[i].status in _ACTIVE:
            raise InvalidTransition(
                "node", f"{run_id}#{i + 1}", nodes[i].status.value,
                f"accept (node {i} still pending) for",
            )


class NodeProgressTracker:
    def __init__(self) -> None:
        self._locks = KeyedLocks()
        self._runs: dict[str, list[NodeProgress]] = {}

    def register(self, run_id: str, nodes: list[NodeProgress] | None = None) -> None:
        with self._locks.hold(run_id):
            self._runs[run_id] = [n.model_copy() for n in (nodes or initial_nodes())]

    def is_registered(self, run_id: str) -> bool:
        return run_id in self._runs

    def forget(self, run_id: str) -> None:
        with self._locks.hold(run_id):
            self._runs.pop(run_id, None)

    def nodes(self, run_id: str) -> list[NodeProgress]:
        if run_id not in self._runs:
            raise NotFound("run", run_id)
        return [n.model_copy() for n in self._runs[run_id]]

    def percent_complete(self, run_id: str) -> float:
        return percent_complete(self.nodes(run_id))

    def _node(self, run_id: str, node_index: int) -> NodeProgress:
        if not 1 <= node_index <= len(NODE_NAMES):
            raise ValueError(f"node_index must be 1..{len(NODE_NAMES)}, got {node_index}")
        if run_id not in self._runs:
            raise NotFound("run", run_id)
        return self._runs[run_id][node_index - 1]

    def size(self, run_id: str, node_index: int, total: int) -> NodeProgress:
        """Set how many items a node will process once its input is known."""
        if total < 0:
            raise ValueError(f"total must be >= 0, got {total}")
        with self._locks.hold(run_id):
            node = self._node(run_id, node_index)
            if total < node.processed:
                raise ValueError(
                    f"total={total} below processed={node.processed} for node {node_index}"
                )
            node.total = total
            return node.model_copy()

    def advance(
        self,
        run_id: str,
        node_index: int,
        processed_delta: int = 0,
        status: NodeStatus | None = None,
    ) -> NodeProgress:
        if processed_delta < 0:
            raise ValueError(f"processed_delta must be >= 0, got {processed_delta}")
        with self._locks.hold(run_id):
            node = self._node(run_id, node_index)
            nodes = self._runs[run_id]

            starting = processed_delta > 0 or status in _ACTIVE
            if starting:
                for prev_index, prev in enumerate(nodes[: node_index - 1], start=1):
                    if prev.status != NodeStatus.COMPLETED:
                        raise InvalidTransition(
                            "node", f"{run_id}#{node_index}", node.status.value,
                            f"advance (node {prev_index} is {prev.status.value})",
                        )

            if node.status in _FINISHED and (processed_delta > 0 or status not in (None, node.status)):
                raise InvalidTransition("node", f"{run_id}#{node_index}", node.status.value, "advance")

            processed = node.processed + processed_delta
            if node.total > 0 and processed > node.total:
                raise ValueError(
                    f"processed={processed} exceeds total={node.total} for node {node_index}"
                )

            node.processed = processed
            if status is not None:
                node.status = status
            elif processed_delta > 0 and node.status == NodeStatus.PENDING:
                node.status = NodeStatus.RUNNING

            logger.debug(
                "Run %s node %d (%s): %d/%d %s",
                run_id, node_index, node.name, node.processed, node.total, node.status.value,
            )
            return node.model_copy()

    def apply_snapshot(self, run_id: str, nodes: list[NodeProgress]) -> list[NodeProgress]:
        """Replace the tracked counters with an executor-reported snapshot."""
        check_ordering(run_id, nodes)
        with self._locks.hold(run_id):
            self._runs[run_id] = [
                n.model_copy(update={"name": name}) for n, name in zip(nodes, NODE_NAMES)
            ]
            return self.nodes(run_id)
