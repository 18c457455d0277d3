"""Dependency graph for topology builds.

Computes traversal orderings for apply (parents first, steps in step order)
and for deletion of pruned records (children first), and exposes a read-only
walk used by the tree formatter.
"""

import logging
from collections import deque
from typing import Iterator, Optional

from build_opr.revision import Revision
from topology import Node, Topology

logger = logging.getLogger(__name__)


def ordered_children(node: Node) -> list[Node]:
    """Children with unordered kinds first, then ordered kinds by step number."""
    unordered = [c for c in node.children if not c.is_ordered]
    ordered = sorted((c for c in node.children if c.is_ordered), key=lambda c: c.step)
    return unordered + ordered


class BuildGraph:
    """Execution graph over a topology tree.

    A node depends on its parent. An ordered node (provisioning step) also
    depends on the preceding ordered sibling, so steps run one at a time in
    ascending step order. Everything else under a parent may run in parallel.
    """

    def __init__(self, topology: Topology):
        self.topology = topology
        self._nodes: dict[str, Node] = {}
        self._depth: dict[str, int] = {}
        self._requires: dict[str, list[str]] = {}
        self._dependents: dict[str, list[str]] = {}
        self._build_graph()

    def _build_graph(self) -> None:
        queue: deque[Node] = deque([self.topology.root])
        self._depth[self.topology.root.id] = 0
        while queue:
            node = queue.popleft()
            self._nodes[node.id] = node
            self._requires.setdefault(node.id, [])
            self._dependents.setdefault(node.id, [])

            previous_step: Optional[Node] = None
            for child in ordered_children(node):
                self._depth[child.id] = self._depth[node.id] + 1
                requires = [node.id]
                if child.is_ordered:
                    if previous_step is not None:
                        requires.append(previous_step.id)
                    previous_step = child
                self._requires[child.id] = requires
                for dep in requires:
                    self._dependents.setdefault(dep, []).append(child.id)
                queue.append(child)

    @property
    def root(self) -> Node:
        return self.topology.root

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def get_node(self, node_id: str) -> Node:
        """Get a node by id.

        Raises:
            KeyError: If node id not found
        """
        return self._nodes[node_id]

    def depth(self, node_id: str) -> int:
        return self._depth[node_id]

    def requires(self, node_id: str) -> list[str]:
        """Ids of nodes that must commit before this one is applied."""
        return list(self._requires[node_id])

    def dependents(self, node_id: str) -> list[str]:
        """Ids of nodes that directly require this one."""
        return list(self._dependents[node_id])

    def subtree_ids(self, node_id: str) -> list[str]:
        """Ids of every node reachable through dependents (excluding node_id)."""
        seen: list[str] = []
        queue: deque[str] = deque(self._dependents[node_id])
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.append(current)
            queue.extend(self._dependents[current])
        return seen

    def create_order(self) -> list[Node]:
        """Return nodes in apply order (parents before children, BFS)."""
        ordered: list[Node] = []
        queue: deque[Node] = deque([self.root])
        while queue:
            node = queue.popleft()
            ordered.append(node)
            queue.extend(ordered_children(node))
        return ordered

    def walk(self) -> Iterator[tuple[int, Node]]:
        """Yield (depth, node) depth-first for read-only introspection."""
        stack: list[tuple[int, Node]] = [(0, self.root)]
        while stack:
            depth, node = stack.pop()
            yield depth, node
            for child in reversed(ordered_children(node)):
                stack.append((depth + 1, child))


def _id_depth(revision: Revision) -> int:
    return revision.id.count('/')


def deletion_order(revisions: list[Revision]) -> list[Revision]:
    """Order pruned records children first (deepest id first)."""
    return sorted(revisions, key=lambda r: (-_id_depth(r), r.id))


def is_descendant(candidate_id: str, ancestor_id: str) -> bool:
    """True if candidate_id lies below ancestor_id in the id hierarchy."""
    return candidate_id.startswith(ancestor_id + '/')


def lineage(node_id: str) -> list[str]:
    """Ids from the root environment down to node_id (inclusive).

    Every level of an id adds a kind segment and a name, so ancestors sit at
    every other path component.
    """
    parts = node_id.split('/')
    return ['/'.join(parts[:i]) for i in range(1, len(parts) + 1, 2)]


def parent_id(node_id: str) -> Optional[str]:
    """Id of the node's parent, or None for the root environment."""
    chain = lineage(node_id)
    return chain[-2] if len(chain) > 1 else None
