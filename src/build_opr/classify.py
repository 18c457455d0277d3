"""Per-node change classification.

Decision table (record = stored revision, node = live definition):

    record absent or corrupt, node present        -> CREATE
    record present, node absent                   -> DELETE
    node flagged for rebuild, record present      -> REBUILD
    record FAILED or STALE (tainted)              -> TOUCH
    checksum mismatch                             -> TOUCH
    checksum match                                -> NONE

Taint is detected by status, never by checksum value alone.
"""

from enum import Enum
from typing import Optional

from build_opr.fingerprint import fingerprint
from build_opr.revision import Revision, RevStatus
from topology import Node


class RevMod(str, Enum):
    """Modification a node needs in this pass."""

    CREATE = "CREATE"
    TOUCH = "TOUCH"
    DELETE = "DELETE"
    REBUILD = "REBUILD"
    NONE = "NONE"


class AmbiguousClassificationError(Exception):
    """A node and its record do not describe the same resource."""


def node_checksum(node: Node) -> int:
    """Fingerprint of a node's canonical definition."""
    return fingerprint(node.canonical())


def classify(node: Optional[Node], revision: Optional[Revision],
             checksum: Optional[int] = None) -> RevMod:
    """Decide the modification for one node.

    Args:
        node: Live node, or None if it was pruned from the topology
        revision: Stored record, or None / a non-persisted default if absent
        checksum: Precomputed fingerprint of node (computed if omitted)

    Raises:
        AmbiguousClassificationError: If there is neither a node nor a stored
            record, or the record belongs to a different id or kind
    """
    stored = revision is not None and revision.persisted

    if node is None:
        if not stored:
            raise AmbiguousClassificationError("no live node and no stored record")
        return RevMod.DELETE

    if stored and (revision.type != node.kind or revision.id != node.id):
        raise AmbiguousClassificationError(
            f"record {revision.id} ({revision.type.value}) does not match "
            f"node {node.id} ({node.kind.value})"
        )

    if not stored:
        return RevMod.CREATE
    if node.rebuild:
        return RevMod.REBUILD
    if revision.status in (RevStatus.FAILED, RevStatus.STALE):
        return RevMod.TOUCH

    if checksum is None:
        checksum = node_checksum(node)
    if revision.checksum == checksum:
        return RevMod.NONE
    return RevMod.TOUCH
