"""Text rendering of topology trees for `build show`."""

from typing import Optional

from build_opr.graph import ordered_children
from build_opr.revision import Revision
from topology import Node

INDENT = ' ┃ '


def format_map(values: dict, prefix: str) -> list[str]:
    """One line per key, sorted."""
    return [f"┣ {prefix}: {key} = {values[key]}" for key in sorted(values)]


def describe(node: Node, revision: Optional[Revision] = None) -> list[str]:
    """Lines describing a single node (label first, then its properties)."""
    header = f"{node.label} [{node.id}]"
    if revision is not None and revision.persisted:
        header += f" {revision.status.value}"
        if revision.external_id:
            header += f" ({revision.external_id})"
    lines = [header]
    for key in sorted(node.attrs):
        value = node.attrs[key]
        if isinstance(value, str) and '\n' in value:
            value = f"<{len(value.splitlines())} lines>"
        lines.append(f"┣ attr: {key} = {value}")
    lines.extend(format_map(node.vars, 'var'))
    lines.extend(format_map(node.tags, 'tag'))
    if node.rebuild:
        lines.append("┣ rebuild: true")
    return lines


def format_tree(node: Node, max_depth: Optional[int] = None,
                revisions: Optional[dict[str, Revision]] = None) -> str:
    """Render node and its descendants, one indent level per depth.

    Args:
        node: Subtree root
        max_depth: Deepest level to render (0 renders only node)
        revisions: Stored records by node id, to annotate status
    """
    revisions = revisions or {}
    out: list[str] = []

    def _render(current: Node, depth: int) -> None:
        for line in describe(current, revisions.get(current.id)):
            out.append(INDENT * depth + line)
        if max_depth is not None and depth >= max_depth:
            return
        for child in ordered_children(current):
            _render(child, depth + 1)

    _render(node, 0)
    return '\n'.join(out) + '\n'
