"""Bookkeeping action for node kinds with no external resource of their own."""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from common import ActionResult
from topology import Node, NodeKind

logger = logging.getLogger(__name__)


@dataclass
class RecordAction:
    """Records the node as realized without calling out.

    Environments, competitions, teams, scripts, commands and users are
    grouping or descriptive nodes; their children carry the real work. A
    connection reports its 'ip' attr so the steps on its host can reach it.
    """

    def apply(self, node: Node, context: dict, cancel: Optional[threading.Event] = None) -> ActionResult:
        external_id = node.id
        context_updates = {}
        if node.kind == NodeKind.CONNECTION and node.attrs.get('ip'):
            external_id = str(node.attrs['ip'])
            context_updates['ip'] = external_id
        logger.debug(f"[record] {node.id} -> {external_id}")
        return ActionResult(
            success=True,
            message=f"Recorded {node.kind.value} {node.name}",
            external_id=external_id,
            context_updates=context_updates,
        )

    def destroy(self, node: Node, context: dict, cancel: Optional[threading.Event] = None) -> ActionResult:
        return ActionResult(success=True, message=f"Released {node.kind.value} {node.name}")
