"""Build executor for topology reconciliation.

Classifies every node against its stored revision, destroys records whose
nodes were pruned from the topology (children first), then walks the build
graph applying CREATE/TOUCH/REBUILD through the provisioning collaborators
and committing the outcome back to the revision store.

Sibling subtrees run in parallel on a thread pool. The scheduler itself is a
single loop on the calling thread that submits a node once everything it
requires has committed, so workers never block on each other.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Mapping, Optional, Protocol, runtime_checkable

from build_opr.classify import AmbiguousClassificationError, RevMod, classify, node_checksum
from build_opr.graph import BuildGraph, deletion_order, is_descendant, lineage
from build_opr.locks import LOCK_DIR_NAME, PathLocks
from build_opr.revision import Revision, RevisionNotFoundError, RevisionStore, RevisionStoreError
from common import ActionResult
from config import BuildConfig
from reporting import BuildReport, NodeOutcome
from reporting.report import COMMITTED, FAILED, PENDING, PLANNED, SKIPPED, UNCHANGED
from topology import Node, NodeKind, Topology

logger = logging.getLogger(__name__)


@runtime_checkable
class Provisioner(Protocol):
    """Protocol for collaborators that realize and destroy nodes."""

    def apply(self, node: Node, context: dict, cancel: threading.Event) -> ActionResult:
        """Create or update the external resource for node."""

    def destroy(self, node: Node, context: dict, cancel: threading.Event) -> ActionResult:
        """Destroy the external resource for node."""


class BuildAbortedError(Exception):
    """The revision store failed mid-pass; carries the partial report."""

    def __init__(self, message: str, report: BuildReport):
        super().__init__(message)
        self.report = report


def stub_node(revision: Revision) -> Node:
    """Node stand-in for a record whose definition is gone from the topology."""
    return Node(
        kind=revision.type,
        name=revision.id.rsplit('/', 1)[-1],
        id=revision.id,
        vars=dict(revision.vars),
    )


@dataclass
class BuildExecutor:
    """Reconciles a topology against its revision records.

    Attributes:
        topology: Desired topology tree
        config: Build settings (build root, workers, lock parameters)
        provisioners: Collaborator per node kind
        store: Revision store (defaults to one rooted at config.build_root)
        locks: Per-path lock registry (defaults to <build root>/.locks)
    """
    topology: Topology
    config: BuildConfig
    provisioners: Mapping[NodeKind, Provisioner]
    store: Optional[RevisionStore] = None
    locks: Optional[PathLocks] = None
    graph: BuildGraph = field(default=None, init=False, repr=False)  # type: ignore[assignment]
    _cancel: threading.Event = field(default_factory=threading.Event, init=False, repr=False)
    _cancelled: bool = field(default=False, init=False, repr=False)
    _exports: dict = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        self.graph = BuildGraph(self.topology)
        if self.store is None:
            self.store = RevisionStore(self.config.build_root, store_retries=self.config.store_retries)
        if self.locks is None:
            self.locks = PathLocks(
                self.store.build_root / LOCK_DIR_NAME,
                attempts=self.config.lock_attempts,
                interval=self.config.lock_interval,
            )

    def cancel(self) -> None:
        """Request cancellation; safe to call from a signal handler or another thread."""
        logger.warning("Build cancellation requested")
        self._cancelled = True
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def apply(self) -> BuildReport:
        """Run a reconciliation pass.

        Returns:
            BuildReport with one outcome per node and pruned record

        Raises:
            BuildAbortedError: If the revision store failed; the error's
                report holds the outcomes recorded so far
        """
        report = BuildReport(self.topology.name)
        report.start()
        logger.info(f"Building {self.topology.name}: {len(self.graph)} nodes, "
                     f"{self.config.workers} workers, build root {self.store.build_root}")

        try:
            records = {r.id: r for r in self.store.scan()}
            self._exports = {rid: self._exports_of(r) for rid, r in records.items()}
            self._delete_pruned(records, report)
            self._apply_tree(report)
        except RevisionStoreError as e:
            logger.error(f"Build aborted: {e}")
            self._mark_pending(report)
            report.error = str(e)
            report.cancelled = self._cancelled
            report.finish()
            raise BuildAbortedError(str(e), report) from e

        self._mark_pending(report)
        report.cancelled = self._cancelled
        report.finish()
        logger.info(report.summary())
        return report

    def plan(self) -> BuildReport:
        """Classify every node without calling collaborators or writing records."""
        report = BuildReport(self.topology.name, dry_run=True)
        report.start()

        live_ids = {node.id for node in self.graph.create_order()}
        pruned = [r for r in self.store.scan() if r.id not in live_ids]
        for revision in deletion_order(pruned):
            report.record(NodeOutcome(revision.id, revision.type.value, RevMod.DELETE.value, PLANNED,
                                      external_id=revision.external_id))

        for node in self.graph.create_order():
            revision = self.store.lookup(node)
            try:
                mod = classify(node, revision)
            except AmbiguousClassificationError as e:
                report.record(NodeOutcome(node.id, node.kind.value, '', FAILED, message=str(e)))
                continue
            status = UNCHANGED if mod == RevMod.NONE else PLANNED
            report.record(NodeOutcome(node.id, node.kind.value, mod.value, status,
                                      external_id=revision.external_id))

        report.finish()
        return report

    def taint(self, node_id: str) -> Revision:
        """Taint the stored record of a node so the next pass reapplies it.

        Raises:
            KeyError: If node_id is neither in the topology nor in the store
            RevisionNotFoundError: If the node has never been applied
        """
        if node_id in self.graph:
            path = self.store.path_for(self.graph.get_node(node_id))
        else:
            stored = {r.id: r for r in self.store.scan()}
            if node_id not in stored:
                raise KeyError(node_id)
            path = self.store.path_for(stored[node_id])

        with self.locks.hold(path):
            revision = self.store.load(path)
            revision.taint()
            self.store.save(revision)
        logger.info(f"[taint] {node_id}")
        return revision

    # Deletion pass

    def _delete_pruned(self, records: dict[str, Revision], report: BuildReport) -> None:
        live_ids = {node.id for node in self.graph.create_order()}
        pruned = deletion_order([r for r in records.values() if r.id not in live_ids])
        if not pruned:
            return
        logger.info(f"Destroying {len(pruned)} pruned node(s)")

        blocked: list[str] = []
        for revision in pruned:
            if self._cancel.is_set():
                return
            kind = revision.type.value
            blocker = next((b for b in blocked if is_descendant(b, revision.id)), None)
            if blocker is not None:
                logger.warning(f"[delete] {revision.id} skipped: descendant {blocker} was not destroyed")
                report.record(NodeOutcome(revision.id, kind, RevMod.DELETE.value, SKIPPED,
                                          message=f"descendant {blocker} was not destroyed"))
                blocked.append(revision.id)
                continue

            outcome = self._delete_one(revision)
            report.record(outcome)
            if outcome.status != COMMITTED:
                blocked.append(revision.id)

    def _delete_one(self, revision: Revision) -> NodeOutcome:
        start = time.time()
        kind = revision.type.value
        path = self.store.path_for(revision)

        with self.locks.hold(path):
            try:
                current = self.store.load(path)
            except RevisionNotFoundError:
                logger.debug(f"[delete] {revision.id} already gone")
                return NodeOutcome(revision.id, kind, RevMod.DELETE.value, COMMITTED,
                                   duration=time.time() - start)
            mod = classify(None, current)

            logger.info(f"[{mod.value.lower()}] {current.id}")
            result = self._call(stub_node(current), 'destroy', self._context_for(current.id))
            if result.success and self._cancel.is_set():
                result = ActionResult(success=False, message='cancelled during destroy')

            if result.success:
                self.store.delete(current)
                self._exports.pop(current.id, None)
                return NodeOutcome(current.id, kind, mod.value, COMMITTED, message=result.message,
                                   duration=time.time() - start, external_id=current.external_id)

            logger.error(f"[{mod.value.lower()}] {current.id} failed: {result.message}")
            current.fail()
            self.store.save(current)
            return NodeOutcome(current.id, kind, mod.value, FAILED, message=result.message,
                               duration=time.time() - start, external_id=current.external_id)

    # Apply pass

    def _apply_tree(self, report: BuildReport) -> None:
        if self._cancel.is_set():
            return
        remaining = {node.id: set(self.graph.requires(node.id)) for node in self.graph.create_order()}
        settled: set[str] = set()
        store_error: Optional[RevisionStoreError] = None

        with ThreadPoolExecutor(max_workers=self.config.workers, thread_name_prefix='build') as pool:
            futures: dict[Future, Node] = {}

            def submit(node: Node) -> None:
                context = self._context_for(node.id)
                futures[pool.submit(self._apply_one, node, context)] = node

            submit(self.graph.root)
            while futures:
                finished, _ = wait(futures, return_when=FIRST_COMPLETED)
                for future in finished:
                    node = futures.pop(future)
                    if future.cancelled():
                        continue
                    try:
                        outcome, revision = future.result()
                    except RevisionStoreError as e:
                        if store_error is None:
                            store_error = e
                        self._cancel.set()
                        continue

                    if outcome.status == PENDING:
                        continue
                    report.record(outcome)
                    settled.add(node.id)

                    if outcome.status in (COMMITTED, UNCHANGED):
                        self._exports[node.id] = self._exports_of(revision)
                        for dep_id in self.graph.dependents(node.id):
                            remaining[dep_id].discard(node.id)
                            if not remaining[dep_id] and dep_id not in settled and not self._cancel.is_set():
                                submit(self.graph.get_node(dep_id))
                    elif not self._cancel.is_set():
                        self._skip_dependents(node, report, settled)

                if self._cancel.is_set():
                    for future in futures:
                        future.cancel()

        if store_error is not None:
            raise store_error

    def _skip_dependents(self, node: Node, report: BuildReport, settled: set[str]) -> None:
        for dep_id in self.graph.subtree_ids(node.id):
            if dep_id in settled:
                continue
            settled.add(dep_id)
            dep = self.graph.get_node(dep_id)
            logger.warning(f"[skip] {dep_id}: blocked by {node.id}")
            report.record(NodeOutcome(dep_id, dep.kind.value, '', SKIPPED, message=f"blocked by {node.id}"))

    def _apply_one(self, node: Node, context: dict) -> tuple[NodeOutcome, Optional[Revision]]:
        """Classify, apply and commit one node while holding its record lock.

        Runs on a worker thread.
        """
        start = time.time()
        kind = node.kind.value
        if self._cancel.is_set():
            return NodeOutcome(node.id, kind, '', PENDING), None

        with self.locks.hold(self.store.path_for(node)):
            revision = self.store.lookup(node)
            checksum = node_checksum(node)
            try:
                mod = classify(node, revision, checksum)
            except AmbiguousClassificationError as e:
                logger.error(f"[classify] {node.id}: {e}")
                return NodeOutcome(node.id, kind, '', FAILED, message=str(e),
                                   duration=time.time() - start), None

            if mod == RevMod.NONE:
                logger.debug(f"[none] {node.id} unchanged")
                return NodeOutcome(node.id, kind, mod.value, UNCHANGED,
                                   external_id=revision.external_id), revision

            logger.info(f"[{mod.value.lower()}] {node.id}")
            result = self._call(node, 'apply', context)
            if result.success and self._cancel.is_set():
                result = ActionResult(success=False, message='cancelled during apply',
                                      external_id=result.external_id)

            if not result.success:
                logger.error(f"[{mod.value.lower()}] {node.id} failed: {result.message}")
                if result.external_id:
                    # Collaborator already reported the resource it created
                    revision.external_id = result.external_id
                revision.fail()
                self.store.save(revision)
                return NodeOutcome(node.id, kind, mod.value, FAILED, message=result.message,
                                   duration=time.time() - start,
                                   external_id=revision.external_id), revision

            self._commit(node, revision, mod, checksum, result)
            self.store.save(revision)
            logger.info(f"[{mod.value.lower()}] {node.id} done ({time.time() - start:.1f}s)")
            return NodeOutcome(node.id, kind, mod.value, COMMITTED, message=result.message,
                               duration=time.time() - start,
                               external_id=revision.external_id), revision

    def _commit(self, node: Node, revision: Revision, mod: RevMod, checksum: int,
                result: ActionResult) -> None:
        """Fold a successful collaborator result into the node's record."""
        if mod == RevMod.CREATE:
            revision.touch_with_id(result.external_id or revision.external_id or node.id)
        elif result.external_id and result.external_id != revision.external_id:
            revision.touch_with_id(result.external_id)
        elif not revision.external_id:
            revision.touch_with_id(node.id)
        else:
            revision.touch()
        revision.checksum = checksum
        for key, value in (result.context_updates or {}).items():
            revision.vars[str(key)] = str(value)

    def _call(self, node: Node, operation: str, context: dict) -> ActionResult:
        provisioner = self.provisioners.get(node.kind)
        if provisioner is None:
            return ActionResult(success=False, message=f"No provisioner for kind '{node.kind.value}'")
        try:
            return getattr(provisioner, operation)(node, context, self._cancel)
        except Exception as e:
            logger.exception(f"[{operation}] {node.id}: collaborator raised")
            return ActionResult(success=False, message=f"{type(e).__name__}: {e}")

    # Context

    @staticmethod
    def _exports_of(revision: Optional[Revision]) -> dict:
        if revision is None:
            return {}
        exports = dict(revision.vars)
        exports['external_id'] = revision.external_id
        return exports

    def _context_for(self, node_id: str) -> dict:
        """Values recorded for the node's ancestors (and itself), keyed <id>_<var>."""
        context = {}
        for ancestor_id in lineage(node_id):
            for key, value in self._exports.get(ancestor_id, {}).items():
                context[f'{ancestor_id}_{key}'] = value
        return context

    def _mark_pending(self, report: BuildReport) -> None:
        """Report nodes that were never started (cancelled or aborted pass)."""
        seen = {outcome.id for outcome in report.outcomes}
        for node in self.graph.create_order():
            if node.id not in seen:
                report.record(NodeOutcome(node.id, node.kind.value, '', PENDING))
