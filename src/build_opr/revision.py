"""Revision records: persisted last-applied state of each topology node.

Each node owns one hidden .lfrevision JSON file under the build root. The
store maps node id + kind to that path, loads and atomically saves records,
and scans the tree for records whose nodes were pruned from the topology.

Layout under the build root:
    .env.lfrevision                                  root environment
    networks/vdi/.network.lfrevision                 own directory
    networks/vdi/hosts/dc/.host.lfrevision
    networks/vdi/hosts/dc/.eth0.connection.lfrevision    in parent directory
    networks/vdi/hosts/dc/.001-install.pstep.lfrevision  step number in name
"""

import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, Union

from build_opr.fingerprint import TAINT_CHECKSUM
from topology import Node, NodeKind

logger = logging.getLogger(__name__)

REVISION_SUFFIX = '.lfrevision'
ENV_REVISION_FILE = '.env.lfrevision'

# Kinds whose record lives in the parent's directory, with the file suffix used
PARENT_DIR_KINDS: dict[NodeKind, str] = {
    NodeKind.CONNECTION: 'connection',
    NodeKind.PROVISIONING_STEP: 'pstep',
}

MAX_CHECKSUM = 2 ** 64 - 1


class RevisionError(Exception):
    """Base class for revision record errors."""


class RevisionNotFoundError(RevisionError):
    """No record exists at the requested path."""


class CorruptRevisionError(RevisionError):
    """A record exists but cannot be parsed."""


class RevisionStoreError(RevisionError):
    """Filesystem failure reading or writing records."""


class LockContentionError(RevisionStoreError):
    """A record path stayed locked by another writer."""


class RevStatus(str, Enum):
    """Last-known status of a node's external resource."""

    UNKNOWN = "UNKNOWN"  # assumed destroyed or never seen
    STALE = "STALE"  # tainted, must be reapplied
    ACTIVE = "ACTIVE"  # applied successfully
    PLANNED = "PLANNED"  # no config change needed, not yet created
    FAILED = "FAILED"  # last apply or destroy attempt failed


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp, accepting the RFC 3339 'Z' suffix."""
    if isinstance(value, str) and value[-1:] in ('Z', 'z'):
        value = value[:-1] + '+00:00'
    return datetime.fromisoformat(value)


@dataclass
class Revision:
    """Last-applied state of one node.

    Attributes:
        id: Node id (path-derived, unique)
        type: Node kind
        status: Last-known status
        checksum: Fingerprint of the definition at last successful apply
        timestamp: Time of the last status transition
        external_id: Identifier assigned by the system realizing the resource
        vars: Values exported for descendants (e.g. ip)
        persisted: False for the default record of a never-seen node
    """
    id: str
    type: NodeKind
    status: RevStatus = RevStatus.UNKNOWN
    checksum: int = 0
    timestamp: datetime = field(default_factory=_now)
    external_id: str = ''
    vars: dict = field(default_factory=dict)
    persisted: bool = field(default=False, compare=False)

    @property
    def tainted(self) -> bool:
        return self.status == RevStatus.STALE

    def touch(self) -> 'Revision':
        """Mark active with a fresh timestamp."""
        self.status = RevStatus.ACTIVE
        self.timestamp = _now()
        return self

    def touch_with_id(self, external_id: str) -> 'Revision':
        """Touch and stamp the external resource identifier."""
        self.touch()
        self.external_id = external_id
        return self

    def taint(self) -> 'Revision':
        """Force the record stale so the next pass reapplies the node."""
        self.status = RevStatus.STALE
        self.timestamp = _now()
        self.checksum = TAINT_CHECKSUM
        return self

    def fail(self) -> 'Revision':
        """Mark failed; the checksum keeps its prior value."""
        self.status = RevStatus.FAILED
        self.timestamp = _now()
        return self

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'type': self.type.value,
            'status': self.status.value,
            'checksum': self.checksum,
            'timestamp': self.timestamp.isoformat(),
            'external_id': self.external_id,
            'vars': dict(self.vars),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True) + '\n'

    @classmethod
    def for_node(cls, node: Node) -> 'Revision':
        """Default UNKNOWN record for a node with no stored revision."""
        return cls(id=node.id, type=node.kind)

    @classmethod
    def from_dict(cls, data: Any) -> 'Revision':
        """Create a Revision from a parsed record.

        Raises:
            CorruptRevisionError: If required fields are missing or invalid
        """
        if not isinstance(data, dict):
            raise CorruptRevisionError("record is not a JSON object")
        try:
            rev_id = data['id']
            kind = NodeKind(data['type'])
            status = RevStatus(data['status'])
            checksum = data['checksum']
            timestamp = _parse_timestamp(data['timestamp'])
        except (KeyError, ValueError, TypeError) as e:
            raise CorruptRevisionError(f"invalid record field: {e}") from e

        if not isinstance(rev_id, str) or not rev_id:
            raise CorruptRevisionError("record id must be a non-empty string")
        if not isinstance(checksum, int) or isinstance(checksum, bool) or not 0 <= checksum <= MAX_CHECKSUM:
            raise CorruptRevisionError(f"checksum out of range: {checksum!r}")
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)

        external_id = data.get('external_id') or ''
        rev_vars = data.get('vars') or {}
        if not isinstance(external_id, str):
            raise CorruptRevisionError("external_id must be a string")
        if not isinstance(rev_vars, dict) or not all(
                isinstance(k, str) and isinstance(v, str) for k, v in rev_vars.items()):
            raise CorruptRevisionError("vars must map strings to strings")

        return cls(
            id=rev_id,
            type=kind,
            status=status,
            checksum=checksum,
            timestamp=timestamp,
            external_id=external_id,
            vars=dict(rev_vars),
        )


class RevisionStore:
    """Reads and writes revision records under a build root.

    The store exclusively owns the on-disk representation. Writes go to a
    temp file in the target directory and are renamed into place, so a killed
    build never leaves a half-written record.
    """

    def __init__(self, build_root: Path, store_retries: int = 3, retry_interval: float = 0.2):
        """Initialize the store.

        Args:
            build_root: Directory holding the record tree
            store_retries: Attempts for each filesystem operation
            retry_interval: Seconds between attempts
        """
        self.build_root = Path(build_root)
        self.store_retries = store_retries
        self.retry_interval = retry_interval

    def path_for(self, target: Union[Node, Revision]) -> Path:
        """Map a node (or record) id and kind to its record path."""
        kind = target.kind if isinstance(target, Node) else target.type
        if kind == NodeKind.ENVIRONMENT:
            return self.build_root / ENV_REVISION_FILE

        parts = target.id.split('/')[1:]
        if not parts or any(p in ('', '.', '..') for p in parts):
            raise ValueError(f"Invalid record id: {target.id!r}")

        if kind in PARENT_DIR_KINDS:
            return self.build_root.joinpath(*parts[:-2]) / f'.{parts[-1]}.{PARENT_DIR_KINDS[kind]}{REVISION_SUFFIX}'
        return self.build_root.joinpath(*parts) / f'.{kind.value}{REVISION_SUFFIX}'

    def _retrying(self, op: Callable, what: str):
        """Run a filesystem operation, retrying OSError a bounded number of times."""
        for attempt in range(1, self.store_retries + 1):
            try:
                return op()
            except (FileNotFoundError, RevisionError):
                raise
            except OSError as e:
                if attempt == self.store_retries:
                    raise RevisionStoreError(f"{what} failed after {attempt} attempt(s): {e}") from e
                logger.warning(f"{what} failed ({e}), retrying")
                time.sleep(self.retry_interval)
        return None

    def load(self, path: Path) -> Revision:
        """Load the record at path.

        Raises:
            RevisionNotFoundError: If no record exists
            CorruptRevisionError: If the record is malformed
            RevisionStoreError: On persistent I/O failure
        """
        try:
            raw = self._retrying(path.read_bytes, f"read {path}")
        except FileNotFoundError:
            raise RevisionNotFoundError(str(path)) from None

        try:
            data = json.loads(raw.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CorruptRevisionError(f"{path}: {e}") from e
        try:
            revision = Revision.from_dict(data)
        except CorruptRevisionError as e:
            raise CorruptRevisionError(f"{path}: {e}") from e
        revision.persisted = True
        return revision

    def lookup(self, node: Node) -> Revision:
        """Stored record for a node, or a default UNKNOWN record.

        A corrupt record is logged and treated as absent.
        """
        path = self.path_for(node)
        try:
            return self.load(path)
        except RevisionNotFoundError:
            return Revision.for_node(node)
        except CorruptRevisionError as e:
            logger.warning(f"Corrupt revision for {node.id}, treating as absent: {e}")
            return Revision.for_node(node)

    def save(self, revision: Revision) -> Path:
        """Atomically write a record.

        Returns:
            Path the record was written to

        Raises:
            RevisionStoreError: On persistent I/O failure
        """
        path = self.path_for(revision)
        payload = revision.to_json()

        def _write():
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f'{path.name}.', suffix='.tmp', dir=path.parent)
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise

        self._retrying(_write, f"write {path}")
        revision.persisted = True
        logger.debug(f"Saved revision {revision.id} ({revision.status.value}) to {path}")
        return path

    def delete(self, revision: Revision) -> None:
        """Remove a record and prune directories left empty."""
        path = self.path_for(revision)

        def _unlink():
            try:
                path.unlink()
            except FileNotFoundError:
                pass

        self._retrying(_unlink, f"delete {path}")
        revision.persisted = False
        self._prune(path.parent)
        logger.debug(f"Deleted revision {revision.id} at {path}")

    def _prune(self, directory: Path) -> None:
        root = self.build_root.resolve()
        current = directory
        while current.resolve() != root and root in current.resolve().parents:
            try:
                current.rmdir()
            except OSError:
                break
            current = current.parent

    def scan(self) -> Iterator[Revision]:
        """Yield every persisted record under the build root.

        Corrupt records and records stored at a path that does not match
        their id are logged and skipped.
        """
        if not self.build_root.exists():
            return
        for path in sorted(self.build_root.rglob(f'.*{REVISION_SUFFIX}')):
            try:
                revision = self.load(path)
            except (RevisionNotFoundError, CorruptRevisionError) as e:
                logger.warning(f"Skipping unreadable revision {path}: {e}")
                continue
            try:
                expected = self.path_for(revision)
            except ValueError as e:
                logger.warning(f"Skipping revision {path}: {e}")
                continue
            if expected != path:
                logger.warning(f"Skipping revision {path}: id {revision.id} belongs at {expected}")
                continue
            yield revision
