"""Topology loading and validation for range builds.

A topology is a tree rooted at one environment. Every node has a kind from a
closed set, kind-specific attrs, free-form vars and tags, and children.

Example:
    environment:
      name: cdc
      children:
        - kind: network
          name: vdi
          attrs: {cidr: 10.0.10.0/24}
          children:
            - kind: host
              name: dc
              attrs: {os: windows, ip: 10.0.10.5}
              children:
                - kind: provisioning_step
                  name: install-ad
                  step: 1
                  attrs: {source: scripts/install-ad.ps1}
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

import yaml

from config import ConfigError

logger = logging.getLogger(__name__)


class TopologyError(ConfigError):
    """Invalid topology definition."""


class NodeKind(str, Enum):
    """Closed set of node kinds."""

    ENVIRONMENT = "environment"
    COMPETITION = "competition"
    TEAM = "team"
    NETWORK = "network"
    HOST = "host"
    CONNECTION = "connection"
    DNS_RECORD = "dns_record"
    PROVISIONING_STEP = "provisioning_step"
    AMI = "ami"
    REMOTE_STATE = "remote_state"
    SCRIPT = "script"
    COMMAND = "command"
    USER = "user"


# Path segment inserted between a parent id and a child name
KIND_SEGMENTS: dict[NodeKind, str] = {
    NodeKind.COMPETITION: 'competition',
    NodeKind.TEAM: 'teams',
    NodeKind.NETWORK: 'networks',
    NodeKind.HOST: 'hosts',
    NodeKind.CONNECTION: 'connections',
    NodeKind.DNS_RECORD: 'dns',
    NodeKind.PROVISIONING_STEP: 'steps',
    NodeKind.AMI: 'amis',
    NodeKind.REMOTE_STATE: 'remote_states',
    NodeKind.SCRIPT: 'scripts',
    NodeKind.COMMAND: 'commands',
    NodeKind.USER: 'users',
}

ALLOWED_CHILDREN: dict[NodeKind, frozenset] = {
    NodeKind.ENVIRONMENT: frozenset({
        NodeKind.COMPETITION, NodeKind.TEAM, NodeKind.NETWORK, NodeKind.DNS_RECORD,
        NodeKind.AMI, NodeKind.REMOTE_STATE, NodeKind.SCRIPT, NodeKind.COMMAND,
        NodeKind.USER,
    }),
    NodeKind.COMPETITION: frozenset({NodeKind.DNS_RECORD, NodeKind.REMOTE_STATE, NodeKind.USER}),
    NodeKind.TEAM: frozenset({NodeKind.NETWORK, NodeKind.USER}),
    NodeKind.NETWORK: frozenset({NodeKind.HOST, NodeKind.DNS_RECORD}),
    NodeKind.HOST: frozenset({
        NodeKind.CONNECTION, NodeKind.PROVISIONING_STEP, NodeKind.DNS_RECORD, NodeKind.USER,
    }),
}

REQUIRED_ATTRS: dict[NodeKind, tuple[str, ...]] = {
    NodeKind.NETWORK: ('cidr',),
    NodeKind.HOST: ('os',),
    NodeKind.DNS_RECORD: ('zone', 'name', 'value'),
    NodeKind.REMOTE_STATE: ('address',),
}

# Kinds applied in step order rather than in parallel
ORDERED_KINDS = frozenset({NodeKind.PROVISIONING_STEP})

# Provisioning step types (attr 'type'); restart steps carry no script
STEP_TYPES = ('shell', 'powershell', 'cmd', 'restart')

NAME_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.-]*$')
# Step vars are exported to the script as environment variables
ENV_NAME_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


def child_id(parent_id: str, kind: NodeKind, name: str, step: Optional[int] = None) -> str:
    """Build the path-derived identity of a child node.

    Ordered kinds embed their step number so siblings never collide.
    """
    leaf = f'{step:03d}-{name}' if kind in ORDERED_KINDS else name
    return f'{parent_id}/{KIND_SEGMENTS[kind]}/{leaf}'


def _string_map(value: Any, what: str, where: str) -> dict[str, str]:
    """Coerce a mapping of scalars to a str->str dict."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise TopologyError(f"{where}: {what} must be a mapping")
    result = {}
    for k, v in value.items():
        if isinstance(v, (dict, list)) or v is None:
            raise TopologyError(f"{where}: {what}.{k} must be a scalar value")
        if isinstance(v, bool):
            v = 'true' if v else 'false'
        result[str(k)] = str(v)
    return result


@dataclass(eq=False)
class Node:
    """A resource in the desired topology.

    Attributes:
        kind: Node kind (drives record path and allowed children)
        name: Name unique among same-kind siblings
        id: Path-derived identity (set when attached to a parent)
        attrs: Kind-specific attributes that affect the realized resource
        vars: Free-form string variables
        tags: Free-form string tags
        step: Step number for ordered kinds
        rebuild: Human-declared forced rebuild
        children: Child nodes
        parent: Parent node (None for the root)
    """
    kind: NodeKind
    name: str
    id: str = ''
    attrs: dict = field(default_factory=dict)
    vars: dict = field(default_factory=dict)
    tags: dict = field(default_factory=dict)
    step: Optional[int] = None
    rebuild: bool = False
    children: list['Node'] = field(default_factory=list)
    parent: Optional['Node'] = field(default=None, repr=False)

    def __post_init__(self):
        if not self.id:
            self.id = self.name

    @property
    def is_root(self) -> bool:
        return self.parent is None

    @property
    def is_ordered(self) -> bool:
        return self.kind in ORDERED_KINDS

    @property
    def label(self) -> str:
        if self.step is not None:
            return f"{self.kind.value} {self.name} (step {self.step})"
        return f"{self.kind.value} {self.name}"

    def add_child(self, child: 'Node') -> 'Node':
        """Attach a child and derive the ids of its whole subtree.

        A child may arrive with descendants already attached, whose ids were
        derived from the child's unattached id, so every id below is redone.
        """
        child.parent = self
        self.children.append(child)
        child._derive_ids()
        return child

    def _derive_ids(self) -> None:
        self.id = child_id(self.parent.id, self.kind, self.name, self.step)
        for child in self.children:
            child._derive_ids()

    def canonical(self) -> dict:
        """Canonical attribute set used for fingerprinting.

        Children, parent links and the rebuild flag are excluded so that a
        child's edit never changes its parent's fingerprint.
        """
        return {
            'kind': self.kind.value,
            'id': self.id,
            'attrs': self.attrs,
            'vars': self.vars,
            'tags': self.tags,
            'step': self.step,
        }

    def ancestors(self) -> list['Node']:
        """Return ancestors from the root down to the direct parent."""
        chain = []
        node = self.parent
        while node is not None:
            chain.append(node)
            node = node.parent
        return list(reversed(chain))

    def iter_tree(self) -> Iterator['Node']:
        """Yield this node and its descendants depth-first."""
        yield self
        for child in self.children:
            yield from child.iter_tree()

    @classmethod
    def from_dict(cls, data: dict, kind: Optional[NodeKind] = None,
                  base_dir: Optional[Path] = None, where: str = 'topology') -> 'Node':
        """Create a Node (and its subtree) from a dictionary.

        Args:
            data: Node definition
            kind: Kind override (used for the root environment)
            base_dir: Directory that step 'source' paths are relative to
            where: Location prefix for error messages

        Raises:
            TopologyError: If the definition is invalid
        """
        if not isinstance(data, dict):
            raise TopologyError(f"{where}: node must be a mapping")
        if 'name' not in data:
            raise TopologyError(f"{where}: node missing required field: name")
        name = str(data['name'])
        where = f"{where}/{name}"

        if kind is None:
            raw_kind = data.get('kind')
            try:
                kind = NodeKind(raw_kind)
            except ValueError:
                raise TopologyError(f"{where}: unknown node kind '{raw_kind}'") from None

        attrs = data.get('attrs') or {}
        if not isinstance(attrs, dict):
            raise TopologyError(f"{where}: attrs must be a mapping")
        attrs = dict(attrs)

        step = data.get('step')
        if kind in ORDERED_KINDS:
            if not isinstance(step, int) or isinstance(step, bool) or step < 1:
                raise TopologyError(f"{where}: {kind.value} requires a positive integer 'step'")
            _load_step_script(attrs, base_dir, where)
        elif step is not None:
            raise TopologyError(f"{where}: only ordered kinds take a 'step'")

        node = cls(
            kind=kind,
            name=name,
            attrs=attrs,
            vars=_string_map(data.get('vars'), 'vars', where),
            tags=_string_map(data.get('tags'), 'tags', where),
            step=step,
            rebuild=bool(data.get('rebuild', False)),
        )

        for i, child_data in enumerate(data.get('children') or []):
            child = cls.from_dict(child_data, base_dir=base_dir, where=f"{where}[{i}]")
            node.add_child(child)
        return node

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        d: dict[str, Any] = {'kind': self.kind.value, 'name': self.name}
        if self.attrs:
            d['attrs'] = dict(self.attrs)
        if self.vars:
            d['vars'] = dict(self.vars)
        if self.tags:
            d['tags'] = dict(self.tags)
        if self.step is not None:
            d['step'] = self.step
        if self.rebuild:
            d['rebuild'] = True
        if self.children:
            d['children'] = [c.to_dict() for c in self.children]
        return d


def _load_step_script(attrs: dict, base_dir: Optional[Path], where: str) -> None:
    """Inline a step's script file so its content is part of the fingerprint."""
    step_type = attrs.get('type')
    if step_type is not None and step_type not in STEP_TYPES:
        raise TopologyError(f"{where}: unknown step type '{step_type}' (expected one of {', '.join(STEP_TYPES)})")
    if step_type == 'restart' and 'script' not in attrs and 'source' not in attrs:
        return
    source = attrs.get('source')
    if source is not None and 'script' not in attrs:
        path = Path(source)
        if not path.is_absolute() and base_dir is not None:
            path = base_dir / path
        try:
            attrs['script'] = path.read_text(encoding='utf-8')
        except OSError as e:
            raise TopologyError(f"{where}: cannot read script source {path}: {e}") from e
    if not isinstance(attrs.get('script'), str):
        raise TopologyError(f"{where}: provisioning_step requires 'script' or 'source'")


@dataclass
class Topology:
    """Desired infrastructure tree rooted at one environment.

    Attributes:
        root: The environment node
        source_path: Path the topology was loaded from (for debugging)
    """
    root: Node
    source_path: Optional[Path] = None

    @property
    def name(self) -> str:
        return self.root.name

    def nodes(self) -> list[Node]:
        """All nodes, depth-first from the root."""
        return list(self.root.iter_tree())

    def get(self, node_id: str) -> Node:
        """Get a node by id.

        Raises:
            KeyError: If no node has that id
        """
        for node in self.root.iter_tree():
            if node.id == node_id:
                return node
        raise KeyError(node_id)

    def to_dict(self) -> dict:
        root = self.root.to_dict()
        root.pop('kind')
        return {'environment': root}

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Topology':
        """Create and validate a Topology from a dictionary.

        Raises:
            TopologyError: If the topology is invalid
        """
        if not isinstance(data, dict) or 'environment' not in data:
            raise TopologyError("Topology missing required field: environment")
        base_dir = source_path.parent if source_path else None
        root = Node.from_dict(data['environment'], kind=NodeKind.ENVIRONMENT, base_dir=base_dir)
        _validate_tree(root)
        return cls(root=root, source_path=source_path)

    @classmethod
    def from_json(cls, json_str: str) -> 'Topology':
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise TopologyError(f"Invalid topology JSON: {e}") from e
        return cls.from_dict(data)


def _validate_tree(root: Node) -> None:
    """Validate the structure of a topology tree.

    Checks for:
    - Invalid node names (they become path segments)
    - Children of a kind the parent does not allow
    - Missing required attrs
    - Step vars that are not environment variable names
    - Duplicate ids (same kind and name under one parent)
    - Duplicate step numbers under one parent

    Raises:
        TopologyError: If validation fails
    """
    seen: set[str] = set()
    for node in root.iter_tree():
        if not NAME_PATTERN.match(node.name):
            raise TopologyError(f"Invalid node name '{node.name}' at {node.id}")

        missing = [a for a in REQUIRED_ATTRS.get(node.kind, ()) if a not in node.attrs]
        if missing:
            raise TopologyError(f"{node.id}: {node.kind.value} missing required attr(s): {', '.join(missing)}")

        if node.kind == NodeKind.PROVISIONING_STEP:
            bad = sorted(k for k in node.vars if not ENV_NAME_PATTERN.match(k))
            if bad:
                raise TopologyError(f"{node.id}: step vars must be environment variable names: {', '.join(bad)}")

        if node.id in seen:
            raise TopologyError(f"Duplicate node id: '{node.id}'")
        seen.add(node.id)

        allowed = ALLOWED_CHILDREN.get(node.kind, frozenset())
        steps: set[int] = set()
        for child in node.children:
            if child.kind not in allowed:
                raise TopologyError(
                    f"{node.id}: {node.kind.value} cannot contain {child.kind.value} '{child.name}'"
                )
            if child.is_ordered:
                if child.step in steps:
                    raise TopologyError(f"{node.id}: duplicate step number {child.step}")
                steps.add(child.step)

    if root.kind != NodeKind.ENVIRONMENT:
        raise TopologyError("Topology root must be an environment")


class TopologyLoader:
    """Loads topologies from YAML files."""

    def load_file(self, path: Path) -> Topology:
        """Load topology from a YAML file.

        Raises:
            TopologyError: If file not found or invalid
        """
        if not path.exists():
            raise TopologyError(f"Topology file not found: {path}")

        try:
            with open(path, encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise TopologyError(f"Invalid YAML in topology {path}: {e}") from e

        if not isinstance(data, dict):
            raise TopologyError(f"Topology {path} must be a YAML object (dict)")

        topology = Topology.from_dict(data, source_path=path)
        logger.debug(f"Loaded topology '{topology.name}' ({len(topology.nodes())} nodes) from {path}")
        return topology


def load_topology(file_path: Optional[str] = None, json_str: Optional[str] = None) -> Topology:
    """Load topology from a file or an inline JSON string.

    Raises:
        TopologyError: If no source is given or the topology is invalid
    """
    if json_str:
        return Topology.from_json(json_str)
    if file_path:
        return TopologyLoader().load_file(Path(file_path))
    raise TopologyError("No topology source given")
