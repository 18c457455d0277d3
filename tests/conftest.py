"""Shared pytest fixtures for range-driver tests."""

import sys
import threading
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import ActionResult
from config import BuildConfig
from topology import NodeKind, Topology


def topology_dict(step2_script='Add-Computer -DomainName cdc.local', include_ws=True):
    """Reference topology: one network with a Windows DC and a Linux workstation.

    Node ids:
        cdc
        cdc/dns/www
        cdc/networks/vdi
        cdc/networks/vdi/hosts/dc
        cdc/networks/vdi/hosts/dc/connections/eth0
        cdc/networks/vdi/hosts/dc/steps/001-install-ad
        cdc/networks/vdi/hosts/dc/steps/002-join
        cdc/networks/vdi/hosts/ws
        cdc/networks/vdi/hosts/ws/steps/001-packages
        cdc/networks/vdi/hosts/ws/steps/002-harden
    """
    hosts = [
        {
            'kind': 'host',
            'name': 'dc',
            'attrs': {'os': 'windows-2019', 'size': 'medium'},
            'children': [
                {'kind': 'connection', 'name': 'eth0', 'attrs': {'ip': '10.0.10.5'}},
                {'kind': 'provisioning_step', 'name': 'install-ad', 'step': 1,
                 'attrs': {'script': 'Install-ADDSForest -DomainName cdc.local'}},
                {'kind': 'provisioning_step', 'name': 'join', 'step': 2,
                 'attrs': {'script': step2_script}},
            ],
        },
    ]
    if include_ws:
        hosts.append({
            'kind': 'host',
            'name': 'ws',
            'attrs': {'os': 'ubuntu-22.04', 'ip': '10.0.10.20'},
            'children': [
                {'kind': 'provisioning_step', 'name': 'packages', 'step': 1,
                 'attrs': {'script': 'apt-get install -y nginx'}},
                {'kind': 'provisioning_step', 'name': 'harden', 'step': 2,
                 'attrs': {'script': 'ufw enable'}},
            ],
        })

    return {
        'environment': {
            'name': 'cdc',
            'vars': {'competition': 'cdc-2026'},
            'children': [
                {
                    'kind': 'network',
                    'name': 'vdi',
                    'attrs': {'cidr': '10.0.10.0/24'},
                    'children': hosts,
                },
                {'kind': 'dns_record', 'name': 'www',
                 'attrs': {'zone': 'cdc.local', 'name': 'www', 'value': '10.0.10.20'}},
            ],
        },
    }


class FakeProvisioner:
    """Collaborator double that records calls.

    Args:
        fail: Node ids whose apply returns a failure
        fail_destroy: Node ids whose destroy returns a failure
        raise_on: Node ids whose apply raises
        outputs: Node id -> context_updates returned on apply
        on_apply: Callback invoked with each node before it is applied
    """

    def __init__(self, fail=(), fail_destroy=(), raise_on=(), outputs=None, on_apply=None):
        self.fail = set(fail)
        self.fail_destroy = set(fail_destroy)
        self.raise_on = set(raise_on)
        self.outputs = outputs or {}
        self.on_apply = on_apply
        self.applied = []
        self.destroyed = []
        self.contexts = {}
        self._lock = threading.Lock()

    def apply(self, node, context, cancel):
        with self._lock:
            self.applied.append(node.id)
            self.contexts[node.id] = dict(context)
        if self.on_apply is not None:
            self.on_apply(node)
        if node.id in self.raise_on:
            raise RuntimeError(f"boom {node.id}")
        if node.id in self.fail:
            return ActionResult(success=False, message=f"apply failed for {node.id}")
        return ActionResult(success=True, message='ok', external_id=f'ext-{node.id}',
                            context_updates=self.outputs.get(node.id, {}))

    def destroy(self, node, context, cancel):
        with self._lock:
            self.destroyed.append(node.id)
            self.contexts[node.id] = dict(context)
        if node.id in self.fail_destroy:
            return ActionResult(success=False, message=f"destroy failed for {node.id}")
        return ActionResult(success=True, message='destroyed')


def all_kinds(provisioner):
    """Map every node kind to one collaborator."""
    return {kind: provisioner for kind in NodeKind}


@pytest.fixture
def topology():
    """Reference topology (see topology_dict)."""
    return Topology.from_dict(topology_dict())


@pytest.fixture
def build_config(tmp_path):
    """BuildConfig rooted in a temp dir with fast lock and retry timings."""
    return BuildConfig(
        build_root=tmp_path / 'build',
        workers=4,
        retry_backoff=0.0,
        lock_attempts=2,
        lock_interval=0.01,
        tofu_dir=tmp_path / 'tofu',
    )


@pytest.fixture
def fake():
    """Recording collaborator that succeeds for every node."""
    return FakeProvisioner()
