"""Provisioning collaborators, one per node kind."""

from actions.record import RecordAction
from actions.remote_state import RemoteStateAction
from actions.ssh import ProvisionStepAction
from actions.tofu import TofuResourceAction
from config import BuildConfig
from topology import NodeKind

TOFU_KINDS = (NodeKind.NETWORK, NodeKind.HOST, NodeKind.DNS_RECORD, NodeKind.AMI)
RECORD_KINDS = (
    NodeKind.ENVIRONMENT,
    NodeKind.COMPETITION,
    NodeKind.TEAM,
    NodeKind.CONNECTION,
    NodeKind.SCRIPT,
    NodeKind.COMMAND,
    NodeKind.USER,
)


def default_provisioners(config: BuildConfig) -> dict:
    """Map every node kind to its collaborator."""
    tofu = TofuResourceAction(config=config)
    record = RecordAction()
    provisioners = {kind: tofu for kind in TOFU_KINDS}
    provisioners.update({kind: record for kind in RECORD_KINDS})
    provisioners[NodeKind.PROVISIONING_STEP] = ProvisionStepAction(config=config)
    provisioners[NodeKind.REMOTE_STATE] = RemoteStateAction(config=config)
    return provisioners


__all__ = [
    'ProvisionStepAction',
    'RecordAction',
    'RemoteStateAction',
    'TofuResourceAction',
    'default_provisioners',
]
