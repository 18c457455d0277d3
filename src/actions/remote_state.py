"""Remote state backend checks."""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional

import requests

from common import ActionResult, retry_call
from config import BuildConfig
from topology import Node

logger = logging.getLogger(__name__)

# Backends answer 404 for a state that has not been written yet
REACHABLE_STATUS = (200, 204, 404)


def check_backend(address: str, timeout: int = 10) -> ActionResult:
    """Make a lightweight GET against an HTTP remote-state address."""
    try:
        resp = requests.get(address, timeout=timeout)
    except requests.exceptions.ConnectionError as e:
        return ActionResult(success=False, message=f"Cannot connect to {address}: {e}", retryable=True)
    except requests.exceptions.Timeout:
        return ActionResult(success=False, message=f"Timeout connecting to {address}", retryable=True)
    except requests.exceptions.RequestException as e:
        return ActionResult(success=False, message=f"Error checking {address}: {e}")

    if resp.status_code in REACHABLE_STATUS:
        return ActionResult(success=True, message=f"Remote state reachable ({resp.status_code})")
    if resp.status_code in (401, 403):
        return ActionResult(success=False, message=f"Remote state rejected credentials ({resp.status_code})")
    return ActionResult(
        success=False,
        message=f"Unexpected remote state response: {resp.status_code} - {resp.text[:100]}",
        retryable=resp.status_code >= 500,
    )


@dataclass
class RemoteStateAction:
    """Verify a remote_state node's backend is reachable.

    The backend address doubles as the external id.
    """
    config: BuildConfig
    timeout: int = 10

    def apply(self, node: Node, context: dict, cancel: Optional[threading.Event] = None) -> ActionResult:
        start = time.time()
        address = node.attrs['address']
        logger.info(f"[remote_state {node.id}] Checking {address}")

        result = retry_call(
            lambda: check_backend(address, timeout=self.timeout),
            attempts=self.config.retry_attempts,
            backoff=self.config.retry_backoff,
            max_delay=self.config.retry_max_delay,
            deadline=time.monotonic() + self.config.apply_timeout,
            cancel=cancel,
            label=f'remote_state {node.id}',
        )
        result.duration = time.time() - start
        if result.success:
            result.external_id = address
        return result

    def destroy(self, node: Node, context: dict, cancel: Optional[threading.Event] = None) -> ActionResult:
        # State at the backend belongs to whoever wrote it
        return ActionResult(success=True, message=f"Released remote state {node.id}")
