"""OpenTofu actions for infrastructure node kinds."""

import json
import logging
import os
import re
import shutil
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from build_opr.graph import parent_id
from common import ActionResult, retry_call, run_command
from config import BuildConfig
from topology import Node

logger = logging.getLogger(__name__)

STATE_DIR_NAME = '.states'
TFVARS_FILENAME = 'terraform.tfvars.json'

# Failures worth another attempt (provider API hiccups, state lock races)
TRANSIENT_ERRORS = re.compile(
    r'timeout|timed out|connection reset|connection refused|rate limit|too many requests|'
    r'error acquiring the state lock|temporarily unavailable',
    re.IGNORECASE,
)


def _transient(rc: int, err: str) -> bool:
    return rc == -1 or bool(TRANSIENT_ERRORS.search(err or ''))


def build_tfvars(node: Node, context: dict) -> dict:
    """Variables handed to a kind's tofu module.

    Node attrs are passed as top-level variables; vars and tags as maps. The
    parent's external id is exposed as parent_id so a host can be placed in
    the network that was created for it.
    """
    tfvars = dict(node.attrs)
    tfvars['name'] = node.name
    tfvars['node_id'] = node.id
    tfvars['vars'] = dict(node.vars)
    tfvars['tags'] = dict(node.tags)
    parent = parent_id(node.id)
    if parent is not None:
        tfvars['parent_id'] = context.get(f'{parent}_external_id', '')
    return tfvars


def parse_outputs(stdout: str) -> tuple[str, dict]:
    """Split `tofu output -json` into (external id, scalar context updates).

    Raises:
        ValueError: If the output is not a JSON object
    """
    data = json.loads(stdout or '{}')
    if not isinstance(data, dict):
        raise ValueError("tofu output is not a JSON object")
    external_id = ''
    updates = {}
    for key, output in data.items():
        value = output.get('value') if isinstance(output, dict) else output
        if key == 'id':
            external_id = '' if value is None else str(value)
        elif isinstance(value, (str, int, float, bool)):
            updates[key] = str(value)
    return external_id, updates


@dataclass
class TofuResourceAction:
    """Apply or destroy a node through the tofu module for its kind.

    Each node gets its own state directory under <build root>/.states/<id>,
    holding the tfstate, the generated tfvars and TF_DATA_DIR. The module is
    read from <tofu_dir>/<kind>.
    """
    config: BuildConfig
    timeout_init: int = 120

    def module_dir(self, node: Node) -> Path:
        return self.config.tofu_dir / node.kind.value

    def state_dir(self, node: Node) -> Path:
        return self.config.build_root / STATE_DIR_NAME / node.id

    def _env(self, state_dir: Path) -> dict:
        # TF_DATA_DIR must not hold terraform.tfstate, so it gets a subdirectory
        data_dir = state_dir / 'data'
        data_dir.mkdir(parents=True, exist_ok=True)
        return {**os.environ, 'TF_DATA_DIR': str(data_dir)}

    def _tofu(self, label: str, cmd: list[str], cwd: Path, env: dict, timeout: int,
              deadline: float, cancel: Optional[threading.Event]) -> ActionResult:
        """Run one tofu command with retries on transient failures."""
        def attempt() -> ActionResult:
            rc, out, err = run_command(cmd, cwd=cwd, timeout=timeout, env=env, cancel=cancel)
            if rc != 0:
                return ActionResult(
                    success=False,
                    message=f"{' '.join(cmd[:2])} failed: {err.strip() or out.strip()}",
                    retryable=_transient(rc, err),
                )
            return ActionResult(success=True, message=out)

        return retry_call(
            attempt,
            attempts=self.config.retry_attempts,
            backoff=self.config.retry_backoff,
            max_delay=self.config.retry_max_delay,
            deadline=deadline,
            cancel=cancel,
            label=label,
        )

    def apply(self, node: Node, context: dict, cancel: Optional[threading.Event] = None) -> ActionResult:
        """Run tofu init + apply, then read the module outputs."""
        start = time.time()
        deadline = time.monotonic() + self.config.apply_timeout
        label = f'tofu {node.id}'

        module_dir = self.module_dir(node)
        if not module_dir.exists():
            return ActionResult(
                success=False,
                message=f"Tofu module not found: {module_dir}",
                duration=time.time() - start
            )

        state_dir = self.state_dir(node)
        env = self._env(state_dir)
        state_file = state_dir / 'terraform.tfstate'
        tfvars_path = state_dir / TFVARS_FILENAME
        with open(tfvars_path, 'w', encoding='utf-8') as f:
            json.dump(build_tfvars(node, context), f, indent=2, sort_keys=True)
        logger.debug(f"[{label}] Wrote {tfvars_path}")

        logger.info(f"[{label}] Running tofu init...")
        result = self._tofu(label, ['tofu', 'init', '-input=false'], module_dir, env,
                            self.timeout_init, deadline, cancel)
        if not result.success:
            result.duration = time.time() - start
            return result

        logger.info(f"[{label}] Running tofu apply (state: {state_file})...")
        cmd = ['tofu', 'apply', '-auto-approve', '-input=false',
               f'-state={state_file}', f'-var-file={tfvars_path}']
        result = self._tofu(label, cmd, module_dir, env, self.config.apply_timeout, deadline, cancel)
        if not result.success:
            result.duration = time.time() - start
            return result

        rc, out, err = run_command(['tofu', 'output', '-json', f'-state={state_file}'],
                                   cwd=module_dir, timeout=60, env=env, cancel=cancel)
        if rc != 0:
            return ActionResult(
                success=False,
                message=f"tofu output failed: {err.strip()}",
                duration=time.time() - start
            )
        try:
            external_id, context_updates = parse_outputs(out)
        except ValueError as e:
            return ActionResult(
                success=False,
                message=f"Cannot parse tofu output: {e}",
                duration=time.time() - start
            )

        return ActionResult(
            success=True,
            message=f"Tofu apply completed for {node.id}",
            duration=time.time() - start,
            external_id=external_id,
            context_updates=context_updates
        )

    def destroy(self, node: Node, context: dict, cancel: Optional[threading.Event] = None) -> ActionResult:
        """Run tofu destroy against the node's state, then drop the state dir."""
        start = time.time()
        deadline = time.monotonic() + self.config.apply_timeout
        label = f'tofu {node.id}'

        state_dir = self.state_dir(node)
        state_file = state_dir / 'terraform.tfstate'
        if not state_file.exists():
            logger.info(f"[{label}] No state, nothing to destroy")
            return ActionResult(success=True, message=f"No tofu state for {node.id}",
                                duration=time.time() - start)

        module_dir = self.module_dir(node)
        if not module_dir.exists():
            return ActionResult(
                success=False,
                message=f"Tofu module not found: {module_dir}",
                duration=time.time() - start
            )

        env = self._env(state_dir)
        cmd = ['tofu', 'destroy', '-auto-approve', '-input=false', f'-state={state_file}']
        tfvars_path = state_dir / TFVARS_FILENAME
        if tfvars_path.exists():
            cmd.append(f'-var-file={tfvars_path}')

        logger.info(f"[{label}] Running tofu init...")
        result = self._tofu(label, ['tofu', 'init', '-input=false'], module_dir, env,
                            self.timeout_init, deadline, cancel)
        if result.success:
            logger.info(f"[{label}] Running tofu destroy...")
            result = self._tofu(label, cmd, module_dir, env, self.config.apply_timeout, deadline, cancel)
        if not result.success:
            result.duration = time.time() - start
            return result

        shutil.rmtree(state_dir, ignore_errors=True)
        return ActionResult(
            success=True,
            message=f"Tofu destroy completed for {node.id}",
            duration=time.time() - start
        )
