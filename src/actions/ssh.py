"""SSH-related actions.

A provisioning step's attr 'type' picks how it runs on its host:

    shell       upload to /tmp/<leaf>.sh, run with sh (default off Windows)
    powershell  upload to C:/Windows/Temp/<leaf>.ps1, run with powershell
                (default on Windows)
    cmd         upload to C:/Windows/Temp/<leaf>.cmd, run by the cmd shell
    restart     restart the host and wait until it answers over SSH again

Step vars are exported to the script as environment variables, and the
uploaded script is removed from the host after it runs.
"""

import logging
import os
import shlex
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from common import ActionResult, retry_call, run_scp, run_ssh
from config import BuildConfig
from topology import Node, NodeKind

logger = logging.getLogger(__name__)

# ssh/scp exit with 255 when the connection itself failed
SSH_CONNECTION_ERROR = 255

RESTART_TIMEOUT = 300
RESTART_CHECK_TIMEOUT = 30
RESTART_CHECK_COMMAND = 'echo restarted.'
RESTART_CHECK_OUTPUT = 'restarted.'
WINDOWS_RESTART_COMMAND = 'shutdown /r /f /t 5 /c "range-driver restart"'
POSIX_RESTART_COMMAND = "nohup sh -c 'sleep 2; shutdown -r now' >/dev/null 2>&1 &"

WINDOWS_TEMP = 'C:/Windows/Temp'
WINDOWS_ONLY_TYPES = ('powershell', 'cmd')


def is_windows(host: Node) -> bool:
    return str(host.attrs.get('os', '')).lower().startswith('windows')


def step_type(step: Node, host: Node) -> str:
    """Declared step type, or the host OS default."""
    declared = step.attrs.get('type')
    if declared:
        return declared
    return 'powershell' if is_windows(host) else 'shell'


def _ps_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def flatten_env(step_vars: dict, kind: str) -> str:
    """Render vars as a command prefix that sets them, sorted by name."""
    parts = []
    for key in sorted(step_vars):
        value = str(step_vars[key])
        if kind == 'powershell':
            parts.append(f"$env:{key}={_ps_quote(value)}; ")
        elif kind == 'cmd':
            parts.append(f'set "{key}={value}" && ')
        else:
            parts.append(f"{key}={shlex.quote(value)} ")
    return ''.join(parts)


def _windows_path(path: str) -> str:
    return path.replace('/', '\\')


def remote_script(step: Node, host: Node) -> tuple[str, str]:
    """Upload path and run command for a step script on its host."""
    leaf = step.id.rsplit('/', 1)[-1]
    kind = step_type(step, host)
    env = flatten_env(step.vars, kind)

    if kind == 'powershell':
        upload_path = f'{WINDOWS_TEMP}/{leaf}.ps1'
        body = f"{env}& {_ps_quote(_windows_path(upload_path))}; exit $LASTEXITCODE"
        body = body.replace('"', '\\"')
        command = ('powershell -NoProfile -NonInteractive -ExecutionPolicy Bypass '
                   f'-Command "& {{ {body} }}"')
        return upload_path, command
    if kind == 'cmd':
        upload_path = f'{WINDOWS_TEMP}/{leaf}.cmd'
        return upload_path, f'{env}"{_windows_path(upload_path)}"'
    upload_path = f'/tmp/{leaf}.sh'
    return upload_path, f'{env}sh {shlex.quote(upload_path)}'


def remove_command(upload_path: str, host: Node) -> str:
    """Command that deletes an uploaded script from its host."""
    if is_windows(host):
        return f'del /f "{_windows_path(upload_path)}"'
    return f'rm -f {shlex.quote(upload_path)}'


def restart_command(step: Node, host: Node) -> str:
    return step.attrs.get('command') or (
        WINDOWS_RESTART_COMMAND if is_windows(host) else POSIX_RESTART_COMMAND)


def _pause(seconds: float, cancel: Optional[threading.Event]) -> bool:
    """Sleep, returning True early if cancelled."""
    if cancel is not None:
        return cancel.wait(seconds)
    time.sleep(seconds)
    return False


@dataclass
class ProvisionStepAction:
    """Run a provisioning step on its parent host over SSH.

    The host address comes from the context (<host id>_ip, exported when the
    host was applied), then the first connection with an 'ip' attr, then the
    host's own 'ip' attr.
    """
    config: BuildConfig
    timeout: int = 600
    restart_grace: float = 15.0
    restart_poll: float = 5.0

    def _host_address(self, host: Node, context: dict) -> Optional[str]:
        address = context.get(f'{host.id}_ip')
        if address:
            return address
        for child in host.children:
            if child.kind == NodeKind.CONNECTION and child.attrs.get('ip'):
                return str(child.attrs['ip'])
        return host.attrs.get('ip')

    def _retrying(self, label: str, fn, deadline: float,
                  cancel: Optional[threading.Event]) -> ActionResult:
        return retry_call(
            fn,
            attempts=self.config.retry_attempts,
            backoff=self.config.retry_backoff,
            max_delay=self.config.retry_max_delay,
            deadline=deadline,
            cancel=cancel,
            label=label,
        )

    def apply(self, node: Node, context: dict, cancel: Optional[threading.Event] = None) -> ActionResult:
        """Run the step: restart the host, or upload and run its script."""
        start = time.time()
        label = f'step {node.id}'

        host = node.parent
        if host is None or host.kind != NodeKind.HOST:
            return ActionResult(
                success=False,
                message=f"Step {node.id} is not attached to a host",
                duration=time.time() - start
            )

        kind = step_type(node, host)
        if kind in WINDOWS_ONLY_TYPES and not is_windows(host):
            return ActionResult(
                success=False,
                message=f"{kind} step {node.id} needs a Windows host",
                duration=time.time() - start
            )

        address = self._host_address(host, context)
        if not address:
            return ActionResult(
                success=False,
                message=f"No {host.id}_ip in context and no ip attr on {host.id}",
                duration=time.time() - start
            )

        user = host.attrs.get('user') or self.config.ssh_user
        if kind == 'restart':
            result = self._restart(node, host, address, user, label, cancel)
        else:
            result = self._run_script(node, host, address, user, label, cancel)
        result.duration = time.time() - start
        return result

    def _run_script(self, node: Node, host: Node, address: str, user: str, label: str,
                    cancel: Optional[threading.Event]) -> ActionResult:
        deadline = time.monotonic() + self.config.apply_timeout
        upload_path, command = remote_script(node, host)

        # Script is written locally so scp can carry it verbatim
        suffix = Path(upload_path).suffix
        with tempfile.NamedTemporaryFile(mode='w', suffix=suffix, delete=False,
                                         prefix='step-', encoding='utf-8') as f:
            f.write(node.attrs['script'])
            local_path = Path(f.name)

        try:
            def upload() -> ActionResult:
                rc, _, err = run_scp(local_path, address, upload_path, user=user,
                                     key=self.config.ssh_key, cancel=cancel)
                if rc != 0:
                    return ActionResult(success=False, message=f"Upload failed: {err.strip()}",
                                        retryable=rc in (SSH_CONNECTION_ERROR, -1))
                return ActionResult(success=True)

            logger.info(f"[{label}] Uploading script to {address}:{upload_path}")
            result = self._retrying(label, upload, deadline, cancel)
            if not result.success:
                return result

            def execute() -> ActionResult:
                rc, out, err = run_ssh(address, command, user=user, timeout=self.timeout,
                                       key=self.config.ssh_key, cancel=cancel)
                if rc != 0:
                    return ActionResult(success=False,
                                        message=f"Script exited {rc}: {(err or out).strip()[:300]}",
                                        retryable=rc == SSH_CONNECTION_ERROR)
                return ActionResult(success=True, message=out.strip()[:100])

            logger.info(f"[{label}] Running {command}")
            result = self._retrying(label, execute, deadline, cancel)
            self._cleanup(address, upload_path, host, user, label, deadline, cancel)
        finally:
            os.unlink(local_path)

        if not result.success:
            return result

        return ActionResult(
            success=True,
            message=f"Step {node.step} completed on {address}",
            external_id=f'{address}:{upload_path}',
        )

    def _cleanup(self, address: str, upload_path: str, host: Node, user: str, label: str,
                 deadline: float, cancel: Optional[threading.Event]) -> None:
        """Remove the uploaded script; a leftover file only earns a warning."""
        command = remove_command(upload_path, host)

        def remove() -> ActionResult:
            rc, _, err = run_ssh(address, command, user=user, timeout=RESTART_CHECK_TIMEOUT,
                                 key=self.config.ssh_key, cancel=cancel)
            if rc != 0:
                return ActionResult(success=False, message=err.strip(),
                                    retryable=rc == SSH_CONNECTION_ERROR)
            return ActionResult(success=True)

        result = self._retrying(label, remove, deadline, cancel)
        if not result.success:
            logger.warning(f"[{label}] Could not remove {address}:{upload_path}: {result.message}")

    def _restart(self, node: Node, host: Node, address: str, user: str, label: str,
                 cancel: Optional[threading.Event]) -> ActionResult:
        """Restart the host and wait for SSH to answer again."""
        command = restart_command(node, host)
        logger.info(f"[{label}] Restarting {address}")
        rc, out, err = run_ssh(address, command, user=user, timeout=RESTART_CHECK_TIMEOUT,
                               key=self.config.ssh_key, cancel=cancel)
        # 255 here usually means the host dropped the session while going down
        if rc not in (0, SSH_CONNECTION_ERROR):
            return ActionResult(success=False,
                                message=f"Restart command exited {rc}: {(err or out).strip()[:300]}")

        timeout = float(node.attrs.get('timeout', RESTART_TIMEOUT))
        wait_until = time.monotonic() + timeout
        logger.info(f"[{label}] Waiting up to {timeout:.0f}s for {address} to restart")
        if _pause(self.restart_grace, cancel):
            return ActionResult(success=False, message='cancelled while waiting for restart')

        while time.monotonic() < wait_until:
            rc, out, _ = run_ssh(address, RESTART_CHECK_COMMAND, user=user,
                                 timeout=RESTART_CHECK_TIMEOUT, key=self.config.ssh_key, cancel=cancel)
            if rc == 0 and RESTART_CHECK_OUTPUT in out:
                logger.info(f"[{label}] {address} is back")
                return ActionResult(success=True, message=f"Restarted {address}",
                                    external_id=f'{address}:restart')
            logger.debug(f"[{label}] {address} not up yet (rc={rc})")
            if _pause(self.restart_poll, cancel):
                return ActionResult(success=False, message='cancelled while waiting for restart')

        return ActionResult(success=False, message=f"Timeout waiting for {address} to restart")

    def destroy(self, node: Node, context: dict, cancel: Optional[threading.Event] = None) -> ActionResult:
        """Steps leave nothing to tear down; the host's own destroy removes it."""
        return ActionResult(success=True, message=f"Nothing to destroy for step {node.id}")
