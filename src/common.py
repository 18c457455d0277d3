"""Common utilities and types for infrastructure automation."""

import logging
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)

# How often blocking helpers wake up to check for cancellation
POLL_INTERVAL = 0.5

SSH_OPTS = ['-o', 'StrictHostKeyChecking=no', '-o', 'UserKnownHostsFile=/dev/null', '-o', 'LogLevel=ERROR']


@dataclass
class ActionResult:
    """Result returned by a provisioning collaborator.

    Attributes:
        success: True if the node was realized (or destroyed)
        message: Human-readable outcome
        duration: Wall-clock seconds spent
        external_id: Identifier assigned by the external system, if any
        context_updates: Values exported for descendant nodes (e.g. {'ip': ...})
        retryable: True if the failure is transient and may be retried
    """
    success: bool
    message: str = ''
    duration: float = 0.0
    external_id: str = ''
    context_updates: dict = field(default_factory=dict)
    retryable: bool = False


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 600,
    capture: bool = True,
    env: Optional[dict] = None,
    cancel: Optional[threading.Event] = None,
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr).

    The process is killed when the timeout expires or the cancel event is set.
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    pipe = subprocess.PIPE if capture else None
    try:
        proc = subprocess.Popen(cmd, cwd=cwd, stdout=pipe, stderr=pipe, text=True, env=env)
    except OSError as e:
        return -1, '', str(e)

    deadline = time.monotonic() + timeout
    while True:
        try:
            out, err = proc.communicate(timeout=POLL_INTERVAL)
            return proc.returncode, out or '', err or ''
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.is_set():
                proc.kill()
                proc.communicate()
                return -1, '', 'Command cancelled'
            if time.monotonic() >= deadline:
                proc.kill()
                proc.communicate()
                return -1, '', f'Command timed out after {timeout}s'


def _ssh_base(key: Optional[Path], timeout: int) -> list[str]:
    opts = list(SSH_OPTS) + ['-o', f'ConnectTimeout={min(timeout, 30)}']
    if key:
        opts += ['-i', str(key)]
    return opts


def run_ssh(
    host: str,
    command: str,
    user: str = 'root',
    timeout: int = 60,
    key: Optional[Path] = None,
    cancel: Optional[threading.Event] = None,
) -> tuple[int, str, str]:
    """Run command over SSH."""
    cmd = ['ssh'] + _ssh_base(key, timeout) + [f'{user}@{host}', command]
    return run_command(cmd, timeout=timeout, cancel=cancel)


def run_scp(
    local_path: Path,
    host: str,
    remote_path: str,
    user: str = 'root',
    timeout: int = 120,
    key: Optional[Path] = None,
    cancel: Optional[threading.Event] = None,
) -> tuple[int, str, str]:
    """Copy a local file to a remote host."""
    cmd = ['scp'] + _ssh_base(key, timeout) + [str(local_path), f'{user}@{host}:{remote_path}']
    return run_command(cmd, timeout=timeout, cancel=cancel)


def retry_call(
    fn: Callable[[], ActionResult],
    attempts: int = 3,
    backoff: float = 2.0,
    max_delay: float = 30.0,
    deadline: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
    retry_on: tuple = (),
    label: str = '',
) -> ActionResult:
    """Call fn until it succeeds or a non-transient failure is returned.

    A result is retried when it has retryable=True, or when fn raises one of
    the exception types in retry_on. Delays grow exponentially from backoff,
    capped at max_delay. deadline is a time.monotonic() value after which no
    new attempt is started. A set cancel event stops retrying immediately.

    Returns:
        The last ActionResult (a failure if every attempt failed)
    """
    start = time.time()
    result = ActionResult(success=False, message='not attempted')
    for attempt in range(1, attempts + 1):
        if cancel is not None and cancel.is_set():
            return ActionResult(success=False, message='cancelled', duration=time.time() - start)
        try:
            result = fn()
        except retry_on as e:
            result = ActionResult(success=False, message=str(e), retryable=True)

        if result.success or not result.retryable or attempt == attempts:
            break

        delay = min(backoff * (2 ** (attempt - 1)), max_delay)
        if deadline is not None and time.monotonic() + delay >= deadline:
            logger.warning(f"[{label}] deadline reached after {attempt} attempt(s): {result.message}")
            break
        logger.info(f"[{label}] attempt {attempt}/{attempts} failed ({result.message}), retrying in {delay:.1f}s")
        if cancel is not None:
            if cancel.wait(delay):
                return ActionResult(success=False, message='cancelled', duration=time.time() - start)
        else:
            time.sleep(delay)

    if not result.duration:
        result.duration = time.time() - start
    return result
