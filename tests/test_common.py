#!/usr/bin/env python3
"""Tests for common.py - shared utilities.

Tests verify:
1. run_command execution, timeout and cancellation
2. run_ssh / run_scp command construction
3. retry_call backoff, deadline and cancellation
"""

import os
import sys
import threading
import time
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import (
    ActionResult,
    retry_call,
    run_command,
    run_scp,
    run_ssh,
)


class TestRunCommand:
    """Test run_command utility."""

    def test_returns_success_tuple(self):
        """Should return (returncode, stdout, stderr) on success."""
        rc, stdout, stderr = run_command(['echo', 'hello'])
        assert rc == 0
        assert 'hello' in stdout
        assert stderr == ''

    def test_returns_failure_tuple(self):
        """Should return non-zero returncode on failure."""
        rc, stdout, stderr = run_command(['false'])
        assert rc != 0

    def test_captures_stderr(self):
        """Should capture stderr."""
        rc, stdout, stderr = run_command(['sh', '-c', 'echo error >&2'])
        assert 'error' in stderr

    def test_respects_cwd(self, tmp_path):
        """Should run command in specified directory."""
        (tmp_path / 'marker.txt').write_text('found')
        rc, stdout, stderr = run_command(['cat', 'marker.txt'], cwd=tmp_path)
        assert rc == 0
        assert 'found' in stdout

    def test_timeout_returns_error(self):
        """Should return error on timeout."""
        rc, stdout, stderr = run_command(['sleep', '10'], timeout=1)
        assert rc == -1
        assert 'timed out' in stderr.lower()

    def test_cancel_kills_process(self):
        """A set cancel event should stop a long-running command."""
        cancel = threading.Event()
        cancel.set()
        start = time.monotonic()
        rc, stdout, stderr = run_command(['sleep', '10'], timeout=60, cancel=cancel)
        assert rc == -1
        assert 'cancelled' in stderr.lower()
        assert time.monotonic() - start < 5

    def test_missing_binary(self):
        """Should report a missing executable instead of raising."""
        rc, stdout, stderr = run_command(['definitely-not-a-real-binary-xyz'])
        assert rc == -1
        assert stderr

    def test_passes_env_vars(self):
        """Should pass custom environment variables."""
        custom_env = os.environ.copy()
        custom_env['TEST_VAR'] = 'test_value'
        rc, stdout, stderr = run_command(['sh', '-c', 'echo $TEST_VAR'], env=custom_env)
        assert rc == 0
        assert 'test_value' in stdout


class TestRunSSH:
    """Test run_ssh and run_scp command construction."""

    def test_builds_ssh_command(self):
        """Should build correct SSH command."""
        with patch('common.run_command') as mock_run:
            mock_run.return_value = (0, 'output', '')
            run_ssh('198.51.100.10', 'echo hello')

            mock_run.assert_called_once()
            cmd = mock_run.call_args[0][0]
            assert cmd[0] == 'ssh'
            assert 'root@198.51.100.10' in cmd
            assert cmd[-1] == 'echo hello'

    def test_uses_custom_user_and_key(self):
        """Should use specified user and identity file."""
        with patch('common.run_command') as mock_run:
            mock_run.return_value = (0, 'output', '')
            run_ssh('198.51.100.10', 'cmd', user='admin', key=Path('/keys/id_ed25519'))

            cmd = mock_run.call_args[0][0]
            assert 'admin@198.51.100.10' in cmd
            assert cmd[cmd.index('-i') + 1] == '/keys/id_ed25519'

    def test_includes_relaxed_host_checking(self):
        """Should include StrictHostKeyChecking=no."""
        with patch('common.run_command') as mock_run:
            mock_run.return_value = (0, 'output', '')
            run_ssh('198.51.100.10', 'cmd')

            cmd_str = ' '.join(mock_run.call_args[0][0])
            assert 'StrictHostKeyChecking=no' in cmd_str

    def test_forwards_cancel(self):
        cancel = threading.Event()
        with patch('common.run_command') as mock_run:
            mock_run.return_value = (0, '', '')
            run_ssh('198.51.100.10', 'cmd', cancel=cancel)
            assert mock_run.call_args.kwargs['cancel'] is cancel

    def test_builds_scp_command(self):
        with patch('common.run_command') as mock_run:
            mock_run.return_value = (0, '', '')
            run_scp(Path('/tmp/step.sh'), '198.51.100.10', '/tmp/001-setup.sh', user='admin')

            cmd = mock_run.call_args[0][0]
            assert cmd[0] == 'scp'
            assert cmd[-2] == '/tmp/step.sh'
            assert cmd[-1] == 'admin@198.51.100.10:/tmp/001-setup.sh'


class TestRetryCall:
    """Test retry_call backoff behavior."""

    def test_success_first_try(self):
        calls = []

        def fn():
            calls.append(1)
            return ActionResult(success=True, message='ok')

        result = retry_call(fn, attempts=3, backoff=0)
        assert result.success is True
        assert len(calls) == 1

    def test_non_retryable_failure_not_retried(self):
        calls = []

        def fn():
            calls.append(1)
            return ActionResult(success=False, message='bad input')

        result = retry_call(fn, attempts=3, backoff=0)
        assert result.success is False
        assert len(calls) == 1

    def test_retryable_failure_retried_until_success(self):
        results = [
            ActionResult(success=False, message='busy', retryable=True),
            ActionResult(success=False, message='busy', retryable=True),
            ActionResult(success=True, message='ok'),
        ]
        result = retry_call(lambda: results.pop(0), attempts=5, backoff=0)
        assert result.success is True
        assert results == []

    def test_gives_up_after_attempts(self):
        calls = []

        def fn():
            calls.append(1)
            return ActionResult(success=False, message='busy', retryable=True)

        result = retry_call(fn, attempts=3, backoff=0)
        assert result.success is False
        assert result.message == 'busy'
        assert len(calls) == 3

    def test_retry_on_exception(self):
        outcomes = [ConnectionError('reset'), ActionResult(success=True)]

        def fn():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        result = retry_call(fn, attempts=3, backoff=0, retry_on=(ConnectionError,))
        assert result.success is True

    def test_delay_grows_and_is_capped(self):
        with patch('common.time.sleep') as mock_sleep:
            retry_call(lambda: ActionResult(success=False, retryable=True),
                       attempts=4, backoff=1.0, max_delay=3.0)
        delays = [c.args[0] for c in mock_sleep.call_args_list]
        assert delays == [1.0, 2.0, 3.0]

    def test_deadline_stops_retrying(self):
        calls = []

        def fn():
            calls.append(1)
            return ActionResult(success=False, message='busy', retryable=True)

        result = retry_call(fn, attempts=10, backoff=5.0, deadline=time.monotonic() + 1)
        assert result.success is False
        assert len(calls) == 1

    def test_cancel_before_first_attempt(self):
        cancel = threading.Event()
        cancel.set()
        calls = []
        result = retry_call(lambda: calls.append(1), cancel=cancel)
        assert result.success is False
        assert result.message == 'cancelled'
        assert calls == []

    def test_cancel_during_backoff(self):
        cancel = threading.Event()

        def fn():
            cancel.set()
            return ActionResult(success=False, message='busy', retryable=True)

        start = time.monotonic()
        result = retry_call(fn, attempts=3, backoff=10.0, cancel=cancel)
        assert result.message == 'cancelled'
        assert time.monotonic() - start < 5

    def test_duration_recorded(self):
        result = retry_call(lambda: ActionResult(success=True), attempts=1)
        assert result.duration >= 0


class TestActionResult:
    """ActionResult defaults."""

    def test_defaults(self):
        result = ActionResult(success=True)
        assert result.external_id == ''
        assert result.context_updates == {}
        assert result.retryable is False

    def test_mutable_context_updates(self):
        """Context updates dict should be mutable."""
        result = ActionResult(success=True)
        result.context_updates['new_key'] = 'new_value'
        assert result.context_updates == {'new_key': 'new_value'}
