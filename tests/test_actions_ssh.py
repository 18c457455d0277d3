"""Tests for provisioning step actions run over SSH."""

import sys
import threading
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from actions.ssh import (
    RESTART_CHECK_COMMAND,
    ProvisionStepAction,
    flatten_env,
    is_windows,
    remote_script,
    remove_command,
    step_type,
)
from topology import Node, NodeKind, Topology

from conftest import topology_dict

DC = 'cdc/networks/vdi/hosts/dc'
WS = 'cdc/networks/vdi/hosts/ws'


@pytest.fixture
def topo():
    return Topology.from_dict(topology_dict())


@pytest.fixture
def action(build_config):
    return ProvisionStepAction(config=build_config, restart_grace=0, restart_poll=0.01)


def _step(topo, host_id, name='extra', number=9, attrs=None, step_vars=None):
    host = topo.get(host_id)
    return host.add_child(Node(kind=NodeKind.PROVISIONING_STEP, name=name, step=number,
                               attrs=attrs or {'script': 'true'}, vars=step_vars or {}))


class TestRemoteScript:
    """Test upload path and command selection."""

    def test_linux(self, topo):
        step = topo.get(f'{WS}/steps/001-packages')
        upload_path, command = remote_script(step, step.parent)
        assert upload_path == '/tmp/001-packages.sh'
        assert command == 'sh /tmp/001-packages.sh'

    def test_windows(self, topo):
        step = topo.get(f'{DC}/steps/002-join')
        upload_path, command = remote_script(step, step.parent)
        assert upload_path == 'C:/Windows/Temp/002-join.ps1'
        assert command.startswith('powershell -NoProfile')
        assert "& 'C:\\Windows\\Temp\\002-join.ps1'; exit $LASTEXITCODE" in command

    def test_is_windows(self, topo):
        assert is_windows(topo.get(DC))
        assert not is_windows(topo.get(WS))


class TestProvisionStepAction:
    """Test ProvisionStepAction.apply."""

    def test_success_uploads_then_runs(self, action, topo):
        step = topo.get(f'{WS}/steps/001-packages')
        uploaded = {}

        def fake_scp(local_path, host, remote_path, **kwargs):
            uploaded['content'] = Path(local_path).read_text()
            uploaded['local'] = Path(local_path)
            return 0, '', ''

        with patch('actions.ssh.run_scp', side_effect=fake_scp) as mock_scp, \
             patch('actions.ssh.run_ssh', return_value=(0, 'done', '')) as mock_ssh:
            result = action.apply(step, {})

        assert result.success is True
        assert result.external_id == '10.0.10.20:/tmp/001-packages.sh'
        assert uploaded['content'] == 'apt-get install -y nginx'
        assert not uploaded['local'].exists()
        assert mock_scp.call_args.args[1:] == ('10.0.10.20', '/tmp/001-packages.sh')
        assert mock_ssh.call_args_list[0].args == ('10.0.10.20', 'sh /tmp/001-packages.sh')

    def test_context_address_wins(self, action, topo):
        step = topo.get(f'{WS}/steps/001-packages')
        with patch('actions.ssh.run_scp', return_value=(0, '', '')), \
             patch('actions.ssh.run_ssh', return_value=(0, '', '')) as mock_ssh:
            action.apply(step, {f'{WS}_ip': '192.0.2.7'})
        assert mock_ssh.call_args.args[0] == '192.0.2.7'

    def test_connection_ip_fallback(self, action, topo):
        step = topo.get(f'{DC}/steps/001-install-ad')
        with patch('actions.ssh.run_scp', return_value=(0, '', '')), \
             patch('actions.ssh.run_ssh', return_value=(0, '', '')) as mock_ssh:
            result = action.apply(step, {})
        assert result.success is True
        assert mock_ssh.call_args.args[0] == '10.0.10.5'

    def test_host_user_attr(self, action, topo):
        step = topo.get(f'{WS}/steps/001-packages')
        step.parent.attrs['user'] = 'ubuntu'
        with patch('actions.ssh.run_scp', return_value=(0, '', '')), \
             patch('actions.ssh.run_ssh', return_value=(0, '', '')) as mock_ssh:
            action.apply(step, {})
        assert mock_ssh.call_args.kwargs['user'] == 'ubuntu'

    def test_default_user_from_config(self, action, topo):
        step = topo.get(f'{WS}/steps/001-packages')
        with patch('actions.ssh.run_scp', return_value=(0, '', '')), \
             patch('actions.ssh.run_ssh', return_value=(0, '', '')) as mock_ssh:
            action.apply(step, {})
        assert mock_ssh.call_args.kwargs['user'] == 'root'

    def test_no_address(self, action):
        host = Node(kind=NodeKind.HOST, name='h', attrs={'os': 'ubuntu'})
        step = host.add_child(Node(kind=NodeKind.PROVISIONING_STEP, name='s', step=1,
                                   attrs={'script': 'true'}))
        with patch('actions.ssh.run_scp') as mock_scp:
            result = action.apply(step, {})
        assert result.success is False
        assert 'ip' in result.message
        mock_scp.assert_not_called()

    def test_not_under_host(self, action):
        step = Node(kind=NodeKind.PROVISIONING_STEP, name='s', step=1, attrs={'script': 'true'})
        result = action.apply(step, {})
        assert result.success is False
        assert 'not attached to a host' in result.message

    def test_script_failure_not_retried(self, action, topo):
        step = topo.get(f'{WS}/steps/002-harden')
        with patch('actions.ssh.run_scp', return_value=(0, '', '')), \
             patch('actions.ssh.run_ssh', return_value=(1, '', 'ufw: command not found')) as mock_ssh:
            result = action.apply(step, {})
        assert result.success is False
        assert 'exited 1' in result.message
        assert 'ufw' in result.message
        assert mock_ssh.call_count == 2
        assert mock_ssh.call_args.args[1] == 'rm -f /tmp/002-harden.sh'

    def test_connection_error_retried(self, action, topo):
        step = topo.get(f'{WS}/steps/002-harden')
        with patch('actions.ssh.run_scp', return_value=(0, '', '')), \
             patch('actions.ssh.run_ssh') as mock_ssh:
            mock_ssh.side_effect = [(255, '', 'Connection refused'), (0, '', ''), (0, '', '')]
            result = action.apply(step, {})
        assert result.success is True
        assert mock_ssh.call_count == 3

    def test_upload_failure_skips_run(self, action, topo):
        step = topo.get(f'{WS}/steps/002-harden')
        with patch('actions.ssh.run_scp', return_value=(1, '', 'Permission denied')), \
             patch('actions.ssh.run_ssh') as mock_ssh:
            result = action.apply(step, {})
        assert result.success is False
        assert 'Upload failed' in result.message
        mock_ssh.assert_not_called()

    def test_destroy_is_noop(self, action, topo):
        with patch('actions.ssh.run_ssh') as mock_ssh:
            result = action.destroy(topo.get(f'{WS}/steps/002-harden'), {})
        assert result.success is True
        mock_ssh.assert_not_called()


class TestStepTypes:
    """Test step type defaults and per-type commands."""

    def test_default_follows_host_os(self, topo):
        assert step_type(topo.get(f'{DC}/steps/001-install-ad'), topo.get(DC)) == 'powershell'
        assert step_type(topo.get(f'{WS}/steps/001-packages'), topo.get(WS)) == 'shell'

    def test_declared_type_wins(self, topo):
        step = _step(topo, DC, attrs={'type': 'cmd', 'script': 'ipconfig'})
        assert step_type(step, step.parent) == 'cmd'

    def test_cmd_script(self, topo):
        step = _step(topo, DC, attrs={'type': 'cmd', 'script': 'ipconfig'})
        upload_path, command = remote_script(step, step.parent)
        assert upload_path == 'C:/Windows/Temp/009-extra.cmd'
        assert command == '"C:\\Windows\\Temp\\009-extra.cmd"'

    def test_remove_command(self, topo):
        assert remove_command('/tmp/001-packages.sh', topo.get(WS)) == 'rm -f /tmp/001-packages.sh'
        assert remove_command('C:/Windows/Temp/002-join.ps1', topo.get(DC)) == \
            'del /f "C:\\Windows\\Temp\\002-join.ps1"'

    def test_windows_type_on_linux_host_fails(self, action, topo):
        step = _step(topo, WS, attrs={'type': 'cmd', 'script': 'dir'})
        with patch('actions.ssh.run_scp') as mock_scp:
            result = action.apply(step, {})
        assert result.success is False
        assert 'needs a Windows host' in result.message
        mock_scp.assert_not_called()


class TestEnvVars:
    """Test exporting step vars to the script."""

    def test_shell_prefix_sorted_and_quoted(self):
        assert flatten_env({'ZONE': 'cdc.local', 'ADMIN': "o'brien"}, 'shell') == \
            "ADMIN='o'\"'\"'brien' ZONE=cdc.local "

    def test_powershell_prefix(self):
        assert flatten_env({'DOMAIN': "cdc's"}, 'powershell') == "$env:DOMAIN='cdc''s'; "

    def test_cmd_prefix(self):
        assert flatten_env({'A': '1', 'B': 'two'}, 'cmd') == 'set "A=1" && set "B=two" && '

    def test_empty(self):
        assert flatten_env({}, 'shell') == ''

    def test_shell_command_carries_vars(self, action, topo):
        step = _step(topo, WS, step_vars={'DOMAIN': 'cdc.local'})
        with patch('actions.ssh.run_scp', return_value=(0, '', '')), \
             patch('actions.ssh.run_ssh', return_value=(0, '', '')) as mock_ssh:
            action.apply(step, {})
        assert mock_ssh.call_args_list[0].args[1] == 'DOMAIN=cdc.local sh /tmp/009-extra.sh'

    def test_powershell_command_carries_vars(self, topo):
        step = _step(topo, DC, step_vars={'DOMAIN': 'cdc.local'})
        _, command = remote_script(step, step.parent)
        assert "& { $env:DOMAIN='cdc.local'; & 'C:\\Windows\\Temp\\009-extra.ps1'" in command

    def test_cmd_command_carries_vars(self, topo):
        step = _step(topo, DC, attrs={'type': 'cmd', 'script': 'echo %DOMAIN%'},
                     step_vars={'DOMAIN': 'cdc.local'})
        _, command = remote_script(step, step.parent)
        assert command == 'set "DOMAIN=cdc.local" && "C:\\Windows\\Temp\\009-extra.cmd"'


class TestRemoteCleanup:
    """Uploaded scripts are removed after they run."""

    def test_removed_after_success(self, action, topo):
        step = topo.get(f'{DC}/steps/002-join')
        with patch('actions.ssh.run_scp', return_value=(0, '', '')), \
             patch('actions.ssh.run_ssh', return_value=(0, '', '')) as mock_ssh:
            result = action.apply(step, {})
        assert result.success is True
        assert mock_ssh.call_args.args == ('10.0.10.5', 'del /f "C:\\Windows\\Temp\\002-join.ps1"')

    def test_cleanup_failure_does_not_fail_step(self, action, topo, caplog):
        step = topo.get(f'{WS}/steps/001-packages')
        with patch('actions.ssh.run_scp', return_value=(0, '', '')), \
             patch('actions.ssh.run_ssh', side_effect=[(0, 'ok', ''), (1, '', 'read-only')]):
            result = action.apply(step, {})
        assert result.success is True
        assert 'Could not remove' in caplog.text


class TestRestartStep:
    """Test restart-and-wait steps."""

    @pytest.fixture
    def restart(self, topo):
        return _step(topo, DC, name='reboot', attrs={'type': 'restart', 'timeout': 5})

    def test_restart_then_wait(self, action, restart):
        with patch('actions.ssh.run_scp') as mock_scp, \
             patch('actions.ssh.run_ssh') as mock_ssh:
            mock_ssh.side_effect = [(0, '', ''), (255, '', 'refused'), (0, 'restarted.\r\n', '')]
            result = action.apply(restart, {})
        assert result.success is True
        assert result.external_id == '10.0.10.5:restart'
        assert mock_ssh.call_args_list[0].args[1].startswith('shutdown /r')
        assert mock_ssh.call_args.args[1] == RESTART_CHECK_COMMAND
        mock_scp.assert_not_called()

    def test_dropped_session_counts_as_restarting(self, action, restart):
        with patch('actions.ssh.run_ssh', side_effect=[(255, '', ''), (0, 'restarted.', '')]):
            assert action.apply(restart, {}).success is True

    def test_restart_command_failure(self, action, restart):
        with patch('actions.ssh.run_ssh', return_value=(1, '', 'Access is denied')) as mock_ssh:
            result = action.apply(restart, {})
        assert result.success is False
        assert 'Access is denied' in result.message
        assert mock_ssh.call_count == 1

    def test_timeout(self, action, restart):
        restart.attrs['timeout'] = 0.05
        with patch('actions.ssh.run_ssh') as mock_ssh:
            mock_ssh.side_effect = lambda *a, **kw: (0, '', '') if a[1].startswith('shutdown') \
                else (255, '', 'refused')
            result = action.apply(restart, {})
        assert result.success is False
        assert 'Timeout waiting for 10.0.10.5 to restart' in result.message

    def test_cancel_stops_waiting(self, action, restart):
        cancel = threading.Event()

        def fake_ssh(address, command, **kwargs):
            if command != RESTART_CHECK_COMMAND:
                return 0, '', ''
            cancel.set()
            return 255, '', 'refused'

        with patch('actions.ssh.run_ssh', side_effect=fake_ssh):
            result = action.apply(restart, {}, cancel)
        assert result.success is False
        assert 'cancelled' in result.message

    def test_custom_command_on_linux(self, action, topo):
        step = _step(topo, WS, name='reboot', attrs={'type': 'restart', 'command': 'reboot'})
        with patch('actions.ssh.run_ssh', side_effect=[(0, '', ''), (0, 'restarted.', '')]) as mock_ssh:
            assert action.apply(step, {}).success is True
        assert mock_ssh.call_args_list[0].args == ('10.0.10.20', 'reboot')

    def test_linux_default_command(self, action, topo):
        step = _step(topo, WS, name='reboot', attrs={'type': 'restart'})
        with patch('actions.ssh.run_ssh', side_effect=[(0, '', ''), (0, 'restarted.', '')]) as mock_ssh:
            action.apply(step, {})
        assert 'shutdown -r now' in mock_ssh.call_args_list[0].args[1]
