"""
Tests for the orqus-node command line.
"""
from unittest import mock

from click.testing import CliRunner

from orqus_installer.cli import cli
from orqus_installer.genesis import GenesisSource
from orqus_installer.roles import InstallMode, NodeRole
from orqus_installer.state import InstallationLayout, InstallationRecord, save_record


def invoke(args, env=None):
    runner = CliRunner()
    with runner.isolated_filesystem():
        return runner.invoke(cli, args, env=env or {})


def test_roles_table():
    result = invoke(['roles'])
    assert result.exit_code == 0
    for role in ('validator', 'sentry', 'rpc', 'archive'):
        assert role in result.output
    assert '100000' in result.output


def test_invalid_role_from_environment(tmp_path):
    result = invoke(['install'], env={'NODE_TYPE': 'miner', 'ORQUS_INSTALL_DIR': str(tmp_path)})
    assert result.exit_code == 1
    assert "❌ InvalidConfiguration: Invalid NODE_TYPE: miner" in result.output
    assert "Valid options" in result.output


def test_invalid_role_option_is_rejected_by_click(tmp_path):
    result = invoke(['--install-dir', str(tmp_path), 'install', '--role', 'miner'])
    assert result.exit_code == 2


def test_status_without_installation(tmp_path):
    result = invoke(['--install-dir', str(tmp_path / 'none'), 'status'])
    assert result.exit_code == 0
    assert "No installation" in result.output


def test_status_shows_record(tmp_path):
    layout = InstallationLayout(tmp_path / 'orqus')
    save_record(layout, InstallationRecord(NodeRole.RPC, InstallMode.BINARY, "153871", "rpc-1"))

    result = invoke(['--install-dir', str(layout.root), 'status'])

    assert result.exit_code == 0
    assert "rpc-1" in result.output
    assert "orqus-reth" in result.output
    assert "stopped" in result.output


def test_upgrade_without_installation(tmp_path):
    result = invoke(['--install-dir', str(tmp_path / 'none'), 'upgrade'])
    assert result.exit_code == 1
    assert "No existing installation" in result.output


def test_install_prints_summary(tmp_path):
    chain = mock.Mock(chain_id="153871", consensus_source=GenesisSource.PEER,
                      execution_source=GenesisSource.RELEASE_ARTIFACT)
    with mock.patch('orqus_installer.cli.Installer') as installer_cls:
        installer_cls.return_value.install.return_value = mock.Mock(version="v1.0.0", chain=chain)
        result = invoke(['--install-dir', str(tmp_path), 'install', '--role', 'rpc'])

    assert result.exit_code == 0
    config = installer_cls.call_args[0][0]
    assert config.role is NodeRole.RPC
    assert config.install_dir == tmp_path
    assert "Consensus genesis: peer" in result.output
    assert "Chain ID: 153871" in result.output
    assert f"{tmp_path}/start.sh" in result.output
