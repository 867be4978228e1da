"""
Tests for role policies and configuration rendering.
"""
import stat

import pytest
import toml
import yaml

from orqus_installer.errors import InvalidConfiguration
from orqus_installer.renderer import ConfigRenderer, consensus_home_files
from orqus_installer.roles import (
    ROLE_POLICIES, InstallMode, NodeRole, role_configuration, signs_blocks,
)
from orqus_installer.state import InstallationLayout

IMAGES = {
    'orqus-reth': 'ghcr.io/orqusio/orqus-reth:v1.2.0',
    'orqusbft': 'ghcr.io/orqusio/orqusbft:v1.2.0',
    'cometbft': 'cometbft/cometbft:v0.38.15',
}


@pytest.mark.parametrize('role,pex,strict,slashing,retain', [
    ('validator', False, False, False, 0),
    ('sentry', True, False, False, 0),
    ('rpc', True, True, False, 100000),
    ('archive', True, True, False, 0),
])
def test_role_policy_table(role, pex, strict, slashing, retain):
    policy = role_configuration(role)
    assert policy.as_dict() == {
        'peer_exchange_enabled': pex,
        'address_book_strict': strict,
        'slashing_enabled': slashing,
        'retain_blocks': retain,
    }


def test_every_role_has_a_policy():
    assert set(ROLE_POLICIES) == set(NodeRole)


def test_only_validators_sign():
    assert signs_blocks('validator')
    assert not any(signs_blocks(role) for role in ('sentry', 'rpc', 'archive'))


def test_unknown_role_is_rejected():
    with pytest.raises(InvalidConfiguration):
        role_configuration('observer')


def rendered_settings(renderer, chain_id="153871"):
    files = renderer.render(chain_id, IMAGES if renderer.docker else None)
    layout = renderer.layout
    cometbft = toml.loads(files[layout.cometbft_config].content)
    orqusbft = yaml.safe_load(files[layout.orqusbft_config].content)
    return files, cometbft, orqusbft


@pytest.mark.parametrize('role', [r.value for r in NodeRole])
def test_rendered_files_follow_role_policy(make_config, layout, role):
    renderer = ConfigRenderer(make_config(role=NodeRole(role)), layout)
    _, cometbft, orqusbft = rendered_settings(renderer)
    policy = role_configuration(role)

    assert cometbft['p2p']['pex'] is policy.peer_exchange_enabled
    assert cometbft['p2p']['addr_book_strict'] is policy.address_book_strict
    assert orqusbft['slashing']['enabled'] is policy.slashing_enabled
    assert orqusbft['storage']['retainBlocks'] == policy.retain_blocks


def test_binary_mode_endpoints(make_config, layout):
    config = make_config(persistent_peers=['abc@10.0.0.1:26656'], orqusbft_abci_port=18080)
    _, cometbft, orqusbft = rendered_settings(ConfigRenderer(config, layout))

    assert cometbft['proxy_app'] == 'tcp://127.0.0.1:18080'
    assert cometbft['p2p']['persistent_peers'] == 'abc@10.0.0.1:26656'
    assert cometbft['moniker'] == 'orqus-node'
    assert orqusbft['chainId'] == 153871
    assert orqusbft['ethereum']['engineAPI'] == 'http://127.0.0.1:8551'
    assert orqusbft['ethereum']['jwtSecret'] == str(layout.jwt_secret)
    assert orqusbft['bridge']['listenAddr'] == '0.0.0.0:18080'


def test_docker_mode_uses_service_names_and_container_ports(make_config, layout):
    config = make_config(mode=InstallMode.DOCKER, cometbft_rpc_port=36657)
    files, cometbft, orqusbft = rendered_settings(ConfigRenderer(config, layout))

    assert cometbft['proxy_app'] == 'tcp://orqusbft:8080'
    assert cometbft['rpc']['laddr'] == 'tcp://0.0.0.0:26657'
    assert orqusbft['ethereum']['endpoint'] == 'http://orqus-reth:8545'
    assert orqusbft['ethereum']['jwtSecret'] == '/app/jwt.hex'

    manifest = yaml.safe_load(files[layout.compose_file].content)
    services = manifest['services']
    assert 'version' not in manifest
    assert {name: services[name]['image'] for name in IMAGES} == IMAGES
    assert services['orqusbft']['depends_on'] == {'orqus-reth': {'condition': 'service_healthy'}}
    assert services['cometbft']['depends_on'] == {'orqusbft': {'condition': 'service_started'}}
    assert '36657:26657' in services['cometbft']['ports']
    assert '--nat' in services['orqus-reth']['command']


def test_docker_mode_requires_images(make_config, layout):
    renderer = ConfigRenderer(make_config(mode=InstallMode.DOCKER), layout)
    with pytest.raises(ValueError):
        renderer.render("153871")


def test_no_compose_manifest_in_binary_mode(make_config, layout):
    files = ConfigRenderer(make_config(), layout).render("153871")
    assert layout.compose_file not in files


def test_rendering_is_deterministic(make_config, layout):
    config = make_config(role=NodeRole.RPC, seeds=['s@1.2.3.4:26656'], mode=InstallMode.DOCKER)
    first = ConfigRenderer(config, layout).render("153871", IMAGES)
    second = ConfigRenderer(config, InstallationLayout(layout.root)).render("153871", IMAGES)
    assert first == second


def test_write_only_touches_changed_files(make_config, layout):
    renderer = ConfigRenderer(make_config(), layout)
    rendered = renderer.render("153871")

    written = renderer.write(rendered)
    assert set(written) == set(rendered)
    before = {path: path.stat().st_mtime_ns for path in rendered}

    assert renderer.write(renderer.render("153871")) == []
    assert {path: path.stat().st_mtime_ns for path in rendered} == before

    assert renderer.write(renderer.render("999")) == [layout.orqusbft_config, layout.env_file]


def test_entry_scripts_are_executable(make_config, layout):
    renderer = ConfigRenderer(make_config(), layout)
    renderer.write(renderer.render("153871"))
    for script in (layout.start_script, layout.stop_script):
        assert script.stat().st_mode & stat.S_IXUSR
        assert script.read_text().startswith("#!/bin/bash\n")
    assert '-m orqus_installer --install-dir "${INSTALL_DIR}" start "$@"' in layout.start_script.read_text()


def test_env_file_quotes_values(make_config, layout):
    content = ConfigRenderer(make_config(moniker="my node"), layout).render_env_file("153871")
    assert "export ORQUS_MONIKER='my node'\n" in content
    assert "export NODE_TYPE=validator\n" in content
    assert f"export BIN_DIR={layout.bin_dir}\n" in content


def test_reth_arguments_include_trusted_peers(make_config, layout):
    renderer = ConfigRenderer(make_config(reth_trusted_peers=['enode://a@1.2.3.4:30303']), layout)
    args = renderer.reth_arguments('/data', '/genesis.json', '/jwt.hex', renderer.host_ports())
    assert args[0] == 'node'
    assert args[args.index('--trusted-peers') + 1] == 'enode://a@1.2.3.4:30303'
    assert args[args.index('--authrpc.jwtsecret') + 1] == '/jwt.hex'


def test_consensus_home_files(layout):
    files = consensus_home_files(layout)
    assert files[layout.cometbft_config] == layout.cometbft_home / 'config' / 'config.toml'
    assert files[layout.consensus_genesis] == layout.cometbft_home / 'config' / 'genesis.json'
