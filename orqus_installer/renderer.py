"""
Renders configuration for all three processes from the installer config and
the role policy table.

Rendering is pure: render() returns file contents without touching disk, and
identical inputs always produce identical bytes. write() then persists only
the files whose content changed.
"""
import logging
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import toml
import yaml

from .config import InstallerConfig
from .roles import InstallMode, role_configuration
from .state import InstallationLayout, write_if_changed

logger = logging.getLogger(__name__)

# Ports the services listen on inside their containers
CONTAINER_PORTS = {
    'reth_http': 8545,
    'reth_ws': 8546,
    'reth_engine': 8551,
    'reth_p2p': 30303,
    'reth_metrics': 9001,
    'cometbft_p2p': 26656,
    'cometbft_rpc': 26657,
    'cometbft_metrics': 26660,
    'orqusbft_abci': 8080,
    'orqusbft_metrics': 8090,
}

RELEASES_URL = "https://github.com/orqusio/orqus-releases"
# Registry address of the ValidatorRegistry predeploy
VALIDATOR_REGISTRY = "0x6f00000000000000000000000000000000001000"


@dataclass(frozen=True)
class RenderedFile:
    content: str
    mode: int = 0o644


class ConfigRenderer:
    def __init__(self, config: InstallerConfig, layout: InstallationLayout):
        self.config = config
        self.layout = layout
        self.policy = role_configuration(config.role)

    @property
    def docker(self) -> bool:
        return self.config.mode is InstallMode.DOCKER

    def render(self, chain_id: str, images: Optional[Dict[str, str]] = None) -> Dict[Path, RenderedFile]:
        """Render every configuration artifact. images is required in docker mode."""
        layout = self.layout
        files = {
            layout.cometbft_config: RenderedFile(self.render_cometbft_config()),
            layout.orqusbft_config: RenderedFile(self.render_orqusbft_config(chain_id)),
            layout.env_file: RenderedFile(self.render_env_file(chain_id)),
            layout.start_script: RenderedFile(self.render_entry_script('start'), mode=0o755),
            layout.stop_script: RenderedFile(self.render_entry_script('stop'), mode=0o755),
        }
        if self.docker:
            if not images:
                raise ValueError("docker mode rendering needs image references")
            files[layout.compose_file] = RenderedFile(self.render_compose(images))
        return files

    def write(self, rendered: Dict[Path, RenderedFile]) -> List[Path]:
        changed = []
        for path, rendered_file in rendered.items():
            if write_if_changed(path, rendered_file.content, mode=rendered_file.mode):
                changed.append(path)
        if changed:
            logger.info(f"Rendered {', '.join(p.name for p in changed)}")
        else:
            logger.info("Configuration unchanged")
        return changed

    # CometBFT

    def cometbft_settings(self) -> dict:
        cfg = self.config
        rpc_port = CONTAINER_PORTS['cometbft_rpc'] if self.docker else cfg.cometbft_rpc_port
        p2p_port = CONTAINER_PORTS['cometbft_p2p'] if self.docker else cfg.cometbft_p2p_port
        abci = f"tcp://orqusbft:{CONTAINER_PORTS['orqusbft_abci']}" if self.docker \
            else f"tcp://127.0.0.1:{cfg.orqusbft_abci_port}"
        return {
            'proxy_app': abci,
            'moniker': cfg.moniker,
            'db_backend': 'goleveldb',
            'db_dir': 'data',
            'log_level': 'info',
            'log_format': 'plain',
            'rpc': {
                'laddr': f"tcp://0.0.0.0:{rpc_port}",
                'cors_allowed_origins': ['*'],
                'cors_allowed_methods': ['HEAD', 'GET', 'POST'],
                'cors_allowed_headers': ['Origin', 'Accept', 'Content-Type', 'X-Requested-With', 'X-Server-Time'],
            },
            'p2p': {
                'laddr': f"tcp://0.0.0.0:{p2p_port}",
                'seeds': ','.join(cfg.seeds),
                'persistent_peers': ','.join(cfg.persistent_peers),
                'max_packet_msg_payload_size': 10240,
                'pex': self.policy.peer_exchange_enabled,
                'seed_mode': False,
                'addr_book_strict': self.policy.address_book_strict,
            },
            'mempool': {'type': 'nop'},
            'consensus': {
                'timeout_propose': '3s',
                'timeout_propose_delta': '500ms',
                'timeout_prevote': '1s',
                'timeout_prevote_delta': '500ms',
                'timeout_precommit': '1s',
                'timeout_precommit_delta': '500ms',
                'timeout_commit': '1s',
                'skip_timeout_commit': False,
                'create_empty_blocks': True,
                'create_empty_blocks_interval': '2s',
            },
            'storage': {'discard_abci_responses': False},
            'tx_index': {'indexer': 'kv'},
            'instrumentation': {
                'prometheus': True,
                'prometheus_listen_addr': f":{CONTAINER_PORTS['cometbft_metrics']}",
            },
        }

    def render_cometbft_config(self) -> str:
        header = f"# CometBFT Configuration\n# Node Type: {self.config.role.value}\n\n"
        return header + toml.dumps(self.cometbft_settings())

    # orqusbft

    def orqusbft_settings(self, chain_id) -> dict:
        cfg = self.config
        if self.docker:
            data_dir = "/data"
            reth_http = f"http://orqus-reth:{CONTAINER_PORTS['reth_http']}"
            reth_engine = f"http://orqus-reth:{CONTAINER_PORTS['reth_engine']}"
            jwt = "/app/jwt.hex"
            cometbft_rpc = f"http://cometbft:{CONTAINER_PORTS['cometbft_rpc']}"
            cometbft_home = "/data/cometbft"
            abci_port = CONTAINER_PORTS['orqusbft_abci']
            metrics_port = CONTAINER_PORTS['orqusbft_metrics']
        else:
            data_dir = str(self.layout.orqusbft_data)
            reth_http = f"http://127.0.0.1:{cfg.reth_http_port}"
            reth_engine = f"http://127.0.0.1:{cfg.reth_engine_port}"
            jwt = str(self.layout.jwt_secret)
            cometbft_rpc = f"http://127.0.0.1:{cfg.cometbft_rpc_port}"
            cometbft_home = str(self.layout.cometbft_home)
            abci_port = cfg.orqusbft_abci_port
            metrics_port = cfg.orqusbft_metrics_port

        return {
            'chainId': _numeric_if_possible(chain_id),
            'dataDir': data_dir,
            'feeRecipient': cfg.fee_recipient,
            'ethereum': {'endpoint': reth_http, 'engineAPI': reth_engine, 'jwtSecret': jwt},
            'cometbft': {'endpoint': cometbft_rpc, 'homeDir': cometbft_home},
            'bridge': {'listenAddr': f"0.0.0.0:{abci_port}", 'logLevel': 'info', 'enableBridging': True},
            'metrics': {'enabled': True, 'listenAddr': f"0.0.0.0:{metrics_port}"},
            # must match the ValidatorRegistry contract
            'consensus': {'epochLength': 270, 'blockPeriod': 1},
            'slashing': {
                'enabled': self.policy.slashing_enabled,
                'missedBlockThreshold': 10,
                'jailDuration': 1800,
            },
            'storage': {'retainBlocks': self.policy.retain_blocks},
            'validatorCommitment': {
                'enabled': False,
                'minValidators': 4,
                'maxChangeRatio': 0.33,
                'gracePeriodBlocks': 2,
            },
            'contract': {'enabled': True, 'validatorRegistry': VALIDATOR_REGISTRY},
        }

    def render_orqusbft_config(self, chain_id) -> str:
        header = (f"# orqusbft Configuration{' (Docker mode)' if self.docker else ''}\n"
                  f"# Node Type: {self.config.role.value}\n"
                  f"# See: {RELEASES_URL}\n\n")
        return header + _dump_yaml(self.orqusbft_settings(chain_id))

    # Container manifest

    def reth_arguments(self, datadir, genesis, jwt, ports) -> List[str]:
        """Arguments for ``orqus-reth node``; shared by binary and docker mode."""
        args = [
            'node',
            '--datadir', str(datadir),
            '--chain', str(genesis),
            '--http', '--http.addr', '0.0.0.0', '--http.port', str(ports['reth_http']),
            '--http.api', 'eth,net,web3,debug,trace',
            '--ws', '--ws.addr', '0.0.0.0', '--ws.port', str(ports['reth_ws']),
            '--authrpc.addr', '0.0.0.0', '--authrpc.port', str(ports['reth_engine']),
            '--authrpc.jwtsecret', str(jwt),
            '--port', str(ports['reth_p2p']),
            '--metrics', f"0.0.0.0:{ports['reth_metrics']}",
        ]
        if self.config.reth_trusted_peers:
            args += ['--trusted-peers', ','.join(self.config.reth_trusted_peers)]
        return args

    def host_ports(self) -> Dict[str, int]:
        cfg = self.config
        return {
            'reth_http': cfg.reth_http_port,
            'reth_ws': cfg.reth_ws_port,
            'reth_engine': cfg.reth_engine_port,
            'reth_p2p': cfg.reth_p2p_port,
            'reth_metrics': cfg.reth_metrics_port,
            'cometbft_p2p': cfg.cometbft_p2p_port,
            'cometbft_rpc': cfg.cometbft_rpc_port,
            'orqusbft_abci': cfg.orqusbft_abci_port,
            'orqusbft_metrics': cfg.orqusbft_metrics_port,
        }

    def compose_manifest(self, images: Dict[str, str]) -> dict:
        layout = self.layout
        host = self.host_ports()
        inner = CONTAINER_PORTS

        reth_command = self.reth_arguments('/data', '/genesis.json', '/jwt.hex', inner)
        reth_command[reth_command.index('--port') + 2:reth_command.index('--port') + 2] = ['--nat', 'none']

        return {
            'services': {
                'orqus-reth': {
                    'image': images['orqus-reth'],
                    'container_name': 'orqus-reth',
                    'restart': 'unless-stopped',
                    'ports': [
                        f"{host['reth_http']}:{inner['reth_http']}",
                        f"{host['reth_ws']}:{inner['reth_ws']}",
                        f"{host['reth_engine']}:{inner['reth_engine']}",
                        f"{host['reth_p2p']}:{inner['reth_p2p']}/tcp",
                        f"{host['reth_p2p']}:{inner['reth_p2p']}/udp",
                        f"{host['reth_metrics']}:{inner['reth_metrics']}",
                    ],
                    'volumes': [
                        f"{layout.reth_data}:/data",
                        f"{layout.execution_genesis}:/genesis.json:ro",
                        f"{layout.jwt_secret}:/jwt.hex:ro",
                    ],
                    'command': reth_command,
                    'healthcheck': {
                        'test': ['CMD', 'curl', '-f', f"http://localhost:{inner['reth_http']}"],
                        'interval': '10s',
                        'timeout': '5s',
                        'retries': 5,
                    },
                },
                'orqusbft': {
                    'image': images['orqusbft'],
                    'container_name': 'orqusbft',
                    'restart': 'unless-stopped',
                    'depends_on': {'orqus-reth': {'condition': 'service_healthy'}},
                    'ports': [
                        f"{host['orqusbft_abci']}:{inner['orqusbft_abci']}",
                        f"{host['orqusbft_metrics']}:{inner['orqusbft_metrics']}",
                    ],
                    'volumes': [
                        f"{layout.orqusbft_config}:/app/config.yaml:ro",
                        f"{layout.jwt_secret}:/app/jwt.hex:ro",
                        f"{layout.orqusbft_data}:/data",
                    ],
                    'command': ['-config', '/app/config.yaml'],
                },
                'cometbft': {
                    'image': images['cometbft'],
                    'container_name': 'cometbft',
                    'restart': 'unless-stopped',
                    'depends_on': {'orqusbft': {'condition': 'service_started'}},
                    'ports': [
                        f"{host['cometbft_p2p']}:{inner['cometbft_p2p']}",
                        f"{host['cometbft_rpc']}:{inner['cometbft_rpc']}",
                        f"{inner['cometbft_metrics']}:{inner['cometbft_metrics']}",
                    ],
                    'volumes': [f"{layout.cometbft_home}:/cometbft"],
                    'command': ['start', f"--proxy_app=tcp://orqusbft:{inner['orqusbft_abci']}"],
                    'environment': ['CMTHOME=/cometbft'],
                },
            },
        }

    def render_compose(self, images: Dict[str, str]) -> str:
        return _dump_yaml(self.compose_manifest(images))

    # Entry points

    def environment(self, chain_id) -> List[tuple]:
        cfg = self.config
        layout = self.layout
        return [
            ('ORQUS_INSTALL_DIR', str(layout.root)),
            ('INSTALL_DIR', str(layout.root)),
            ('DATA_DIR', str(layout.data_dir)),
            ('BIN_DIR', str(layout.bin_dir)),
            ('CONFIG_DIR', str(layout.config_dir)),
            ('INSTALL_MODE', cfg.mode.value),
            ('NODE_TYPE', cfg.role.value),
            ('CHAIN_ID', chain_id),
            ('ORQUS_CHAIN_ID', chain_id),
            ('ORQUS_MONIKER', cfg.moniker),
            ('DOCKER_REGISTRY', cfg.docker_registry),
            ('COMETBFT_VERSION', cfg.cometbft_version),
            ('PERSISTENT_PEERS', ','.join(cfg.persistent_peers)),
            ('RETH_TRUSTED_PEERS', ','.join(cfg.reth_trusted_peers)),
            ('RETH_HTTP_PORT', cfg.reth_http_port),
            ('RETH_WS_PORT', cfg.reth_ws_port),
            ('RETH_ENGINE_PORT', cfg.reth_engine_port),
            ('RETH_P2P_PORT', cfg.reth_p2p_port),
            ('RETH_METRICS_PORT', cfg.reth_metrics_port),
            ('COMETBFT_P2P_PORT', cfg.cometbft_p2p_port),
            ('COMETBFT_RPC_PORT', cfg.cometbft_rpc_port),
            ('ORQUSBFT_ABCI_PORT', cfg.orqusbft_abci_port),
            ('ORQUSBFT_METRICS_PORT', cfg.orqusbft_metrics_port),
        ]

    def render_env_file(self, chain_id) -> str:
        lines = ["# Orqus Chain Environment"]
        for name, value in self.environment(chain_id):
            lines.append(f"export {name}={shlex.quote(str(value))}")
        lines.append("")
        lines.append("# Add bin to PATH")
        lines.append('export PATH="${BIN_DIR}:${PATH}"')
        return "\n".join(lines) + "\n"

    def render_entry_script(self, command) -> str:
        return (
            "#!/bin/bash\n"
            "set -e\n"
            "\n"
            'INSTALL_DIR="$(cd "$(dirname "$0")" && pwd)"\n'
            'source "${INSTALL_DIR}/env.sh"\n'
            f'exec "${{ORQUS_PYTHON:-python3}}" -m orqus_installer --install-dir "${{INSTALL_DIR}}" {command} "$@"\n'
        )


def _numeric_if_possible(value):
    text = str(value)
    return int(text) if text.isdigit() else text


def _dump_yaml(data) -> str:
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)


def consensus_home_files(layout: InstallationLayout) -> Dict[Path, Path]:
    """Source -> destination for materialising the CometBFT home from config/."""
    home_config = layout.cometbft_home / 'config'
    return {
        layout.consensus_genesis: home_config / 'genesis.json',
        layout.cometbft_config: home_config / 'config.toml',
        layout.validator_key: home_config / 'priv_validator_key.json',
        layout.node_key: home_config / 'node_key.json',
    }
