"""
Builds the installer configuration once per operation.

Settings come from (lowest to highest precedence) built-in defaults, an
optional config.yaml, the process environment and CLI options. This is the
only module that reads the process environment; every other component
receives the resulting InstallerConfig.
"""
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import yaml

from .errors import InvalidConfiguration
from .roles import InstallMode, NodeRole

logger = logging.getLogger(__name__)

DEFAULT_INSTALL_DIR = "~/.orqus"

# Field name -> environment variable
ENV_VARS = {
    'install_dir': 'ORQUS_INSTALL_DIR',
    'mode': 'INSTALL_MODE',
    'role': 'NODE_TYPE',
    'docker_registry': 'DOCKER_REGISTRY',
    'docker_tag': 'DOCKER_TAG',
    'version': 'ORQUS_VERSION',
    'release_repo': 'ORQUS_RELEASE_REPO',
    'chain_id': 'ORQUS_CHAIN_ID',
    'chain_name': 'ORQUS_CHAIN_NAME',
    'moniker': 'ORQUS_MONIKER',
    'cometbft_version': 'COMETBFT_VERSION',
    'persistent_peers': 'PERSISTENT_PEERS',
    'seeds': 'SEEDS',
    'reth_trusted_peers': 'RETH_TRUSTED_PEERS',
    'genesis_url': 'GENESIS_URL',
    'reth_genesis_url': 'RETH_GENESIS_URL',
    'github_token': 'GITHUB_TOKEN',
    'strict_peer_genesis': 'ORQUS_STRICT_PEER_GENESIS',
    'fee_recipient': 'ORQUS_FEE_RECIPIENT',
    'reth_http_port': 'RETH_HTTP_PORT',
    'reth_ws_port': 'RETH_WS_PORT',
    'reth_engine_port': 'RETH_ENGINE_PORT',
    'reth_p2p_port': 'RETH_P2P_PORT',
    'reth_metrics_port': 'RETH_METRICS_PORT',
    'cometbft_p2p_port': 'COMETBFT_P2P_PORT',
    'cometbft_rpc_port': 'COMETBFT_RPC_PORT',
    'orqusbft_abci_port': 'ORQUSBFT_ABCI_PORT',
    'orqusbft_metrics_port': 'ORQUSBFT_METRICS_PORT',
}

PORT_FIELDS = [name for name in ENV_VARS if name.endswith('_port')]
LIST_FIELDS = ['persistent_peers', 'seeds', 'reth_trusted_peers']
TRUTHY = {'1', 'true', 'yes', 'on'}


@dataclass(frozen=True)
class InstallerConfig:
    """Every setting an install, upgrade, start or stop needs"""
    install_dir: Path = Path(DEFAULT_INSTALL_DIR).expanduser()
    mode: InstallMode = InstallMode.BINARY
    role: NodeRole = NodeRole.VALIDATOR

    docker_registry: str = "ghcr.io/orqusio"
    docker_tag: Optional[str] = None
    version: Optional[str] = None
    release_repo: str = "orqusio/orqus-releases"

    chain_id: str = "153871"
    chain_name: str = "orqus-testnet"
    moniker: str = "orqus-node"
    cometbft_version: str = "v0.38.15"

    persistent_peers: List[str] = field(default_factory=list)
    seeds: List[str] = field(default_factory=list)
    reth_trusted_peers: List[str] = field(default_factory=list)
    genesis_url: Optional[str] = None
    reth_genesis_url: Optional[str] = None
    github_token: Optional[str] = None
    strict_peer_genesis: bool = False
    # Hardhat account #0, fine for test networks only
    fee_recipient: str = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"

    reth_http_port: int = 8545
    reth_ws_port: int = 8546
    reth_engine_port: int = 8551
    reth_p2p_port: int = 30303
    reth_metrics_port: int = 9001
    cometbft_p2p_port: int = 26656
    cometbft_rpc_port: int = 26657
    orqusbft_abci_port: int = 8080
    orqusbft_metrics_port: int = 8090

    # names of the settings given explicitly rather than defaulted
    explicit: frozenset = field(default_factory=frozenset, compare=False, repr=False)

    def with_overrides(self, **overrides) -> "InstallerConfig":
        """Return a copy with the non-None overrides applied and validated."""
        values = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **_coerce(values))


def get_config_path(explicit=None, environ: Mapping[str, str] = None) -> Optional[Path]:
    """
    Find the optional config.yaml with priority:
    1. Explicit path passed on the command line
    2. Current working directory (where user runs the command)
    3. The installation directory named by ORQUS_INSTALL_DIR
    """
    if explicit:
        path = Path(explicit).expanduser()
        if not path.exists():
            raise InvalidConfiguration(f"Config file not found: {path}")
        return path

    current_dir_config = Path.cwd() / 'config.yaml'
    if current_dir_config.exists():
        return current_dir_config

    environ = os.environ if environ is None else environ
    install_dir = environ.get('ORQUS_INSTALL_DIR')
    if install_dir:
        install_config = Path(install_dir).expanduser() / 'config.yaml'
        if install_config.exists():
            return install_config
    return None


def load_settings_file(path) -> Dict[str, object]:
    """Load settings from a YAML file; keys use the InstallerConfig field names."""
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise InvalidConfiguration(f"Could not parse {path}: {e}")
    if not isinstance(data, dict):
        raise InvalidConfiguration(f"{path} must contain a mapping of settings")

    known = {f.name for f in fields(InstallerConfig)} - {'explicit'}
    unknown = sorted(set(data) - known)
    if unknown:
        logger.warning(f"Ignoring unknown settings in {path}: {', '.join(unknown)}")
    return {k: v for k, v in data.items() if k in known}


def settings_from_environment(environ: Mapping[str, str]) -> Dict[str, object]:
    settings = {}
    for name, env_var in ENV_VARS.items():
        value = environ.get(env_var)
        if value is not None and value != "":
            settings[name] = value
    return settings


def load_config(environ: Mapping[str, str] = None, config_file=None, **cli_overrides) -> InstallerConfig:
    """
    Construct the InstallerConfig for one operation.

    Raises InvalidConfiguration for an unknown role or mode, malformed ports
    or an unreadable settings file.
    """
    environ = os.environ if environ is None else environ

    settings: Dict[str, object] = {}
    path = get_config_path(config_file, environ)
    if path is not None:
        logger.debug(f"Loading settings from {path}")
        settings.update(load_settings_file(path))
    settings.update(settings_from_environment(environ))
    settings.update({k: v for k, v in cli_overrides.items() if v is not None})

    config = InstallerConfig(explicit=frozenset(settings), **_coerce(settings))
    logger.debug(f"Configuration: role={config.role.value} mode={config.mode.value} dir={config.install_dir}")
    return config


def _split_list(value) -> List[str]:
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [part.strip() for part in str(value).split(',') if part.strip()]


def _coerce(settings: Dict[str, object]) -> Dict[str, object]:
    values = dict(settings)
    if 'install_dir' in values:
        values['install_dir'] = Path(str(values['install_dir'])).expanduser()
    if 'role' in values:
        values['role'] = NodeRole.parse(values['role'])
    if 'mode' in values:
        values['mode'] = InstallMode.parse(values['mode'])
    if 'strict_peer_genesis' in values and not isinstance(values['strict_peer_genesis'], bool):
        values['strict_peer_genesis'] = str(values['strict_peer_genesis']).strip().lower() in TRUTHY
    for name in LIST_FIELDS:
        if name in values:
            values[name] = _split_list(values[name])
    for name in ('chain_id', 'version', 'docker_tag'):
        if name in values:
            values[name] = str(values[name])
    for name in PORT_FIELDS:
        if name in values:
            values[name] = _parse_port(name, values[name])
    return values


def _parse_port(name, value) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise InvalidConfiguration(f"{ENV_VARS[name]} must be an integer, got {value!r}")
    if not 0 < port < 65536:
        raise InvalidConfiguration(f"{ENV_VARS[name]} out of range: {port}")
    return port
