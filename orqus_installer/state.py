"""
Installation state: the on-disk layout every other component reads and writes.

The layout is a durable contract for operators and external tooling:

    <root>/bin/                      cometbft, orqusbft, orqus-reth
    <root>/config/                   rendered configuration, keys, genesis documents
    <root>/data/{reth,cometbft,orqusbft}/
    <root>/data/logs/
    <root>/start.sh, stop.sh, env.sh
    <root>/docker-compose.yml        (docker mode only)
"""
import fcntl
import logging
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from enum import Enum
from pathlib import Path
from typing import List, Optional

import yaml

from .errors import InstallationLocked, InvalidConfiguration
from .roles import InstallMode, NodeRole

logger = logging.getLogger(__name__)

BINARIES = ('orqus-reth', 'orqusbft', 'cometbft')
RECORD_FILE = 'installation.yaml'
LOCK_FILE = '.lock'


class LifecycleState(str, Enum):
    UNINSTALLED = "uninstalled"
    PROVISIONED = "provisioned"
    RUNNING = "running"
    STOPPED = "stopped"
    UPGRADING = "upgrading"


class InstallationLayout:
    """Paths of one installation root"""

    def __init__(self, root):
        self.root = Path(root).expanduser()

    def __repr__(self):
        return f"InstallationLayout({str(self.root)!r})"

    @property
    def bin_dir(self) -> Path:
        return self.root / 'bin'

    @property
    def config_dir(self) -> Path:
        return self.root / 'config'

    @property
    def data_dir(self) -> Path:
        return self.root / 'data'

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / 'logs'

    @property
    def run_dir(self) -> Path:
        return self.data_dir / 'run'

    @property
    def reth_data(self) -> Path:
        return self.data_dir / 'reth'

    @property
    def cometbft_home(self) -> Path:
        return self.data_dir / 'cometbft'

    @property
    def orqusbft_data(self) -> Path:
        return self.data_dir / 'orqusbft'

    # Config artifacts
    @property
    def consensus_genesis(self) -> Path:
        return self.config_dir / 'genesis.json'

    @property
    def execution_genesis(self) -> Path:
        return self.config_dir / 'reth-genesis.json'

    @property
    def validator_key(self) -> Path:
        return self.config_dir / 'priv_validator_key.json'

    @property
    def node_key(self) -> Path:
        return self.config_dir / 'node_key.json'

    @property
    def jwt_secret(self) -> Path:
        return self.config_dir / 'jwt.hex'

    @property
    def cometbft_config(self) -> Path:
        return self.config_dir / 'cometbft-config.toml'

    @property
    def orqusbft_config(self) -> Path:
        return self.config_dir / 'orqusbft-config.yaml'

    @property
    def record_file(self) -> Path:
        return self.config_dir / RECORD_FILE

    @property
    def validator_state(self) -> Path:
        return self.cometbft_home / 'data' / 'priv_validator_state.json'

    # Entry points
    @property
    def compose_file(self) -> Path:
        return self.root / 'docker-compose.yml'

    @property
    def env_file(self) -> Path:
        return self.root / 'env.sh'

    @property
    def start_script(self) -> Path:
        return self.root / 'start.sh'

    @property
    def stop_script(self) -> Path:
        return self.root / 'stop.sh'

    def binary(self, name) -> Path:
        return self.bin_dir / name

    def backup_of(self, name) -> Path:
        return self.bin_dir / f"{name}.bak"

    def log_file(self, name) -> Path:
        return self.logs_dir / f"{name}.log"

    def pid_file(self, name) -> Path:
        return self.run_dir / f"{name}.pid"

    def directories(self) -> List[Path]:
        return [
            self.bin_dir, self.config_dir, self.logs_dir, self.run_dir,
            self.reth_data, self.cometbft_home / 'config', self.cometbft_home / 'data',
            self.orqusbft_data,
        ]

    def ensure(self):
        """Create every directory of the layout (no-op for existing ones)."""
        for directory in self.directories():
            directory.mkdir(parents=True, exist_ok=True)

    def exists(self) -> bool:
        return self.root.is_dir()

    def missing_binaries(self) -> List[str]:
        return [name for name in BINARIES if not self.binary(name).exists()]

    def leftover_backups(self) -> List[str]:
        return [name for name in BINARIES if self.backup_of(name).exists()]

    def detect_mode(self) -> InstallMode:
        """Installations with a compose manifest run in docker mode."""
        return InstallMode.DOCKER if self.compose_file.exists() else InstallMode.BINARY

    @contextmanager
    def lock(self):
        """
        Hold an exclusive advisory lock on the installation root for the
        duration of an install or upgrade.
        """
        self.root.mkdir(parents=True, exist_ok=True)
        handle = open(self.root / LOCK_FILE, 'a+')
        try:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                raise InstallationLocked(
                    f"Another installer operation is running against {self.root}",
                    hint="Wait for it to finish and retry",
                )
            logger.debug(f"Acquired installation lock on {self.root}")
            try:
                yield self
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()


@dataclass
class InstallationRecord:
    """Facts fixed at first install, plus the last known lifecycle state"""
    role: NodeRole
    mode: InstallMode
    chain_id: str
    moniker: str
    state: LifecycleState = LifecycleState.PROVISIONED

    def to_dict(self):
        data = asdict(self)
        data['role'] = self.role.value
        data['mode'] = self.mode.value
        data['state'] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data) -> "InstallationRecord":
        return cls(
            role=NodeRole.parse(data['role']),
            mode=InstallMode.parse(data['mode']),
            chain_id=str(data['chain_id']),
            moniker=data.get('moniker', ''),
            state=LifecycleState(data.get('state', LifecycleState.PROVISIONED.value)),
        )

    def check_compatible(self, role, mode):
        """Role and mode are fixed for the life of an installation."""
        if role is not self.role:
            raise InvalidConfiguration(
                f"Installation was created as a {self.role.value} node; refusing to switch to {role.value}",
                hint="Role is immutable per installation. Use a different ORQUS_INSTALL_DIR.",
            )
        if mode is not self.mode:
            raise InvalidConfiguration(
                f"Installation uses {self.mode.value} mode; refusing to switch to {mode.value}",
            )


def load_record(layout: InstallationLayout) -> Optional[InstallationRecord]:
    if not layout.record_file.exists():
        return None
    with open(layout.record_file, 'r') as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise InvalidConfiguration(f"Corrupt installation record: {layout.record_file}")
    return InstallationRecord.from_dict(data)


def save_record(layout: InstallationLayout, record: InstallationRecord):
    content = yaml.safe_dump(record.to_dict(), sort_keys=False, default_flow_style=False)
    write_if_changed(layout.record_file, content)


def write_atomic(path, content, mode=None):
    """Write text to path via a temporary file in the same directory and rename it into place."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, 'w') as f:
            f.write(content)
        os.chmod(tmp_name, 0o644 if mode is None else mode)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def write_if_changed(path, content, mode=None) -> bool:
    """Write content only when it differs from what is on disk. Returns True if written."""
    path = Path(path)
    if path.exists() and path.read_text() == content:
        if mode is not None and (path.stat().st_mode & 0o777) != mode:
            os.chmod(path, mode)
        logger.debug(f"{path.name} unchanged")
        return False
    write_atomic(path, content, mode=mode)
    logger.debug(f"Wrote {path}")
    return True
