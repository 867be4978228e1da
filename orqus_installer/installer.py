"""
Install and upgrade orchestration.

install():  pre-flight -> artifacts -> identity -> genesis -> configuration
            -> CometBFT home / reth database -> installation record
upgrade():  pre-flight -> LifecycleManager.upgrade

Pre-flight checks run before anything is written, and both operations hold
the installation lock while they mutate the layout.
"""
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import requests
import yaml

from .artifacts import ArtifactFetcher, ReleaseDescriptor
from .commands import CommandRunner, DockerCLI
from .config import InstallerConfig
from .errors import InvalidConfiguration, UnsupportedEnvironment
from .genesis import ChainIdentity, GenesisResolver
from .identity import CometBFTKeyGenerator, ContainerKeyGenerator, IdentityProvisioner, KeyGenerator
from .lifecycle import LifecycleManager, UpgradeResult
from .platform_probe import Platform, detect_platform
from .renderer import ConfigRenderer, consensus_home_files
from .roles import InstallMode
from .state import InstallationLayout, InstallationRecord, load_record, save_record

logger = logging.getLogger(__name__)

SECRET_FILES = ('priv_validator_key.json', 'node_key.json')


@dataclass
class InstallSummary:
    config: InstallerConfig
    chain: ChainIdentity
    version: Optional[str]
    changed_files: List[Path] = field(default_factory=list)
    downloaded: List[str] = field(default_factory=list)
    new_identity: bool = False


def installation_config(config: InstallerConfig) -> InstallerConfig:
    """
    Adopt the role and mode recorded by an existing installation unless they
    were given explicitly; explicit conflicting values are left for the
    pre-flight check to reject.
    """
    record = load_record(InstallationLayout(config.install_dir))
    if record is None:
        return config
    overrides = {}
    if 'role' not in config.explicit:
        overrides['role'] = record.role
    if 'mode' not in config.explicit:
        overrides['mode'] = record.mode
    return config.with_overrides(**overrides)


class Installer:
    def __init__(self, config: InstallerConfig, session=None, runner: CommandRunner = None,
                 docker: DockerCLI = None, platform: Platform = None,
                 key_generator: KeyGenerator = None, clock=None):
        self.config = config
        self.layout = InstallationLayout(config.install_dir)
        self.session = session or requests.Session()
        self.runner = runner or CommandRunner()
        self.docker = docker or DockerCLI(self.runner)
        self.platform = platform
        self.key_generator = key_generator
        self.clock = clock
        self._release: Optional[ReleaseDescriptor] = None

    @property
    def docker_mode(self) -> bool:
        return self.config.mode is InstallMode.DOCKER

    # Pre-flight

    def preflight(self) -> Platform:
        """Validate environment and installation compatibility without mutating anything."""
        platform = self.platform or detect_platform()
        self.platform = platform

        record = load_record(self.layout)
        if record is not None:
            record.check_compatible(self.config.role, self.config.mode)

        if self.docker_mode:
            if not self.docker.available():
                raise UnsupportedEnvironment("Docker is not installed. Please install Docker first.")
            if not self.docker.compose_command():
                raise UnsupportedEnvironment("Docker Compose is not installed. Please install Docker Compose first.")
        elif any(name != 'cometbft' for name in self.layout.missing_binaries()):
            platform.require_release_binaries()
        return platform

    # Install

    def install(self) -> InstallSummary:
        logger.info(f"Installation mode: {self.config.mode.value}")
        logger.info(f"Node type: {self.config.role.value}")
        platform = self.preflight()
        fetcher = ArtifactFetcher(self.config, platform, session=self.session, docker=self.docker)

        with self.layout.lock():
            logger.info("Creating directories...")
            self.layout.ensure()

            images = None
            downloaded = []
            if self.docker_mode:
                images = self._install_images(fetcher)
            else:
                downloaded = self._install_binaries(fetcher)

            provisioner = IdentityProvisioner(self.layout, self._key_generator(images))
            provisioner.ensure_auth_secret()
            new_identity = provisioner.ensure_identity()

            resolver = GenesisResolver(self.config, self.layout, provisioner.identity,
                                       session=self.session, clock=self.clock)
            chain = resolver.resolve(release_provider=lambda: self._resolve_release(fetcher))

            renderer = ConfigRenderer(self.config, self.layout)
            changed = renderer.write(renderer.render(chain.chain_id, images))

            self.materialize_consensus_home()
            if not self.docker_mode:
                self.init_execution_db()

            record = load_record(self.layout) or InstallationRecord(
                role=self.config.role, mode=self.config.mode,
                chain_id=chain.chain_id, moniker=self.config.moniker,
            )
            record.chain_id = chain.chain_id
            save_record(self.layout, record)

        version = self._release.version if self._release else None
        return InstallSummary(self.config, chain, version, changed, downloaded, new_identity)

    def _resolve_release(self, fetcher: ArtifactFetcher) -> ReleaseDescriptor:
        if self._release is None:
            self._release = fetcher.resolve_release(allow_fallback=True)
        return self._release

    def _install_binaries(self, fetcher: ArtifactFetcher) -> List[str]:
        downloaded = []
        for name in ('orqus-reth', 'orqusbft', 'cometbft'):
            dest = self.layout.binary(name)
            if dest.exists():
                logger.info(f"{name} already exists, skipping download")
                continue
            if name == 'cometbft':
                fetcher.download_cometbft(dest)
            else:
                fetcher.download_binary(name, fetcher.binary_url(name, self._resolve_release(fetcher)), dest)
            downloaded.append(name)
        return downloaded

    def _install_images(self, fetcher: ArtifactFetcher) -> Dict[str, str]:
        installed = self.installed_images()
        if installed:
            # keep the tags the manifest already runs; upgrade is what moves them
            logger.info("Using image tags from the existing docker-compose.yml")
            fetcher.registry_login()
            for service, image in installed.items():
                result = self.docker.pull(image)
                if not result.ok:
                    logger.warning(f"Could not refresh {service} image {image}: {result.stderr.strip()}")
            return installed
        return fetcher.pull_images(fetcher.image_tag(self._resolve_release(fetcher)))

    def installed_images(self) -> Dict[str, str]:
        if not self.layout.compose_file.exists():
            return {}
        with open(self.layout.compose_file, 'r') as f:
            manifest = yaml.safe_load(f) or {}
        services = manifest.get('services', {})
        return {name: services[name]['image'] for name in ('orqus-reth', 'orqusbft', 'cometbft')
                if name in services and 'image' in services[name]}

    def _key_generator(self, images) -> KeyGenerator:
        if self.key_generator is not None:
            return self.key_generator
        if self.docker_mode:
            return ContainerKeyGenerator(images['cometbft'], self.docker)
        return CometBFTKeyGenerator(self.layout.binary('cometbft'), self.runner)

    def materialize_consensus_home(self):
        """Copy genesis, config and keys into the CometBFT home, skipping identical files."""
        logger.info("Setting up CometBFT...")
        for source, dest in consensus_home_files(self.layout).items():
            content = source.read_bytes()
            if dest.exists() and dest.read_bytes() == content:
                continue
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, dest)
            if dest.name in SECRET_FILES:
                os.chmod(dest, 0o600)
        logger.info("CometBFT setup complete")

    def init_execution_db(self):
        """Run ``orqus-reth init`` once; failure is reported but not fatal."""
        if (self.layout.reth_data / 'db').exists():
            return
        logger.info("Initializing orqus-reth...")
        result = self.runner.run([
            self.layout.binary('orqus-reth'), 'init',
            '--datadir', self.layout.reth_data,
            '--chain', self.layout.execution_genesis,
        ], timeout=300)
        if result.ok:
            logger.info("orqus-reth initialized")
        else:
            logger.warning(f"orqus-reth init failed: {result.stderr.strip()}")

    # Upgrade

    def upgrade(self) -> UpgradeResult:
        record = load_record(self.layout)
        if record is None:
            raise InvalidConfiguration(
                f"No existing installation found at {self.layout.root}",
                hint="Run install first (without 'upgrade')",
            )
        config = self.config.with_overrides(role=record.role, mode=record.mode)
        logger.info(f"Detected installation mode: {config.mode.value}")
        logger.info(f"Installation directory: {self.layout.root}")

        platform = self.platform or detect_platform()
        fetcher = ArtifactFetcher(config, platform, session=self.session, docker=self.docker)
        lifecycle = LifecycleManager(config, self.layout, docker=self.docker)
        with self.layout.lock():
            return lifecycle.upgrade(fetcher, platform)
