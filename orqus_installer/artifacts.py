"""
Release resolution and artifact retrieval: GitHub release binaries, the
CometBFT tarball and container images.
"""
import io
import logging
import os
import tarfile
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import requests

from .commands import DockerCLI
from .config import InstallerConfig
from .errors import ArtifactFetchFailed, NoReleaseFound
from .platform_probe import Platform

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
GITHUB_DOWNLOAD = "https://github.com"
FALLBACK_TAG = "latest"

METADATA_TIMEOUT = 10
DOWNLOAD_TIMEOUT = 300

RETH_IMAGE = "orqus-reth"
ORQUSBFT_IMAGE = "orqusbft"
COMETBFT_IMAGE = "cometbft/cometbft"


@dataclass(frozen=True)
class ReleaseDescriptor:
    version: str
    artifact_base_url: str

    def artifact_url(self, name) -> str:
        return f"{self.artifact_base_url}/{name}"


class ArtifactFetcher:
    """Resolves releases and fetches binaries or images for one installation"""

    def __init__(self, config: InstallerConfig, platform: Platform, session=None, docker: DockerCLI = None):
        self.config = config
        self.platform = platform
        self.session = session or requests.Session()
        self.docker = docker or DockerCLI()

    # Release resolution

    def release_for(self, version) -> ReleaseDescriptor:
        base = f"{GITHUB_DOWNLOAD}/{self.config.release_repo}/releases/download/{version}"
        return ReleaseDescriptor(version=version, artifact_base_url=base)

    def get_latest_version(self) -> Optional[str]:
        """Query the GitHub API for the latest release tag; None when it cannot be determined."""
        api_url = f"{GITHUB_API}/repos/{self.config.release_repo}/releases/latest"
        headers = {'Accept': 'application/vnd.github+json'}
        if self.config.github_token:
            headers['Authorization'] = f"Bearer {self.config.github_token}"
        try:
            response = self.session.get(api_url, headers=headers, timeout=METADATA_TIMEOUT)
            if response.status_code == 200:
                return response.json().get('tag_name') or None
            if response.status_code == 403:
                logger.warning("GitHub API rate limit reached while resolving the latest release")
            else:
                logger.warning(f"GitHub API returned {response.status_code} for {api_url}")
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Could not query latest release: {e}")
        return None

    def resolve_release(self, allow_fallback=True) -> ReleaseDescriptor:
        """
        Resolve the release to install.

        An explicit ORQUS_VERSION wins. Otherwise the latest GitHub release is
        used; when it cannot be determined the 'latest' tag is accepted only
        if allow_fallback is set (install), and NoReleaseFound is raised
        otherwise (upgrade).
        """
        if self.config.version:
            logger.info(f"Using pinned version: {self.config.version}")
            return self.release_for(self.config.version)

        logger.info("Fetching latest release...")
        version = self.get_latest_version()
        if version:
            logger.info(f"Latest version: {version}")
            return self.release_for(version)
        if allow_fallback:
            logger.warning(f"Could not fetch latest version, using '{FALLBACK_TAG}' tag")
            return self.release_for(FALLBACK_TAG)
        raise NoReleaseFound(
            f"Could not resolve the latest release of {self.config.release_repo}",
            hint="Set ORQUS_VERSION to upgrade to a specific release",
        )

    # Binaries

    def binary_url(self, name, release: ReleaseDescriptor) -> str:
        return release.artifact_url(f"{name}-{self.platform.os}-{self.platform.arch}")

    def cometbft_url(self) -> str:
        version = self.config.cometbft_version
        return (f"{GITHUB_DOWNLOAD}/cometbft/cometbft/releases/download/{version}/"
                f"cometbft_{version.lstrip('v')}_{self.platform.os}_{self.platform.arch}.tar.gz")

    def download(self, name, dest, release: ReleaseDescriptor):
        """Download one managed binary (by name) to dest."""
        if name == 'cometbft':
            self.download_cometbft(dest)
        else:
            self.download_binary(name, self.binary_url(name, release), dest)

    def download_binary(self, name, url, dest):
        logger.info(f"Downloading {name}...")
        payload = self._fetch(url)
        _verify_executable(name, payload)
        _install_file(dest, payload)
        logger.info(f"Downloaded {name}")

    def download_cometbft(self, dest):
        version = self.config.cometbft_version
        logger.info(f"Downloading CometBFT {version}...")
        payload = self._fetch(self.cometbft_url())
        try:
            with tarfile.open(fileobj=io.BytesIO(payload), mode='r:gz') as archive:
                member = next((m for m in archive.getmembers()
                               if m.isfile() and os.path.basename(m.name) == 'cometbft'), None)
                if member is None:
                    raise ArtifactFetchFailed(f"CometBFT {version} archive does not contain a cometbft binary")
                binary = archive.extractfile(member).read()
        except tarfile.TarError as e:
            raise ArtifactFetchFailed(f"CometBFT {version} archive is corrupt: {e}")
        _verify_executable('cometbft', binary)
        _install_file(dest, binary)
        logger.info(f"Downloaded CometBFT {version}")

    def _fetch(self, url, timeout=DOWNLOAD_TIMEOUT) -> bytes:
        try:
            response = self.session.get(url, timeout=timeout, allow_redirects=True)
            response.raise_for_status()
            return response.content
        except requests.RequestException as e:
            raise ArtifactFetchFailed(f"Failed to download {url}: {e}")

    # Container images

    def image_tag(self, release: ReleaseDescriptor) -> str:
        return self.config.docker_tag or release.version

    def image_prefixes(self) -> Dict[str, str]:
        """Service name -> image reference without tag"""
        registry = self.config.docker_registry
        return {
            'orqus-reth': f"{registry}/{RETH_IMAGE}",
            'orqusbft': f"{registry}/{ORQUSBFT_IMAGE}",
            'cometbft': COMETBFT_IMAGE,
        }

    def images(self, tag) -> Dict[str, str]:
        """Service name -> fully tagged image reference for an orqus image tag"""
        prefixes = self.image_prefixes()
        return {
            'orqus-reth': f"{prefixes['orqus-reth']}:{tag}",
            'orqusbft': f"{prefixes['orqusbft']}:{tag}",
            'cometbft': f"{prefixes['cometbft']}:{self.config.cometbft_version}",
        }

    def registry_login(self):
        """Log in to the registry when a token is configured; failure is not fatal."""
        if not self.config.github_token:
            return
        host = self.config.docker_registry.split('/')[0]
        logger.info(f"Logging into {host}...")
        result = self.docker.login(host, self.config.release_repo.split('/')[0], self.config.github_token)
        if not result.ok:
            logger.warning(f"Failed to login to {host}, trying without auth...")

    def pull_images(self, tag) -> Dict[str, str]:
        """Pull every image for the tag. Raises ArtifactFetchFailed on the first failure."""
        logger.info("Pulling Docker images...")
        self.registry_login()
        images = self.images(tag)
        for service, image in images.items():
            logger.info(f"Pulling {image}...")
            result = self.docker.pull(image)
            if not result.ok:
                raise ArtifactFetchFailed(
                    f"Failed to pull {service} image {image}: {result.stderr.strip()}",
                    hint="If the image is private, set GITHUB_TOKEN",
                )
        logger.info("Docker images pulled")
        return images


def _verify_executable(name, payload: bytes):
    """Reject empty downloads and HTML/XML error pages served in place of a binary."""
    if not payload:
        raise ArtifactFetchFailed(f"Downloaded {name} is empty")
    head = payload[:256].lstrip().lower()
    if head.startswith(b'<') or head.startswith(b'not found'):
        raise ArtifactFetchFailed(f"Downloaded {name} is not a binary (got an error page)")


def _install_file(dest, payload: bytes):
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.")
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(payload)
        os.chmod(tmp_name, 0o755)
        os.replace(tmp_name, dest)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
