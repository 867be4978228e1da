"""
Upgrade strategies for binary and container installations.

Binary mode keeps the current binaries as ``<name>.bak`` until every
replacement has been downloaded, so the binary set is replaced all or
nothing. Container mode pulls every image before the compose manifest is
rewritten; an untouched manifest still describes runnable containers.
"""
import logging
import os
import re
from typing import Dict, List, Tuple

from .artifacts import ArtifactFetcher, ReleaseDescriptor
from .commands import DockerCLI
from .errors import ProcessStartFailed, UpgradeDownloadFailed
from .state import BINARIES, InstallationLayout, write_atomic

logger = logging.getLogger(__name__)


def rewrite_image_references(text, replacements: Dict[str, str]) -> Tuple[str, int]:
    """
    Replace ``<prefix>:<tag>`` image references with new full references.

    replacements maps an image prefix (registry + name, without tag) to the
    new reference. Only exact prefix matches followed by a tag are replaced;
    ``ghcr.io/x/orqusbft`` never touches ``ghcr.io/x/orqusbft-tools:1`` or
    ``mirror/ghcr.io/x/orqusbft:1``.
    """
    total = 0
    for prefix, new_ref in replacements.items():
        pattern = re.compile(r'(?<![\w./-])' + re.escape(prefix) + r':[^\s"\']+')
        text, count = pattern.subn(lambda _m: new_ref, text)
        total += count
    return text, total


class BinaryUpgrade:
    def __init__(self, layout: InstallationLayout, fetcher: ArtifactFetcher, binaries=BINARIES):
        self.layout = layout
        self.fetcher = fetcher
        self.binaries = list(binaries)

    def recover_interrupted(self) -> List[str]:
        """Put back backups left behind by an upgrade that died midway."""
        restored = []
        for name in self.layout.leftover_backups():
            logger.warning(f"Restoring {name} from an interrupted upgrade")
            os.replace(self.layout.backup_of(name), self.layout.binary(name))
            restored.append(name)
        return restored

    def backup(self) -> List[str]:
        logger.info("Backing up old binaries...")
        backed_up = []
        for name in self.binaries:
            binary = self.layout.binary(name)
            if binary.exists():
                os.replace(binary, self.layout.backup_of(name))
                backed_up.append(name)
        return backed_up

    def rollback(self, backed_up: List[str]):
        """Return the binary set to exactly what it was before backup()."""
        for name in self.binaries:
            binary = self.layout.binary(name)
            if name in backed_up:
                os.replace(self.layout.backup_of(name), binary)
            else:
                binary.unlink(missing_ok=True)
        logger.info("Restored previous binaries")

    def run(self, release: ReleaseDescriptor) -> List[str]:
        self.layout.bin_dir.mkdir(parents=True, exist_ok=True)
        backed_up = self.backup()
        logger.info("Downloading new binaries...")
        try:
            for name in self.binaries:
                self.fetcher.download(name, self.layout.binary(name), release)
        except BaseException as e:
            logger.error(f"Download failed, rolling back: {e}")
            self.rollback(backed_up)
            if isinstance(e, Exception):
                raise UpgradeDownloadFailed(
                    f"Upgrade to {release.version} failed: {e}",
                    hint="The previous binaries were restored",
                ) from e
            raise

        for name in backed_up:
            self.layout.backup_of(name).unlink(missing_ok=True)
        return list(self.binaries)


class ContainerUpgrade:
    def __init__(self, layout: InstallationLayout, fetcher: ArtifactFetcher, docker: DockerCLI = None):
        self.layout = layout
        self.fetcher = fetcher
        self.docker = docker or fetcher.docker

    def run(self, release: ReleaseDescriptor) -> List[str]:
        tag = self.fetcher.image_tag(release)
        images = self.fetcher.pull_images(tag)

        logger.info("Updating docker-compose.yml...")
        prefixes = self.fetcher.image_prefixes()
        replacements = {prefixes[service]: images[service] for service in images}
        manifest = self.layout.compose_file.read_text()
        updated, count = rewrite_image_references(manifest, replacements)
        if updated != manifest:
            write_atomic(self.layout.compose_file, updated)
        logger.debug(f"Rewrote {count} image references")

        logger.info("Starting containers with new images...")
        result = self.docker.compose(self.layout.root, 'up', '-d')
        if not result.ok:
            raise ProcessStartFailed(
                f"docker compose up failed after upgrade: {result.stderr.strip()}",
                hint=f"Images are pulled; retry with {self.layout.start_script}",
            )
        return sorted(images)
