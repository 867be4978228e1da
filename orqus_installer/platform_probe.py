"""
Resolves the host OS/architecture to an entry of the release build matrix.
"""
import logging
import platform
from dataclasses import dataclass

from .errors import UnsupportedEnvironment

logger = logging.getLogger(__name__)

ARCH_ALIASES = {
    'x86_64': 'amd64',
    'amd64': 'amd64',
    'aarch64': 'arm64',
    'arm64': 'arm64',
}
SUPPORTED_OS = ('linux', 'darwin')

# orqus-reth and orqusbft are only published for these targets; CometBFT covers the whole matrix
RELEASE_BINARY_TARGETS = {('linux', 'amd64')}


@dataclass(frozen=True)
class Platform:
    os: str
    arch: str

    @property
    def target(self) -> str:
        return f"{self.os}-{self.arch}"

    @property
    def has_release_binaries(self) -> bool:
        return (self.os, self.arch) in RELEASE_BINARY_TARGETS

    def require_release_binaries(self):
        if not self.has_release_binaries:
            raise UnsupportedEnvironment(
                f"orqus-reth and orqusbft binaries are not available for {self.target}",
                hint="Currently only linux-amd64 is supported. Use INSTALL_MODE=docker instead.",
            )


def detect_platform(system=None, machine=None) -> Platform:
    """Detect the host platform; raises UnsupportedEnvironment outside the build matrix."""
    os_name = (system if system is not None else platform.system()).lower()
    raw_arch = machine if machine is not None else platform.machine()

    arch = ARCH_ALIASES.get(raw_arch.lower())
    if arch is None:
        raise UnsupportedEnvironment(f"Unsupported architecture: {raw_arch}")
    if os_name not in SUPPORTED_OS:
        raise UnsupportedEnvironment(f"Unsupported OS: {os_name}")

    detected = Platform(os=os_name, arch=arch)
    logger.info(f"Detected platform: {detected.os}/{detected.arch}")
    return detected
