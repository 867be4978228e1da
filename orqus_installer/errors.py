"""
Error taxonomy for installer operations.

Every fatal condition raised by the installer is an InstallerError subclass
carrying a stable ``kind`` string, which the CLI prints as the diagnostic
prefix before exiting non-zero.
"""


class InstallerError(Exception):
    """Base class for fatal installer errors"""
    kind = "InstallerError"

    def __init__(self, message, hint=None):
        super().__init__(message)
        self.message = message
        self.hint = hint

    def __str__(self):
        return self.message


class UnsupportedEnvironment(InstallerError):
    """Platform, architecture or required runtime is not usable"""
    kind = "UnsupportedEnvironment"


class InvalidConfiguration(InstallerError):
    """Role, mode or another setting is invalid or conflicts with the installation"""
    kind = "InvalidConfiguration"


class ArtifactFetchFailed(InstallerError):
    kind = "ArtifactFetchFailed"


class NoReleaseFound(InstallerError):
    kind = "NoReleaseFound"


class GenesisFetchFailed(InstallerError):
    kind = "GenesisFetchFailed"


class InvalidGenesisFormat(InstallerError):
    kind = "InvalidGenesisFormat"


class UpgradeDownloadFailed(InstallerError):
    """A replacement binary could not be downloaded; the previous set was restored"""
    kind = "UpgradeDownloadFailed"


class ProcessStartFailed(InstallerError):
    kind = "ProcessStartFailed"


class InstallationLocked(InstallerError):
    """Another installer invocation holds the installation lock"""
    kind = "InstallationLocked"


class KeyGenerationFailed(InstallerError):
    kind = "KeyGenerationFailed"
