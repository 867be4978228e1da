"""
Thin wrapper around subprocess for the external tools the installer drives
(cometbft, orqus-reth, docker).
"""
import logging
import shutil
import subprocess
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Runs external commands and never raises for a failing command."""

    def run(self, argv, timeout=120, input=None, cwd=None) -> CommandResult:
        logger.debug(f"Running: {' '.join(str(a) for a in argv)}")
        try:
            process = subprocess.run(
                [str(a) for a in argv], capture_output=True, text=True,
                timeout=timeout, input=input, cwd=cwd,
            )
            return CommandResult(process.returncode, process.stdout, process.stderr)
        except subprocess.TimeoutExpired:
            return CommandResult(124, "", f"Command timed out after {timeout}s")
        except OSError as e:
            return CommandResult(127, "", str(e))

    def which(self, name):
        return shutil.which(name)


class DockerCLI:
    """The subset of the docker CLI used for container-mode installs"""

    def __init__(self, runner: CommandRunner = None):
        self.runner = runner or CommandRunner()
        self._compose = None

    def available(self) -> bool:
        return self.runner.which('docker') is not None

    def compose_command(self):
        """Return the argv prefix for compose: the plugin if present, else docker-compose."""
        if self._compose is None:
            if self.runner.run(['docker', 'compose', 'version'], timeout=15).ok:
                self._compose = ['docker', 'compose']
            elif self.runner.which('docker-compose') and self.runner.run(['docker-compose', 'version'], timeout=15).ok:
                self._compose = ['docker-compose']
            else:
                self._compose = []
        return self._compose

    def login(self, registry_host, username, token) -> CommandResult:
        return self.runner.run(
            ['docker', 'login', registry_host, '-u', username, '--password-stdin'],
            timeout=60, input=token,
        )

    def pull(self, image) -> CommandResult:
        return self.runner.run(['docker', 'pull', image], timeout=900)

    def run_container(self, image, args, volumes=(), user=None) -> CommandResult:
        argv = ['docker', 'run', '--rm']
        if user:
            argv += ['--user', user]
        for volume in volumes:
            argv += ['-v', volume]
        argv.append(image)
        argv += list(args)
        return self.runner.run(argv, timeout=300)

    def compose(self, project_dir, *args) -> CommandResult:
        prefix = self.compose_command()
        if not prefix:
            return CommandResult(127, "", "docker compose is not installed")
        return self.runner.run(prefix + list(args), timeout=300, cwd=str(project_dir))
