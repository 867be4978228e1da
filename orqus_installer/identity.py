"""
Node identity: validator signing key, node key and the Engine API JWT secret.

Identity is created once and never regenerated while present; regenerating it
would give the node a new network identity.
"""
import json
import logging
import os
import secrets
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

from .commands import CommandRunner, DockerCLI
from .errors import KeyGenerationFailed
from .state import InstallationLayout, write_atomic

logger = logging.getLogger(__name__)

KEY_FILES = ('priv_validator_key.json', 'node_key.json')
INITIAL_SIGN_STATE = {"height": "0", "round": 0, "step": 0}


class KeyGenerator:
    """
    Produces priv_validator_key.json and node_key.json under <home>/config.

    The default implementations shell out to ``cometbft init``; anything able
    to write those two files can take their place.
    """

    def generate(self, home: Path):
        raise NotImplementedError


class CometBFTKeyGenerator(KeyGenerator):
    """Runs the installed cometbft binary"""

    def __init__(self, binary, runner: CommandRunner = None):
        self.binary = Path(binary)
        self.runner = runner or CommandRunner()

    def generate(self, home: Path):
        result = self.runner.run([self.binary, 'init', '--home', home], timeout=60)
        if not result.ok:
            raise KeyGenerationFailed(f"cometbft init failed: {result.stderr.strip()}")


class ContainerKeyGenerator(KeyGenerator):
    """Runs cometbft init inside the CometBFT image, as the current user"""

    def __init__(self, image, docker: DockerCLI = None):
        self.image = image
        self.docker = docker or DockerCLI()

    def generate(self, home: Path):
        result = self.docker.run_container(
            self.image, ['init', '--home', '/cometbft'],
            volumes=[f"{home}:/cometbft"],
            user=f"{os.getuid()}:{os.getgid()}",
        )
        if not result.ok:
            raise KeyGenerationFailed(f"Failed to generate validator key: {result.stderr.strip()}")


@dataclass(frozen=True)
class Identity:
    validator_key: Path
    node_key: Path
    auth_secret: Path

    def validator_info(self) -> Dict[str, str]:
        """Address and base64 public key of the validator signing key."""
        with open(self.validator_key, 'r') as f:
            key = json.load(f)
        return {
            'address': key['address'],
            'pub_key_type': key['pub_key'].get('type', 'tendermint/PubKeyEd25519'),
            'pub_key': key['pub_key']['value'],
        }


class IdentityProvisioner:
    def __init__(self, layout: InstallationLayout, key_generator: KeyGenerator):
        self.layout = layout
        self.key_generator = key_generator

    @property
    def identity(self) -> Identity:
        return Identity(
            validator_key=self.layout.validator_key,
            node_key=self.layout.node_key,
            auth_secret=self.layout.jwt_secret,
        )

    def ensure_auth_secret(self) -> bool:
        """Create the JWT secret shared by orqusbft and orqus-reth if absent."""
        if self.layout.jwt_secret.exists():
            logger.info("JWT secret already exists")
            return False
        logger.info("Generating JWT secret...")
        write_atomic(self.layout.jwt_secret, secrets.token_hex(32) + "\n", mode=0o600)
        logger.info("JWT secret generated")
        return True

    def ensure_identity(self) -> bool:
        """
        Generate the validator and node keys unless a signing key is already
        persisted, then seed the signer state record if absent.

        Returns True when new keys were generated.
        """
        created = False
        if self.layout.validator_key.exists():
            logger.info("Validator key already exists")
        else:
            self._generate_keys()
            created = True
        self.seed_sign_state()
        return created

    def seed_sign_state(self):
        """
        Initialise priv_validator_state.json to height 0. CometBFT owns this
        file at runtime, so an existing one is never touched.
        """
        state_file = self.layout.validator_state
        if state_file.exists():
            return
        write_atomic(state_file, json.dumps(INITIAL_SIGN_STATE) + "\n", mode=0o600)
        logger.debug(f"Seeded {state_file}")

    def _generate_keys(self):
        logger.info("Generating validator key...")
        self.layout.data_dir.mkdir(parents=True, exist_ok=True)
        scratch = Path(tempfile.mkdtemp(prefix='keygen-', dir=self.layout.data_dir))
        try:
            self.key_generator.generate(scratch)
            generated = scratch / 'config'
            missing = [name for name in KEY_FILES if not (generated / name).exists()]
            if missing:
                raise KeyGenerationFailed(f"Key generator did not produce {', '.join(missing)}")
            self.layout.config_dir.mkdir(parents=True, exist_ok=True)
            # node key first so that a present signing key always implies a complete identity
            for name in reversed(KEY_FILES):
                dest = self.layout.config_dir / name
                shutil.copyfile(generated / name, dest)
                os.chmod(dest, 0o600)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)
        logger.info("Validator key generated")
