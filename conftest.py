"""
Shared fixtures: fake HTTP sessions, subprocess runners, docker and key
generation, so installer flows can run against a temporary directory.
"""
import io
import json
import tarfile
from pathlib import Path

import pytest
import requests

from orqus_installer.commands import CommandResult
from orqus_installer.config import InstallerConfig
from orqus_installer.identity import KeyGenerator
from orqus_installer.platform_probe import Platform
from orqus_installer.state import InstallationLayout

VALIDATOR_KEY = {
    "address": "A1B2C3D4E5F60718293A4B5C6D7E8F9012345678",
    "pub_key": {"type": "tendermint/PubKeyEd25519", "value": "dGVzdC1wdWJrZXktdmFsdWUtMzItYnl0ZXMtbG9uZyE="},
    "priv_key": {"type": "tendermint/PrivKeyEd25519", "value": "c2VjcmV0"},
}
NODE_KEY = {"priv_key": {"type": "tendermint/PrivKeyEd25519", "value": "bm9kZS1rZXk="}}


class FakeResponse:
    def __init__(self, status_code=200, content=b"", headers=None):
        self.status_code = status_code
        self.content = content if isinstance(content, bytes) else content.encode()
        self.headers = headers or {}

    @classmethod
    def json_body(cls, data, status_code=200):
        return cls(status_code, json.dumps(data).encode())

    def json(self):
        return json.loads(self.content)

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)


class FakeSession:
    """Maps URLs to responses or exceptions and records every request."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if url not in self.routes:
            raise requests.ConnectionError(f"no route for {url}")
        outcome = self.routes[url]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def urls(self):
        return [url for url, _ in self.calls]


class ForbiddenSession:
    """Fails the test on any network call."""

    def get(self, url, **kwargs):
        raise AssertionError(f"unexpected network call to {url}")


class FakeKeyGenerator(KeyGenerator):
    def __init__(self):
        self.homes = []

    def generate(self, home):
        self.homes.append(Path(home))
        config = Path(home) / 'config'
        config.mkdir(parents=True, exist_ok=True)
        (config / 'priv_validator_key.json').write_text(json.dumps(VALIDATOR_KEY, indent=2))
        (config / 'node_key.json').write_text(json.dumps(NODE_KEY))
        # cometbft init also writes files the installer must ignore
        (config / 'genesis.json').write_text('{"chain_id": "scratch"}')


class FakeRunner:
    def __init__(self, results=None, available=('docker',)):
        self.results = results or {}
        self.available = set(available)
        self.calls = []

    def run(self, argv, timeout=120, input=None, cwd=None):
        argv = [str(a) for a in argv]
        self.calls.append(argv)
        for prefix, result in self.results.items():
            if ' '.join(argv).startswith(prefix):
                return result
        return CommandResult(0, "", "")

    def which(self, name):
        return f"/usr/bin/{name}" if name in self.available else None


class FakeDocker:
    def __init__(self, available=True, compose=True, failing_pulls=()):
        self._available = available
        self._compose = compose
        self.failing_pulls = set(failing_pulls)
        self.pulled = []
        self.compose_calls = []
        self.containers = []
        self.logins = []

    def available(self):
        return self._available

    def compose_command(self):
        return ['docker', 'compose'] if self._compose else []

    def login(self, host, username, token):
        self.logins.append((host, username))
        return CommandResult(0)

    def pull(self, image):
        self.pulled.append(image)
        if image in self.failing_pulls:
            return CommandResult(1, "", f"manifest unknown: {image}")
        return CommandResult(0)

    def run_container(self, image, args, volumes=(), user=None):
        self.containers.append((image, list(args)))
        return CommandResult(0)

    def compose(self, project_dir, *args):
        self.compose_calls.append(list(args))
        return CommandResult(0, "", "")


def cometbft_tarball(payload=b"\x7fELF cometbft"):
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode='w:gz') as archive:
        info = tarfile.TarInfo('cometbft')
        info.size = len(payload)
        archive.addfile(info, io.BytesIO(payload))
    return buffer.getvalue()


def write_validator_key(layout: InstallationLayout):
    layout.config_dir.mkdir(parents=True, exist_ok=True)
    layout.validator_key.write_text(json.dumps(VALIDATOR_KEY, indent=2))


@pytest.fixture
def make_config(tmp_path):
    def _make(**overrides):
        overrides.setdefault('install_dir', tmp_path / 'orqus')
        return InstallerConfig(**overrides)
    return _make


@pytest.fixture
def layout(tmp_path):
    return InstallationLayout(tmp_path / 'orqus')


@pytest.fixture
def linux_amd64():
    return Platform(os='linux', arch='amd64')
