"""
Tests for binary upgrades with rollback and container upgrades.
"""
import pytest

from conftest import FakeDocker
from orqus_installer.artifacts import ArtifactFetcher, ReleaseDescriptor
from orqus_installer.errors import ArtifactFetchFailed, NoReleaseFound, UpgradeDownloadFailed
from orqus_installer.lifecycle import LifecycleManager
from orqus_installer.renderer import ConfigRenderer
from orqus_installer.roles import InstallMode, NodeRole
from orqus_installer.state import (
    BINARIES, InstallationRecord, LifecycleState, load_record, save_record,
)
from orqus_installer.upgrade import BinaryUpgrade, ContainerUpgrade, rewrite_image_references

RELEASE = ReleaseDescriptor("v2.0.0", "https://github.com/orqusio/orqus-releases/releases/download/v2.0.0")


class FakeFetcher:
    """Writes new binaries, failing on the names listed in fail_on"""

    def __init__(self, fail_on=(), release=RELEASE):
        self.fail_on = set(fail_on)
        self.release = release
        self.downloaded = []

    def resolve_release(self, allow_fallback=True):
        if self.release is None:
            raise NoReleaseFound("no release")
        return self.release

    def download(self, name, dest, release):
        if name in self.fail_on:
            raise ArtifactFetchFailed(f"Failed to download {name}")
        dest.write_bytes(f"new {name} {release.version}".encode())
        self.downloaded.append(name)


def install_binaries(layout):
    layout.ensure()
    for name in BINARIES:
        layout.binary(name).write_bytes(f"old {name}".encode())


def binary_contents(layout):
    return {name: layout.binary(name).read_bytes() for name in BINARIES}


def test_successful_binary_upgrade(layout):
    install_binaries(layout)
    replaced = BinaryUpgrade(layout, FakeFetcher()).run(RELEASE)

    assert replaced == list(BINARIES)
    assert binary_contents(layout) == {name: f"new {name} v2.0.0".encode() for name in BINARIES}
    assert layout.leftover_backups() == []


def test_failed_download_restores_every_binary(layout):
    install_binaries(layout)
    before = binary_contents(layout)
    fetcher = FakeFetcher(fail_on={'orqusbft'})

    with pytest.raises(UpgradeDownloadFailed) as excinfo:
        BinaryUpgrade(layout, fetcher).run(RELEASE)

    assert fetcher.downloaded == ['orqus-reth']
    assert binary_contents(layout) == before
    assert layout.leftover_backups() == []
    assert isinstance(excinfo.value.__cause__, ArtifactFetchFailed)


def test_rollback_removes_binaries_that_had_no_original(layout):
    layout.ensure()
    layout.binary('orqus-reth').write_bytes(b"old orqus-reth")

    with pytest.raises(UpgradeDownloadFailed):
        BinaryUpgrade(layout, FakeFetcher(fail_on={'cometbft'})).run(RELEASE)

    assert layout.binary('orqus-reth').read_bytes() == b"old orqus-reth"
    assert not layout.binary('orqusbft').exists()
    assert not layout.binary('cometbft').exists()


def test_interrupted_upgrade_is_recovered(layout):
    install_binaries(layout)
    layout.binary('orqusbft').rename(layout.backup_of('orqusbft'))
    layout.backup_of('orqus-reth').write_bytes(b"older orqus-reth")

    restored = BinaryUpgrade(layout, FakeFetcher()).recover_interrupted()

    assert restored == ['orqus-reth', 'orqusbft']
    assert layout.binary('orqusbft').read_bytes() == b"old orqusbft"
    assert layout.binary('orqus-reth').read_bytes() == b"older orqus-reth"
    assert layout.leftover_backups() == []


def test_rewrite_only_exact_image_prefixes():
    manifest = (
        "services:\n"
        "  orqusbft:\n"
        "    image: ghcr.io/orqusio/orqusbft:v1.0.0\n"
        "  tools:\n"
        "    image: ghcr.io/orqusio/orqusbft-tools:v1.0.0\n"
        "  mirror:\n"
        "    image: mirror.example/ghcr.io/orqusio/orqusbft:v1.0.0\n"
        "  quoted:\n"
        "    image: \"ghcr.io/orqusio/orqusbft:v0.9\"\n"
    )
    updated, count = rewrite_image_references(
        manifest, {"ghcr.io/orqusio/orqusbft": "ghcr.io/orqusio/orqusbft:v2.0.0"})

    assert count == 2
    assert "image: ghcr.io/orqusio/orqusbft:v2.0.0\n" in updated
    assert "image: \"ghcr.io/orqusio/orqusbft:v2.0.0\"\n" in updated
    assert "ghcr.io/orqusio/orqusbft-tools:v1.0.0" in updated
    assert "mirror.example/ghcr.io/orqusio/orqusbft:v1.0.0" in updated


def docker_installation(make_config, layout, docker, **overrides):
    config = make_config(mode=InstallMode.DOCKER, **overrides)
    fetcher = ArtifactFetcher(config, None, docker=docker)
    renderer = ConfigRenderer(config, layout)
    renderer.write(renderer.render("153871", fetcher.images("v1.0.0")))
    return config, fetcher


def test_container_upgrade(make_config, layout):
    docker = FakeDocker()
    _, fetcher = docker_installation(make_config, layout, docker)

    replaced = ContainerUpgrade(layout, fetcher, docker).run(RELEASE)

    manifest = layout.compose_file.read_text()
    assert "ghcr.io/orqusio/orqus-reth:v2.0.0" in manifest
    assert "ghcr.io/orqusio/orqusbft:v2.0.0" in manifest
    assert "v1.0.0" not in manifest
    assert replaced == ['cometbft', 'orqus-reth', 'orqusbft']
    assert docker.compose_calls == [['up', '-d']]


def test_container_pull_failure_leaves_manifest_untouched(make_config, layout):
    docker = FakeDocker(failing_pulls={"ghcr.io/orqusio/orqusbft:v2.0.0"})
    _, fetcher = docker_installation(make_config, layout, docker)
    before = layout.compose_file.read_bytes()

    with pytest.raises(ArtifactFetchFailed):
        ContainerUpgrade(layout, fetcher, docker).run(RELEASE)

    assert layout.compose_file.read_bytes() == before
    assert docker.compose_calls == []


def provisioned(layout, mode=InstallMode.BINARY):
    save_record(layout, InstallationRecord(NodeRole.VALIDATOR, mode, "153871", "n"))


def test_lifecycle_upgrade_leaves_binary_node_stopped(make_config, layout, linux_amd64):
    install_binaries(layout)
    provisioned(layout)
    lifecycle = LifecycleManager(make_config(), layout, docker=FakeDocker())

    result = lifecycle.upgrade(FakeFetcher(), linux_amd64)

    assert result.version == "v2.0.0"
    assert result.restarted is False
    assert load_record(layout).state is LifecycleState.STOPPED


def test_lifecycle_upgrade_without_release_changes_nothing(make_config, layout, linux_amd64):
    install_binaries(layout)
    provisioned(layout)
    before = binary_contents(layout)
    lifecycle = LifecycleManager(make_config(), layout, docker=FakeDocker())

    with pytest.raises(NoReleaseFound):
        lifecycle.upgrade(FakeFetcher(release=None), linux_amd64)

    assert binary_contents(layout) == before
    assert load_record(layout).state is LifecycleState.PROVISIONED


def test_lifecycle_upgrade_failure_keeps_old_binaries(make_config, layout, linux_amd64):
    install_binaries(layout)
    provisioned(layout)
    before = binary_contents(layout)
    lifecycle = LifecycleManager(make_config(), layout, docker=FakeDocker())

    with pytest.raises(UpgradeDownloadFailed):
        lifecycle.upgrade(FakeFetcher(fail_on={'cometbft'}), linux_amd64)

    assert binary_contents(layout) == before
    assert load_record(layout).state is LifecycleState.STOPPED


def test_lifecycle_docker_upgrade_restarts(make_config, layout, linux_amd64):
    docker = FakeDocker()
    config, fetcher = docker_installation(make_config, layout, docker, version="v2.0.0")
    provisioned(layout, InstallMode.DOCKER)
    lifecycle = LifecycleManager(config, layout, docker=docker)

    result = lifecycle.upgrade(fetcher, linux_amd64)

    assert result.restarted is True
    assert docker.compose_calls == [['down'], ['up', '-d']]
    assert load_record(layout).state is LifecycleState.RUNNING
