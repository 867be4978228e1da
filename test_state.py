"""
Tests for the installation layout, record and lock.
"""
import pytest

from orqus_installer.errors import InstallationLocked, InvalidConfiguration
from orqus_installer.roles import InstallMode, NodeRole
from orqus_installer.state import (
    InstallationRecord, LifecycleState, load_record, save_record, write_if_changed,
)


def test_ensure_creates_layout(layout):
    layout.ensure()
    for name in ('bin', 'config', 'data/reth', 'data/cometbft/config', 'data/orqusbft', 'data/logs'):
        assert (layout.root / name).is_dir()
    assert layout.missing_binaries() == ['orqus-reth', 'orqusbft', 'cometbft']


def test_record_round_trip(layout):
    assert load_record(layout) is None
    record = InstallationRecord(NodeRole.SENTRY, InstallMode.DOCKER, "153871", "edge-1")
    save_record(layout, record)

    loaded = load_record(layout)
    assert loaded == record
    assert loaded.state is LifecycleState.PROVISIONED


def test_record_rejects_role_and_mode_changes():
    record = InstallationRecord(NodeRole.VALIDATOR, InstallMode.BINARY, "1", "n")
    record.check_compatible(NodeRole.VALIDATOR, InstallMode.BINARY)
    with pytest.raises(InvalidConfiguration):
        record.check_compatible(NodeRole.RPC, InstallMode.BINARY)
    with pytest.raises(InvalidConfiguration):
        record.check_compatible(NodeRole.VALIDATOR, InstallMode.DOCKER)


def test_write_if_changed(tmp_path):
    path = tmp_path / 'a' / 'file.txt'
    assert write_if_changed(path, "one\n")
    assert not write_if_changed(path, "one\n")
    assert write_if_changed(path, "two\n")
    assert path.read_text() == "two\n"


def test_write_if_changed_fixes_mode(tmp_path):
    path = tmp_path / 'script.sh'
    write_if_changed(path, "#!/bin/sh\n")
    assert not write_if_changed(path, "#!/bin/sh\n", mode=0o755)
    assert path.stat().st_mode & 0o777 == 0o755


def test_lock_is_exclusive(layout):
    with layout.lock():
        with pytest.raises(InstallationLocked):
            with layout.lock():
                pass
    # released again afterwards
    with layout.lock():
        pass


def test_detect_mode(layout):
    layout.ensure()
    assert layout.detect_mode() is InstallMode.BINARY
    layout.compose_file.write_text("services: {}\n")
    assert layout.detect_mode() is InstallMode.DOCKER
