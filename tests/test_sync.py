"""Tests for plugins/ reconciliation: idempotence, rollback and dry runs."""

from pathlib import Path
from typing import Dict

import pytest
from conftest import FakeHttpClient, locked

from mpm.errors import IntegrityError, TransportError
from mpm.manifest import Lockfile
from mpm.sync import BACKUP_DIRNAME, STAGING_DIRNAME, plan_sync, sync_plugins


def _jars(directory: Path) -> Dict[str, bytes]:
    return {path.name: path.read_bytes() for path in sorted(directory.glob("*.jar"))}


def _snapshot(directory: Path) -> Dict[str, int]:
    return {path.name: path.stat().st_mtime_ns for path in directory.iterdir()}


@pytest.fixture()
def plugins_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "plugins"
    directory.mkdir()
    return directory


class TestSyncPlugins:
    def test_fresh_sync_downloads_and_removes_unmanaged(self, plugins_dir: Path) -> None:
        (plugins_dir / "old.jar").write_bytes(b"old")
        (plugins_dir / "config.yml").write_text("keep: true")
        lockfile = Lockfile(plugins=[locked("alpha", b"alpha"), locked("beta", b"beta")])
        client = FakeHttpClient(
            files={"https://cdn.example/alpha.jar": b"alpha", "https://cdn.example/beta.jar": b"beta"}
        )
        events = []

        result = sync_plugins(lockfile, plugins_dir, client, reporter=lambda e, s: events.append((e, s)))

        assert result.has_changes
        assert result.downloaded == ["alpha", "beta"]
        assert result.removed == ["old.jar"]
        assert _jars(plugins_dir) == {"alpha.jar": b"alpha", "beta.jar": b"beta"}
        assert (plugins_dir / "config.yml").read_text() == "keep: true"
        assert not (plugins_dir / STAGING_DIRNAME).exists()
        assert not (plugins_dir / BACKUP_DIRNAME).exists()
        assert ("remove", "old.jar") in events

    def test_second_run_is_a_no_op(self, plugins_dir: Path) -> None:
        lockfile = Lockfile(plugins=[locked("alpha", b"alpha")])
        client = FakeHttpClient(files={"https://cdn.example/alpha.jar": b"alpha"})
        sync_plugins(lockfile, plugins_dir, client)
        before = _snapshot(plugins_dir)
        client.requests.clear()

        result = sync_plugins(lockfile, plugins_dir, client)

        assert not result.has_changes
        assert result.skipped == ["alpha"]
        assert client.requests == []
        assert _snapshot(plugins_dir) == before

    def test_replaces_tampered_file(self, plugins_dir: Path) -> None:
        (plugins_dir / "alpha.jar").write_bytes(b"tampered")
        lockfile = Lockfile(plugins=[locked("alpha", b"alpha")])
        client = FakeHttpClient(files={"https://cdn.example/alpha.jar": b"alpha"})
        sync_plugins(lockfile, plugins_dir, client)
        assert _jars(plugins_dir) == {"alpha.jar": b"alpha"}

    def test_download_failure_restores_jars(self, plugins_dir: Path) -> None:
        (plugins_dir / "alpha.jar").write_bytes(b"stale alpha")
        (plugins_dir / "unmanaged.jar").write_bytes(b"keep me on failure")
        before = _jars(plugins_dir)
        lockfile = Lockfile(plugins=[locked("alpha", b"alpha"), locked("beta", b"beta")])
        client = FakeHttpClient(
            files={
                "https://cdn.example/alpha.jar": b"alpha",
                "https://cdn.example/beta.jar": TransportError("https://cdn.example/beta.jar", "boom", status=502),
            }
        )

        with pytest.raises(TransportError):
            sync_plugins(lockfile, plugins_dir, client)

        assert _jars(plugins_dir) == before
        assert not (plugins_dir / STAGING_DIRNAME).exists()
        assert not (plugins_dir / BACKUP_DIRNAME).exists()

    def test_hash_mismatch_is_fatal(self, plugins_dir: Path) -> None:
        (plugins_dir / "alpha.jar").write_bytes(b"previous")
        lockfile = Lockfile(plugins=[locked("alpha", b"alpha")])
        client = FakeHttpClient(files={"https://cdn.example/alpha.jar": b"evil"})

        with pytest.raises(IntegrityError) as excinfo:
            sync_plugins(lockfile, plugins_dir, client)

        assert excinfo.value.expected == lockfile.plugins[0].hash
        assert _jars(plugins_dir) == {"alpha.jar": b"previous"}

    def test_dry_run_reports_without_touching_disk(self, plugins_dir: Path) -> None:
        (plugins_dir / "old.jar").write_bytes(b"old")
        lockfile = Lockfile(plugins=[locked("alpha", b"alpha")])
        client = FakeHttpClient()
        before = _snapshot(plugins_dir)

        result = sync_plugins(lockfile, plugins_dir, client, dry_run=True)

        assert result.has_changes
        assert result.downloaded == ["alpha"]
        assert result.removed == ["old.jar"]
        assert client.requests == []
        assert _snapshot(plugins_dir) == before

    def test_leftover_temp_dirs_are_cleaned(self, plugins_dir: Path) -> None:
        (plugins_dir / STAGING_DIRNAME).mkdir()
        (plugins_dir / BACKUP_DIRNAME).mkdir()
        (plugins_dir / BACKUP_DIRNAME / "ghost.jar").write_bytes(b"x")
        sync_plugins(Lockfile(), plugins_dir, FakeHttpClient())
        assert sorted(p.name for p in plugins_dir.iterdir()) == []

    def test_missing_plugins_dir_is_created(self, tmp_path: Path) -> None:
        plugins_dir = tmp_path / "plugins"
        lockfile = Lockfile(plugins=[locked("alpha", b"alpha")])
        client = FakeHttpClient(files={"https://cdn.example/alpha.jar": b"alpha"})
        sync_plugins(lockfile, plugins_dir, client)
        assert _jars(plugins_dir) == {"alpha.jar": b"alpha"}


class TestPlanSync:
    def test_plan_splits_current_and_stale(self, plugins_dir: Path) -> None:
        (plugins_dir / "alpha.jar").write_bytes(b"alpha")
        (plugins_dir / "beta.jar").write_bytes(b"wrong")
        plan = plan_sync(Lockfile(plugins=[locked("alpha", b"alpha"), locked("beta", b"beta")]), plugins_dir)
        assert [p.name for p in plan.up_to_date] == ["alpha"]
        assert [p.name for p in plan.to_download] == ["beta"]
        assert plan.unmanaged == []
