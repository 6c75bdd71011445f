"""Reconcile the plugins directory with the lockfile.

A run plans first without touching the disk. When there is work to do it
downloads into a staging directory, keeps a backup copy of every ``.jar`` in
the target directory and only then swaps files in. Any failure before the swap
completes restores the backed-up jars. Staging and backup directories never
outlive a run. Files that are not ``.jar`` are never touched.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from .errors import IntegrityError
from .hashing import parse_hash, verify_file
from .http import HttpClient
from .manifest import LockedPlugin, Lockfile

logger = logging.getLogger(__name__)

STAGING_DIRNAME = ".plugins.staging"
BACKUP_DIRNAME = ".plugins.backup"

# (event, plugin name or filename); events: skip, download, verified, remove, restore
SyncReporter = Callable[[str, str], None]


@dataclass(slots=True)
class SyncPlan:
    to_download: List[LockedPlugin] = field(default_factory=list)
    up_to_date: List[LockedPlugin] = field(default_factory=list)
    unmanaged: List[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.to_download or self.unmanaged)


@dataclass(slots=True)
class SyncResult:
    downloaded: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    has_changes: bool = False
    dry_run: bool = False


def _jar_files(directory: Path) -> List[Path]:
    if not directory.is_dir():
        return []
    return sorted(path for path in directory.iterdir() if path.is_file() and path.suffix == ".jar")


def _is_current(plugin: LockedPlugin, target: Path) -> bool:
    if not target.is_file():
        return False
    try:
        return verify_file(target, plugin.hash)
    except OSError as exc:
        logger.debug("Cannot hash %s: %s", target, exc)
        return False


def plan_sync(lockfile: Lockfile, plugins_dir: Path) -> SyncPlan:
    """Read-only comparison of the lockfile against ``plugins_dir``."""
    plan = SyncPlan()
    for plugin in lockfile.plugins:
        if _is_current(plugin, plugins_dir / plugin.file):
            plan.up_to_date.append(plugin)
        else:
            plan.to_download.append(plugin)

    managed = set(lockfile.files())
    plan.unmanaged = [path.name for path in _jar_files(plugins_dir) if path.name not in managed]
    return plan


def cleanup_temp_dirs(plugins_dir: Path) -> None:
    for name in (STAGING_DIRNAME, BACKUP_DIRNAME):
        path = plugins_dir / name
        if path.exists():
            logger.debug("Removing %s", path)
            shutil.rmtree(path)


def _create_backup(plugins_dir: Path, backup_dir: Path) -> None:
    backup_dir.mkdir(parents=True, exist_ok=True)
    for path in _jar_files(plugins_dir):
        shutil.copy2(path, backup_dir / path.name)


def _restore_backup(plugins_dir: Path, backup_dir: Path) -> None:
    if not backup_dir.is_dir():
        return
    for path in _jar_files(plugins_dir):
        path.unlink()
    for path in sorted(backup_dir.iterdir()):
        if path.is_file():
            shutil.copy2(path, plugins_dir / path.name)


def _download_verified(client: HttpClient, plugin: LockedPlugin, dest: Path) -> None:
    algorithm, _ = parse_hash(plugin.hash)
    actual = client.download_to(plugin.url, dest, algorithm)
    if actual != plugin.hash:
        raise IntegrityError(plugin.name, plugin.hash, actual)


def _remove_unmanaged(plugins_dir: Path, unmanaged: List[str], reporter: Optional[SyncReporter]) -> List[str]:
    removed = []
    for filename in unmanaged:
        path = plugins_dir / filename
        if path.is_file():
            if reporter:
                reporter("remove", filename)
            path.unlink()
            removed.append(filename)
    return removed


def _atomic_replace(plugins_dir: Path, staging_dir: Path) -> None:
    staged = sorted(path for path in staging_dir.iterdir() if path.is_file())
    for path in staged:
        target = plugins_dir / path.name
        if target.exists():
            target.unlink()
    for path in staged:
        shutil.copy2(path, plugins_dir / path.name)


def sync_plugins(
    lockfile: Lockfile,
    plugins_dir: Path,
    client: HttpClient,
    *,
    dry_run: bool = False,
    reporter: Optional[SyncReporter] = None,
) -> SyncResult:
    if not dry_run:
        cleanup_temp_dirs(plugins_dir)

    plan = plan_sync(lockfile, plugins_dir)
    result = SyncResult(
        skipped=[plugin.name for plugin in plan.up_to_date],
        has_changes=plan.has_changes,
        dry_run=dry_run,
    )
    if reporter:
        for plugin in plan.up_to_date:
            reporter("skip", plugin.name)

    if dry_run:
        result.downloaded = [plugin.name for plugin in plan.to_download]
        result.removed = list(plan.unmanaged)
        return result
    if not plan.has_changes:
        return result

    staging_dir = plugins_dir / STAGING_DIRNAME
    backup_dir = plugins_dir / BACKUP_DIRNAME
    staging_dir.mkdir(parents=True, exist_ok=True)
    try:
        _create_backup(plugins_dir, backup_dir)
        try:
            for plugin in plan.to_download:
                if reporter:
                    reporter("download", plugin.name)
                _download_verified(client, plugin, staging_dir / plugin.file)
                result.downloaded.append(plugin.name)
                if reporter:
                    reporter("verified", plugin.name)

            result.removed = _remove_unmanaged(plugins_dir, plan.unmanaged, reporter)
            _atomic_replace(plugins_dir, staging_dir)
        except BaseException:
            logger.debug("Sync failed, restoring jars from %s", backup_dir)
            if reporter:
                reporter("restore", str(backup_dir))
            _restore_backup(plugins_dir, backup_dir)
            raise
    finally:
        cleanup_temp_dirs(plugins_dir)

    return result
