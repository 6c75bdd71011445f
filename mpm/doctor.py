"""Read-only health check of the manifest, lockfile and plugins directory.

Every problem becomes an :class:`Issue` in the report; nothing here raises for
a failed check. The same :class:`DoctorReport` backs both the JSON output and
the rich rendering in the CLI.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field

from .errors import LockfileError, ManifestError, PluginManagerError
from .hashing import verify_file
from .manifest import Lockfile, load_lockfile, load_manifest

REPORT_SCHEMA_VERSION = 1


class Severity(str, Enum):
    WARNING = "warning"
    ERROR = "error"


class IssueCode(str, Enum):
    MANIFEST_MISSING = "MANIFEST_MISSING"
    MANIFEST_INVALID = "MANIFEST_INVALID"
    LOCKFILE_MISSING = "LOCKFILE_MISSING"
    LOCKFILE_INVALID = "LOCKFILE_INVALID"
    PLUGINS_DIR_MISSING = "PLUGINS_DIR_MISSING"
    PLUGIN_MISSING = "PLUGIN_MISSING"
    FILENAME_MISMATCH = "FILENAME_MISMATCH"
    HASH_MISMATCH = "HASH_MISMATCH"
    UNMANAGED_PLUGIN = "UNMANAGED_PLUGIN"


class Issue(BaseModel):
    name: str
    severity: Severity
    code: IssueCode
    message: str
    path: Optional[str] = None


class ManifestSection(BaseModel):
    path: str
    present: bool = False
    valid: bool = False
    minecraft_version: Optional[str] = None
    plugins: int = 0


class LockfileSection(BaseModel):
    path: str
    present: bool = False
    valid: bool = False
    plugins: int = 0


class PluginCheck(BaseModel):
    name: str
    file: str
    ok: bool
    code: Optional[IssueCode] = None


class PluginsSection(BaseModel):
    path: str
    present: bool = False
    checked: List[PluginCheck] = Field(default_factory=list)
    unmanaged: List[str] = Field(default_factory=list)


class Summary(BaseModel):
    errors: int = 0
    warnings: int = 0
    installed: int = 0
    expected: int = 0


class DoctorReport(BaseModel):
    schema_version: int = REPORT_SCHEMA_VERSION
    status: str = "ok"
    exit_code: int = 0
    summary: Summary = Field(default_factory=Summary)
    manifest: ManifestSection
    lockfile: LockfileSection
    plugins: PluginsSection
    issues: List[Issue] = Field(default_factory=list)


def _check_plugin_files(lockfile: Lockfile, plugins_dir: Path, section: PluginsSection, issues: List[Issue]) -> None:
    # the listing is case-sensitive even where the filesystem is not
    listed = {path.name for path in plugins_dir.iterdir()}
    for plugin in lockfile.plugins:
        target = plugins_dir / plugin.file
        code: Optional[IssueCode] = None
        message = ""
        if not target.is_file():
            code = IssueCode.PLUGIN_MISSING
            message = f"File '{plugin.file}' not found"
        elif plugin.file not in listed:
            code = IssueCode.FILENAME_MISMATCH
            message = f"Filename mismatch: expected '{plugin.file}'"
        else:
            try:
                matches = verify_file(target, plugin.hash)
            except (OSError, PluginManagerError) as exc:
                code = IssueCode.HASH_MISMATCH
                message = f"Failed to compute hash for '{plugin.file}': {exc}"
            else:
                if not matches:
                    code = IssueCode.HASH_MISMATCH
                    message = f"Hash mismatch for '{plugin.file}'"

        section.checked.append(PluginCheck(name=plugin.name, file=plugin.file, ok=code is None, code=code))
        if code is not None:
            issues.append(
                Issue(name=plugin.name, severity=Severity.ERROR, code=code, message=message, path=str(target))
            )


def _check_unmanaged(lockfile: Lockfile, plugins_dir: Path, section: PluginsSection, issues: List[Issue]) -> None:
    managed = set(lockfile.files())
    section.unmanaged = sorted(
        path.name
        for path in plugins_dir.iterdir()
        if path.is_file() and path.suffix == ".jar" and path.name not in managed
    )
    for filename in section.unmanaged:
        issues.append(
            Issue(
                name=filename,
                severity=Severity.WARNING,
                code=IssueCode.UNMANAGED_PLUGIN,
                message=f"Unmanaged plugin file '{filename}' is not in the lockfile",
                path=str(plugins_dir / filename),
            )
        )


def run_doctor(manifest_path: Path, lockfile_path: Path, plugins_dir: Path) -> DoctorReport:
    issues: List[Issue] = []
    manifest_section = ManifestSection(path=str(manifest_path))
    lockfile_section = LockfileSection(path=str(lockfile_path))
    plugins_section = PluginsSection(path=str(plugins_dir), present=plugins_dir.is_dir())

    manifest_section.present = manifest_path.exists()
    if not manifest_section.present:
        issues.append(
            Issue(
                name=manifest_path.name,
                severity=Severity.ERROR,
                code=IssueCode.MANIFEST_MISSING,
                message="Manifest file not found",
                path=str(manifest_path),
            )
        )
    else:
        try:
            manifest = load_manifest(manifest_path)
        except ManifestError as exc:
            issues.append(
                Issue(
                    name=manifest_path.name,
                    severity=Severity.ERROR,
                    code=IssueCode.MANIFEST_INVALID,
                    message=str(exc),
                    path=str(manifest_path),
                )
            )
        else:
            manifest_section.valid = True
            manifest_section.minecraft_version = manifest.minecraft_version
            manifest_section.plugins = len(manifest.plugins)

    lockfile: Optional[Lockfile] = None
    lockfile_section.present = lockfile_path.exists()
    if not lockfile_section.present:
        issues.append(
            Issue(
                name=lockfile_path.name,
                severity=Severity.ERROR,
                code=IssueCode.LOCKFILE_MISSING,
                message="Lockfile not found",
                path=str(lockfile_path),
            )
        )
    else:
        try:
            lockfile = load_lockfile(lockfile_path)
        except LockfileError as exc:
            issues.append(
                Issue(
                    name=lockfile_path.name,
                    severity=Severity.ERROR,
                    code=IssueCode.LOCKFILE_INVALID,
                    message=str(exc),
                    path=str(lockfile_path),
                )
            )
        else:
            lockfile_section.valid = True
            lockfile_section.plugins = len(lockfile.plugins)

    if lockfile is not None:
        if plugins_section.present:
            _check_plugin_files(lockfile, plugins_dir, plugins_section, issues)
            _check_unmanaged(lockfile, plugins_dir, plugins_section, issues)
        elif lockfile.plugins:
            issues.append(
                Issue(
                    name=plugins_dir.name,
                    severity=Severity.ERROR,
                    code=IssueCode.PLUGINS_DIR_MISSING,
                    message=f"Plugins directory not found ({len(lockfile.plugins)} plugin(s) expected)",
                    path=str(plugins_dir),
                )
            )

    issues.sort(key=lambda issue: (issue.code.value, issue.message))
    errors = sum(1 for issue in issues if issue.severity is Severity.ERROR)
    warnings = sum(1 for issue in issues if issue.severity is Severity.WARNING)
    if errors:
        status, exit_code = "error", 2
    elif warnings:
        status, exit_code = "warning", 1
    else:
        status, exit_code = "ok", 0

    return DoctorReport(
        status=status,
        exit_code=exit_code,
        summary=Summary(
            errors=errors,
            warnings=warnings,
            installed=sum(1 for check in plugins_section.checked if check.ok),
            expected=len(lockfile.plugins) if lockfile is not None else 0,
        ),
        manifest=manifest_section,
        lockfile=lockfile_section,
        plugins=plugins_section,
        issues=issues,
    )
