"""Adopt an existing ``plugins/`` directory into a manifest and lockfile.

Each jar's ``plugin.yml`` (or ``bungee.yml``) supplies the plugin name and
version; the name is then looked up in every source. Jars that no source knows
are reported and left out. Lock entries keep the local filename so a following
``mpm sync`` does not rename files that are already in place.
"""

from __future__ import annotations

import logging
import re
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml

from .config import DEFAULT_MC_VERSION, MpmConfig
from .errors import NotFoundError, StateError
from .manifest import LockedPlugin, Lockfile, Manifest, PluginSpec, save_lockfile, save_manifest
from .sources import SourceRegistry
from .versions import normalize_mc_version

logger = logging.getLogger(__name__)

PLUGIN_DESCRIPTORS = ("plugin.yml", "bungee.yml")
JAR_MANIFEST = "META-INF/MANIFEST.MF"
_MANIFEST_VERSION_KEYS = ("Implementation-Version", "Specification-Version")
_PAPER_PREFIX = re.compile(r"^paper", re.IGNORECASE)


@dataclass(slots=True)
class ScannedPlugin:
    name: str
    filename: str
    version: Optional[str] = None


@dataclass(slots=True)
class ImportResult:
    manifest: Manifest
    lockfile: Lockfile
    imported: List[Tuple[str, str, str]] = field(default_factory=list)  # (name, filename, source)
    skipped: List[Tuple[str, str]] = field(default_factory=list)  # (name, filename)
    detected_version: bool = False


def _version_from_filename(filename: str) -> Optional[str]:
    stem = filename[: -len(".jar")] if filename.lower().endswith(".jar") else filename
    parts = stem.split("-")
    if len(parts) < 2:
        return None
    version_parts = parts[1:-1] if len(parts) >= 3 else parts[1:]
    version = ".".join(version_parts)
    if not version or not version[0].isdigit():
        return None
    return version


def _version_from_jar_manifest(path: Path) -> Optional[str]:
    try:
        with zipfile.ZipFile(path) as archive:
            contents = archive.read(JAR_MANIFEST).decode("utf-8", errors="replace")
    except (OSError, KeyError, zipfile.BadZipFile) as exc:
        logger.debug("Cannot read %s from %s: %s", JAR_MANIFEST, path, exc)
        return None

    for line in contents.splitlines():
        if line.startswith(" "):
            continue
        key, sep, value = line.partition(":")
        if sep and key.strip() in _MANIFEST_VERSION_KEYS:
            normalized = normalize_mc_version(value.strip())
            if normalized:
                return normalized
    return None


def detect_minecraft_version(root: Path) -> Optional[str]:
    """Guess the server version from a ``paper-<version>-<build>.jar`` in ``root``."""
    if not root.is_dir():
        return None
    for path in sorted(root.iterdir()):
        if not path.is_file() or not path.name.lower().endswith(".jar") or not _PAPER_PREFIX.match(path.name):
            continue
        logger.debug("Found potential Paper JAR: %s", path.name)
        version = _version_from_filename(path.name) or _version_from_jar_manifest(path)
        if version:
            logger.debug("Detected Minecraft version %s from %s", version, path.name)
            return version
    return None


def read_plugin_descriptor(path: Path) -> Tuple[str, Optional[str]]:
    """Return ``(name, version)`` declared inside a plugin jar."""
    with zipfile.ZipFile(path) as archive:
        names = set(archive.namelist())
        descriptor = next((name for name in PLUGIN_DESCRIPTORS if name in names), None)
        if descriptor is None:
            raise KeyError(f"no plugin.yml or bungee.yml in {path.name}")
        data = yaml.safe_load(archive.read(descriptor).decode("utf-8", errors="replace"))

    if not isinstance(data, dict) or not data.get("name"):
        raise ValueError(f"{descriptor} in {path.name} has no 'name' field")
    version = data.get("version")
    return str(data["name"]), str(version) if version is not None else None


def scan_plugins_dir(plugins_dir: Path) -> List[ScannedPlugin]:
    scanned = []
    for path in sorted(plugins_dir.iterdir()):
        if not path.is_file() or path.suffix != ".jar":
            continue
        try:
            name, version = read_plugin_descriptor(path)
        except (OSError, KeyError, ValueError, zipfile.BadZipFile, yaml.YAMLError) as exc:
            logger.warning("Could not read plugin.yml from %s: %s", path.name, exc)
            name, version = path.stem, None
        scanned.append(ScannedPlugin(name=name, filename=path.name, version=version))
    return scanned


def import_plugins(
    cfg: MpmConfig,
    registry: SourceRegistry,
    version: Optional[str] = None,
) -> ImportResult:
    if cfg.manifest_path.exists():
        raise StateError(f"{cfg.manifest_path.name} already exists. Remove it first before importing.")
    if not cfg.plugins_dir.is_dir():
        raise StateError(f"Plugins directory '{cfg.plugins_dir}' does not exist")

    detected = False
    if not version:
        version = detect_minecraft_version(cfg.root)
        detected = version is not None
        if version is None:
            logger.warning(
                "Could not detect Minecraft version from Paper JAR, using default: %s", DEFAULT_MC_VERSION
            )
            version = DEFAULT_MC_VERSION

    plugins = scan_plugins_dir(cfg.plugins_dir)
    logger.debug("Scanned plugins directory: found %d plugin(s)", len(plugins))

    specs: Dict[str, PluginSpec] = {}
    locked: List[LockedPlugin] = []
    result = ImportResult(manifest=Manifest(minecraft_version=version), lockfile=Lockfile(), detected_version=detected)

    for plugin in plugins:
        if plugin.name in specs:
            logger.warning("Duplicate plugin name '%s' in %s, skipping", plugin.name, plugin.filename)
            result.skipped.append((plugin.name, plugin.filename))
            continue
        try:
            match = registry.find_in_any_source(plugin.name, plugin.version, version, retry_latest=True)
        except NotFoundError as exc:
            logger.debug("Plugin '%s' not found in any source: %s", plugin.name, exc)
            logger.warning("Plugin '%s' (%s) not found in any source, skipping", plugin.name, plugin.filename)
            result.skipped.append((plugin.name, plugin.filename))
            continue

        pinned = plugin.version if match.resolved.version == plugin.version else None
        if plugin.version and pinned is None:
            logger.debug(
                "%s %s is not available for %s, locking %s unpinned",
                plugin.name,
                plugin.version,
                version,
                match.resolved.version,
            )
        specs[plugin.name] = PluginSpec(source=match.source, id=match.plugin_id, version=pinned)
        locked.append(
            LockedPlugin(
                name=plugin.name,
                source=match.source,
                version=match.resolved.version,
                file=plugin.filename,
                url=match.resolved.url,
                hash=match.resolved.hash,
            )
        )
        result.imported.append((plugin.name, plugin.filename, match.source))

    result.manifest = Manifest(minecraft_version=version, plugins=specs)
    result.lockfile = Lockfile(plugins=locked).sorted()
    save_manifest(cfg.manifest_path, result.manifest)
    save_lockfile(cfg.lockfile_path, result.lockfile)
    return result
