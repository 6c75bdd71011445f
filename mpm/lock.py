from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from .config import DEFAULT_MC_VERSION, MpmConfig
from .errors import LockfileError, ManifestError
from .importer import detect_minecraft_version
from .manifest import (
    LockedPlugin,
    Lockfile,
    Manifest,
    PluginSpec,
    load_lockfile,
    load_manifest,
    save_lockfile,
    save_manifest,
)
from .sources import GitHubSource, SourceRegistry
from .versions import ResolvedVersion

logger = logging.getLogger(__name__)

ResolvedCallback = Callable[[str, ResolvedVersion], None]


@dataclass(slots=True)
class LockOutcome:
    lockfile: Lockfile
    changed: bool
    written: bool


@dataclass(slots=True)
class InitOutcome:
    manifest: Manifest
    created: bool
    detected: bool


@dataclass(slots=True)
class AddOutcome:
    name: str
    spec: PluginSpec
    resolved: ResolvedVersion
    lock: Optional[LockOutcome] = None


def parse_plugin_spec(value: str) -> Tuple[Optional[str], str, Optional[str]]:
    """Split ``source:id@version`` into its parts; source and version are optional."""
    text = value.strip()
    source: Optional[str] = None
    if ":" in text:
        source, text = text.split(":", 1)
        source = source.strip().lower() or None
    version: Optional[str] = None
    if "@" in text:
        text, version = text.split("@", 1)
        version = version.strip() or None
    plugin_id = text.strip()
    if not plugin_id:
        raise ManifestError(f"Invalid plugin spec '{value}': missing plugin id")
    return source, plugin_id, version


def _resolve_entry(
    registry: SourceRegistry,
    spec: PluginSpec,
    minecraft_version: Optional[str],
) -> Tuple[str, ResolvedVersion]:
    if spec.source is None:
        match = registry.find_in_any_source(spec.id, spec.version, minecraft_version)
        return match.source, match.resolved
    source = registry.get(spec.source)
    source.validate_id(spec.id)
    return source.name, source.resolve_version(spec.id, spec.version, minecraft_version)


def lock_manifest(
    manifest: Manifest,
    registry: SourceRegistry,
    on_resolved: Optional[ResolvedCallback] = None,
) -> Lockfile:
    """Resolve every manifest entry into a lockfile sorted by plugin name.

    The first failing entry aborts the whole run; nothing partial is returned.
    """
    minecraft_version = manifest.minecraft_version or None
    if minecraft_version and any(spec.source == GitHubSource.name for spec in manifest.plugins.values()):
        logger.warning(
            "GitHub source does not support Minecraft version filtering. "
            "Compatibility cannot be verified for GitHub plugins."
        )

    locked = []
    for name, spec in sorted(manifest.plugins.items()):
        logger.debug("Resolving %s (%s:%s)", name, spec.source or "any", spec.id)
        source_name, resolved = _resolve_entry(registry, spec, minecraft_version)
        locked.append(
            LockedPlugin(
                name=name,
                source=source_name,
                version=resolved.version,
                file=resolved.filename,
                url=resolved.url,
                hash=resolved.hash,
            )
        )
        if on_resolved is not None:
            on_resolved(name, resolved)

    return Lockfile(plugins=locked).sorted()


def lock(
    cfg: MpmConfig,
    registry: SourceRegistry,
    *,
    dry_run: bool = False,
    on_resolved: Optional[ResolvedCallback] = None,
) -> LockOutcome:
    manifest = load_manifest(cfg.manifest_path)
    lockfile = lock_manifest(manifest, registry, on_resolved=on_resolved)

    try:
        existing = load_lockfile(cfg.lockfile_path)
    except LockfileError:
        changed = True
    else:
        changed = existing.dumps() != lockfile.dumps()

    if dry_run:
        return LockOutcome(lockfile=lockfile, changed=changed, written=False)

    save_lockfile(cfg.lockfile_path, lockfile)
    return LockOutcome(lockfile=lockfile, changed=changed, written=True)


def init_manifest(cfg: MpmConfig, version: Optional[str] = None) -> InitOutcome:
    """Create an empty manifest; an existing manifest is left untouched."""
    if cfg.manifest_path.exists():
        return InitOutcome(manifest=load_manifest(cfg.manifest_path), created=False, detected=False)

    detected = False
    if not version:
        version = detect_minecraft_version(cfg.root)
        detected = version is not None
        if version is None:
            logger.warning(
                "Could not detect Minecraft version from Paper JAR, using default: %s", DEFAULT_MC_VERSION
            )
            version = DEFAULT_MC_VERSION

    manifest = Manifest(minecraft_version=version)
    save_manifest(cfg.manifest_path, manifest)
    return InitOutcome(manifest=manifest, created=True, detected=detected)


def add_plugin(
    cfg: MpmConfig,
    registry: SourceRegistry,
    spec_text: str,
    *,
    no_update: bool = False,
    on_resolved: Optional[ResolvedCallback] = None,
) -> AddOutcome:
    """Add ``source:id@version`` to the manifest after checking it resolves.

    Without a source, every source is searched and the winning source and id
    are written to the manifest so later locks are reproducible.
    """
    manifest = load_manifest(cfg.manifest_path)
    source_name, plugin_id, version = parse_plugin_spec(spec_text)
    minecraft_version = manifest.minecraft_version or None

    if source_name is None:
        match = registry.find_in_any_source(plugin_id, version, minecraft_version)
        source_name, resolved_id, resolved = match.source, match.plugin_id, match.resolved
    else:
        source = registry.get(source_name)
        source.validate_id(plugin_id)
        resolved = source.resolve_version(plugin_id, version, minecraft_version)
        resolved_id = plugin_id

    name = plugin_id
    spec = PluginSpec(source=source_name, id=resolved_id, version=version)
    manifest.put(name, spec)
    save_manifest(cfg.manifest_path, manifest)
    logger.debug("Added %s from %s", name, source_name)

    outcome = AddOutcome(name=name, spec=spec, resolved=resolved)
    if not no_update:
        outcome.lock = lock(cfg, registry, on_resolved=on_resolved)
    return outcome


def remove_plugin(
    cfg: MpmConfig,
    registry: SourceRegistry,
    name: str,
    *,
    no_update: bool = False,
    on_resolved: Optional[ResolvedCallback] = None,
) -> Optional[LockOutcome]:
    manifest = load_manifest(cfg.manifest_path)
    manifest.remove(name)
    save_manifest(cfg.manifest_path, manifest)
    if no_update:
        return None
    return lock(cfg, registry, on_resolved=on_resolved)
