from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .config import DEFAULT_MC_VERSION
from .errors import InvalidHashError, LockfileError, ManifestError
from .hashing import parse_hash

SUPPORTED_SCHEMA_VERSION = 1


class PluginSpec(BaseModel):
    source: Optional[str] = None
    id: str
    version: Optional[str] = None


class Manifest(BaseModel):
    schema_version: int = SUPPORTED_SCHEMA_VERSION
    minecraft_version: str = DEFAULT_MC_VERSION
    plugins: Dict[str, PluginSpec] = Field(default_factory=dict)

    @field_validator("plugins")
    @classmethod
    def _sort_plugins(cls, value: Dict[str, PluginSpec]) -> Dict[str, PluginSpec]:
        return dict(sorted(value.items()))

    def put(self, name: str, spec: PluginSpec) -> None:
        """Insert or replace ``name``, keeping keys sorted."""
        self.plugins = dict(sorted({**self.plugins, name: spec}.items()))

    def remove(self, name: str) -> PluginSpec:
        if name not in self.plugins:
            raise ManifestError(f"Plugin '{name}' not found in manifest")
        spec = self.plugins[name]
        self.plugins = {key: value for key, value in self.plugins.items() if key != name}
        return spec


class LockedPlugin(BaseModel):
    name: str
    source: str
    version: str
    file: str
    url: str
    hash: str

    @field_validator("hash")
    @classmethod
    def _check_hash(cls, value: str) -> str:
        try:
            parse_hash(value)
        except InvalidHashError as exc:
            raise ValueError(str(exc)) from exc
        return value

    @field_validator("file")
    @classmethod
    def _check_file(cls, value: str) -> str:
        if not value or Path(value).name != value:
            raise ValueError(f"'{value}' is not a plain file name")
        return value


class Lockfile(BaseModel):
    schema_version: int = SUPPORTED_SCHEMA_VERSION
    plugins: List[LockedPlugin] = Field(default_factory=list)

    def sorted(self) -> "Lockfile":
        return Lockfile(
            schema_version=self.schema_version,
            plugins=sorted(self.plugins, key=lambda plugin: plugin.name),
        )

    def get(self, name: str) -> Optional[LockedPlugin]:
        return next((plugin for plugin in self.plugins if plugin.name == name), None)

    def files(self) -> List[str]:
        return [plugin.file for plugin in self.plugins]

    def dumps(self) -> str:
        """Deterministic on-disk form: plugins sorted by name, trailing newline."""
        return self.sorted().model_dump_json(indent=2) + "\n"


def _read_json(path: Path, error_cls: type, label: str) -> dict:
    try:
        return json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise error_cls(f"Invalid {label} {path}: {exc}") from exc
    except OSError as exc:
        raise error_cls(f"Could not read {label} {path}: {exc}") from exc


def load_manifest(path: Path) -> Manifest:
    if not path.exists():
        raise ManifestError(f"Manifest not found at {path}. Run 'mpm init' first.")
    data = _read_json(path, ManifestError, "manifest")
    try:
        manifest = Manifest.model_validate(data)
    except ValidationError as exc:
        raise ManifestError(f"Invalid manifest {path}: {exc}") from exc
    if manifest.schema_version != SUPPORTED_SCHEMA_VERSION:
        raise ManifestError(f"Unsupported manifest schema version {manifest.schema_version}.")
    return manifest


def save_manifest(path: Path, manifest: Manifest) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(manifest.model_dump_json(indent=2, exclude_none=True) + "\n")


def load_lockfile(path: Path) -> Lockfile:
    if not path.exists():
        raise LockfileError(f"Lockfile not found at {path}. Run 'mpm lock' first.")
    data = _read_json(path, LockfileError, "lockfile")
    try:
        lockfile = Lockfile.model_validate(data)
    except ValidationError as exc:
        raise LockfileError(f"Invalid lockfile {path}: {exc}") from exc
    if lockfile.schema_version != SUPPORTED_SCHEMA_VERSION:
        raise LockfileError(f"Unsupported lockfile schema version {lockfile.schema_version}.")
    return lockfile


def save_lockfile(path: Path, lockfile: Lockfile) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(lockfile.dumps())
