from __future__ import annotations

from typing import List, Optional, Sequence


class PluginManagerError(RuntimeError):
    """Base class for every error the plugin manager reports to the user."""


class InvalidIdentifierError(PluginManagerError):
    def __init__(self, source: str, identifier: str, reason: str) -> None:
        self.source = source
        self.identifier = identifier
        super().__init__(reason)


class NotFoundError(PluginManagerError):
    """A project, resource, release or version does not exist upstream."""


class VersionNotFoundError(NotFoundError):
    def __init__(self, plugin_id: str, version: str) -> None:
        self.plugin_id = plugin_id
        self.version = version
        super().__init__(f"Version '{version}' not found for plugin '{plugin_id}'")


class NoSourceFoundError(NotFoundError):
    def __init__(self, identifier: str, attempted: int, cause: Optional[Exception] = None) -> None:
        self.identifier = identifier
        self.attempted = attempted
        self.cause = cause
        message = f"Plugin '{identifier}' not found in any source ({attempted} source(s) tried)"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class IncompatibleVersionError(PluginManagerError):
    """A version exists but does not support the requested Minecraft version."""

    def __init__(
        self,
        plugin_id: str,
        minecraft_version: str,
        compatible: Sequence[str],
        version: Optional[str] = None,
    ) -> None:
        self.plugin_id = plugin_id
        self.version = version
        self.minecraft_version = minecraft_version
        self.compatible: List[str] = list(compatible)
        supported = ", ".join(self.compatible) if self.compatible else "unknown"
        if version is not None:
            message = (
                f"Plugin '{plugin_id}' version '{version}' is not compatible with "
                f"Minecraft {minecraft_version}. Compatible versions: {supported}"
            )
        else:
            message = (
                f"No versions of plugin '{plugin_id}' are compatible with "
                f"Minecraft {minecraft_version}. Latest version supports: {supported}"
            )
        super().__init__(message)


class UnsupportedSourceError(PluginManagerError):
    def __init__(self, source: str, supported: Sequence[str]) -> None:
        self.source = source
        self.supported = list(supported)
        super().__init__(
            f"Unsupported source: '{source}'. Supported sources: {', '.join(self.supported)}"
        )


class TransportError(PluginManagerError):
    """Network failure, non-2xx status or an unreadable response body."""

    def __init__(self, url: str, message: str, status: Optional[int] = None) -> None:
        self.url = url
        self.status = status
        super().__init__(message)


class HttpNotFoundError(TransportError):
    def __init__(self, url: str) -> None:
        super().__init__(url, f"Resource not found: {url}", status=404)


class IntegrityError(PluginManagerError):
    def __init__(self, name: str, expected: str, actual: str) -> None:
        self.name = name
        self.expected = expected
        self.actual = actual
        super().__init__(f"Hash mismatch for {name}: expected {expected}, got {actual}")


class InvalidHashError(PluginManagerError):
    """Raised for digests that are not in ``algorithm:hex`` form."""


class StateError(PluginManagerError):
    """An operation needs a manifest, lockfile or directory that is absent or invalid."""


class ManifestError(StateError):
    """Raised when the plugin manifest cannot be loaded or used."""


class LockfileError(StateError):
    """Raised when the lockfile cannot be loaded or used."""
