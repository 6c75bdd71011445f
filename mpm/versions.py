"""Normalized version model, Minecraft version matching and version selection.

Every source adapter translates its catalog's version records into
:class:`NormalizedVersion` and hands them to :func:`resolve`, which filters by
Minecraft version, picks the requested or latest version and makes sure the
result carries a content hash.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, List, Optional, Sequence, Union

from .errors import (
    IncompatibleVersionError,
    NotFoundError,
    TransportError,
    VersionNotFoundError,
)
from .hashing import HashAlgorithm, compute_hash, parse_hash

if TYPE_CHECKING:  # pragma: no cover
    from .http import HttpClient

logger = logging.getLogger(__name__)

_VERSION_DELIMITERS = (".", "-", " ")
_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


def parse_timestamp(value: Union[str, int, float, None]) -> datetime:
    """Turn an upstream timestamp into an aware UTC datetime.

    Accepts ISO-8601 strings (with or without a trailing ``Z``) and Unix epoch
    values in seconds or milliseconds, as numbers or digit strings. Anything
    unparseable sorts as the epoch.
    """
    if value is None or value == "":
        return _EPOCH
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        value = int(value.strip())
    if isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) >= 100_000_000_000 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        # fromisoformat before 3.11 rejects fractional seconds that are not 3 or 6 digits
        head, dot, rest = text.partition(".")
        if not dot:
            logger.debug("Unparseable timestamp %r", value)
            return _EPOCH
        digits = "".join(itertools.takewhile(str.isdigit, rest))
        offset = rest[len(digits):]
        try:
            parsed = datetime.fromisoformat(f"{head}.{digits[:6].ljust(6, '0')}{offset}")
        except ValueError:
            logger.debug("Unparseable timestamp %r", value)
            return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(slots=True)
class DownloadInfo:
    url: str
    filename: Optional[str] = None
    hash: Optional[str] = None  # "algo:hex"; None means hash after download


@dataclass(slots=True)
class NormalizedVersion:
    version: str
    published_at: datetime
    mc_versions: List[str] = field(default_factory=list)
    download: DownloadInfo = field(default_factory=lambda: DownloadInfo(url=""))

    @property
    def has_mc_version_info(self) -> bool:
        return bool(self.mc_versions)


@dataclass(frozen=True, slots=True)
class ResolvedVersion:
    version: str
    filename: str
    url: str
    hash: str

    def __post_init__(self) -> None:
        parse_hash(self.hash)


@dataclass(slots=True)
class SelectionConfig:
    plugin_id: str
    treat_empty_as_compatible: bool = False


def normalize_mc_version(version: str) -> str:
    """Strip build metadata: ``1.20.1-R0.1-SNAPSHOT`` becomes ``1.20.1``."""
    return version.split("-", 1)[0].strip()


def _is_boundary_prefix(longer: str, shorter: str) -> bool:
    if not longer.startswith(shorter):
        return False
    return longer[len(shorter)] in _VERSION_DELIMITERS


def matches_mc_version(version: str, target: str) -> bool:
    """Exact match, or one side is a prefix ending on a version boundary.

    ``1.20.1`` matches ``1.20`` (and the reverse), ``1.2`` never matches ``1.20``.
    """
    left = normalize_mc_version(version)
    right = normalize_mc_version(target)
    if not left or not right:
        return False
    if left == right:
        return True
    if len(left) > len(right):
        return _is_boundary_prefix(left, right)
    if len(right) > len(left):
        return _is_boundary_prefix(right, left)
    return False


def is_compatible(version: NormalizedVersion, minecraft_version: str, treat_empty_as_compatible: bool) -> bool:
    if not version.mc_versions:
        return treat_empty_as_compatible
    return any(matches_mc_version(mc, minecraft_version) for mc in version.mc_versions)


def filter_by_mc_version(
    versions: Sequence[NormalizedVersion],
    minecraft_version: str,
    treat_empty_as_compatible: bool = False,
) -> List[NormalizedVersion]:
    return [v for v in versions if is_compatible(v, minecraft_version, treat_empty_as_compatible)]


def _select_specific(
    filtered: Sequence[NormalizedVersion],
    all_versions: Sequence[NormalizedVersion],
    requested: str,
    minecraft_version: Optional[str],
    config: SelectionConfig,
) -> NormalizedVersion:
    for candidate in filtered:
        if candidate.version != requested:
            continue
        if (
            minecraft_version
            and candidate.mc_versions
            and not is_compatible(candidate, minecraft_version, config.treat_empty_as_compatible)
        ):
            raise IncompatibleVersionError(
                config.plugin_id, minecraft_version, candidate.mc_versions, version=requested
            )
        return candidate

    if minecraft_version:
        for candidate in all_versions:
            if candidate.version == requested:
                raise IncompatibleVersionError(
                    config.plugin_id, minecraft_version, candidate.mc_versions, version=requested
                )

    raise VersionNotFoundError(config.plugin_id, requested)


def _select_latest(
    filtered: Sequence[NormalizedVersion],
    all_versions: Sequence[NormalizedVersion],
    minecraft_version: Optional[str],
    config: SelectionConfig,
) -> NormalizedVersion:
    if not filtered:
        if minecraft_version and all_versions:
            newest = _newest_first(all_versions)[0]
            raise IncompatibleVersionError(config.plugin_id, minecraft_version, newest.mc_versions)
        raise NotFoundError(f"No versions found for plugin '{config.plugin_id}'")
    return _newest_first(filtered)[0]


def _newest_first(versions: Sequence[NormalizedVersion]) -> List[NormalizedVersion]:
    # sorted() is stable with reverse=True, so equal timestamps keep upstream order
    return sorted(versions, key=lambda v: v.published_at, reverse=True)


def select_version(
    versions: Sequence[NormalizedVersion],
    requested_version: Optional[str],
    minecraft_version: Optional[str],
    config: SelectionConfig,
) -> NormalizedVersion:
    """Filter by Minecraft version, then pick the requested or the latest version."""
    all_versions = list(versions)
    if minecraft_version:
        filtered = filter_by_mc_version(all_versions, minecraft_version, config.treat_empty_as_compatible)
    else:
        filtered = all_versions

    if requested_version:
        return _select_specific(filtered, all_versions, requested_version, minecraft_version, config)
    return _select_latest(filtered, all_versions, minecraft_version, config)


def resolve_download(version: NormalizedVersion, client: "HttpClient", plugin_id: str) -> ResolvedVersion:
    download = version.download
    if download.hash:
        return ResolvedVersion(
            version=version.version,
            filename=download.filename or f"{version.version}.jar",
            url=download.url,
            hash=download.hash,
        )

    try:
        fetched = client.download(download.url)
    except TransportError as exc:
        raise TransportError(
            download.url,
            f"Failed to download plugin '{plugin_id}' version '{version.version}': {exc}",
            status=exc.status,
        ) from exc

    filename = download.filename or fetched.filename or f"{version.version}.jar"
    return ResolvedVersion(
        version=version.version,
        filename=filename,
        url=download.url,
        hash=compute_hash(fetched.data, HashAlgorithm.SHA256),
    )


def resolve(
    versions: Sequence[NormalizedVersion],
    requested_version: Optional[str],
    minecraft_version: Optional[str],
    config: SelectionConfig,
    client: "HttpClient",
) -> ResolvedVersion:
    selected = select_version(versions, requested_version, minecraft_version, config)
    logger.debug("Selected %s %s", config.plugin_id, selected.version)
    return resolve_download(selected, client, config.plugin_id)
