from __future__ import annotations

import concurrent.futures
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Protocol, Tuple
from urllib.parse import quote

from .config import DEFAULT_SEARCH_TIMEOUT
from .errors import (
    HttpNotFoundError,
    InvalidIdentifierError,
    NoSourceFoundError,
    NotFoundError,
    PluginManagerError,
    TransportError,
    UnsupportedSourceError,
)
from .hashing import HashAlgorithm, compute_hash, format_hash, parse_hash
from .http import Download, HttpClient
from .search import OwnerName, parse_owner_name_id, rank_search_results, rank_search_results_stable
from .versions import (
    DownloadInfo,
    NormalizedVersion,
    ResolvedVersion,
    SelectionConfig,
    parse_timestamp,
    resolve,
    select_version,
)

logger = logging.getLogger(__name__)

JAR_CONTENT_TYPES = ("application/java-archive", "application/x-java-archive")


class PluginSource(Protocol):
    name: str

    def validate_id(self, plugin_id: str) -> None:  # pragma: no cover - protocol
        ...

    def resolve_version(
        self,
        plugin_id: str,
        requested_version: Optional[str] = None,
        minecraft_version: Optional[str] = None,
    ) -> ResolvedVersion:  # pragma: no cover - protocol
        ...


def _expect_list(payload: Any, url: str, key: Optional[str] = None) -> List[Dict[str, Any]]:
    if key is not None:
        payload = payload.get(key) if isinstance(payload, dict) else None
    if not isinstance(payload, list):
        raise TransportError(url, f"Unexpected response shape from {url}")
    return [item for item in payload if isinstance(item, dict)]


def _expect_dict(payload: Any, url: str) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise TransportError(url, f"Unexpected response shape from {url}")
    return payload


class CatalogSource:
    name = ""
    label = ""

    def __init__(self, client: HttpClient) -> None:
        self.client = client

    def validate_id(self, plugin_id: str) -> None:
        if not plugin_id or not plugin_id.strip():
            raise InvalidIdentifierError(self.name, plugin_id, f"{self.label} plugin ID cannot be empty")

    def _get_json(self, url: str, not_found: str) -> Any:
        try:
            return self.client.fetch_json(url)
        except HttpNotFoundError as exc:
            raise NotFoundError(not_found) from exc


class ModrinthSource(CatalogSource):
    name = "modrinth"
    label = "Modrinth"
    API_BASE = "https://api.modrinth.com/v2"

    def resolve_version(
        self,
        plugin_id: str,
        requested_version: Optional[str] = None,
        minecraft_version: Optional[str] = None,
    ) -> ResolvedVersion:
        self.validate_id(plugin_id)
        project = self._fetch_project(plugin_id)
        versions = self._fetch_versions(project.get("id") or plugin_id, plugin_id)
        config = SelectionConfig(plugin_id)
        return resolve(versions, requested_version, minecraft_version, config, self.client)

    def _fetch_project(self, identifier: str) -> Dict[str, Any]:
        url = f"{self.API_BASE}/project/{quote(identifier, safe='')}"
        payload = self._get_json(url, f"Plugin '{identifier}' not found in Modrinth")
        return _expect_dict(payload, url)

    def _fetch_versions(self, project_id: str, display_id: str) -> List[NormalizedVersion]:
        url = f"{self.API_BASE}/project/{quote(project_id, safe='')}/version"
        payload = self._get_json(url, f"No versions found for plugin '{display_id}' in Modrinth")
        normalized = []
        for version in _expect_list(payload, url):
            entry = self._normalize_version(version)
            if entry is not None:
                normalized.append(entry)
        return normalized

    def _normalize_version(self, version: Dict[str, Any]) -> Optional[NormalizedVersion]:
        file_data = self._select_file(version)
        if file_data is None or not file_data.get("url") or not version.get("version_number"):
            return None
        sha512 = (file_data.get("hashes") or {}).get("sha512")
        return NormalizedVersion(
            version=str(version["version_number"]),
            published_at=parse_timestamp(version.get("date_published")),
            mc_versions=[str(v) for v in version.get("game_versions") or []],
            download=DownloadInfo(
                url=file_data["url"],
                filename=file_data.get("filename"),
                hash=format_hash(sha512, HashAlgorithm.SHA512) if sha512 else None,
            ),
        )

    def _select_file(self, version: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        files = version.get("files") or []
        if not files:
            return None
        for file in files:
            if file.get("primary"):
                return file
        return files[0]


class HangarSource(CatalogSource):
    name = "hangar"
    label = "Hangar"
    API_BASE = "https://hangar.papermc.io/api/v1"
    PREFERRED_PLATFORM = "PAPER"

    def resolve_version(
        self,
        plugin_id: str,
        requested_version: Optional[str] = None,
        minecraft_version: Optional[str] = None,
    ) -> ResolvedVersion:
        self.validate_id(plugin_id)
        target = parse_owner_name_id(plugin_id) or self._search_project(plugin_id)
        display_id = f"{target.owner}/{target.name}"
        project_url = f"{self.API_BASE}/projects/{quote(target.owner, safe='')}/{quote(target.name, safe='')}"
        self._get_json(project_url, f"Plugin '{display_id}' not found in Hangar")

        versions_url = f"{project_url}/versions"
        payload = self._get_json(versions_url, f"No versions found for plugin '{display_id}' in Hangar")
        versions = []
        for version in _expect_list(payload, versions_url, key="result"):
            entry = self._normalize_version(version)
            if entry is not None:
                versions.append(entry)

        config = SelectionConfig(display_id)
        return resolve(versions, requested_version, minecraft_version, config, self.client)

    def _search_project(self, search_name: str) -> OwnerName:
        url = f"{self.API_BASE}/projects?q={quote(search_name)}"
        results = _expect_list(self.client.fetch_json(url), url, key="result")
        candidates = [r for r in results if r.get("name") and (r.get("namespace") or {}).get("owner")]
        if not candidates:
            raise NotFoundError(f"No projects found matching '{search_name}' in Hangar")
        best = rank_search_results(candidates, search_name, key=lambda r: r["name"])[0]
        namespace = best["namespace"]
        return OwnerName(owner=namespace["owner"], name=namespace.get("slug") or best["name"])

    def _pick_download(self, downloads: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        def usable(entry: Any) -> bool:
            return isinstance(entry, dict) and bool(entry.get("downloadUrl") or entry.get("externalUrl"))

        preferred = downloads.get(self.PREFERRED_PLATFORM)
        if usable(preferred):
            return preferred
        for entry in downloads.values():
            if usable(entry):
                return entry
        return None

    def _normalize_version(self, version: Dict[str, Any]) -> Optional[NormalizedVersion]:
        download = self._pick_download(version.get("downloads") or {})
        if download is None or not version.get("name"):
            return None
        url = download.get("downloadUrl") or download.get("externalUrl")

        mc_versions: List[str] = []
        for platform_versions in (version.get("platformDependencies") or {}).values():
            for mc in platform_versions or []:
                if mc not in mc_versions:
                    mc_versions.append(str(mc))

        file_info = download.get("fileInfo") or {}
        sha256 = file_info.get("sha256Hash")
        filename = file_info.get("name")
        return NormalizedVersion(
            version=str(version["name"]),
            published_at=parse_timestamp(version.get("createdAt")),
            mc_versions=mc_versions,
            download=DownloadInfo(
                url=url,
                filename=filename,
                hash=format_hash(sha256, HashAlgorithm.SHA256) if sha256 and filename else None,
            ),
        )


class SpigotSource(CatalogSource):
    """Spigot resources through the Spiget API.

    Spigot authors rarely fill in tested versions, so versions without any are
    treated as compatible.
    """

    name = "spigot"
    label = "Spigot"
    API_BASE = "https://api.spiget.org/v2"

    def resolve_version(
        self,
        plugin_id: str,
        requested_version: Optional[str] = None,
        minecraft_version: Optional[str] = None,
    ) -> ResolvedVersion:
        self.validate_id(plugin_id)
        resource_id, external_url = self._resolve_resource_id(plugin_id)

        resource_url = f"{self.API_BASE}/resources/{resource_id}"
        resource = _expect_dict(
            self._get_json(resource_url, f"Resource '{resource_id}' not found in Spigot"), resource_url
        )
        external_url = external_url or (resource.get("file") or {}).get("externalUrl")

        versions = self._fetch_versions(resource_id)
        if not versions:
            raise NotFoundError(f"No versions found for resource '{resource_id}'")

        config = SelectionConfig(str(resource_id), treat_empty_as_compatible=True)
        selected = select_version(versions, requested_version, minecraft_version, config)
        return self._download_with_hash(resource_id, selected, external_url)

    def _resolve_resource_id(self, plugin_id: str) -> Tuple[int, Optional[str]]:
        if plugin_id.isdigit():
            return int(plugin_id), None
        resource = self._search_resource(plugin_id)
        return int(resource["id"]), (resource.get("file") or {}).get("externalUrl")

    def _search_resource(self, search_name: str) -> Dict[str, Any]:
        search_terms = [search_name]
        if "-" in search_name:
            search_terms.append(search_name.replace("-", " "))

        for term in search_terms:
            url = f"{self.API_BASE}/search/resources/{quote(term, safe='')}?size=100"
            try:
                payload = self.client.fetch_json(url)
            except TransportError as exc:
                logger.debug("Spiget search for %r failed: %s", term, exc)
                continue
            results = [r for r in _expect_list(payload, url) if r.get("name") and r.get("id") is not None]
            if results:
                return rank_search_results(results, search_name, key=lambda r: r["name"])[0]

        raise NotFoundError(f"No resources found matching '{search_name}' in Spigot")

    def _fetch_versions(self, resource_id: int) -> List[NormalizedVersion]:
        url = f"{self.API_BASE}/resources/{resource_id}/versions?size=1000"
        payload = self._get_json(url, f"No versions found for resource '{resource_id}'")
        versions = []
        for version in _expect_list(payload, url):
            if version.get("id") is None or not version.get("name"):
                continue
            versions.append(
                NormalizedVersion(
                    version=str(version["name"]),
                    published_at=parse_timestamp(version.get("releaseDate")),
                    mc_versions=[str(v) for v in version.get("testedVersions") or []],
                    download=DownloadInfo(
                        url=f"{self.API_BASE}/resources/{resource_id}/versions/{version['id']}/download"
                    ),
                )
            )
        return versions

    def _download_with_hash(
        self,
        resource_id: int,
        version: NormalizedVersion,
        external_url: Optional[str],
    ) -> ResolvedVersion:
        download_url = version.download.url
        try:
            fetched = self.client.download(download_url)
            final_url = download_url
        except TransportError as exc:
            if external_url:
                logger.debug("Spiget download failed (%s), trying external URL %s", exc, external_url)
                fetched = self._download_external(resource_id, version, external_url)
                final_url = external_url
            elif exc.status == 403:
                raise TransportError(
                    download_url,
                    "SpigotMC uses Cloudflare protection that blocks automated downloads, and this "
                    "resource doesn't have an external download URL. Please download the plugin "
                    f"manually from https://www.spigotmc.org/resources/{resource_id}/ and add it to your server.",
                    status=403,
                ) from exc
            else:
                raise TransportError(
                    download_url,
                    f"Failed to download resource '{resource_id}' version '{version.version}': {exc}",
                    status=exc.status,
                ) from exc

        filename = fetched.filename
        if not filename or not filename.lower().endswith(".jar"):
            filename = f"{version.version}.jar"

        return ResolvedVersion(
            version=version.version,
            filename=filename,
            url=final_url,
            hash=compute_hash(fetched.data, HashAlgorithm.SHA256),
        )

    def _download_external(self, resource_id: int, version: NormalizedVersion, external_url: str) -> Download:
        try:
            fetched = self.client.download(external_url)
        except TransportError as exc:
            raise TransportError(
                external_url,
                f"Failed to download resource '{resource_id}' version '{version.version}' "
                f"from external URL '{external_url}': {exc}",
                status=exc.status,
            ) from exc

        content_type = fetched.content_type or ""
        looks_like_jar = content_type.startswith(JAR_CONTENT_TYPES) or external_url.lower().endswith(".jar")
        if not looks_like_jar:
            raise TransportError(
                external_url,
                f"External URL '{external_url}' for resource '{resource_id}' version '{version.version}' "
                f"does not point to a JAR file (Content-Type: {content_type or 'not specified'}). "
                "Please ensure the external URL points directly to a .jar file download.",
            )
        return fetched


class GitHubSource(CatalogSource):
    """GitHub Releases. Releases carry no Minecraft metadata, so nothing is filtered."""

    name = "github"
    label = "GitHub"
    API_BASE = "https://api.github.com"

    def validate_id(self, plugin_id: str) -> None:
        if not plugin_id or not plugin_id.strip():
            raise InvalidIdentifierError(self.name, plugin_id, "GitHub repository name cannot be empty")

    def resolve_version(
        self,
        plugin_id: str,
        requested_version: Optional[str] = None,
        minecraft_version: Optional[str] = None,
    ) -> ResolvedVersion:
        self.validate_id(plugin_id)
        repo = parse_owner_name_id(plugin_id) or self._search_repository(plugin_id)
        display_id = f"{repo.owner}/{repo.name}"
        repo_url = f"{self.API_BASE}/repos/{quote(repo.owner, safe='')}/{quote(repo.name, safe='')}"
        self._get_json(repo_url, f"Repository '{display_id}' not found on GitHub")

        release = self._fetch_release(repo_url, display_id, requested_version)
        tag = str(release.get("tag_name") or "")
        asset = next(
            (a for a in release.get("assets") or [] if str(a.get("name", "")).endswith(".jar")),
            None,
        )
        if asset is None or not asset.get("browser_download_url"):
            raise NotFoundError(f"No .jar file found in release '{tag}' for '{display_id}'")

        normalized = NormalizedVersion(
            version=tag,
            published_at=parse_timestamp(release.get("published_at") or release.get("created_at")),
            mc_versions=[],
            download=DownloadInfo(
                url=asset["browser_download_url"],
                filename=asset["name"],
                hash=self._asset_digest(asset),
            ),
        )
        return resolve([normalized], requested_version, None, SelectionConfig(display_id), self.client)

    def _search_repository(self, search_name: str) -> OwnerName:
        query = quote(f"{search_name} in:name")
        url = f"{self.API_BASE}/search/repositories?q={query}&sort=stars&order=desc&per_page=100"
        items = [
            item
            for item in _expect_list(self.client.fetch_json(url), url, key="items")
            if item.get("name") and (item.get("owner") or {}).get("login")
        ]
        if not items:
            raise NotFoundError(f"No repositories found matching '{search_name}' on GitHub")
        best = rank_search_results_stable(items, search_name, key=lambda item: item["name"])[0]
        return OwnerName(owner=best["owner"]["login"], name=best["name"])

    def _fetch_release(self, repo_url: str, display_id: str, requested_version: Optional[str]) -> Dict[str, Any]:
        if requested_version:
            url = f"{repo_url}/releases/tags/{quote(requested_version, safe='')}"
            missing = f"Release '{requested_version}' not found for repository '{display_id}'"
        else:
            url = f"{repo_url}/releases/latest"
            missing = f"No releases found for repository '{display_id}'"
        return _expect_dict(self._get_json(url, missing), url)

    @staticmethod
    def _asset_digest(asset: Dict[str, Any]) -> Optional[str]:
        digest = asset.get("digest")
        if not digest:
            return None
        try:
            parse_hash(digest)
        except PluginManagerError:
            return None
        return digest


@dataclass(frozen=True, slots=True)
class SourceMatch:
    source: str
    plugin_id: str
    resolved: ResolvedVersion


def _submit_daemon(fn: Callable[..., ResolvedVersion], *args: Any) -> concurrent.futures.Future:
    """Run ``fn`` on a daemon thread so a hung request cannot hold the process open."""
    future: concurrent.futures.Future = concurrent.futures.Future()

    def run() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            result = fn(*args)
        except BaseException as exc:
            future.set_exception(exc)
        else:
            future.set_result(result)

    threading.Thread(target=run, name="mpm-search", daemon=True).start()
    return future


class SourceRegistry:
    """Adapters in fixed priority order; read-only after construction."""

    def __init__(self, sources: Iterable[PluginSource], search_timeout: float = DEFAULT_SEARCH_TIMEOUT) -> None:
        self._sources: Tuple[PluginSource, ...] = tuple(sources)
        self._by_name: Dict[str, PluginSource] = {source.name: source for source in self._sources}
        self.search_timeout = search_timeout

    @property
    def names(self) -> List[str]:
        return [source.name for source in self._sources]

    def __iter__(self) -> Iterator[PluginSource]:
        return iter(self._sources)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def get(self, name: str) -> PluginSource:
        try:
            return self._by_name[name]
        except KeyError as exc:
            raise UnsupportedSourceError(name, self.names) from exc

    def priority_order(self) -> List[PluginSource]:
        return list(self._sources)

    def find_in_any_source(
        self,
        identifier: str,
        version: Optional[str] = None,
        minecraft_version: Optional[str] = None,
        *,
        retry_latest: bool = False,
    ) -> SourceMatch:
        """Resolve ``identifier`` against every source at once.

        The winner is always the successful source earliest in priority order,
        never the one that answered first. Each attempt is bounded by
        ``search_timeout``; a timed-out source counts as a failure and its
        daemon thread is abandoned.

        With ``retry_latest`` a pinned ``version`` that fails is retried as the
        latest version compatible with ``minecraft_version``. Only import wants
        this; everywhere else a pin that does not resolve is an error.
        """
        attempts: List[Tuple[PluginSource, str]] = []
        first_invalid: Optional[InvalidIdentifierError] = None
        for source in self._sources:
            try:
                source.validate_id(identifier)
            except InvalidIdentifierError as exc:
                logger.debug("Skipping %s: %s", source.name, exc)
                first_invalid = first_invalid or exc
                continue
            attempts.append((source, identifier))
            if source.name == ModrinthSource.name and identifier.lower() != identifier:
                attempts.append((source, identifier.lower()))

        if not attempts:
            raise NoSourceFoundError(identifier, 0, first_invalid)

        def attempt(source: PluginSource, search_id: str) -> ResolvedVersion:
            logger.debug("Searching source '%s' for plugin '%s'", source.name, search_id)
            try:
                return source.resolve_version(search_id, version, minecraft_version)
            except PluginManagerError as exc:
                if not (retry_latest and version and minecraft_version):
                    raise
                logger.debug(
                    "Pinned version failed on %s (%s); trying latest compatible version", source.name, exc
                )
                return source.resolve_version(search_id, None, minecraft_version)

        futures = [_submit_daemon(attempt, source, search_id) for source, search_id in attempts]
        concurrent.futures.wait(futures, timeout=self.search_timeout)

        first_error: Optional[BaseException] = None
        for (source, search_id), future in zip(attempts, futures):
            if not future.done():
                error: BaseException = TransportError(
                    "", f"Source '{source.name}' timed out after {self.search_timeout:g}s"
                )
            else:
                error = future.exception()
                if error is None:
                    logger.debug("Plugin '%s' found in %s as '%s'", identifier, source.name, search_id)
                    return SourceMatch(source=source.name, plugin_id=search_id, resolved=future.result())
            logger.debug("Source '%s' failed for '%s': %s", source.name, search_id, error)
            first_error = first_error or error

        attempted = len({source.name for source, _ in attempts})
        raise NoSourceFoundError(identifier, attempted, first_error)


def default_registry(client: HttpClient, search_timeout: float = DEFAULT_SEARCH_TIMEOUT) -> SourceRegistry:
    return SourceRegistry(
        [
            ModrinthSource(client),
            HangarSource(client),
            SpigotSource(client),
            GitHubSource(client),
        ],
        search_timeout=search_timeout,
    )
