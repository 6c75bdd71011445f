"""Shared fixtures: an in-memory HTTP client and small builders."""

from __future__ import annotations

import copy
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from mpm.config import MpmConfig
from mpm.errors import HttpNotFoundError, InvalidIdentifierError, NotFoundError
from mpm.hashing import HashAlgorithm, compute_hash
from mpm.http import Download, extract_filename
from mpm.manifest import LockedPlugin
from mpm.versions import DownloadInfo, NormalizedVersion, ResolvedVersion

_MISSING = object()


class FakeHttpClient:
    """Serves canned JSON and file bodies by exact URL; unknown URLs are 404s."""

    def __init__(
        self,
        json_routes: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.json_routes: Dict[str, Any] = dict(json_routes or {})
        self.files: Dict[str, Any] = dict(files or {})
        self.requests: List[str] = []
        self._lock = threading.Lock()

    def _record(self, url: str) -> None:
        with self._lock:
            self.requests.append(url)

    def fetch_json(self, url: str) -> Any:
        self._record(url)
        value = self.json_routes.get(url, _MISSING)
        if value is _MISSING:
            raise HttpNotFoundError(url)
        if isinstance(value, Exception):
            raise value
        return copy.deepcopy(value)

    def download(self, url: str) -> Download:
        self._record(url)
        value = self.files.get(url, _MISSING)
        if value is _MISSING:
            raise HttpNotFoundError(url)
        if isinstance(value, Exception):
            raise value
        if isinstance(value, Download):
            return value
        return Download(url=url, data=value, filename=extract_filename(None, url))

    def download_to(self, url: str, dest: Path, algorithm: HashAlgorithm = HashAlgorithm.SHA256) -> str:
        fetched = self.download(url)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(fetched.data)
        return compute_hash(fetched.data, algorithm)


class StubSource:
    """Adapter double; ``accept`` decides per (id, version) whether resolution succeeds."""

    def __init__(
        self,
        name: str,
        delay: float = 0.0,
        fail: Optional[Exception] = None,
        accept: Optional[Callable[[str, Optional[str]], bool]] = None,
        invalid: bool = False,
        payload: bytes = b"",
    ) -> None:
        self.name = name
        self.delay = delay
        self.fail = fail
        self.accept = accept
        self.invalid = invalid
        self.payload = payload or name.encode()
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def validate_id(self, plugin_id: str) -> None:
        if self.invalid or not plugin_id.strip():
            raise InvalidIdentifierError(self.name, plugin_id, f"{self.name} rejects '{plugin_id}'")

    def resolve_version(self, plugin_id, requested_version=None, minecraft_version=None) -> ResolvedVersion:
        with self._lock:
            self.calls.append((plugin_id, requested_version, minecraft_version))
        if self.delay:
            time.sleep(self.delay)
        if self.accept is not None and not self.accept(plugin_id, requested_version):
            raise NotFoundError(f"{plugin_id} not in {self.name}")
        if self.fail is not None:
            raise self.fail
        return ResolvedVersion(
            version=requested_version or "latest",
            filename=f"{plugin_id.replace('/', '-')}-{self.name}.jar",
            url=f"https://{self.name}.example/{plugin_id}.jar",
            hash=compute_hash(self.payload),
        )


def make_version(
    version: str,
    published: str,
    mc_versions: Optional[List[str]] = None,
    url: Optional[str] = None,
    hash: Optional[str] = None,
    filename: Optional[str] = None,
) -> NormalizedVersion:
    return NormalizedVersion(
        version=version,
        published_at=datetime.fromisoformat(published).replace(tzinfo=timezone.utc),
        mc_versions=list(mc_versions or []),
        download=DownloadInfo(url=url or f"https://cdn.example/{version}.jar", filename=filename, hash=hash),
    )


def locked(name: str, data: bytes, file: Optional[str] = None, source: str = "modrinth") -> LockedPlugin:
    return LockedPlugin(
        name=name,
        source=source,
        version="1.0.0",
        file=file or f"{name}.jar",
        url=f"https://cdn.example/{name}.jar",
        hash=compute_hash(data),
    )


@pytest.fixture()
def fake_client() -> FakeHttpClient:
    return FakeHttpClient()


@pytest.fixture()
def cfg(tmp_path: Path) -> MpmConfig:
    return MpmConfig.for_root(tmp_path)
