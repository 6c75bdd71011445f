from __future__ import annotations

import json
import logging
import re
import urllib.error
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
from urllib.parse import unquote, urlparse

from .config import DEFAULT_HTTP_TIMEOUT, DEFAULT_USER_AGENT
from .errors import HttpNotFoundError, TransportError
from .hashing import CHUNK_SIZE, HashAlgorithm, format_hash, new_hasher

logger = logging.getLogger(__name__)

_FILENAME_RE = re.compile(r"filename\*?=\s*(?:UTF-8'')?\"?([^\";]+)\"?", re.IGNORECASE)


@dataclass(slots=True)
class Download:
    url: str
    data: bytes
    filename: Optional[str] = None
    content_type: Optional[str] = None


def extract_filename(headers: Optional[Mapping[str, str]], url: str) -> Optional[str]:
    """Filename from Content-Disposition, else the last URL path segment."""
    disposition = headers.get("Content-Disposition") if headers else None
    if disposition:
        match = _FILENAME_RE.search(disposition)
        if match:
            name = Path(unquote(match.group(1).strip())).name
            if name:
                return name
    name = Path(unquote(urlparse(url).path)).name
    return name or None


class HttpClient:
    """Shared urllib client identifying itself only through its User-Agent."""

    def __init__(self, user_agent: str = DEFAULT_USER_AGENT, timeout: float = DEFAULT_HTTP_TIMEOUT) -> None:
        self.user_agent = user_agent
        self.timeout = timeout

    def _headers(self, accept: Optional[str] = None) -> Dict[str, str]:
        headers = {"User-Agent": self.user_agent}
        if accept:
            headers["Accept"] = accept
        return headers

    def _open(self, url: str, accept: Optional[str] = None):
        request = urllib.request.Request(url, headers=self._headers(accept))
        logger.debug("GET %s", url)
        try:
            return urllib.request.urlopen(request, timeout=self.timeout)
        except urllib.error.HTTPError as exc:
            if exc.code == 404:
                raise HttpNotFoundError(url) from exc
            raise TransportError(url, f"HTTP request failed: {url} ({exc.code})", status=exc.code) from exc
        except (urllib.error.URLError, TimeoutError, OSError) as exc:
            reason = getattr(exc, "reason", exc)
            raise TransportError(url, f"Network error fetching {url}: {reason}") from exc

    def fetch_json(self, url: str) -> Any:
        with self._open(url, accept="application/json") as response:
            try:
                payload = response.read()
            except OSError as exc:
                raise TransportError(url, f"Failed reading response from {url}: {exc}") from exc
        try:
            return json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise TransportError(url, f"Invalid JSON payload from {url}: {exc}") from exc

    def download(self, url: str) -> Download:
        with self._open(url) as response:
            try:
                data = response.read()
            except OSError as exc:
                raise TransportError(url, f"Failed to download {url}: {exc}") from exc
            final_url = response.geturl() or url
            headers = response.headers
            content_type = headers.get("Content-Type") if headers else None
            return Download(
                url=url,
                data=data,
                filename=extract_filename(headers, final_url),
                content_type=content_type.lower() if content_type else None,
            )

    def download_to(self, url: str, dest: Path, algorithm: HashAlgorithm = HashAlgorithm.SHA256) -> str:
        """Stream ``url`` into ``dest`` and return the digest of the written bytes."""
        dest.parent.mkdir(parents=True, exist_ok=True)
        hasher = new_hasher(algorithm)
        with self._open(url) as response, dest.open("wb") as handle:
            try:
                for chunk in iter(lambda: response.read(CHUNK_SIZE), b""):
                    hasher.update(chunk)
                    handle.write(chunk)
            except OSError as exc:
                raise TransportError(url, f"Failed to download {url}: {exc}") from exc
        return format_hash(hasher.hexdigest(), algorithm)
