"""Tests for the urllib-backed HTTP client."""

import io
import urllib.error
import urllib.request
from pathlib import Path
from typing import Dict, Optional

import pytest

from mpm.errors import HttpNotFoundError, TransportError
from mpm.hashing import HashAlgorithm, compute_hash
from mpm.http import HttpClient, extract_filename


class FakeResponse:
    def __init__(self, body: bytes, headers: Optional[Dict[str, str]] = None, url: str = "") -> None:
        self._body = io.BytesIO(body)
        self.headers = headers or {}
        self._url = url

    def read(self, size: int = -1) -> bytes:
        return self._body.read(size)

    def geturl(self) -> str:
        return self._url

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc_info) -> None:
        self._body.close()


class BrokenResponse(FakeResponse):
    def read(self, size: int = -1) -> bytes:
        raise ConnectionResetError("connection reset by peer")


@pytest.fixture()
def requests(monkeypatch: pytest.MonkeyPatch):
    """Route urlopen through a queue of canned responses or exceptions."""
    seen = []
    queue = []

    def fake_urlopen(request: urllib.request.Request, timeout: float = None):
        seen.append((request, timeout))
        outcome = queue.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
    return seen, queue


def _http_error(url: str, code: int) -> urllib.error.HTTPError:
    return urllib.error.HTTPError(url, code, "error", {}, None)


class TestFetchJson:
    def test_decodes_json_and_sends_user_agent(self, requests) -> None:
        seen, queue = requests
        queue.append(FakeResponse(b'{"id": "P7dR8mSH"}'))
        client = HttpClient(user_agent="mpm-test/1.0", timeout=7)

        assert client.fetch_json("https://api.example/project") == {"id": "P7dR8mSH"}
        request, timeout = seen[0]
        assert request.get_header("User-agent") == "mpm-test/1.0"
        assert request.get_header("Accept") == "application/json"
        assert timeout == 7

    def test_404_is_not_found(self, requests) -> None:
        _, queue = requests
        queue.append(_http_error("https://api.example/missing", 404))
        with pytest.raises(HttpNotFoundError) as excinfo:
            HttpClient().fetch_json("https://api.example/missing")
        assert excinfo.value.status == 404

    @pytest.mark.parametrize("code", [403, 500, 502])
    def test_other_statuses_are_transport_errors(self, requests, code: int) -> None:
        _, queue = requests
        queue.append(_http_error("https://api.example/x", code))
        with pytest.raises(TransportError) as excinfo:
            HttpClient().fetch_json("https://api.example/x")
        assert not isinstance(excinfo.value, HttpNotFoundError)
        assert excinfo.value.status == code
        assert str(code) in str(excinfo.value)

    def test_network_failure_has_no_status(self, requests) -> None:
        _, queue = requests
        queue.append(urllib.error.URLError("connection refused"))
        with pytest.raises(TransportError, match="connection refused") as excinfo:
            HttpClient().fetch_json("https://api.example/x")
        assert excinfo.value.status is None

    def test_malformed_json_is_transport_error(self, requests) -> None:
        _, queue = requests
        queue.append(FakeResponse(b"<html>rate limited</html>"))
        with pytest.raises(TransportError, match="Invalid JSON"):
            HttpClient().fetch_json("https://api.example/x")


class TestDownloads:
    def test_download_reads_headers_after_redirect(self, requests) -> None:
        _, queue = requests
        queue.append(
            FakeResponse(
                b"jar bytes",
                headers={"Content-Type": "Application/Java-Archive"},
                url="https://cdn.example/files/Plugin-1.0.jar",
            )
        )
        fetched = HttpClient().download("https://api.example/download/1")
        assert fetched.data == b"jar bytes"
        assert fetched.filename == "Plugin-1.0.jar"
        assert fetched.content_type == "application/java-archive"
        assert fetched.url == "https://api.example/download/1"

    def test_download_to_streams_and_hashes_sha512(self, requests, tmp_path: Path) -> None:
        _, queue = requests
        body = b"x" * 200_000
        queue.append(FakeResponse(body))
        dest = tmp_path / "nested" / "plugin.jar"

        digest = HttpClient().download_to("https://cdn.example/plugin.jar", dest, HashAlgorithm.SHA512)

        assert digest == compute_hash(body, HashAlgorithm.SHA512)
        assert dest.read_bytes() == body

    def test_download_to_read_failure_is_transport_error(self, requests, tmp_path: Path) -> None:
        _, queue = requests
        queue.append(BrokenResponse(b""))
        with pytest.raises(TransportError, match="Failed to download"):
            HttpClient().download_to("https://cdn.example/plugin.jar", tmp_path / "plugin.jar")


class TestExtractFilename:
    @pytest.mark.parametrize(
        "disposition,expected",
        [
            ('attachment; filename="LuckPerms-Bukkit-5.4.102.jar"', "LuckPerms-Bukkit-5.4.102.jar"),
            ("attachment; filename=WorldEdit.jar", "WorldEdit.jar"),
            ("attachment; filename*=UTF-8''Lucky%20Perms.jar", "Lucky Perms.jar"),
            ('attachment; filename="../../etc/evil.jar"', "evil.jar"),
        ],
    )
    def test_content_disposition(self, disposition: str, expected: str) -> None:
        headers = {"Content-Disposition": disposition}
        assert extract_filename(headers, "https://cdn.example/download") == expected

    def test_falls_back_to_url_path(self) -> None:
        assert extract_filename({}, "https://cdn.example/files/My%20Plugin.jar?token=abc") == "My Plugin.jar"
        assert extract_filename(None, "https://cdn.example/files/Plugin.jar") == "Plugin.jar"

    def test_none_without_a_path(self) -> None:
        assert extract_filename(None, "https://cdn.example/") is None
