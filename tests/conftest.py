import sys
from pathlib import Path

import pytest
import requests


# Ensure tests can import project packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from engine.extraction import ExtractionAdapter, ResolvedMedia  # noqa: E402
from engine.paths import EnginePaths  # noqa: E402


class FakeResponse:
    def __init__(self, *, status_code=200, chunks=(), json_data=None, headers=None, fail_after=None):
        self.status_code = status_code
        self._chunks = list(chunks)
        self._json = json_data
        self.headers = headers or {}
        self._fail_after = fail_after
        self.closed = False

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        if self._json is None:
            raise ValueError("no json body")
        return self._json

    def iter_content(self, chunk_size=1):
        for index, chunk in enumerate(self._chunks):
            if self._fail_after is not None and index >= self._fail_after:
                raise requests.ConnectionError("connection reset")
            yield chunk

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()
        return False


class FakeSession:
    """Routes ``get``/``post`` calls to a handler ``(method, url, kwargs) -> FakeResponse``."""

    def __init__(self, handler):
        self.handler = handler
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append(("GET", url, kwargs))
        return self.handler("GET", url, kwargs)

    def post(self, url, **kwargs):
        self.calls.append(("POST", url, kwargs))
        return self.handler("POST", url, kwargs)


class FakeAdapter(ExtractionAdapter):
    name = "fake"

    def __init__(self, resolved=None, *, errors=None, preview_data=None):
        self.resolved = resolved or {}
        self.errors = errors or {}
        self.preview_data = preview_data
        self.calls = []

    def resolve(self, url, media_format):
        self.calls.append((url, media_format))
        if media_format in self.errors:
            raise self.errors[media_format]
        return self.resolved[media_format]

    def preview(self, url):
        if isinstance(self.preview_data, Exception):
            raise self.preview_data
        return dict(self.preview_data or {})


def media_session(payload=b"0123456789" * 10, *, status_code=200):
    def _handler(method, url, kwargs):
        return FakeResponse(status_code=status_code, chunks=[payload[:40], payload[40:]])

    return FakeSession(_handler)


@pytest.fixture()
def engine_paths(tmp_path: Path) -> EnginePaths:
    paths = EnginePaths(
        log_dir=str(tmp_path / "logs"),
        config_dir=str(tmp_path / "config"),
        downloads_dir=str(tmp_path / "downloads"),
    )
    for d in (paths.log_dir, paths.config_dir, paths.downloads_dir):
        Path(d).mkdir(parents=True, exist_ok=True)
    return paths


@pytest.fixture()
def hd_video() -> ResolvedMedia:
    return ResolvedMedia(
        media_url="https://cdn.example.test/hd.mp4",
        title="Dance Clip",
        author="user",
        duration=65,
        thumbnail="https://cdn.example.test/thumb.jpg",
    )
