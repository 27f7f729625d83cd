from __future__ import annotations

import asyncio
import os

import pytest
import requests

from conftest import FakeAdapter, FakeResponse, FakeSession, media_session
from engine.extraction import MediaNotFoundError, ResolvedMedia
from engine.job_store import DownloadJobStore
from engine.orchestrator import (
    DownloadOrchestrator,
    DownloadRequestError,
    MediaFetchError,
    stream_to_file,
    validate_download_request,
)

_URL = "https://www.tiktok.com/@someone/video/7234567890123456789"


def _run(orchestrator: DownloadOrchestrator, url: str, media_format: str):
    async def _scenario():
        job_id = orchestrator.start_job(url, media_format)
        assert orchestrator.store.get(job_id).status == "pending"
        assert await orchestrator.wait_idle(timeout=5)
        return job_id

    return asyncio.run(_scenario())


def test_completed_job_has_file_and_metadata(tmp_path, hd_video) -> None:
    store = DownloadJobStore()
    orchestrator = DownloadOrchestrator(
        store, FakeAdapter({"video": hd_video}), tmp_path, session=media_session(b"x" * 1536)
    )

    job_id = _run(orchestrator, _URL, "video")

    job = store.get(job_id)
    assert job.status == "completed"
    assert job.file_path == os.path.join(str(tmp_path), f"{job_id}.mp4")
    assert os.path.getsize(job.file_path) == 1536
    assert job.file_size == "1.5 KB"
    assert (job.title, job.author, job.duration) == ("Dance Clip", "user", "1:05")
    assert not os.path.exists(f"{job.file_path}.part")


def test_missing_metadata_uses_defaults(tmp_path) -> None:
    store = DownloadJobStore()
    adapter = FakeAdapter({"audio": ResolvedMedia(media_url="https://cdn.example.test/a.mp3")})
    orchestrator = DownloadOrchestrator(store, adapter, tmp_path, session=media_session())

    job = store.get(_run(orchestrator, _URL, "audio"))

    assert job.file_path.endswith(".mp3")
    assert (job.title, job.author, job.duration) == ("TikTok Video", "Unknown", "0:00")


def test_extraction_failure_marks_job_failed(tmp_path) -> None:
    store = DownloadJobStore()
    adapter = FakeAdapter(errors={"audio": MediaNotFoundError("no audio link")})
    session = media_session()
    orchestrator = DownloadOrchestrator(store, adapter, tmp_path, session=session)

    job = store.get(_run(orchestrator, _URL, "audio"))

    assert job.status == "failed"
    assert job.file_path is None
    assert job.file_size is None
    assert "no audio link" in job.last_error
    assert session.calls == []
    assert os.listdir(tmp_path) == []


def test_media_http_error_marks_job_failed(tmp_path, hd_video) -> None:
    store = DownloadJobStore()
    orchestrator = DownloadOrchestrator(
        store, FakeAdapter({"video": hd_video}), tmp_path, session=media_session(status_code=403)
    )

    job = store.get(_run(orchestrator, _URL, "video"))

    assert job.status == "failed"
    assert "media_http_403" in job.last_error
    assert os.listdir(tmp_path) == []


@pytest.mark.parametrize(
    ("url", "media_format", "message"),
    [
        ("", "video", "URL is required"),
        ("   ", "video", "URL is required"),
        ("https://www.youtube.com/watch?v=abc", "video", "Must be a valid TikTok URL"),
        (_URL, "gif", "Format must be 'video' or 'audio'"),
    ],
)
def test_invalid_requests_create_no_job(tmp_path, url, media_format, message) -> None:
    store = DownloadJobStore()
    orchestrator = DownloadOrchestrator(store, FakeAdapter(), tmp_path)

    async def _scenario():
        with pytest.raises(DownloadRequestError, match=message):
            orchestrator.start_job(url, media_format)

    asyncio.run(_scenario())
    assert len(store) == 0
    assert orchestrator.pending_count == 0


def test_validate_download_request_normalizes_format() -> None:
    assert validate_download_request(_URL, "MP3") == "audio"


def test_stream_to_file_forwards_headers(tmp_path) -> None:
    session = media_session(b"abc" * 50)
    dest = tmp_path / "1.mp4"

    written = stream_to_file("https://cdn.test/v.mp4", str(dest), headers={"Referer": "x"}, session=session)

    assert written == 150
    assert dest.read_bytes() == b"abc" * 50
    _method, url, kwargs = session.calls[0]
    assert url == "https://cdn.test/v.mp4"
    assert kwargs["headers"] == {"Referer": "x"}
    assert kwargs["stream"] is True


def test_stream_to_file_cleans_partial_on_stream_error(tmp_path) -> None:
    response = FakeResponse(chunks=[b"a" * 10, b"b" * 10], fail_after=1)
    session = FakeSession(lambda method, url, kwargs: response)
    dest = tmp_path / "1.mp4"

    with pytest.raises(MediaFetchError):
        stream_to_file("https://cdn.test/v.mp4", str(dest), session=session)

    assert response.closed
    assert os.listdir(tmp_path) == []


def test_stream_to_file_rejects_empty_body(tmp_path) -> None:
    session = FakeSession(lambda method, url, kwargs: FakeResponse(chunks=[]))
    with pytest.raises(MediaFetchError, match="empty_media_response"):
        stream_to_file("https://cdn.test/v.mp4", str(tmp_path / "1.mp4"), session=session)
    assert os.listdir(tmp_path) == []


def test_stream_to_file_wraps_connection_errors(tmp_path) -> None:
    def _handler(method, url, kwargs):
        raise requests.Timeout("slow")

    with pytest.raises(MediaFetchError, match="media_request_failed"):
        stream_to_file("https://cdn.test/v.mp4", str(tmp_path / "1.mp4"), session=FakeSession(_handler))


def test_stream_to_file_cleans_partial_when_rename_fails(tmp_path) -> None:
    dest = tmp_path / "1.mp4"
    dest.mkdir()

    with pytest.raises(OSError):
        stream_to_file("https://cdn.test/v.mp4", str(dest), session=media_session())

    assert os.listdir(tmp_path) == ["1.mp4"]


def test_failed_job_leaves_no_partial_file(tmp_path, hd_video) -> None:
    store = DownloadJobStore()
    orchestrator = DownloadOrchestrator(store, FakeAdapter({"video": hd_video}), tmp_path, session=media_session())
    leftover = tmp_path / "1.mp4.part"

    def _resolve(url, media_format):
        leftover.write_bytes(b"half")
        raise MediaNotFoundError("gone")

    orchestrator.adapter.resolve = _resolve

    job = store.get(_run(orchestrator, _URL, "video"))

    assert job.status == "failed"
    assert not leftover.exists()
