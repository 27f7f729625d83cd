from __future__ import annotations

import asyncio
import os
import time

from engine.delivery import (
    content_disposition,
    delivery_filename,
    finalize_delivery,
    iter_delivery,
    job_status_payload,
    sweep_orphaned_files,
)
from engine.job_store import DownloadJobStore


def _completed_job(store: DownloadJobStore, path: str, title: str | None = "Dance Clip", media_format: str = "video"):
    job = store.create("https://www.tiktok.com/@u/video/1", media_format)
    store.update(job.id, status="processing")
    return store.update(job.id, status="completed", file_path=path, title=title, file_size="1 KB")


def test_status_payload_uses_wire_names(tmp_path) -> None:
    store = DownloadJobStore()
    job = _completed_job(store, str(tmp_path / "1.mp4"))

    assert job_status_payload(job) == {
        "id": job.id,
        "status": "completed",
        "title": "Dance Clip",
        "author": None,
        "duration": None,
        "fileSize": "1 KB",
        "format": "video",
    }


def test_delivery_filename_sanitizes_title(tmp_path) -> None:
    store = DownloadJobStore()
    assert delivery_filename(_completed_job(store, "/tmp/a.mp3", 'my/"clip"', "audio")) == "my 'clip'.mp3"
    assert delivery_filename(_completed_job(store, "/tmp/b.mp4", None)) == "tiktok_video.mp4"


def test_content_disposition_ascii_name() -> None:
    assert content_disposition("Dance Clip.mp4") == 'attachment; filename="Dance Clip.mp4"'


def test_content_disposition_non_ascii_name_adds_utf8_form() -> None:
    header = content_disposition("café ☕.mp4")
    assert header.startswith('attachment; filename="caf.mp4"')
    assert "filename*=UTF-8''caf%C3%A9%20%E2%98%95.mp4" in header


def test_content_disposition_emoji_only_name_falls_back() -> None:
    header = content_disposition("🔥🔥.mp3")
    assert header.startswith('attachment; filename="tiktok_video.mp3"')


def _drain(path, finalize, chunk_size=4, stop_after=None):
    async def _scenario():
        received = []
        stream = iter_delivery(path, finalize, chunk_size=chunk_size)
        async for chunk in stream:
            received.append(chunk)
            if stop_after is not None and len(received) >= stop_after:
                await stream.aclose()
                break
        return b"".join(received)

    return asyncio.run(_scenario())


def test_full_delivery_removes_file_and_job(tmp_path) -> None:
    path = tmp_path / "1.mp4"
    path.write_bytes(b"0123456789")
    store = DownloadJobStore()
    job = _completed_job(store, str(path))
    store.acquire_delivery(job.id)
    outcomes = []

    def _finalize(completed):
        outcomes.append(finalize_delivery(store, job, completed))

    assert _drain(str(path), _finalize) == b"0123456789"
    assert outcomes == [True]
    assert not path.exists()
    assert store.get(job.id) is None


def test_interrupted_delivery_keeps_file_for_retry(tmp_path) -> None:
    path = tmp_path / "1.mp4"
    path.write_bytes(b"0123456789")
    store = DownloadJobStore()
    job = _completed_job(store, str(path))
    store.acquire_delivery(job.id)
    outcomes = []

    def _finalize(completed):
        outcomes.append(finalize_delivery(store, job, completed))

    _drain(str(path), _finalize, stop_after=1)

    assert outcomes == [False]
    assert path.exists()
    assert store.get(job.id).status == "completed"
    assert store.acquire_delivery(job.id) is not None


def _touch(path, size, age_seconds):
    path.write_bytes(b"x" * size)
    stamp = time.time() - age_seconds
    os.utime(path, (stamp, stamp))


def test_sweep_removes_only_old_unreferenced_media(tmp_path) -> None:
    _touch(tmp_path / "1.mp4", 10, 7200)
    _touch(tmp_path / "2.mp3", 20, 7200)
    _touch(tmp_path / "3.mp4.part", 5, 7200)
    _touch(tmp_path / "4.mp4", 30, 10)
    _touch(tmp_path / "notes.txt", 40, 7200)

    deleted = sweep_orphaned_files(str(tmp_path), {str(tmp_path / "2.mp3")}, 3600)

    assert deleted == (2, 15)
    assert sorted(os.listdir(tmp_path)) == ["2.mp3", "4.mp4", "notes.txt"]


def test_sweep_with_zero_age_clears_everything_unreferenced(tmp_path) -> None:
    _touch(tmp_path / "1.mp4", 10, 0)
    assert sweep_orphaned_files(str(tmp_path), set(), 0, now=time.time() + 1) == (1, 10)


def test_sweep_missing_directory_is_noop(tmp_path) -> None:
    assert sweep_orphaned_files(str(tmp_path / "missing"), set(), 0) == (0, 0)
