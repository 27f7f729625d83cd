import asyncio
import functools
import json
import logging
import os

import anyio
import requests

from config.settings import (
    DEFAULT_AUTHOR,
    DEFAULT_TITLE,
    MEDIA_CHUNK_SIZE,
    REQUEST_TIMEOUT_SECONDS,
)
from engine.formatting import format_duration, format_file_size
from engine.job_store import (
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    JOB_STATUS_PROCESSING,
    normalize_media_format,
)
from input.intent_router import detect_link

logger = logging.getLogger(__name__)


class DownloadRequestError(ValueError):
    pass


class MediaFetchError(RuntimeError):
    pass


def _log_event(level, message, **fields):
    payload = {"message": message, **fields}
    try:
        logger.log(level, json.dumps(payload, sort_keys=True, default=str))
    except (TypeError, ValueError) as exc:
        logger.log(level, f"log_event_serialization_failed: {exc} message={message}")


def validate_download_request(url, media_format):
    """Return the normalized format or raise :class:`DownloadRequestError`."""
    if not isinstance(url, str) or not url.strip():
        raise DownloadRequestError("URL is required")
    if not detect_link(url).is_tiktok:
        raise DownloadRequestError("Must be a valid TikTok URL")
    normalized = normalize_media_format(media_format)
    if normalized is None:
        raise DownloadRequestError("Format must be 'video' or 'audio'")
    return normalized


def _remove_quietly(path):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError:
        logger.warning("Failed to remove partial file %s", path)


def stream_to_file(
    media_url,
    dest_path,
    *,
    headers=None,
    timeout=REQUEST_TIMEOUT_SECONDS,
    chunk_size=MEDIA_CHUNK_SIZE,
    session=None,
):
    """Fetch ``media_url`` and write it to ``dest_path`` chunk by chunk.

    Bytes land in ``<dest_path>.part`` and are moved into place once the
    response is exhausted. Returns the number of bytes written.
    """
    getter = session.get if session is not None else requests.get
    part_path = f"{dest_path}.part"
    written = 0
    try:
        response = getter(media_url, headers=headers or {}, stream=True, timeout=timeout)
    except requests.RequestException as exc:
        raise MediaFetchError(f"media_request_failed: {exc}") from exc
    try:
        if not response.ok:
            raise MediaFetchError(f"media_http_{response.status_code}")
        with open(part_path, "wb") as handle:
            for chunk in response.iter_content(chunk_size=chunk_size):
                if not chunk:
                    continue
                handle.write(chunk)
                written += len(chunk)
        if written <= 0:
            raise MediaFetchError("empty_media_response")
        os.replace(part_path, dest_path)
    except requests.RequestException as exc:
        _remove_quietly(part_path)
        raise MediaFetchError(f"media_stream_failed: {exc}") from exc
    except BaseException:
        _remove_quietly(part_path)
        raise
    finally:
        response.close()
    return written


class DownloadOrchestrator:
    """Drive jobs from ``pending`` to a terminal state in background tasks.

    The store is only mutated from the event loop; extraction and the media
    fetch run in worker threads through ``anyio.to_thread``.
    """

    def __init__(
        self,
        store,
        adapter,
        downloads_dir,
        *,
        session=None,
        request_timeout=REQUEST_TIMEOUT_SECONDS,
        chunk_size=MEDIA_CHUNK_SIZE,
    ):
        self.store = store
        self.adapter = adapter
        self.downloads_dir = str(downloads_dir)
        self.session = session
        self.request_timeout = request_timeout
        self.chunk_size = chunk_size
        self._tasks = set()

    @property
    def pending_count(self):
        return len(self._tasks)

    def output_path(self, job):
        return os.path.join(self.downloads_dir, f"{job.id}.{job.extension}")

    def start_job(self, url, media_format):
        media_format = validate_download_request(url, media_format)
        job = self.store.create(url.strip(), media_format)
        _log_event(logging.INFO, "job_created", job_id=job.id, format=job.format, url=job.url)
        task = asyncio.get_running_loop().create_task(self.run_job(job.id), name=f"download-{job.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job.id

    async def run_job(self, job_id):
        job = self.store.update(job_id, status=JOB_STATUS_PROCESSING)
        if job is None:
            logger.warning("Job %s vanished before processing", job_id)
            return None
        _log_event(logging.INFO, "job_processing", job_id=job_id)
        final_path = self.output_path(job)
        try:
            resolved = await anyio.to_thread.run_sync(self.adapter.resolve, job.url, job.format)
            size = await anyio.to_thread.run_sync(
                functools.partial(
                    stream_to_file,
                    resolved.media_url,
                    final_path,
                    headers=resolved.http_headers,
                    timeout=self.request_timeout,
                    chunk_size=self.chunk_size,
                    session=self.session,
                )
            )
            job = self.store.update(
                job_id,
                status=JOB_STATUS_COMPLETED,
                file_path=final_path,
                file_size=format_file_size(size),
                title=resolved.title or DEFAULT_TITLE,
                author=resolved.author or DEFAULT_AUTHOR,
                duration=format_duration(resolved.duration),
                thumbnail=resolved.thumbnail,
            )
        except Exception as exc:
            self._fail(job_id, exc, final_path)
            return self.store.get(job_id)
        _log_event(
            logging.INFO,
            "job_completed",
            job_id=job_id,
            file_size=job.file_size if job else None,
            adapter=self.adapter.name,
        )
        return job

    def _fail(self, job_id, exc, final_path):
        _remove_quietly(final_path)
        _remove_quietly(f"{final_path}.part")
        _log_event(
            logging.WARNING,
            "job_failed",
            job_id=job_id,
            error_type=type(exc).__name__,
            error=str(exc),
            adapter=self.adapter.name,
        )
        current = self.store.get(job_id)
        if current is None or current.is_terminal:
            return
        self.store.update(job_id, status=JOB_STATUS_FAILED, last_error=f"{type(exc).__name__}: {exc}")

    async def wait_idle(self, timeout=None):
        """Wait for in-flight jobs; returns False if ``timeout`` elapsed first."""
        tasks = list(self._tasks)
        if not tasks:
            return True
        _done, pending = await asyncio.wait(tasks, timeout=timeout)
        return not pending
