import logging
import os
import time
from urllib.parse import quote

import anyio

from config.settings import DEFAULT_DELIVERY_STEM, MEDIA_CHUNK_SIZE
from engine.formatting import safe_filename

logger = logging.getLogger(__name__)

_SWEEPABLE_SUFFIXES = (".mp4", ".mp3", ".part")


def job_status_payload(job):
    return {
        "id": job.id,
        "status": job.status,
        "title": job.title,
        "author": job.author,
        "duration": job.duration,
        "fileSize": job.file_size,
        "format": job.format,
    }


def delivery_filename(job):
    stem = safe_filename(job.title or "", fallback=DEFAULT_DELIVERY_STEM)
    return f"{stem}.{job.extension}"


def content_disposition(filename):
    stem, ext = os.path.splitext(filename)
    ascii_stem = safe_filename(stem.encode("ascii", "ignore").decode("ascii"), fallback=DEFAULT_DELIVERY_STEM)
    ascii_name = f"{ascii_stem}{ext}"
    header = f'attachment; filename="{ascii_name}"'
    if ascii_name != filename:
        header += f"; filename*=UTF-8''{quote(filename, safe='')}"
    return header


async def iter_delivery(path, finalize, *, chunk_size=MEDIA_CHUNK_SIZE):
    """Yield the file at ``path`` in chunks, then call ``finalize(completed)``.

    ``finalize`` runs on the event loop whether or not the client consumed
    the whole body.
    """
    completed = False
    try:
        async with await anyio.open_file(path, "rb") as handle:
            while True:
                chunk = await handle.read(chunk_size)
                if not chunk:
                    break
                yield chunk
        completed = True
    except Exception:
        logger.exception("Delivery stream failed path=%s", path)
        raise
    finally:
        finalize(completed)


def finalize_delivery(store, job, completed):
    if not completed:
        logger.warning("HTTP client download incomplete job_id=%s; keeping file for retry", job.id)
        store.release_delivery(job.id)
        return False
    logger.info("HTTP client download complete job_id=%s → cleanup", job.id)
    try:
        os.remove(job.file_path)
    except FileNotFoundError:
        pass
    except OSError:
        logger.warning("Delivery cleanup failed for %s", job.file_path)
    store.delete(job.id)
    return True


def sweep_orphaned_files(directory, referenced, max_age_seconds, *, now=None):
    """Delete media files in ``directory`` that no live job points at.

    Files younger than ``max_age_seconds`` are kept so an in-flight ``.part``
    download is never pulled out from under its writer.
    """
    deleted_files = 0
    deleted_bytes = 0
    if not os.path.isdir(directory):
        return deleted_files, deleted_bytes
    now = time.time() if now is None else now
    keep = {os.path.abspath(path) for path in referenced}
    for entry in os.scandir(directory):
        if not entry.is_file() or not entry.name.endswith(_SWEEPABLE_SUFFIXES):
            continue
        path = os.path.abspath(entry.path)
        if path in keep:
            continue
        try:
            stat = entry.stat()
        except OSError:
            continue
        if now - stat.st_mtime < max_age_seconds:
            continue
        try:
            os.remove(path)
        except OSError:
            logger.warning("Orphan cleanup failed for %s", path)
            continue
        deleted_files += 1
        deleted_bytes += stat.st_size
    if deleted_files:
        logger.info("Removed %d orphaned files (%d bytes) from %s", deleted_files, deleted_bytes, directory)
    return deleted_files, deleted_bytes
