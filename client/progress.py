"""Client-side download tracking with a simulated progress bar.

The server only reports coarse job states, so the percentage shown to the
user is fabricated from a phase-based random ramp. It never reaches 100
until the server confirms the job is completed.
"""

from __future__ import annotations

import logging
import os
import random
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import unquote

import requests

from config.settings import POLL_INTERVAL_SECONDS, PROGRESS_CEILING, PROGRESS_PHASES

logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_PROCESSING = "processing"
STATE_COMPLETED = "completed"
STATE_FAILED = "failed"

START_FAILED_MESSAGE = "Failed to start download. Please try again."
DOWNLOAD_FAILED_MESSAGE = "Download failed. Please try again."

_FILENAME_STAR_RE = re.compile(r"filename\*=UTF-8''([^;]+)", re.IGNORECASE)
_FILENAME_RE = re.compile(r'filename="([^"]+)"', re.IGNORECASE)


@dataclass
class DownloadState:
    download_id: Optional[int] = None
    progress: float = 0.0
    status: str = STATE_IDLE
    error: Optional[str] = None


def progress_phase(value: float) -> str:
    for upper, label, _low, _high in PROGRESS_PHASES:
        if value < upper:
            return label
    return PROGRESS_PHASES[-1][1]


def advance_progress(current: float, rng: random.Random) -> float:
    """Return the next synthetic progress value while the job is processing.

    The step size depends on the phase ``current`` falls in; the result is
    capped at ``PROGRESS_CEILING`` and never lower than ``current``.
    """
    step = 0.0
    for upper, _label, low, high in PROGRESS_PHASES:
        if current < upper:
            step = rng.uniform(low, high)
            break
    return max(current, min(current + step, PROGRESS_CEILING))


def _filename_from_disposition(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    match = _FILENAME_STAR_RE.search(header)
    if match:
        return unquote(match.group(1).strip())
    match = _FILENAME_RE.search(header)
    return match.group(1) if match else None


class ProgressReporter:
    def __init__(
        self,
        base_url: str,
        *,
        session=None,
        rng: Optional[random.Random] = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        timeout: float = 30,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.rng = rng or random.Random()
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.state = DownloadState()

    @property
    def phase(self) -> str:
        return progress_phase(self.state.progress)

    @property
    def file_url(self) -> Optional[str]:
        if self.state.download_id is None:
            return None
        return f"{self.base_url}/api/download/{self.state.download_id}/file"

    def _fail(self, message: str) -> None:
        self.state.status = STATE_FAILED
        self.state.error = message

    def start_download(self, url: str, media_format: str) -> DownloadState:
        self.state = DownloadState(status=STATE_PROCESSING)
        try:
            response = self.session.post(
                f"{self.base_url}/api/download",
                json={"url": url, "format": media_format},
                timeout=self.timeout,
            )
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Download start failed: %s", exc)
            self._fail(START_FAILED_MESSAGE)
            return self.state
        if isinstance(data, dict) and data.get("success"):
            download_id = data.get("downloadId")
            if download_id is None:
                logger.warning("Download start reply carried no downloadId")
                self._fail(START_FAILED_MESSAGE)
            else:
                self.state.download_id = download_id
        else:
            error = data.get("error") if isinstance(data, dict) else None
            self._fail(error or "Failed to start download")
        return self.state

    def poll_once(self) -> DownloadState:
        if self.state.status != STATE_PROCESSING or self.state.download_id is None:
            return self.state
        try:
            response = self.session.get(
                f"{self.base_url}/api/download/{self.state.download_id}/status",
                timeout=self.timeout,
            )
            data = response.json()
        except requests.RequestException as exc:
            logger.error("Error checking download status: %s", exc)
            return self.state
        except ValueError:
            data = None
        # The server forgets jobs on restart and after their one delivery.
        if response.status_code == 404 or (isinstance(data, dict) and data.get("success") is False):
            logger.warning("Download %s is no longer known to the server", self.state.download_id)
            self._fail(DOWNLOAD_FAILED_MESSAGE)
            return self.state
        if not isinstance(data, dict) or not data.get("success"):
            return self.state

        status = (data.get("download") or {}).get("status")
        if status == STATE_COMPLETED:
            self.state.status = STATE_COMPLETED
            self.state.progress = 100.0
        elif status == STATE_FAILED:
            self._fail(DOWNLOAD_FAILED_MESSAGE)
        elif status in ("pending", STATE_PROCESSING):
            self.state.progress = advance_progress(self.state.progress, self.rng)
        return self.state

    def wait(
        self,
        on_update: Optional[Callable[[DownloadState], None]] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> DownloadState:
        """Poll until the job leaves ``processing``."""
        while self.state.status == STATE_PROCESSING and self.state.download_id is not None:
            sleep(self.poll_interval)
            self.poll_once()
            if on_update:
                on_update(self.state)
        return self.state

    def download_file(self, dest_dir: str, *, chunk_size: int = 1024 * 1024) -> Optional[str]:
        """Save the finished file into ``dest_dir`` and return its path."""
        url = self.file_url
        if url is None or self.state.status != STATE_COMPLETED:
            return None
        with self.session.get(url, stream=True, timeout=self.timeout) as response:
            if not response.ok:
                logger.warning("File download failed: HTTP %s", response.status_code)
                return None
            filename = _filename_from_disposition(response.headers.get("Content-Disposition"))
            filename = os.path.basename(filename or f"tiktok_{self.state.download_id}")
            os.makedirs(dest_dir, exist_ok=True)
            path = os.path.join(dest_dir, filename)
            with open(path, "wb") as handle:
                for chunk in response.iter_content(chunk_size=chunk_size):
                    if chunk:
                        handle.write(chunk)
        return path

    def reset(self) -> None:
        self.state = DownloadState()
