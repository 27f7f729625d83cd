from dataclasses import dataclass, replace
from datetime import datetime, timezone
from itertools import count


JOB_STATUS_PENDING = "pending"
JOB_STATUS_PROCESSING = "processing"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_FAILED = "failed"

TERMINAL_STATUSES = (
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
)

_STATUS_RANK = {
    JOB_STATUS_PENDING: 0,
    JOB_STATUS_PROCESSING: 1,
    JOB_STATUS_COMPLETED: 2,
    JOB_STATUS_FAILED: 2,
}

FORMAT_VIDEO = "video"
FORMAT_AUDIO = "audio"

_FORMAT_ALIASES = {
    "video": FORMAT_VIDEO,
    "mp4": FORMAT_VIDEO,
    "audio": FORMAT_AUDIO,
    "mp3": FORMAT_AUDIO,
}

FORMAT_EXTENSIONS = {
    FORMAT_VIDEO: "mp4",
    FORMAT_AUDIO: "mp3",
}

FORMAT_CONTENT_TYPES = {
    FORMAT_VIDEO: "video/mp4",
    FORMAT_AUDIO: "audio/mpeg",
}

_MUTABLE_FIELDS = {
    "status",
    "title",
    "author",
    "duration",
    "thumbnail",
    "file_size",
    "file_path",
    "last_error",
}


class InvalidTransitionError(ValueError):
    pass


@dataclass(frozen=True)
class DownloadJob:
    id: int
    url: str
    format: str
    status: str
    created_at: str
    updated_at: str
    title: str | None = None
    author: str | None = None
    duration: str | None = None
    thumbnail: str | None = None
    file_size: str | None = None
    file_path: str | None = None
    last_error: str | None = None

    @property
    def extension(self):
        return FORMAT_EXTENSIONS[self.format]

    @property
    def content_type(self):
        return FORMAT_CONTENT_TYPES[self.format]

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES


def utc_now():
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def normalize_media_format(value):
    if not isinstance(value, str):
        return None
    return _FORMAT_ALIASES.get(value.strip().lower())


def _check_transition(current, new):
    if new not in _STATUS_RANK:
        raise InvalidTransitionError(f"unknown status {new!r}")
    if new == current:
        if current in TERMINAL_STATUSES:
            raise InvalidTransitionError(f"job already {current}")
        return
    if current in TERMINAL_STATUSES or _STATUS_RANK[new] < _STATUS_RANK[current]:
        raise InvalidTransitionError(f"cannot move from {current} to {new}")


class DownloadJobStore:
    """Process-local map of job id to :class:`DownloadJob`.

    Records are immutable; ``update`` swaps in a new record. All access is
    expected from the event loop thread, so no locking is done here.
    """

    def __init__(self):
        self._jobs = {}
        self._ids = count(1)
        self._delivering = set()

    def __len__(self):
        return len(self._jobs)

    def create(self, url, media_format):
        normalized = normalize_media_format(media_format)
        if normalized is None:
            raise ValueError(f"unsupported format {media_format!r}")
        now = utc_now()
        job = DownloadJob(
            id=next(self._ids),
            url=url,
            format=normalized,
            status=JOB_STATUS_PENDING,
            created_at=now,
            updated_at=now,
        )
        self._jobs[job.id] = job
        return job

    def get(self, job_id):
        return self._jobs.get(job_id)

    def update(self, job_id, **fields):
        job = self._jobs.get(job_id)
        if job is None:
            return None
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update fields: {', '.join(sorted(unknown))}")
        status = fields.get("status")
        if status is not None:
            _check_transition(job.status, status)
        updated = replace(job, updated_at=utc_now(), **fields)
        if (updated.file_path is not None) != (updated.status == JOB_STATUS_COMPLETED):
            raise InvalidTransitionError("file_path must be set exactly when a job is completed")
        self._jobs[job_id] = updated
        return updated

    def delete(self, job_id):
        self._delivering.discard(job_id)
        return self._jobs.pop(job_id, None) is not None

    def list_jobs(self, *, limit=None, status=None):
        jobs = [job for job in self._jobs.values() if status is None or job.status == status]
        jobs.sort(key=lambda job: job.id, reverse=True)
        if limit:
            jobs = jobs[:limit]
        return jobs

    def referenced_paths(self):
        return {job.file_path for job in self._jobs.values() if job.file_path}

    def acquire_delivery(self, job_id):
        job = self._jobs.get(job_id)
        if job is None or job.status != JOB_STATUS_COMPLETED or not job.file_path:
            return None
        if job_id in self._delivering:
            return None
        self._delivering.add(job_id)
        return job

    def release_delivery(self, job_id):
        self._delivering.discard(job_id)
