from .core import (
    DEFAULT_CONFIG,
    load_config,
    load_effective_config,
    validate_config,
)
from .job_store import DownloadJob, DownloadJobStore
from .paths import EnginePaths
from .runtime import get_runtime_info

__all__ = [
    "DEFAULT_CONFIG",
    "DownloadJob",
    "DownloadJobStore",
    "EnginePaths",
    "get_runtime_info",
    "load_config",
    "load_effective_config",
    "validate_config",
]
