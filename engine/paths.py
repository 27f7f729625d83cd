import os
from dataclasses import dataclass
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent
CONTAINER_DATA_ROOT = Path("/data")


def _is_container_runtime():
    if os.path.exists("/.dockerenv"):
        return True
    return CONTAINER_DATA_ROOT.is_dir()


def _default_data_dir():
    if _is_container_runtime():
        return CONTAINER_DATA_ROOT
    return PROJECT_ROOT / "data"


# Every directory lives under DATA_DIR unless overridden on its own.
DATA_DIR = Path(os.environ.get("TOKFETCH_DATA_DIR", _default_data_dir())).resolve()
CONFIG_DIR = Path(os.environ.get("TOKFETCH_CONFIG_DIR", DATA_DIR / "config")).resolve()
DOWNLOADS_DIR = Path(os.environ.get("TOKFETCH_DOWNLOADS_DIR", DATA_DIR / "downloads")).resolve()
LOG_DIR = Path(os.environ.get("TOKFETCH_LOG_DIR", DATA_DIR / "logs")).resolve()


@dataclass(frozen=True)
class EnginePaths:
    log_dir: str
    config_dir: str
    downloads_dir: str


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def resolve_config_path(path):
    if not path:
        resolved = os.path.join(CONFIG_DIR, "config.json")
    elif os.path.isabs(path):
        resolved = os.path.abspath(path)
    else:
        resolved = os.path.abspath(os.path.join(CONFIG_DIR, path))
    if not _is_within_base(resolved, CONFIG_DIR):
        raise ValueError(f"Config path must be within CONFIG_DIR: {CONFIG_DIR}")
    return resolved


def _is_within_base(path, base_dir):
    real = os.path.realpath(path)
    base = os.path.realpath(base_dir)
    return os.path.commonpath([real, base]) == base


def build_engine_paths(*, log_dir=None, config_dir=None, downloads_dir=None):
    paths = EnginePaths(
        log_dir=str(log_dir or LOG_DIR),
        config_dir=str(config_dir or CONFIG_DIR),
        downloads_dir=str(downloads_dir or DOWNLOADS_DIR),
    )
    for d in (paths.log_dir, paths.config_dir, paths.downloads_dir):
        ensure_dir(d)
    return paths
