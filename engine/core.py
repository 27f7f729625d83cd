import json
import logging
import os

from config.settings import (
    CLEANUP_INTERVAL_MINUTES,
    ORPHAN_MAX_AGE_MINUTES,
    REQUEST_TIMEOUT_SECONDS,
)

EXTRACTOR_YTDLP = "ytdlp"
EXTRACTOR_RAPIDAPI = "rapidapi"
EXTRACTORS = (EXTRACTOR_YTDLP, EXTRACTOR_RAPIDAPI)

DEFAULT_RAPIDAPI_HOST = "social-media-video-downloader.p.rapidapi.com"

DEFAULT_CONFIG = {
    "extractor": EXTRACTOR_YTDLP,
    "rapidapi_host": DEFAULT_RAPIDAPI_HOST,
    "rapidapi_key": None,
    "request_timeout_seconds": REQUEST_TIMEOUT_SECONDS,
    "cleanup_interval_minutes": CLEANUP_INTERVAL_MINUTES,
    "orphan_max_age_minutes": ORPHAN_MAX_AGE_MINUTES,
    "cookie_file": None,
}


def load_config(path):
    with open(path, "r") as f:
        return json.load(f)


def validate_config(config):
    errors = []
    if not isinstance(config, dict):
        return ["config must be a JSON object"]

    extractor = config.get("extractor")
    if extractor is not None and extractor not in EXTRACTORS:
        errors.append(f"extractor must be one of: {', '.join(EXTRACTORS)}")

    for key in ("rapidapi_host", "rapidapi_key", "cookie_file"):
        value = config.get(key)
        if value is not None and not isinstance(value, str):
            errors.append(f"{key} must be a string")

    for key in ("request_timeout_seconds", "orphan_max_age_minutes"):
        value = config.get(key)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            errors.append(f"{key} must be a positive number")

    interval = config.get("cleanup_interval_minutes")
    if interval is not None:
        # 0 disables the periodic sweep.
        if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval < 0:
            errors.append("cleanup_interval_minutes must be a number >= 0")

    if config.get("extractor") == EXTRACTOR_RAPIDAPI and not (
        config.get("rapidapi_key") or os.environ.get("TOKFETCH_RAPIDAPI_KEY")
    ):
        errors.append("rapidapi_key is required when extractor is 'rapidapi'")

    return errors


def load_effective_config(path):
    """Merge the optional JSON config at ``path`` over the defaults.

    A missing file yields the defaults; an unreadable or invalid one raises
    ``ValueError`` so startup fails loudly instead of running misconfigured.
    """
    config = dict(DEFAULT_CONFIG)
    if path and os.path.exists(path):
        try:
            loaded = load_config(path)
        except (OSError, json.JSONDecodeError) as exc:
            raise ValueError(f"Failed to read config {path}: {exc}") from exc
        errors = validate_config(loaded)
        if errors:
            raise ValueError(f"Invalid config {path}: {'; '.join(errors)}")
        config.update({k: v for k, v in loaded.items() if k in DEFAULT_CONFIG})
        unknown = sorted(set(loaded) - set(DEFAULT_CONFIG))
        if unknown:
            logging.warning("Ignoring unknown config fields: %s", ", ".join(unknown))
    else:
        logging.info("No config file at %s; using defaults", path)
    env_key = os.environ.get("TOKFETCH_RAPIDAPI_KEY")
    if env_key:
        config["rapidapi_key"] = env_key
    return config
