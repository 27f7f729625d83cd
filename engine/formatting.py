import re

_SIZE_UNITS = ("B", "KB", "MB", "GB")
_UNSAFE_FILENAME_RE = re.compile(r"[\x00-\x1f\\/]")


def format_file_size(num_bytes):
    """Render a byte count in powers of 1024, e.g. ``1.5 MB``."""
    if not num_bytes or num_bytes <= 0:
        return "0 B"
    value = float(num_bytes)
    index = 0
    while value >= 1024 and index < len(_SIZE_UNITS) - 1:
        value /= 1024
        index += 1
    rendered = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{rendered} {_SIZE_UNITS[index]}"


def format_duration(seconds):
    if seconds is None:
        return "0:00"
    try:
        total = int(float(seconds))
    except (TypeError, ValueError):
        return "0:00"
    if total < 0:
        total = 0
    minutes, secs = divmod(total, 60)
    return f"{minutes}:{secs:02d}"


def safe_filename(name, fallback="download"):
    cleaned = _UNSAFE_FILENAME_RE.sub(" ", name or "").replace('"', "'")
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    return cleaned or fallback
