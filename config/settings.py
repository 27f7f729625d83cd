"""Application settings constants."""

from __future__ import annotations

# Default title/author used when the extractor returns no metadata.
DEFAULT_TITLE = "TikTok Video"
DEFAULT_AUTHOR = "Unknown"

# Filename stem used for deliveries of jobs without a title.
DEFAULT_DELIVERY_STEM = "tiktok_video"

# Chunk size for writing fetched media and for streaming deliveries.
MEDIA_CHUNK_SIZE = 1024 * 1024

# Timeout applied to extractor API calls and media fetches.
REQUEST_TIMEOUT_SECONDS = 30

# Orphan sweep cadence and the minimum age of a file before it is removed.
CLEANUP_INTERVAL_MINUTES = 30
ORPHAN_MAX_AGE_MINUTES = 60

# Client polling cadence.
POLL_INTERVAL_SECONDS = 1.0

# Synthetic progress never reaches this value until the server reports completion.
PROGRESS_CEILING = 94.0

# Phase boundaries and increment ranges for the synthetic progress ramp.
PROGRESS_PHASES = (
    # (upper bound, label, min step, max step)
    (20.0, "fetching_info", 2.0, 6.0),
    (60.0, "downloading", 4.0, 12.0),
    (90.0, "converting", 1.0, 4.0),
    (100.0, "finalizing", 0.1, 0.5),
)
