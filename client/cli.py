#!/usr/bin/env python3
"""Terminal front-end: preview a TikTok URL, fetch it, save the file."""

import argparse
import logging
import os
import sys

import requests

from client.progress import STATE_COMPLETED, STATE_PROCESSING, ProgressReporter, progress_phase

_PHASE_LABELS = {
    "fetching_info": "Fetching video info",
    "downloading": "Downloading",
    "converting": "Processing",
    "finalizing": "Finalizing",
}


def _print_preview(session, server, url):
    try:
        response = session.post(f"{server}/api/validate", json={"url": url}, timeout=30)
        data = response.json()
    except (requests.RequestException, ValueError) as exc:
        print(f"Failed to validate URL: {exc}", file=sys.stderr)
        return False
    if not data.get("success"):
        print(data.get("error") or "Failed to validate URL", file=sys.stderr)
        return False
    info = data.get("info") or {}
    print(f"{info.get('title')} by {info.get('author')} ({info.get('duration')})")
    return True


def _render(state):
    label = _PHASE_LABELS.get(progress_phase(state.progress), "")
    sys.stdout.write(f"\r{label:<20} {state.progress:5.1f}%")
    sys.stdout.flush()


def main(argv=None):
    parser = argparse.ArgumentParser(prog="tokfetch")
    parser.add_argument("url", help="TikTok video URL")
    parser.add_argument("--format", dest="media_format", choices=("video", "audio"), default="video")
    parser.add_argument("--server", default=os.environ.get("TOKFETCH_SERVER", "http://127.0.0.1:8000"))
    parser.add_argument("--output", default=".", help="Directory to save the file into.")
    parser.add_argument("--preview", action="store_true", help="Show video info before downloading.")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.WARNING, format="%(asctime)s [%(levelname)s] %(message)s")
    reporter = ProgressReporter(args.server)
    if args.preview and not _print_preview(reporter.session, reporter.base_url, args.url):
        return 1

    state = reporter.start_download(args.url, args.media_format)
    if state.status != STATE_PROCESSING:
        print(state.error, file=sys.stderr)
        return 1
    state = reporter.wait(on_update=_render)
    print()
    if state.status != STATE_COMPLETED:
        print(state.error, file=sys.stderr)
        return 1
    path = reporter.download_file(args.output)
    if not path:
        print("Download failed. Please try again.", file=sys.stderr)
        return 1
    print(f"Saved {path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
