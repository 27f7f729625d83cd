from .progress import DownloadState, ProgressReporter, advance_progress, progress_phase
