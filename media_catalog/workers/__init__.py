"""Worker package exports."""

from media_catalog.workers.pipeline import CaptionAnalysisWorker

__all__ = ["CaptionAnalysisWorker"]
