"""Local cheap-stage heuristics.

Derives boolean signals from what is known about an upload without calling
any provider: watermark and upscale findings from upload validation, an
aspect-ratio outlier check, and repeated uploads from the same origin.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from trustlens.config import HeuristicSettings
from trustlens.models import AnalysisJob

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HeuristicSignals:
    """Outcome of the local heuristics for one job."""
    watermark: bool = False
    upscaled: bool = False
    aspect_ratio_outlier: bool = False
    repeat_origin: bool = False
    aspect_ratio: Optional[float] = None
    recent_uploads_from_origin: int = 0


class LocalHeuristics:
    """Evaluates the heuristics for a job.

    Args:
        settings: Heuristic thresholds
        store: Optional record store; needed for the repeat-origin check
    """

    def __init__(self, settings: Optional[HeuristicSettings] = None, store=None):
        self.settings = settings or HeuristicSettings()
        self.store = store

    def evaluate(self, job: AnalysisJob) -> HeuristicSignals:
        signals = job.signals

        aspect_ratio = None
        outlier = False
        if signals.width and signals.height:
            aspect_ratio = max(signals.width, signals.height) / min(signals.width, signals.height)
            outlier = aspect_ratio > self.settings.aspect_ratio_limit

        upscaled = (
            signals.upscale_factor is not None
            and signals.upscale_factor >= self.settings.upscale_factor_limit
        )

        recent = 0
        if self.store is not None and signals.origin:
            since = job.submitted_at - timedelta(minutes=self.settings.repeat_origin_window_minutes)
            recent = self.store.count_recent_from_origin(signals.origin, since, exclude_job_id=job.job_id)

        result = HeuristicSignals(
            watermark=signals.watermark_detected,
            upscaled=upscaled,
            aspect_ratio_outlier=outlier,
            repeat_origin=recent >= self.settings.repeat_origin_limit,
            aspect_ratio=round(aspect_ratio, 4) if aspect_ratio is not None else None,
            recent_uploads_from_origin=recent,
        )
        logger.debug(f"Heuristics for job {job.job_id}: {result}")
        return result
