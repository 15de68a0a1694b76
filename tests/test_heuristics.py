"""Tests for the local cheap-stage heuristics."""

from datetime import timedelta

from trustlens.analysis.heuristics import LocalHeuristics
from trustlens.config import HeuristicSettings


class TestSignals:
    """Tests for signals derived from the upload itself."""

    def test_plain_upload_triggers_nothing(self, make_job):
        signals = LocalHeuristics().evaluate(make_job())

        assert not signals.watermark
        assert not signals.upscaled
        assert not signals.aspect_ratio_outlier
        assert not signals.repeat_origin
        assert signals.aspect_ratio == 1.0

    def test_watermark_passed_through(self, make_job):
        job = make_job(signals={"watermark_detected": True})

        assert LocalHeuristics().evaluate(job).watermark

    def test_upscale_factor_threshold(self, make_job):
        heuristics = LocalHeuristics()

        assert heuristics.evaluate(make_job(signals={"upscale_factor": 2.0})).upscaled
        assert heuristics.evaluate(make_job(signals={"upscale_factor": 1.5})).upscaled
        assert not heuristics.evaluate(make_job(signals={"upscale_factor": 1.2})).upscaled

    def test_aspect_ratio_outlier(self, make_job):
        heuristics = LocalHeuristics()

        wide = heuristics.evaluate(make_job(signals={"width": 4000, "height": 1000}))
        tall = heuristics.evaluate(make_job(signals={"width": 500, "height": 2000}))
        normal = heuristics.evaluate(make_job(signals={"width": 1600, "height": 900}))

        assert wide.aspect_ratio_outlier and wide.aspect_ratio == 4.0
        assert tall.aspect_ratio_outlier
        assert not normal.aspect_ratio_outlier

    def test_missing_dimensions(self, make_job):
        signals = LocalHeuristics().evaluate(make_job(signals={"width": 800}))

        assert signals.aspect_ratio is None
        assert not signals.aspect_ratio_outlier

    def test_custom_thresholds(self, make_job):
        heuristics = LocalHeuristics(HeuristicSettings(aspect_ratio_limit=1.5))

        assert heuristics.evaluate(make_job(signals={"width": 1600, "height": 900})).aspect_ratio_outlier


class TestRepeatOrigin:
    """Tests for the repeated-uploads-from-origin check."""

    def test_repeat_origin_within_window(self, store, make_job, submitted_at):
        for minutes in (5, 10, 20):
            store.create_job(make_job(
                submitted_at=submitted_at - timedelta(minutes=minutes),
                signals={"origin": "203.0.113.7"},
            ))
        job = store.create_job(make_job(signals={"origin": "203.0.113.7"}))

        signals = LocalHeuristics(store=store).evaluate(job)

        assert signals.recent_uploads_from_origin == 3
        assert signals.repeat_origin

    def test_uploads_outside_window_ignored(self, store, make_job, submitted_at):
        store.create_job(make_job(submitted_at=submitted_at - timedelta(minutes=5), signals={"origin": "o-1"}))
        for hours in (2, 3):
            store.create_job(make_job(submitted_at=submitted_at - timedelta(hours=hours), signals={"origin": "o-1"}))
        store.create_job(make_job(submitted_at=submitted_at - timedelta(minutes=1), signals={"origin": "o-2"}))
        job = store.create_job(make_job(signals={"origin": "o-1"}))

        signals = LocalHeuristics(store=store).evaluate(job)

        assert signals.recent_uploads_from_origin == 1
        assert not signals.repeat_origin

    def test_no_store_means_no_history(self, make_job):
        signals = LocalHeuristics().evaluate(make_job(signals={"origin": "o-1"}))

        assert signals.recent_uploads_from_origin == 0
        assert not signals.repeat_origin
