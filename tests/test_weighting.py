"""Tests for performance tracking and adaptive weights."""
import tempfile
import unittest
from pathlib import Path

from verdict.types import ConsensusResult, ModelLabel, ModelResult
from verdict.weighting import (
    AnalysisEvent,
    PerformanceTracker,
    TrackerWorker,
    bounded_normalize,
    top_prediction,
)

BASE_WEIGHTS = {"vision": 0.4, "reasoning": 0.3, "text": 0.3}


def _consensus(top_label, action="monitor"):
    return ConsensusResult(
        top_label=top_label,
        score=0.8,
        spread=0.0,
        all_labels=[{"label": top_label, "score": 0.8}],
        provenance={},
        recommended_action=action,
        reasons=[],
    )


def _event(analysis_id, top_label, predictions, latency=100.0):
    results = [
        ModelResult(model_name=model, labels=[ModelLabel(label=label, score=0.8)], latency_ms=latency)
        for model, label in predictions.items()
    ]
    return AnalysisEvent(analysis_id=analysis_id, results=results, consensus=_consensus(top_label))


class TestBoundedNormalize(unittest.TestCase):
    def test_sums_to_one_within_bounds(self):
        weights = bounded_normalize({"a": 0.8, "b": 0.1, "c": 0.1, "d": 0.05}, 0.1, 0.5)
        self.assertAlmostEqual(sum(weights.values()), 1.0, places=6)
        for value in weights.values():
            self.assertGreaterEqual(value, 0.1 - 1e-9)
            self.assertLessEqual(value, 0.5 + 1e-9)

    def test_infeasible_bounds_keep_sum(self):
        weights = bounded_normalize({"only": 0.3}, 0.1, 0.8)
        self.assertAlmostEqual(weights["only"], 1.0)


class TestPerformanceTracker(unittest.TestCase):
    def test_initial_weights_are_normalized_base(self):
        tracker = PerformanceTracker(BASE_WEIGHTS)
        weights = tracker.get_adaptive_weights()
        self.assertAlmostEqual(sum(weights.values()), 1.0, places=6)
        self.assertAlmostEqual(weights["vision"], 0.4)

    def test_weights_stay_bounded_after_updates(self):
        tracker = PerformanceTracker(BASE_WEIGHTS, min_weight=0.1, max_weight=0.5)
        for idx in range(20):
            tracker.record_analysis(_event(
                f"img-{idx}", "violence",
                {"vision": "violence", "reasoning": "safe", "text": "vision_failed"},
                latency=9000.0,
            ))
        weights = tracker.get_adaptive_weights()
        self.assertAlmostEqual(sum(weights.values()), 1.0, places=6)
        for value in weights.values():
            self.assertGreaterEqual(value, 0.1 - 1e-9)
            self.assertLessEqual(value, 0.5 + 1e-9)
        self.assertGreater(weights["vision"], weights["text"])

    def test_record_analysis_updates_counters(self):
        tracker = PerformanceTracker(BASE_WEIGHTS)
        tracker.record_analysis(_event("img-1", "violence", {"vision": "violence", "text": "text_failed"}))
        vision = tracker.performance["vision"]
        text = tracker.performance["text"]
        self.assertEqual(vision.total_analyses, 1)
        self.assertEqual(vision.accuracy, 1.0)
        self.assertEqual(text.error_rate, 1.0)
        self.assertEqual(text.accuracy, 0.0)
        self.assertEqual(tracker.performance["reasoning"].total_analyses, 0)
        self.assertLess(text.reliability, vision.reliability)

    def test_fallback_label_never_counts_as_correct(self):
        tracker = PerformanceTracker(BASE_WEIGHTS)
        tracker.record_analysis(_event(
            "img-1", "reasoning_failed", {"vision": "safe", "reasoning": "reasoning_failed"},
        ))
        reasoning = tracker.performance["reasoning"]
        self.assertEqual(reasoning.correct_predictions, 0)
        self.assertEqual(reasoning.accuracy, 0.0)
        self.assertEqual(reasoning.error_rate, 1.0)
        self.assertFalse(tracker.find_analysis("img-1")["verdicts"]["reasoning"])

    def test_unknown_models_are_ignored(self):
        tracker = PerformanceTracker(BASE_WEIGHTS)
        tracker.record_analysis(_event("img-1", "violence", {"mystery": "violence"}))
        self.assertNotIn("mystery", tracker.performance)

    def test_disabled_learning_returns_base_weights(self):
        tracker = PerformanceTracker(BASE_WEIGHTS, enable_adaptive_learning=False)
        tracker.record_analysis(_event("img-1", "violence", {"vision": "safe"}))
        self.assertEqual(tracker.get_adaptive_weights(), BASE_WEIGHTS)

    def test_feedback_corrects_accuracy(self):
        tracker = PerformanceTracker(BASE_WEIGHTS)
        tracker.record_analysis(_event("img-1", "violence", {"vision": "violence", "reasoning": "safe"}))
        self.assertEqual(tracker.performance["reasoning"].correct_predictions, 0)

        applied = tracker.provide_feedback("img-1", ground_truth="safe", correct_action="allow")
        self.assertTrue(applied)
        self.assertEqual(tracker.performance["reasoning"].correct_predictions, 1)
        self.assertEqual(tracker.performance["vision"].correct_predictions, 0)
        self.assertEqual(tracker.find_analysis("img-1")["ground_truth"], "safe")
        self.assertFalse(tracker.find_analysis("img-1")["action_correct"])

        tracker.provide_feedback("img-1", ground_truth="safe", correct_action="allow")
        self.assertEqual(tracker.performance["reasoning"].correct_predictions, 1)

    def test_feedback_for_unknown_analysis_is_noop(self):
        tracker = PerformanceTracker(BASE_WEIGHTS)
        self.assertFalse(tracker.provide_feedback("missing", "safe", "allow"))

    def test_reset_is_idempotent(self):
        tracker = PerformanceTracker(BASE_WEIGHTS)
        tracker.record_analysis(_event("img-1", "violence", {"vision": "violence"}))
        tracker.reset_learning()
        first = {name: perf.to_dict() for name, perf in tracker.performance.items()}
        tracker.reset_learning()
        for name, perf in tracker.performance.items():
            self.assertEqual(perf.total_analyses, 0)
            self.assertEqual(perf.reliability, 1.0)
            self.assertEqual(perf.total_analyses, first[name]["total_analyses"])
        self.assertEqual(tracker.history, [])

    def test_history_is_trimmed_to_window(self):
        tracker = PerformanceTracker(BASE_WEIGHTS, performance_window=3)
        for idx in range(5):
            tracker.record_analysis(_event(f"img-{idx}", "violence", {"vision": "violence"}))
        self.assertEqual([record["analysis_id"] for record in tracker.history], ["img-2", "img-3", "img-4"])
        self.assertIsNone(tracker.find_analysis("img-0"))

    def test_save_and_load_round_trip(self):
        tracker = PerformanceTracker(BASE_WEIGHTS)
        tracker.record_analysis(_event("img-1", "violence", {"vision": "violence"}))
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "state" / "performance.json"
            tracker.save(path)
            restored = PerformanceTracker(BASE_WEIGHTS)
            restored.load(path)
        self.assertEqual(restored.performance["vision"].total_analyses, 1)
        self.assertIsNotNone(restored.find_analysis("img-1"))

    def test_top_prediction(self):
        result = ModelResult(
            model_name="vision",
            labels=[ModelLabel(label="a", score=0.2), ModelLabel(label="b", score=0.7)],
        )
        self.assertEqual(top_prediction(result), "b")
        self.assertIsNone(top_prediction(ModelResult(model_name="vision", labels=[])))


class TestTrackerWorker(unittest.IsolatedAsyncioTestCase):
    async def test_worker_applies_events_in_order(self):
        tracker = PerformanceTracker(BASE_WEIGHTS)
        worker = TrackerWorker(tracker)
        worker.submit(_event("img-1", "violence", {"vision": "violence"}))
        worker.submit(_event("img-2", "violence", {"vision": "safe"}))
        await worker.drain()
        self.assertEqual([record["analysis_id"] for record in tracker.history], ["img-1", "img-2"])
        self.assertEqual(tracker.performance["vision"].accuracy, 0.5)
        await worker.stop()

    async def test_worker_survives_bad_events(self):
        tracker = PerformanceTracker(BASE_WEIGHTS)
        worker = TrackerWorker(tracker)
        worker.submit(AnalysisEvent(analysis_id="bad", results=[None], consensus=_consensus("x")))
        worker.submit(_event("img-1", "violence", {"vision": "violence"}))
        with self.assertLogs("verdict.weighting", level="WARNING"):
            await worker.drain()
        self.assertEqual(tracker.performance["vision"].total_analyses, 1)
        await worker.stop()


if __name__ == "__main__":
    unittest.main()
