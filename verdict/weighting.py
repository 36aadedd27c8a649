"""Rolling per-model performance tracking and adaptive consensus weights."""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from verdict.types import ConsensusResult, ModelPerformance, ModelResult, is_error_label, utc_now

logger = logging.getLogger(__name__)

DEFAULT_BASE_WEIGHT = 0.25
LATENCY_CEILING_MS = 10000.0

ACCURACY_WEIGHT = 0.4
ERROR_RATE_WEIGHT = 0.3
LATENCY_WEIGHT = 0.2
CONFIDENCE_WEIGHT = 0.1


@dataclass
class AnalysisEvent:
    """Emitted by the consensus engine after each computation."""
    analysis_id: str
    results: List[ModelResult]
    consensus: ConsensusResult
    timestamp: str = field(default_factory=lambda: utc_now().isoformat())


def top_prediction(result: ModelResult) -> Optional[str]:
    if not result.labels:
        return None
    return max(result.labels, key=lambda label: label.score).label


def bounded_normalize(weights: Dict[str, float], lower: float, upper: float) -> Dict[str, float]:
    """Scale ``weights`` to sum to 1 while keeping each within [lower, upper].

    Finds the factor ``s`` for which ``sum(clip(s * w, lower, upper)) == 1``
    by bisection. When the bounds cannot be met the sum constraint wins.
    """
    if not weights:
        return {}
    count = len(weights)
    values = {name: max(0.0, float(value)) for name, value in weights.items()}
    total = sum(values.values())
    if total <= 0:
        return {name: 1.0 / count for name in values}
    reachable = sum(upper if value > 0 else lower for value in values.values())
    if count * lower > 1.0 or reachable < 1.0:
        return {name: value / total for name, value in values.items()}

    def _clipped(scale: float) -> Dict[str, float]:
        return {name: min(upper, max(lower, value * scale)) for name, value in values.items()}

    low, high = 0.0, 1.0 / total
    for _ in range(200):
        if sum(_clipped(high).values()) >= 1.0:
            break
        high *= 2.0
    for _ in range(100):
        middle = (low + high) / 2.0
        if sum(_clipped(middle).values()) < 1.0:
            low = middle
        else:
            high = middle
    return _clipped(high)


class PerformanceTracker:
    """Owns ``ModelPerformance`` state and derives adaptive weights from it."""

    def __init__(
        self,
        base_weights: Dict[str, float],
        min_weight: float = 0.1,
        max_weight: float = 0.8,
        performance_window: int = 100,
        enable_adaptive_learning: bool = True,
        confidence_threshold: float = 0.7,
    ) -> None:
        self.base_weights = dict(base_weights)
        self.min_weight = min_weight
        self.max_weight = max_weight
        self.performance_window = max(1, int(performance_window))
        self.enable_adaptive_learning = enable_adaptive_learning
        self.confidence_threshold = confidence_threshold
        self.performance: Dict[str, ModelPerformance] = {}
        self.history: List[Dict[str, Any]] = []
        self.reset_learning()

    @classmethod
    def from_config(cls, config: Dict[str, Any], base_weights: Dict[str, float]) -> "PerformanceTracker":
        return cls(
            base_weights=base_weights,
            min_weight=float(config.get("min_weight", 0.1)),
            max_weight=float(config.get("max_weight", 0.8)),
            performance_window=int(config.get("performance_window", 100)),
            enable_adaptive_learning=bool(config.get("enable_adaptive_learning", True)),
            confidence_threshold=float(config.get("confidence_threshold", 0.7)),
        )

    def reset_learning(self) -> None:
        self.history = []
        self.performance = {name: ModelPerformance(model_name=name) for name in self.base_weights}

    def base_weight(self, model_name: str) -> float:
        return float(self.base_weights.get(model_name, DEFAULT_BASE_WEIGHT))

    def get_adaptive_weights(self) -> Dict[str, float]:
        if not self.enable_adaptive_learning:
            return dict(self.base_weights)
        if not self.performance:
            return {}
        total_reliability = sum(perf.reliability for perf in self.performance.values())
        count = len(self.performance)
        raw: Dict[str, float] = {}
        for name, perf in self.performance.items():
            multiplier = (perf.reliability / total_reliability) * count if total_reliability > 0 else 1.0
            weight = self.base_weight(name) * multiplier
            raw[name] = max(self.min_weight, min(self.max_weight, weight))
        return bounded_normalize(raw, self.min_weight, self.max_weight)

    def confidence_boost(self, model_name: str) -> float:
        """Multiplier > 1 for models whose accuracy exceeds the confidence threshold."""
        perf = self.performance.get(model_name)
        if perf is None or perf.accuracy <= self.confidence_threshold:
            return 1.0
        return 1.0 + (perf.accuracy - self.confidence_threshold) * 0.5

    def average_accuracy(self) -> float:
        if not self.performance:
            return 0.0
        return sum(perf.accuracy for perf in self.performance.values()) / len(self.performance)

    @staticmethod
    def calculate_reliability(perf: ModelPerformance) -> float:
        latency_score = max(0.0, 1.0 - perf.average_latency / LATENCY_CEILING_MS)
        return (
            perf.accuracy * ACCURACY_WEIGHT
            + (1.0 - perf.error_rate) * ERROR_RATE_WEIGHT
            + latency_score * LATENCY_WEIGHT
            + perf.average_confidence * CONFIDENCE_WEIGHT
        )

    def record_analysis(self, event: AnalysisEvent) -> None:
        consensus = event.consensus
        predictions: Dict[str, Optional[str]] = {}
        verdicts: Dict[str, bool] = {}

        for result in event.results:
            perf = self.performance.get(result.model_name)
            if perf is None:
                continue
            perf.total_analyses += 1
            n = perf.total_analyses
            perf.average_latency += (float(result.latency_ms or 0.0) - perf.average_latency) / n
            if result.labels:
                mean_score = sum(label.score for label in result.labels) / len(result.labels)
            else:
                mean_score = 0.0
            perf.average_confidence += (mean_score - perf.average_confidence) / n
            has_error = any(is_error_label(label.label) for label in result.labels)
            perf.error_rate += ((1.0 if has_error else 0.0) - perf.error_rate) / n

            prediction = top_prediction(result)
            correct = not has_error and prediction is not None and prediction == consensus.top_label
            if correct:
                perf.correct_predictions += 1
            perf.accuracy = perf.correct_predictions / n
            perf.reliability = self.calculate_reliability(perf)
            perf.last_updated = event.timestamp
            predictions[result.model_name] = prediction
            verdicts[result.model_name] = correct

        self.history.append({
            "analysis_id": event.analysis_id,
            "models_used": [result.model_name for result in event.results],
            "predictions": predictions,
            "verdicts": verdicts,
            "top_label": consensus.top_label,
            "recommended_action": consensus.recommended_action,
            "ground_truth": None,
            "correct_action": None,
            "timestamp": event.timestamp,
        })
        if len(self.history) > self.performance_window:
            self.history = self.history[-self.performance_window:]

    def find_analysis(self, analysis_id: str) -> Optional[Dict[str, Any]]:
        for record in reversed(self.history):
            if record["analysis_id"] == analysis_id:
                return record
        return None

    def provide_feedback(self, analysis_id: str, ground_truth: str, correct_action: str) -> bool:
        """Replace the consensus-agreement proxy with ground truth for one analysis.

        Each model's earlier verdict is swapped for whether its own top
        prediction matched ``ground_truth``. Returns False when the analysis
        is no longer in the history window.
        """
        record = self.find_analysis(analysis_id)
        if record is None:
            logger.debug("feedback for unknown analysis %s ignored", analysis_id)
            return False
        record["ground_truth"] = ground_truth
        record["correct_action"] = correct_action
        record["action_correct"] = record["recommended_action"] == correct_action
        timestamp = utc_now().isoformat()
        for model_name, previous in list(record["verdicts"].items()):
            perf = self.performance.get(model_name)
            if perf is None or perf.total_analyses == 0:
                continue
            actual = record["predictions"].get(model_name) == ground_truth
            if actual and not previous:
                perf.correct_predictions += 1
            elif previous and not actual:
                perf.correct_predictions = max(0, perf.correct_predictions - 1)
            record["verdicts"][model_name] = actual
            perf.accuracy = perf.correct_predictions / perf.total_analyses
            perf.reliability = self.calculate_reliability(perf)
            perf.last_updated = timestamp
        return True

    def get_model_performance(self) -> List[ModelPerformance]:
        return list(self.performance.values())

    def performance_summary(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {
                "accuracy": perf.accuracy,
                "reliability": perf.reliability,
                "error_rate": perf.error_rate,
                "average_latency": perf.average_latency,
                "total_analyses": perf.total_analyses,
            }
            for name, perf in self.performance.items()
        }

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "updated_at": utc_now().isoformat(),
            "performance": {name: perf.to_dict() for name, perf in self.performance.items()},
            "history": self.history,
        }
        path.write_text(json.dumps(payload, indent=2))

    def load(self, path: Path) -> None:
        if not path.exists():
            return
        try:
            data = json.loads(path.read_text())
        except (OSError, ValueError):
            logger.warning("Failed to load performance state from %s", path, exc_info=True)
            return
        for name, stored in (data.get("performance") or {}).items():
            if name in self.performance:
                self.performance[name] = ModelPerformance(**stored)
        self.history = list(data.get("history") or [])[-self.performance_window:]


class TrackerWorker:
    """Consumes ``AnalysisEvent``s off an asyncio queue and feeds the tracker.

    Outside a running event loop events are applied inline.
    """

    def __init__(self, tracker: PerformanceTracker) -> None:
        self.tracker = tracker
        self._queue: asyncio.Queue | None = None
        self._task: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def _apply(self, event: AnalysisEvent) -> None:
        try:
            self.tracker.record_analysis(event)
        except Exception:
            logger.warning("Failed to update performance tracking for %s", event.analysis_id, exc_info=True)

    def submit(self, event: AnalysisEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._apply(event)
            return
        if self._loop is not loop or self._task is None or self._task.done():
            self._loop = loop
            self._queue = asyncio.Queue()
            self._task = loop.create_task(self._run(self._queue))
        self._queue.put_nowait(event)

    async def _run(self, queue: asyncio.Queue) -> None:
        while True:
            event = await queue.get()
            try:
                self._apply(event)
            finally:
                queue.task_done()

    async def drain(self) -> None:
        if self._queue is not None and self._loop is asyncio.get_running_loop():
            await self._queue.join()

    async def stop(self) -> None:
        await self.drain()
        task, self._task = self._task, None
        if task is not None and self._loop is asyncio.get_running_loop():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
