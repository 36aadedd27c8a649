"""Weighted multi-model consensus for one image."""
from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from verdict.types import (
    ALLOW,
    HOLD_FOR_REVIEW,
    MONITOR,
    QUARANTINE,
    ConsensusResult,
    ModelResult,
    clamp_score,
    is_error_label,
    utc_now,
)
from verdict.weighting import AnalysisEvent, PerformanceTracker, TrackerWorker

logger = logging.getLogger(__name__)

CRITICAL_CATEGORIES = frozenset({"child_exposed", "sexual_nudity", "violence_extreme", "deepfake_confirmed"})
NO_DETECTION = "no_detection"


class InsufficientInputError(Exception):
    """Raised when consensus is requested without any model results."""
    pass


class ConsensusComputationError(Exception):
    """Raised when the aggregation produced no usable numbers."""
    pass


@dataclass
class LabelAggregate:
    label: str
    score: float
    agreement: float
    model_count: int
    supporting_models: List[str] = field(default_factory=list)


def weighted_agreement(scores: List[float], weights: List[float]) -> float:
    """1 - sqrt(weighted variance); 1.0 for a single score."""
    if len(scores) <= 1:
        return 1.0
    total_weight = sum(weights)
    if total_weight <= 0:
        weights = [1.0] * len(scores)
        total_weight = float(len(scores))
    mean = sum(score * weight for score, weight in zip(scores, weights)) / total_weight
    variance = sum((score - mean) ** 2 * weight for score, weight in zip(scores, weights)) / total_weight
    return max(0.0, 1.0 - math.sqrt(variance))


def neutral_consensus(reasons: List[str], models: Optional[List[Dict[str, Any]]] = None) -> ConsensusResult:
    """Stand-in used when consensus could not be computed."""
    return ConsensusResult(
        top_label="unknown",
        score=0.0,
        spread=0.0,
        all_labels=[],
        provenance={"models": models or [], "timestamp": utc_now().isoformat()},
        recommended_action=MONITOR,
        reasons=list(reasons),
        agreement=0.0,
    )


class ConsensusEngine:
    def __init__(self, tracker: PerformanceTracker, worker: TrackerWorker | None = None) -> None:
        self.tracker = tracker
        self.worker = worker or TrackerWorker(tracker)

    @classmethod
    def from_config(cls, config: Dict[str, Any], base_weights: Dict[str, float]) -> "ConsensusEngine":
        return cls(PerformanceTracker.from_config(config, base_weights))

    def current_weights(self) -> Dict[str, float]:
        return self.tracker.get_adaptive_weights()

    def compute_consensus(
        self,
        results: List[ModelResult],
        weights: Optional[Dict[str, float]] = None,
        analysis_id: Optional[str] = None,
    ) -> ConsensusResult:
        """Aggregate ``results`` into a single decision.

        The performance update is handed to the tracker worker and applied
        after this returns; callers must not expect the weights to have moved.
        """
        if not results:
            raise InsufficientInputError("No model results provided for consensus computation")
        if weights is None:
            weights = self.current_weights()
        consensus = self._calculate(results, weights, analysis_id or f"analysis_{uuid.uuid4().hex[:12]}")
        self.worker.submit(AnalysisEvent(
            analysis_id=consensus.provenance["analysis_id"],
            results=list(results),
            consensus=consensus,
        ))
        return consensus

    def _model_weight(self, model_name: str, weights: Dict[str, float]) -> float:
        weight = weights.get(model_name)
        if weight is None or weight <= 0:
            weight = self.tracker.base_weight(model_name)
        return float(weight)

    def _calculate(self, results: List[ModelResult], weights: Dict[str, float], analysis_id: str) -> ConsensusResult:
        grouped: Dict[str, Dict[str, List[Any]]] = {}
        provenance_models = []
        for result in results:
            weight = self._model_weight(result.model_name, weights)
            provenance_models.append({
                "name": result.model_name,
                "version": result.model_version,
                "weight": weight,
                "latency": result.latency_ms or 0,
            })
            for label in result.labels:
                entry = grouped.setdefault(label.label, {"scores": [], "weights": [], "models": []})
                entry["scores"].append(label.score)
                entry["weights"].append(weight)
                entry["models"].append(result.model_name)

        provenance = {
            "analysis_id": analysis_id,
            "models": provenance_models,
            "timestamp": utc_now().isoformat(),
            "adaptive_weights": dict(weights),
            "performance_metrics": self.tracker.performance_summary(),
        }
        if not grouped:
            return ConsensusResult(
                top_label=NO_DETECTION,
                score=0.0,
                spread=0.0,
                all_labels=[],
                provenance=provenance,
                recommended_action=ALLOW,
                reasons=[f"No labels reported by {len(results)} models"],
                agreement=1.0,
            )

        aggregates: List[LabelAggregate] = []
        for label, data in grouped.items():
            weighted_sum = 0.0
            total_weight = 0.0
            for score, weight, model in zip(data["scores"], data["weights"], data["models"]):
                weighted_sum += score * weight * self.tracker.confidence_boost(model)
                total_weight += weight
            score = weighted_sum / total_weight if total_weight > 0 else 0.0
            if not math.isfinite(score):
                raise ConsensusComputationError(f"non-finite score for label {label}")
            aggregates.append(LabelAggregate(
                label=label,
                score=clamp_score(score),
                agreement=weighted_agreement(data["scores"], data["weights"]),
                model_count=len(data["models"]),
                supporting_models=list(data["models"]),
            ))

        aggregates.sort(key=lambda item: item.score, reverse=True)
        # Fallback labels from failed models rank below every real detection.
        ranked = sorted(aggregates, key=lambda item: is_error_label(item.label))
        top = ranked[0]
        spread = self._spread(ranked)
        confidence = self._confidence(top, ranked, spread)
        action = self._action(top, confidence, spread)
        reasons = self._reasons(top, ranked, weights, spread)
        return ConsensusResult(
            top_label=top.label,
            score=confidence,
            spread=spread,
            all_labels=[{"label": item.label, "score": item.score} for item in aggregates],
            provenance=provenance,
            recommended_action=action,
            reasons=reasons,
            agreement=top.agreement,
        )

    @staticmethod
    def _spread(aggregates: List[LabelAggregate]) -> float:
        if len(aggregates) <= 1:
            return 0.0
        gap = aggregates[0].score - aggregates[1].score
        # Lower agreement on the winner widens the spread.
        return max(0.0, gap * (2.0 - aggregates[0].agreement))

    @staticmethod
    def _confidence(top: LabelAggregate, aggregates: List[LabelAggregate], spread: float) -> float:
        confidence = top.score * (0.7 + 0.3 * top.agreement)
        confidence += min(0.1, (top.model_count - 1) * 0.05)
        confidence -= spread * 0.3
        if len(aggregates) > 1 and top.score > 0:
            ratio = aggregates[1].score / top.score
            if ratio > 0.7:
                confidence *= 1.0 - (ratio - 0.7) * 0.5
        return max(0.0, min(1.0, confidence))

    @staticmethod
    def _action(top: LabelAggregate, confidence: float, spread: float) -> str:
        if top.label in CRITICAL_CATEGORIES:
            return QUARANTINE if confidence > 0.8 else HOLD_FOR_REVIEW
        if confidence >= 0.85 and top.agreement >= 0.8:
            return QUARANTINE if top.score > 0.9 else MONITOR
        if confidence >= 0.7 and top.agreement >= 0.6:
            return HOLD_FOR_REVIEW if spread > 0.3 else MONITOR
        if confidence < 0.5 or top.agreement < 0.4:
            return HOLD_FOR_REVIEW if spread > 0.4 else ALLOW
        return MONITOR if confidence > 0.6 else ALLOW

    def _reasons(
        self,
        top: LabelAggregate,
        aggregates: List[LabelAggregate],
        weights: Dict[str, float],
        spread: float,
    ) -> List[str]:
        reasons = [
            f'Top detection: "{top.label}" with {top.score * 100:.1f}% confidence',
            f"Model agreement: {top.agreement * 100:.1f}% ({top.model_count} models)",
        ]
        weight_info = ", ".join(f"{model}: {weight * 100:.0f}%" for model, weight in weights.items())
        reasons.append(f"Adaptive weights: {weight_info}")
        if spread > 0.2:
            reasons.append(f"Model spread: {spread * 100:.1f}% (indicates disagreement)")
        average_accuracy = self.tracker.average_accuracy()
        if average_accuracy > 0.8:
            reasons.append(f"High model accuracy: {average_accuracy * 100:.1f}% average")
        if len(aggregates) > 1 and aggregates[1].score > 0.3:
            runner_up = aggregates[1]
            reasons.append(f'Secondary detection: "{runner_up.label}" at {runner_up.score * 100:.1f}%')
        return reasons
