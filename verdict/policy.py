"""Threshold and sensitivity-rule mapping from a moderation result to an action."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Tuple

from verdict.types import ALLOW, ESCALATE, QUARANTINE, REVIEW, ConsensusResult, ModelLabel, ModerationAction

LabelScores = List[Tuple[str, float]]

DEFAULT_THRESHOLDS: Dict[str, float] = {"quarantine": 0.90, "review": 0.75, "allow": 0.50}

POLICY_PRESETS: Dict[str, Dict[str, Any]] = {
    "strict": {
        "thresholds": {"quarantine": 0.75, "review": 0.60, "allow": 0.40},
        "description": "Strict policy for sensitive environments",
    },
    "standard": {
        "thresholds": dict(DEFAULT_THRESHOLDS),
        "description": "Standard balanced policy",
    },
    "lenient": {
        "thresholds": {"quarantine": 0.95, "review": 0.85, "allow": 0.60},
        "description": "Lenient policy for creative/educational content",
    },
}

HIGH_SENSITIVITY_LABELS = ("child_exposed", "deepfake_suspected", "sexual_nudity")
NEAR_THRESHOLD_SCORE = 0.4

SEVERITY_WEIGHTS: Dict[str, float] = {
    "child_exposed": 1.0,
    "sexual_nudity": 0.9,
    "deepfake_suspected": 0.85,
    "violence": 0.8,
    "hate_symbols": 0.75,
    "analysis_failed": 0.7,
    "suggestive": 0.6,
    "partial_nudity": 0.5,
}
DEFAULT_SEVERITY_WEIGHT = 0.3

CRITICAL_REVIEW_LABELS = ("child_exposed", "sexual_nudity", "deepfake_suspected", "violence")
HIGH_REVIEW_LABELS = ("suggestive", "partial_nudity", "hate_symbols")


def label_scores(result: Any) -> LabelScores:
    """Normalise the accepted result shapes into ``[(label, score), ...]``.

    Accepts a ``ConsensusResult``, a dict with ``labels``/``all_labels``, or
    an iterable of ``ModelLabel``s or ``{label, score}`` dicts.
    """
    if isinstance(result, ConsensusResult):
        items: Iterable[Any] = result.all_labels
    elif isinstance(result, dict):
        items = result.get("labels") or result.get("all_labels") or []
    else:
        items = result or []
    pairs: LabelScores = []
    for item in items:
        if isinstance(item, ModelLabel):
            pairs.append((item.label, item.score))
        elif isinstance(item, dict) and "label" in item:
            pairs.append((str(item["label"]), float(item.get("score", 0.0))))
    return pairs


def _has(labels: LabelScores, name: str, minimum: float) -> bool:
    return any(label == name and score >= minimum for label, score in labels)


def _child_with_sexual(labels: LabelScores) -> bool:
    has_child = _has(labels, "child_detected", 0.6)
    has_sexual = any("sexual" in label and score >= 0.1 for label, score in labels)
    return has_child and has_sexual


@dataclass(frozen=True)
class SensitivityRule:
    name: str
    condition: Callable[[LabelScores], bool]
    action: str
    priority: str
    reason: str


SENSITIVITY_RULES: Tuple[SensitivityRule, ...] = (
    SensitivityRule(
        name="child_safety_critical",
        condition=_child_with_sexual,
        action=ESCALATE,
        priority="critical",
        reason="Child detected with sexual content - immediate escalation required",
    ),
    SensitivityRule(
        name="deepfake_high_confidence",
        condition=lambda labels: _has(labels, "deepfake_suspected", 0.6),
        action=REVIEW,
        priority="high",
        reason="Deepfake suspected with high confidence - forensic review required",
    ),
    SensitivityRule(
        name="child_exposed",
        condition=lambda labels: _has(labels, "child_exposed", 0.5),
        action=QUARANTINE,
        priority="critical",
        reason="Child exposed content detected - immediate quarantine required",
    ),
    SensitivityRule(
        name="sexual_nudity_high",
        condition=lambda labels: _has(labels, "sexual_nudity", 0.8),
        action=QUARANTINE,
        priority="high",
        reason="High confidence sexual nudity detected - quarantine required",
    ),
)


def thresholds_for(preset: str | None = None, overrides: Dict[str, float] | None = None) -> Dict[str, float]:
    if preset and preset not in POLICY_PRESETS:
        raise ValueError(f"unknown policy preset: {preset}")
    thresholds = dict(POLICY_PRESETS[preset or "standard"]["thresholds"])
    for key, value in (overrides or {}).items():
        if key in thresholds and value is not None:
            thresholds[key] = float(value)
    return thresholds


def determine_moderation_action(result: Any, thresholds: Dict[str, float] | None = None) -> ModerationAction:
    """Map a result to an action. Sensitivity rules are checked before thresholds."""
    thresholds = thresholds or DEFAULT_THRESHOLDS
    labels = label_scores(result)
    top_score = max([score for _, score in labels] + [0.0])

    for rule in SENSITIVITY_RULES:
        if rule.condition(labels):
            return ModerationAction(
                action=rule.action,
                confidence=top_score,
                reasons=[rule.reason],
                priority=rule.priority,
                requires_human_review=True,
            )

    reasons: List[str] = []
    if top_score >= thresholds["quarantine"]:
        action, priority, needs_review = QUARANTINE, "high", True
        reasons.append(f"Score {top_score:.2f} exceeds quarantine threshold {thresholds['quarantine']}")
    elif top_score >= thresholds["review"]:
        action, priority, needs_review = REVIEW, "medium", True
        reasons.append(f"Score {top_score:.2f} exceeds review threshold {thresholds['review']}")
    elif top_score >= thresholds.get("allow", DEFAULT_THRESHOLDS["allow"]):
        action, priority, needs_review = ALLOW, "low", False
        reasons.append(f"Score {top_score:.2f} within allow threshold")
    else:
        action, priority, needs_review = ALLOW, "low", False
        reasons.append(f"Score {top_score:.2f} below allow threshold")

    near_threshold = [
        label for label, score in labels
        if label in HIGH_SENSITIVITY_LABELS and score >= NEAR_THRESHOLD_SCORE
    ]
    if near_threshold and action == ALLOW:
        action, priority, needs_review = REVIEW, "medium", True
        reasons.append("High-sensitivity labels detected near threshold - human review recommended")

    return ModerationAction(
        action=action,
        confidence=top_score,
        reasons=reasons,
        priority=priority,
        requires_human_review=needs_review,
    )


def requires_escalation(result: Any) -> bool:
    labels = label_scores(result)
    return any(rule.action == ESCALATE and rule.condition(labels) for rule in SENSITIVITY_RULES)


def handling_recommendation(result: Any, thresholds: Dict[str, float] | None = None) -> Dict[str, Any]:
    action = determine_moderation_action(result, thresholds)
    if action.action == QUARANTINE:
        steps = [
            "Immediately quarantine content",
            "Remove from public access",
            "Log quarantine event",
            "Notify moderation team",
            "Schedule human review",
        ]
        timeline = "immediate" if action.priority == "critical" else "within_hour"
    elif action.action == REVIEW:
        steps = [
            "Enqueue for human review",
            "Flag for priority attention",
            "Preserve original content",
            "Log review request",
        ]
        timeline = "within_hour" if action.priority == "high" else "within_day"
    elif action.action == ESCALATE:
        steps = [
            "Immediate escalation to legal/compliance",
            "Preserve all evidence",
            "Notify senior moderators",
            "Document escalation rationale",
            "Engage legal counsel if necessary",
        ]
        timeline = "immediate"
    else:
        steps = [
            "Allow content publication",
            "Log approval decision",
            "Monitor for future reports",
        ]
        timeline = "standard"
    if action.requires_human_review:
        steps.append("Human review required before final decision")
    return {"action": action.to_dict(), "handling_steps": steps, "timeline": timeline}


def review_priority_for(labels: Any, reasons: Iterable[str] = ()) -> str:
    """Priority for a persisted review item."""
    pairs = label_scores(labels)
    if any(label in CRITICAL_REVIEW_LABELS and score >= 0.6 for label, score in pairs):
        return "critical"
    if any(label in HIGH_REVIEW_LABELS and score >= 0.8 for label, score in pairs):
        return "high"
    if any("failed" in reason or "error" in reason for reason in reasons):
        return "high"
    return "medium"


def severity_for(labels: Any) -> float:
    severity = 0.0
    for label, score in label_scores(labels):
        severity = max(severity, score * SEVERITY_WEIGHTS.get(label, DEFAULT_SEVERITY_WEIGHT))
    return round(severity, 2)
