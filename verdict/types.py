"""Core records shared by the adapters, consensus engine and review queue."""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

ALLOW = "allow"
MONITOR = "monitor"
HOLD_FOR_REVIEW = "hold_for_review"
QUARANTINE = "quarantine"
ESCALATE = "escalate"
REVIEW = "review"

CONSENSUS_ACTIONS = (ALLOW, MONITOR, HOLD_FOR_REVIEW, QUARANTINE, ESCALATE)
POLICY_ACTIONS = (QUARANTINE, REVIEW, ALLOW, ESCALATE)

PRIORITIES = ("low", "medium", "high", "critical")
PRIORITY_RANK = {"low": 1, "medium": 2, "high": 3, "critical": 4}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def clamp_score(value: Any) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    if score != score:  # NaN
        return 0.0
    return max(0.0, min(1.0, score))


@dataclass(frozen=True)
class Region:
    """Normalized bounding box, all coordinates relative to the image size."""
    x: float
    y: float
    width: float
    height: float


@dataclass(frozen=True)
class ModelLabel:
    label: str
    score: float
    region: Optional[Region] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "score", clamp_score(self.score))

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"label": self.label, "score": self.score}
        if self.region is not None:
            data["region"] = asdict(self.region)
        return data


@dataclass
class ModelResult:
    model_name: str
    labels: List[ModelLabel]
    raw_output: Dict[str, Any] = field(default_factory=dict)
    model_version: Optional[str] = None
    latency_ms: Optional[float] = None

    @property
    def failed(self) -> bool:
        return any(is_error_label(label.label) for label in self.labels)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_name": self.model_name,
            "model_version": self.model_version,
            "labels": [label.to_dict() for label in self.labels],
            "latency_ms": self.latency_ms,
        }


def is_error_label(label: str) -> bool:
    return label.endswith("_failed") or label.endswith("_error")


@dataclass
class UploadContext:
    filename: str = "unknown"
    content_type: str = "image/jpeg"
    size: int = 0
    uploader_id: str = "anonymous"
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "UploadContext":
        data = data or {}
        return cls(
            filename=str(data.get("filename") or "unknown"),
            content_type=str(data.get("content_type") or data.get("contentType") or "image/jpeg"),
            size=int(data.get("size") or 0),
            uploader_id=str(data.get("uploader_id") or data.get("uploaderId") or "anonymous"),
            metadata=dict(data.get("metadata") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ConsensusResult:
    """Snapshot of the reconciled decision for one image."""
    top_label: str
    score: float
    spread: float
    all_labels: List[Dict[str, Any]]
    provenance: Dict[str, Any]
    recommended_action: str
    reasons: List[str]
    agreement: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "top_label": self.top_label,
            "score": self.score,
            "spread": self.spread,
            "agreement": self.agreement,
            "all_labels": [dict(item) for item in self.all_labels],
            "provenance": self.provenance,
            "recommended_action": self.recommended_action,
            "reasons": list(self.reasons),
        }


@dataclass
class ModelPerformance:
    model_name: str
    total_analyses: int = 0
    correct_predictions: int = 0
    average_confidence: float = 0.0
    average_latency: float = 0.0
    error_rate: float = 0.0
    accuracy: float = 0.0
    reliability: float = 1.0
    last_updated: str = field(default_factory=lambda: utc_now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ModerationAction:
    action: str
    confidence: float
    reasons: List[str]
    priority: str
    requires_human_review: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Reviewer:
    id: str
    name: str
    specialties: List[str]
    max_concurrent: int
    current_load: int = 0

    @property
    def has_capacity(self) -> bool:
        return self.current_load < self.max_concurrent

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ReviewItem:
    review_id: str
    image_id: str
    priority: str
    assigned_to: str
    reasons: List[str]
    created_at: datetime = field(default_factory=utc_now)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "review_id": self.review_id,
            "image_id": self.image_id,
            "priority": self.priority,
            "assigned_to": self.assigned_to,
            "reasons": list(self.reasons),
            "created_at": self.created_at.isoformat(),
            "metadata": self.metadata,
        }
