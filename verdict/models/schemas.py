"""Response schemas the providers are instructed to follow.

Each schema is a pydantic model: it renders the JSON Schema embedded in the
prompt and validates the parsed provider output, so the adapters share one
validation path instead of hand-written field checks.
"""
from __future__ import annotations

import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError

UnitFloat = Annotated[float, Field(ge=0.0, le=1.0)]


class _Schema(BaseModel):
    model_config = ConfigDict(extra="allow")


class BoundingBox(_Schema):
    x: float
    y: float
    width: float
    height: float


class Provenance(_Schema):
    model: str
    version: Optional[str] = None


class VisionLabel(_Schema):
    label: str
    score: float
    region: Optional[BoundingBox] = None


class VisionOutput(_Schema):
    labels: List[VisionLabel]
    saliency_base64: Optional[str] = None
    provenance: Provenance


class TextLabel(_Schema):
    label: str
    score: float


class TextOutput(_Schema):
    labels: List[TextLabel]
    reasons: List[str] = Field(default_factory=list)
    provenance: Provenance


class UnitBoundingBox(_Schema):
    x: UnitFloat
    y: UnitFloat
    width: UnitFloat
    height: UnitFloat


class PrimarySubject(_Schema):
    subject: str
    confidence: UnitFloat
    attributes: List[str] = Field(default_factory=list)
    bounding_box: Optional[UnitBoundingBox] = None


class SceneComposition(_Schema):
    setting: Optional[str] = None
    atmosphere: Optional[str] = None
    lighting: Optional[str] = None
    perspective: Optional[str] = None


class SpatialRelationship(_Schema):
    subject_a: str
    subject_b: str
    relationship: str
    confidence: UnitFloat


class SceneAnalysis(_Schema):
    primary_subjects: List[PrimarySubject]
    scene_composition: Optional[SceneComposition] = None
    spatial_relationships: List[SpatialRelationship] = Field(default_factory=list)


class AlternativeIntent(_Schema):
    intent: str
    confidence: UnitFloat


class IntentInference(_Schema):
    primary_intent: str
    confidence: UnitFloat
    alternative_intents: List[AlternativeIntent] = Field(default_factory=list)


class EmotionalTone(_Schema):
    dominant_emotion: str
    intensity: UnitFloat
    emotional_complexity: Optional[Literal["simple", "moderate", "complex"]] = None


class NarrativeElement(_Schema):
    element: str
    role: str
    significance: UnitFloat


class ContextualAnalysis(_Schema):
    intent_inference: Optional[IntentInference] = None
    emotional_tone: Optional[EmotionalTone] = None
    narrative_elements: List[NarrativeElement] = Field(default_factory=list)


class ContentCategory(_Schema):
    category: str
    severity: UnitFloat
    confidence: UnitFloat
    justification: Optional[str] = None


class RiskAssessment(_Schema):
    content_categories: List[ContentCategory]
    contextual_risk_factors: List[str] = Field(default_factory=list)
    recommended_action: Literal["allow", "monitor", "hold_for_review", "quarantine", "escalate"]


class ReasoningStep(_Schema):
    step: float
    observation: str
    inference: str
    confidence: UnitFloat


class ReasoningProvenance(_Schema):
    model: str
    version: str
    analysis_timestamp: Optional[str] = None


class ReasoningOutput(_Schema):
    scene_analysis: SceneAnalysis
    contextual_analysis: Optional[ContextualAnalysis] = None
    risk_assessment: RiskAssessment
    reasoning_chain: List[ReasoningStep] = Field(default_factory=list)
    provenance: ReasoningProvenance


def schema_for(model: Type[BaseModel]) -> Dict[str, Any]:
    return model.model_json_schema()


def schema_text(model: Type[BaseModel]) -> str:
    return json.dumps(schema_for(model), indent=2)


def validate_payload(model: Type[BaseModel], payload: Any) -> tuple[BaseModel | None, List[str]]:
    """Validate ``payload`` against ``model``; returns the instance or error strings."""
    try:
        return model.model_validate(payload), []
    except ValidationError as exc:
        errors = []
        for err in exc.errors():
            location = ".".join(str(part) for part in err.get("loc", ()))
            errors.append(f"{location or '<root>'}: {err.get('msg', 'invalid')}")
        return None, errors
