"""Advanced-reasoning adapter: scene, context and risk analysis in one pass."""
from __future__ import annotations

import json
from typing import Any, Dict, List

from verdict.models.base import ModelAdapter, slug
from verdict.models.schemas import ReasoningOutput, schema_text
from verdict.types import ModelLabel, Region, UploadContext

DEPTH_INSTRUCTIONS = {
    "basic": "Provide essential analysis with key observations and risk assessment.",
    "detailed": (
        "Provide comprehensive analysis with detailed observations, relationships, "
        "and contextual understanding."
    ),
    "comprehensive": (
        "Provide exhaustive analysis including multi-step reasoning, deep contextual "
        "understanding, and nuanced risk assessment."
    ),
}

# Secondary signals are discounted relative to explicit risk categories.
SUBJECT_FACTOR = 0.7
INTENT_FACTOR = 0.8
EMOTION_FACTOR = 0.6
ACTION_SCORE = 0.95


class ReasoningAdapter(ModelAdapter):
    kind = "reasoning"
    schema = ReasoningOutput
    default_timeout = 60.0
    default_retries = 4
    default_max_tokens = 1500

    def _depth(self, options: Dict[str, Any]) -> str:
        depth = str(options.get("analysis_depth", "detailed"))
        return depth if depth in DEPTH_INSTRUCTIONS else "detailed"

    def request_parameters(self, options: Dict[str, Any]) -> Dict[str, Any]:
        params = super().request_parameters(options)
        params["reasoning_depth"] = self._depth(options)
        params["multi_step"] = bool(options.get("multi_step_reasoning", True))
        return params

    def build_prompt(self, image_bytes: bytes, context: UploadContext, options: Dict[str, Any]) -> str:
        depth = self._depth(options)
        description = json.dumps({
            "size": len(image_bytes),
            "type": context.content_type,
            "filename": context.filename,
        }, sort_keys=True)
        metadata = json.dumps({
            "filename": context.filename,
            "contentType": context.content_type,
            "size": len(image_bytes),
            "uploaderId": context.uploader_id,
            "metadata": context.metadata,
        }, sort_keys=True)
        multi_step = "enabled" if options.get("multi_step_reasoning", True) else "disabled"
        relationships = "enabled" if options.get("relationship_analysis", True) else "disabled"
        system = (
            "SYSTEM:\n"
            f"You are {self.model}, an expert model specialized in complex image understanding "
            "and contextual analysis.\n\n"
            f"Analysis Depth: {depth}\n{DEPTH_INSTRUCTIONS[depth]}\n\n"
            "You MUST respond with valid JSON ONLY following this schema:\n"
            f"{schema_text(ReasoningOutput)}\n\n"
            "Key Analysis Guidelines:\n"
            "1. Scene Analysis: Identify primary subjects, their attributes, and spatial relationships\n"
            "2. Contextual Analysis: Infer intent, emotional tone, and narrative elements\n"
            "3. Risk Assessment: Evaluate content categories with severity and contextual factors\n"
            "4. Reasoning Chain: Document your step-by-step analytical process\n"
            "5. Use confidence scores (0.0-1.0) to indicate certainty\n"
            "6. Consider metadata context in your analysis\n\n"
            "Important: Return ONLY valid JSON. No explanations, no markdown, just the JSON object."
        )
        user = (
            "USER:\n"
            "Analyze this image for advanced content understanding and risk assessment.\n\n"
            f"Image Description: Image analysis with metadata: {description}\n"
            f"Metadata Context: {metadata}\n"
            "Analysis Requirements:\n"
            f"- Multi-step reasoning: {multi_step}\n"
            f"- Relationship analysis: {relationships}\n"
            f"- Temperature: {self.temperature} (deterministic output)"
        )
        return f"{system}\n\n{user}"

    def map_labels(self, parsed: ReasoningOutput) -> List[ModelLabel]:
        labels: List[ModelLabel] = []
        risk = parsed.risk_assessment
        for category in risk.content_categories:
            labels.append(ModelLabel(label=category.category, score=category.severity * category.confidence))

        for subject in parsed.scene_analysis.primary_subjects:
            region = None
            if subject.bounding_box is not None:
                box = subject.bounding_box
                region = Region(x=box.x, y=box.y, width=box.width, height=box.height)
            labels.append(ModelLabel(
                label=f"subject_{slug(subject.subject)}",
                score=subject.confidence * SUBJECT_FACTOR,
                region=region,
            ))

        contextual = parsed.contextual_analysis
        if contextual is not None and contextual.intent_inference is not None:
            intent = contextual.intent_inference
            labels.append(ModelLabel(
                label=f"intent_{slug(intent.primary_intent)}",
                score=intent.confidence * INTENT_FACTOR,
            ))
        if contextual is not None and contextual.emotional_tone is not None:
            tone = contextual.emotional_tone
            labels.append(ModelLabel(
                label=f"emotion_{slug(tone.dominant_emotion)}",
                score=tone.intensity * EMOTION_FACTOR,
            ))

        labels.append(ModelLabel(label=f"action_{risk.recommended_action}", score=ACTION_SCORE))
        return labels

    def raw_metadata(self, parsed: ReasoningOutput, options: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "_reasoning_metadata": {
                "analysis_depth": self._depth(options),
                "multi_step_reasoning": bool(options.get("multi_step_reasoning", True)),
                "relationship_analysis": bool(options.get("relationship_analysis", True)),
                "reasoning_steps": len(parsed.reasoning_chain),
            }
        }
