"""Vision classifier adapter (labels with normalized regions)."""
from __future__ import annotations

from typing import Any, Dict, List

from verdict.models.base import ModelAdapter
from verdict.models.schemas import VisionOutput
from verdict.types import ModelLabel, Region, UploadContext

VISION_CATEGORIES = (
    "sexual_nudity",
    "partial_nudity",
    "suggestive",
    "violence",
    "self_harm",
    "hate_symbols",
    "non-sexual_adult_content",
    "child_exposed",
    "deepfake",
)


class VisionAdapter(ModelAdapter):
    kind = "vision"
    schema = VisionOutput
    default_timeout = 30.0
    default_retries = 3
    default_max_tokens = 1200

    def build_prompt(self, image_bytes: bytes, context: UploadContext, options: Dict[str, Any]) -> str:
        saliency = "Include saliency_base64." if options.get("include_saliency") else "Set saliency_base64 to null."
        system = (
            "SYSTEM:\n"
            "You are a vision moderation assistant. DO NOT provide free-form text.\n"
            "Output MUST be valid JSON ONLY and adhere to the schema described below.\n"
            'Schema: { "labels":[{"label":"string","score":float,'
            '"region":{"x":0..1,"y":0..1,"width":0..1,"height":0..1}}], '
            f'"saliency_base64":<nullable string>, "provenance":{{"model":"{self.model}","version":"..."}} }}\n'
            f"Labels: include categories such as {', '.join(repr(c) for c in VISION_CATEGORIES)}.\n"
            "Scores must be between 0 and 1 (0.0-1.0). Regions must be normalized (x,y,width,height) "
            "relative to image dimensions.\n"
            "If you cannot detect any label with confidence, return labels: [].\n"
            f"{saliency}"
        )
        user = (
            "USER:\n"
            "Analyze the attached image and return JSON only. Do not include commentary or chain-of-thought.\n"
            "Return labels sorted by descending score."
        )
        return f"{system}\n\n{user}"

    def map_labels(self, parsed: VisionOutput) -> List[ModelLabel]:
        labels = []
        for item in parsed.labels:
            region = None
            if item.region is not None:
                region = Region(
                    x=item.region.x,
                    y=item.region.y,
                    width=item.region.width,
                    height=item.region.height,
                )
            labels.append(ModelLabel(label=str(item.label), score=item.score, region=region))
        return labels
