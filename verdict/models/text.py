"""Text/context reasoning adapter.

The text model never sees pixels; it reasons over upload metadata and the
hints the pipeline passes in ``options["hints"]``.
"""
from __future__ import annotations

import json
from typing import Any, Dict, List

from verdict.models.base import ModelAdapter
from verdict.models.schemas import TextOutput
from verdict.types import ModelLabel, UploadContext


class TextAdapter(ModelAdapter):
    kind = "text"
    schema = TextOutput
    default_timeout = 30.0
    default_retries = 2
    default_max_tokens = 800

    def includes_image(self) -> bool:
        return False

    def describe_context(self, image_bytes: bytes, context: UploadContext, options: Dict[str, Any]) -> str:
        description = {
            "filename": context.filename,
            "metadata": context.metadata,
            "contentType": context.content_type,
            "size": len(image_bytes),
            "uploaderId": context.uploader_id,
            "hint": (
                "Use vision descriptors and metadata to reason about content categories "
                "(sexual_nudity, child_exposed, deepfake, etc.)"
            ),
            "analysisContext": (
                "This is part of a multi-modal analysis pipeline. "
                "Consider visual context and advanced reasoning."
            ),
        }
        hints = options.get("hints")
        if hints:
            description["descriptors"] = hints
        return json.dumps(description, sort_keys=True)

    def build_prompt(self, image_bytes: bytes, context: UploadContext, options: Dict[str, Any]) -> str:
        system = (
            "SYSTEM:\n"
            "You are a content policy reasoning agent. You receive visual descriptors, OCR, EXIF, and metadata.\n"
            "Produce ONLY valid JSON that matches the schema:\n"
            '{ "labels": [{"label":"string","score":float}], "reasons":[ "short reason strings" ], '
            f'"provenance":{{ "model":"{self.model}", "version":"..." }} }}\n'
            "Do not provide step-by-step internal reasoning or chain-of-thought. Output only JSON."
        )
        user = (
            "USER:\n"
            f"Context: {self.describe_context(image_bytes, context, options)}\n"
            "Return the JSON as specified. Prioritize accuracy; use score 0.0-1.0."
        )
        return f"{system}\n\n{user}"

    def map_labels(self, parsed: TextOutput) -> List[ModelLabel]:
        return [ModelLabel(label=str(item.label), score=item.score) for item in parsed.labels]
