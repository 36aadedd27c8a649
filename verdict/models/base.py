"""Shared request/parse/validate flow for the model adapters."""
from __future__ import annotations

import base64
import json
import logging
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel

from verdict.models.client import ProviderClient, ProviderResponse
from verdict.models.schemas import validate_payload
from verdict.types import ModelLabel, ModelResult, UploadContext

logger = logging.getLogger(__name__)

TIMEOUT = "timeout"
PARSE_ERROR = "parse_error"
SCHEMA_INVALID = "schema_invalid"
TRANSPORT_ERROR = "transport_error"

FALLBACK_SCORE = 0.5


class AdapterError(Exception):
    """Raised when a model adapter cannot produce a usable result."""

    REASONS = (TIMEOUT, PARSE_ERROR, SCHEMA_INVALID, TRANSPORT_ERROR)

    def __init__(self, reason: str, message: str = "", status_code: int | None = None) -> None:
        if reason not in self.REASONS:
            raise ValueError(f"unknown adapter error reason: {reason}")
        super().__init__(f"{reason}: {message}" if message else reason)
        self.reason = reason
        self.message = message
        self.status_code = status_code


def extract_json_block(text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` block in ``text``, ignoring braces in strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for idx in range(start, len(text)):
            char = text[idx]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start:idx + 1]
        start = text.find("{", start + 1)
    return None


def parse_json_payload(text: str) -> Dict[str, Any]:
    if not text or not text.strip():
        raise AdapterError(PARSE_ERROR, "empty model output")
    try:
        data = json.loads(text)
    except ValueError:
        block = extract_json_block(text)
        if block is None:
            raise AdapterError(PARSE_ERROR, "no JSON object in model output") from None
        try:
            data = json.loads(block)
        except ValueError as exc:
            raise AdapterError(PARSE_ERROR, f"invalid JSON block: {exc}") from None
    if not isinstance(data, dict):
        raise AdapterError(PARSE_ERROR, "model output is not a JSON object")
    return data


def fallback_result(
    model_name: str,
    kind: str,
    error: str,
    raw: Dict[str, Any] | None = None,
    latency_ms: float | None = None,
) -> ModelResult:
    """Low-confidence stand-in used when a model produced nothing usable."""
    return ModelResult(
        model_name=model_name,
        labels=[ModelLabel(label=f"{kind}_failed", score=FALLBACK_SCORE)],
        raw_output={"fallback": True, "error": error, "kind": kind, "response": raw},
        latency_ms=latency_ms,
    )


def slug(value: str) -> str:
    return "_".join(str(value).strip().lower().split())


class ModelAdapter:
    """Base adapter: build request, call provider, parse, validate, map.

    Subclasses supply ``schema``, ``build_prompt`` and ``map_labels``.
    """

    kind = "model"
    schema: Type[BaseModel]
    default_timeout = 30.0
    default_retries = 3
    default_max_tokens = 1200

    def __init__(
        self,
        client: ProviderClient,
        model: str,
        timeout_seconds: float | None = None,
        retries: int | None = None,
        max_tokens: int | None = None,
        allow_lenient_parse: bool = False,
        temperature: float = 0.0,
        options: Dict[str, Any] | None = None,
    ) -> None:
        self.client = client
        self.model = model
        self.timeout_seconds = float(timeout_seconds or self.default_timeout)
        self.retries = int(retries or self.default_retries)
        self.max_tokens = int(max_tokens or self.default_max_tokens)
        self.allow_lenient_parse = allow_lenient_parse
        self.temperature = temperature
        self.options = dict(options or {})

    @property
    def deadline_seconds(self) -> float:
        """Upper bound for one ``analyze`` call including retries and backoff."""
        backoff = (self.client.backoff_base_ms / 1000.0) * (2 ** max(0, self.retries - 1))
        return self.timeout_seconds * self.retries + backoff

    def build_prompt(self, image_bytes: bytes, context: UploadContext, options: Dict[str, Any]) -> str:
        raise NotImplementedError

    def map_labels(self, parsed: BaseModel) -> List[ModelLabel]:
        raise NotImplementedError

    def includes_image(self) -> bool:
        return True

    def request_parameters(self, options: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "temperature": self.temperature,
            "max_tokens": int(options.get("max_tokens", self.max_tokens)),
            "output_format": "json",
        }

    def build_payload(self, image_bytes: bytes, context: UploadContext, options: Dict[str, Any]) -> Dict[str, Any]:
        inputs: List[Dict[str, Any]] = []
        if self.includes_image():
            inputs.append({
                "modality": "image",
                "content_base64": base64.b64encode(image_bytes).decode("ascii"),
            })
        inputs.append({"modality": "text", "content": self.build_prompt(image_bytes, context, options)})
        return {
            "model": self.model,
            "inputs": inputs,
            "parameters": self.request_parameters(options),
        }

    def raw_metadata(self, parsed: BaseModel, options: Dict[str, Any]) -> Dict[str, Any]:
        return {}

    async def analyze(
        self,
        image_bytes: bytes,
        context: UploadContext,
        options: Dict[str, Any] | None = None,
    ) -> ModelResult:
        merged = {**self.options, **(options or {})}
        payload = self.build_payload(image_bytes, context, merged)
        response = await self.client.generate(payload, timeout=self.timeout_seconds, retries=self.retries)
        if not response.ok:
            raise self._transport_failure(response)
        return self.parse_response(response.text, latency_ms=response.duration_ms, options=merged)

    def _transport_failure(self, response: ProviderResponse) -> AdapterError:
        reason = TIMEOUT if response.timed_out else TRANSPORT_ERROR
        return AdapterError(reason, response.error or "provider call failed", status_code=response.status_code)

    def parse_response(
        self,
        text: str,
        latency_ms: float | None = None,
        options: Dict[str, Any] | None = None,
    ) -> ModelResult:
        options = options if options is not None else dict(self.options)
        lenient = bool(options.get("allow_lenient_parse", self.allow_lenient_parse))
        try:
            parsed = parse_json_payload(text)
        except AdapterError as exc:
            if not lenient:
                raise
            logger.warning("%s output unparseable, using fallback: %s", self.model, exc.message)
            return fallback_result(self.model, self.kind, exc.reason, latency_ms=latency_ms)

        instance, errors = validate_payload(self.schema, parsed)
        if instance is None:
            if not lenient:
                raise AdapterError(SCHEMA_INVALID, "; ".join(errors[:5]))
            logger.warning("%s schema validation failed, using fallback: %s", self.model, errors[:5])
            return fallback_result(self.model, self.kind, SCHEMA_INVALID, raw=parsed, latency_ms=latency_ms)

        raw_output = dict(parsed)
        raw_output.update(self.raw_metadata(instance, options))
        provenance = getattr(instance, "provenance", None)
        return ModelResult(
            model_name=self.model,
            model_version=getattr(provenance, "version", None),
            labels=self.map_labels(instance),
            raw_output=raw_output,
            latency_ms=latency_ms,
        )
