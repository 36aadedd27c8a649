"""Tests for the provider client and model adapters."""
import json
import unittest

import httpx

from verdict.models.base import (
    PARSE_ERROR,
    SCHEMA_INVALID,
    TRANSPORT_ERROR,
    AdapterError,
    extract_json_block,
    fallback_result,
    parse_json_payload,
)
from verdict.models.client import ProviderClient, extract_response_text
from verdict.models.reasoning import ReasoningAdapter
from verdict.models.registry import AdapterRegistry, build_adapter
from verdict.models.text import TextAdapter
from verdict.models.vision import VisionAdapter
from verdict.types import UploadContext

VISION_OUTPUT = {
    "labels": [
        {"label": "suggestive", "score": 0.42, "region": {"x": 0.1, "y": 0.2, "width": 0.3, "height": 0.4}},
        {"label": "violence", "score": 0.05},
    ],
    "saliency_base64": None,
    "provenance": {"model": "GLM-4.5V", "version": "2024-06"},
}

REASONING_OUTPUT = {
    "scene_analysis": {
        "primary_subjects": [
            {"subject": "Adult Person", "confidence": 0.9,
             "bounding_box": {"x": 0.1, "y": 0.1, "width": 0.5, "height": 0.8}},
        ],
    },
    "contextual_analysis": {
        "intent_inference": {"primary_intent": "artistic expression", "confidence": 0.5},
        "emotional_tone": {"dominant_emotion": "calm", "intensity": 0.5},
    },
    "risk_assessment": {
        "content_categories": [{"category": "suggestive", "severity": 0.5, "confidence": 0.8}],
        "recommended_action": "monitor",
    },
    "reasoning_chain": [
        {"step": 1, "observation": "single subject", "inference": "portrait", "confidence": 0.9},
        {"step": 2, "observation": "clothed", "inference": "low risk", "confidence": 0.8},
    ],
    "provenance": {"model": "GLM-4.5-AIR", "version": "1.0"},
}


def _envelope(content):
    return {"outputs": [{"content": content}]}


def _client(handler, api_key="test-key"):
    return ProviderClient(api_key=api_key, backoff_base_ms=0, transport=httpx.MockTransport(handler))


class TestParsing(unittest.TestCase):
    def test_extract_json_block_ignores_braces_in_strings(self):
        text = 'Sure! {"reason": "a } inside", "nested": {"a": 1}} trailing'
        self.assertEqual(json.loads(extract_json_block(text)), {"reason": "a } inside", "nested": {"a": 1}})

    def test_parse_json_payload_falls_back_to_block(self):
        data = parse_json_payload('Here you go:\n{"labels": []}\nThanks')
        self.assertEqual(data, {"labels": []})

    def test_parse_json_payload_rejects_garbage(self):
        with self.assertRaises(AdapterError) as ctx:
            parse_json_payload("no json here")
        self.assertEqual(ctx.exception.reason, PARSE_ERROR)

    def test_parse_json_payload_rejects_arrays(self):
        with self.assertRaises(AdapterError):
            parse_json_payload("[1, 2, 3]")

    def test_fallback_result_shape(self):
        result = fallback_result("GLM-4.5V", "vision", TRANSPORT_ERROR)
        self.assertEqual(len(result.labels), 1)
        self.assertEqual(result.labels[0].label, "vision_failed")
        self.assertEqual(result.labels[0].score, 0.5)
        self.assertTrue(result.failed)
        self.assertTrue(result.raw_output["fallback"])

    def test_unknown_error_reason_rejected(self):
        with self.assertRaises(ValueError):
            AdapterError("exploded")

    def test_extract_response_text_shapes(self):
        self.assertEqual(extract_response_text(_envelope("a")), "a")
        self.assertEqual(extract_response_text({"result": "b"}), "b")
        self.assertEqual(extract_response_text({"choices": [{"message": {"content": "c"}}]}), "c")


class TestProviderClient(unittest.IsolatedAsyncioTestCase):
    async def test_missing_key_returns_error(self):
        client = ProviderClient(api_key="")
        result = await client.generate({"model": "x"})
        self.assertFalse(result.ok)
        self.assertIn("API key", result.error)
        self.assertFalse(client.available)

    async def test_retries_server_errors(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(503, text="busy")
            return httpx.Response(200, json=_envelope("{}"))

        client = _client(handler)
        result = await client.generate({"model": "x"}, retries=3)
        await client.aclose()
        self.assertTrue(result.ok)
        self.assertEqual(result.attempts, 2)
        self.assertEqual(calls[0].headers["Authorization"], "Bearer test-key")

    async def test_client_errors_are_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, text="bad request")

        client = _client(handler)
        result = await client.generate({"model": "x"}, retries=4)
        await client.aclose()
        self.assertFalse(result.ok)
        self.assertEqual(result.status_code, 400)
        self.assertEqual(len(calls), 1)

    async def test_timeouts_exhaust_retries(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ReadTimeout("slow", request=request)

        client = _client(handler)
        result = await client.generate({"model": "x"}, retries=2)
        await client.aclose()
        self.assertFalse(result.ok)
        self.assertTrue(result.timed_out)
        self.assertEqual(len(calls), 2)


class TestVisionAdapter(unittest.IsolatedAsyncioTestCase):
    async def test_analyze_maps_labels_and_regions(self):
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            return httpx.Response(200, json=_envelope(json.dumps(VISION_OUTPUT)))

        client = _client(handler)
        adapter = VisionAdapter(client, "GLM-4.5V")
        result = await adapter.analyze(b"\x89PNG", UploadContext(filename="a.png"))
        await client.aclose()

        self.assertEqual(result.model_name, "GLM-4.5V")
        self.assertEqual(result.model_version, "2024-06")
        self.assertEqual([label.label for label in result.labels], ["suggestive", "violence"])
        self.assertAlmostEqual(result.labels[0].region.width, 0.3)
        self.assertIsNone(result.labels[1].region)
        payload = requests[0]
        self.assertEqual(payload["parameters"]["temperature"], 0.0)
        self.assertEqual(payload["inputs"][0]["modality"], "image")

    async def test_prose_wrapped_output_is_parsed(self):
        def handler(request):
            return httpx.Response(200, json=_envelope("Result:\n" + json.dumps(VISION_OUTPUT) + "\nDone."))

        client = _client(handler)
        result = await VisionAdapter(client, "GLM-4.5V").analyze(b"img", UploadContext())
        await client.aclose()
        self.assertEqual(result.labels[0].label, "suggestive")

    async def test_schema_invalid_raises_in_strict_mode(self):
        def handler(request):
            return httpx.Response(200, json=_envelope(json.dumps({"labels": "nope"})))

        client = _client(handler)
        with self.assertRaises(AdapterError) as ctx:
            await VisionAdapter(client, "GLM-4.5V").analyze(b"img", UploadContext())
        await client.aclose()
        self.assertEqual(ctx.exception.reason, SCHEMA_INVALID)

    async def test_schema_invalid_falls_back_when_lenient(self):
        def handler(request):
            return httpx.Response(200, json=_envelope(json.dumps({"labels": "nope"})))

        client = _client(handler)
        adapter = VisionAdapter(client, "GLM-4.5V", allow_lenient_parse=True)
        result = await adapter.analyze(b"img", UploadContext())
        await client.aclose()
        self.assertEqual(result.labels[0].label, "vision_failed")
        self.assertEqual(result.labels[0].score, 0.5)

    async def test_transport_failure_raises_typed_error(self):
        def handler(request):
            return httpx.Response(502, text="gateway")

        client = _client(handler)
        adapter = VisionAdapter(client, "GLM-4.5V", retries=2)
        with self.assertRaises(AdapterError) as ctx:
            await adapter.analyze(b"img", UploadContext())
        await client.aclose()
        self.assertEqual(ctx.exception.reason, TRANSPORT_ERROR)
        self.assertEqual(ctx.exception.status_code, 502)


class TestReasoningAdapter(unittest.TestCase):
    def test_mapping_and_metadata(self):
        adapter = ReasoningAdapter(_client(lambda r: httpx.Response(500)), "GLM-4.5-AIR")
        result = adapter.parse_response(json.dumps(REASONING_OUTPUT), latency_ms=12.0)
        scores = {label.label: label.score for label in result.labels}
        self.assertAlmostEqual(scores["suggestive"], 0.4)
        self.assertAlmostEqual(scores["subject_adult_person"], 0.63)
        self.assertAlmostEqual(scores["intent_artistic_expression"], 0.4)
        self.assertAlmostEqual(scores["emotion_calm"], 0.3)
        self.assertAlmostEqual(scores["action_monitor"], 0.95)
        self.assertEqual(result.raw_output["_reasoning_metadata"]["reasoning_steps"], 2)
        self.assertEqual(result.model_version, "1.0")

    def test_request_parameters_carry_depth(self):
        adapter = ReasoningAdapter(
            _client(lambda r: httpx.Response(500)), "GLM-4.5-AIR",
            options={"analysis_depth": "comprehensive"},
        )
        payload = adapter.build_payload(b"img", UploadContext(), adapter.options)
        self.assertEqual(payload["parameters"]["reasoning_depth"], "comprehensive")
        self.assertIn("Analysis Depth: comprehensive", payload["inputs"][-1]["content"])

    def test_invalid_depth_defaults_to_detailed(self):
        adapter = ReasoningAdapter(_client(lambda r: httpx.Response(500)), "GLM-4.5-AIR")
        self.assertEqual(adapter.request_parameters({"analysis_depth": "bogus"})["reasoning_depth"], "detailed")


class TestTextAdapter(unittest.TestCase):
    def test_payload_has_no_image_and_includes_hints(self):
        adapter = TextAdapter(_client(lambda r: httpx.Response(500)), "GLM-4.5")
        payload = adapter.build_payload(b"img", UploadContext(filename="x.jpg"), {"hints": ["beach"]})
        self.assertEqual([item["modality"] for item in payload["inputs"]], ["text"])
        self.assertIn("beach", payload["inputs"][0]["content"])

    def test_parse_text_output(self):
        adapter = TextAdapter(_client(lambda r: httpx.Response(500)), "GLM-4.5")
        output = {"labels": [{"label": "hate_symbols", "score": 1.7}], "reasons": ["flag"],
                  "provenance": {"model": "GLM-4.5"}}
        result = adapter.parse_response(json.dumps(output))
        self.assertEqual(result.labels[0].score, 1.0)


class TestRegistry(unittest.TestCase):
    def test_from_config_skips_disabled_and_unknown(self):
        client = ProviderClient(api_key="k")
        registry = AdapterRegistry.from_config({"cards": [
            {"id": "v", "kind": "vision", "model": "V", "base_weight": 0.5},
            {"id": "t", "kind": "text", "model": "T", "enabled": False},
            {"id": "x", "kind": "audio", "model": "X"},
        ]}, client)
        self.assertEqual(len(registry), 1)
        self.assertEqual(registry.base_weights(), {"V": 0.5})
        self.assertIsInstance(registry.get("V"), VisionAdapter)

    def test_build_adapter_unknown_kind(self):
        with self.assertRaises(ValueError):
            build_adapter({"id": "x", "kind": "audio"}, ProviderClient(api_key="k"))


if __name__ == "__main__":
    unittest.main()
