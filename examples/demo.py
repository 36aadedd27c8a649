#!/usr/bin/env python3
"""
Verdict Demo -- offline moderation scenarios with scripted model outputs.

Run:
    python examples/demo.py

No provider credentials are needed: each scenario replays canned labels
through the real consensus, policy and review routing.
"""
from __future__ import annotations

import asyncio
import sys
import tempfile
from pathlib import Path

# Ensure verdict is importable when running from the repo root.
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from verdict.config import get_config
from verdict.pipeline import ModerationPipeline
from verdict.types import ModelLabel, ModelResult


SCENARIOS = [
    {
        "description": "All three models agree on explicit nudity.",
        "outputs": {
            "GLM-4.5V": [("sexual_nudity", 0.95)],
            "GLM-4.5-AIR": [("sexual_nudity", 0.92)],
            "GLM-4.5": [("sexual_nudity", 0.90)],
        },
    },
    {
        "description": "Models disagree about a borderline image.",
        "outputs": {
            "GLM-4.5V": [("violence", 0.55)],
            "GLM-4.5-AIR": [("weapon", 0.60)],
            "GLM-4.5": [("safe", 0.70)],
        },
    },
    {
        "description": "A harmless photo with one provider offline.",
        "outputs": {
            "GLM-4.5V": None,
            "GLM-4.5-AIR": [("safe", 0.90)],
            "GLM-4.5": [("safe", 0.85)],
        },
    },
]


class ScriptedAdapter:
    def __init__(self, model: str, kind: str, labels):
        self.model = model
        self.kind = kind
        self.labels = labels
        self.deadline_seconds = 5.0

    async def analyze(self, image_bytes, context, options=None) -> ModelResult:
        if self.labels is None:
            raise ConnectionError(f"{self.model} unavailable")
        return ModelResult(
            model_name=self.model,
            labels=[ModelLabel(label=label, score=score) for label, score in self.labels],
            model_version="demo",
            latency_ms=120.0,
        )


async def run_demo(index: int | None = None) -> None:
    """Run one or all scenarios through the moderation pipeline."""
    config = get_config()
    config.raw["data_dir"] = tempfile.mkdtemp(prefix="verdict-demo-")
    kinds = {card["model"]: card["kind"] for card in config.model_cards}

    scenarios = SCENARIOS if index is None else [SCENARIOS[index]]
    for i, scenario in enumerate(scenarios):
        num = index if index is not None else i
        adapters = [
            ScriptedAdapter(model, kinds.get(model, "vision"), labels)
            for model, labels in scenario["outputs"].items()
        ]
        pipeline = ModerationPipeline(config, adapters=adapters)
        print(f"\n{'=' * 72}")
        print(f"  Scenario {num + 1}: {scenario['description']}")
        print(f"{'=' * 72}")

        result = await pipeline.analyze_and_persist_image(f"demo-{num + 1}", b"demo", {"filename": "demo.jpg"})
        await pipeline.aclose()
        if not result["success"]:
            print(f"  Failed: {result['reason']}")
            continue

        consensus = result["consensus"]
        print(f"  Top label: {consensus['top_label']} ({consensus['score']:.2f})")
        print(f"  Consensus action: {consensus['recommended_action']}")
        print(f"  Policy action: {result['action']['action']} / {result['action']['priority']}")
        review = result["review"]
        if review:
            print(f"  Review: {review['priority']} -> {review['assigned_to']}")
        print("\n  Reasons:")
        for reason in consensus["reasons"]:
            print(f"    - {reason}")
        print()


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Replay scripted moderation scenarios.")
    parser.add_argument(
        "--scenario",
        "-s",
        type=int,
        choices=range(1, len(SCENARIOS) + 1),
        help="Run a specific scenario (1-%d)" % len(SCENARIOS),
    )
    args = parser.parse_args()
    idx = (args.scenario - 1) if args.scenario else None
    asyncio.run(run_demo(idx))


if __name__ == "__main__":
    main()
