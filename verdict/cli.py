"""Command line interface for Verdict."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import mimetypes
import sys
import uuid
from pathlib import Path
from typing import Any

from verdict.config import get_config
from verdict.pipeline import ModerationPipeline
from verdict.policy import POLICY_PRESETS, determine_moderation_action, handling_recommendation, thresholds_for
from verdict.store import ModerationStore


def _print(obj: Any) -> None:
    print(json.dumps(obj, indent=2, default=str))


async def _analyze(pipeline: ModerationPipeline, image_id: str, data: bytes, context: dict, preset: str | None):
    try:
        return await pipeline.analyze_and_persist_image(image_id, data, context, preset=preset)
    finally:
        await pipeline.aclose()


def cmd_analyze(args: argparse.Namespace) -> int:
    path = Path(args.image)
    if not path.exists():
        print(f"Image not found: {path}", file=sys.stderr)
        return 1
    config = get_config()
    pipeline = ModerationPipeline(config)
    data = path.read_bytes()
    context = {
        "filename": path.name,
        "content_type": mimetypes.guess_type(path.name)[0] or "application/octet-stream",
        "size": len(data),
        "uploader_id": args.uploader_id,
    }
    result = asyncio.run(_analyze(pipeline, args.image_id or uuid.uuid4().hex, data, context, args.policy))
    _print(result)
    return 0 if result.get("success") else 2


def cmd_weights(args: argparse.Namespace) -> int:
    config = get_config()
    pipeline = ModerationPipeline(config)
    _print({
        "weights": pipeline.get_current_weights(),
        "models": pipeline.registry.list_models(),
        "performance": pipeline.get_model_performance(),
    })
    return 0


def cmd_reviews(args: argparse.Namespace) -> int:
    config = get_config()
    store = ModerationStore(config.data_dir)
    if args.action == "cleanup":
        max_age = float(config.review.get("max_age_hours", 24))
        _print({"expired": store.expire_review_items(max_age, actor="cli")})
        return 0
    limit = args.limit if args.action == "list" else 100000
    items = store.get_pending_review_items(priority=args.priority, assigned_to=args.assigned_to, limit=limit)
    if args.action == "stats":
        by_priority: dict[str, int] = {}
        for item in items:
            by_priority[item["priority"]] = by_priority.get(item["priority"], 0) + 1
        _print({"total": len(items), "by_priority": by_priority})
    else:
        _print(items)
    return 0


def cmd_policy(args: argparse.Namespace) -> int:
    try:
        payload = json.loads(Path(args.labels).read_text())
    except (OSError, ValueError) as exc:
        print(f"Could not read labels: {exc}", file=sys.stderr)
        return 1
    thresholds = thresholds_for(args.preset)
    _print({
        "preset": args.preset,
        "description": POLICY_PRESETS[args.preset]["description"],
        "thresholds": thresholds,
        "action": determine_moderation_action(payload, thresholds).to_dict(),
        "handling": handling_recommendation(payload, thresholds),
    })
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    from verdict.server import main as serve
    serve()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="verdict")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command")

    analyze = sub.add_parser("analyze", help="Analyze one image and persist the result")
    analyze.add_argument("image")
    analyze.add_argument("--uploader-id", default="cli")
    analyze.add_argument("--image-id", default=None)
    analyze.add_argument("--policy", choices=sorted(POLICY_PRESETS), default=None)

    sub.add_parser("weights", help="Show adaptive weights and model performance")

    reviews = sub.add_parser("reviews", help="Inspect persisted review items")
    reviews.add_argument("action", choices=["list", "stats", "cleanup"], nargs="?", default="list")
    reviews.add_argument("--priority", choices=["low", "medium", "high", "critical"], default=None)
    reviews.add_argument("--assigned-to", default=None)
    reviews.add_argument("--limit", type=int, default=50)

    policy = sub.add_parser("policy", help="Map a labels JSON file to a moderation action")
    policy.add_argument("labels")
    policy.add_argument("--preset", choices=sorted(POLICY_PRESETS), default="standard")

    sub.add_parser("serve", help="Run the HTTP server")
    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.command == "analyze":
        sys.exit(cmd_analyze(args))
    elif args.command == "weights":
        sys.exit(cmd_weights(args))
    elif args.command == "reviews":
        sys.exit(cmd_reviews(args))
    elif args.command == "policy":
        sys.exit(cmd_policy(args))
    elif args.command == "serve":
        sys.exit(cmd_serve(args))
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
