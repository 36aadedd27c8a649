"""End-to-end moderation: model fan-out, consensus, policy, review routing, persistence."""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Tuple

from verdict.config import Config
from verdict.consensus import ConsensusComputationError, ConsensusEngine, neutral_consensus
from verdict.models.base import TIMEOUT, TRANSPORT_ERROR, AdapterError, ModelAdapter, fallback_result
from verdict.models.client import ProviderClient
from verdict.models.registry import AdapterRegistry
from verdict.policy import determine_moderation_action, review_priority_for, thresholds_for
from verdict.review import ReviewScheduler
from verdict.store import COMPLETED, EXPIRED, ModerationStore, PersistenceError, failure_reasons
from verdict.types import (
    HOLD_FOR_REVIEW,
    PRIORITY_RANK,
    QUARANTINE,
    ConsensusResult,
    ModelResult,
    ReviewItem,
    UploadContext,
    utc_now,
)
from verdict.weighting import DEFAULT_BASE_WEIGHT, PerformanceTracker

logger = logging.getLogger(__name__)

REVIEW_CRITICAL_LABELS = ("child_exposed", "deepfake_suspected", "sexual_nudity", "violence")
SEXUAL_CONTENT_LABELS = ("sexual_nudity", "partial_nudity", "suggestive")
MIN_SUCCESSFUL_MODELS = 2


def determine_review_need(consensus: ConsensusResult | None, successful_count: int) -> bool:
    """True when a human should look at the image regardless of the policy action."""
    if consensus is None:
        return True
    labels = consensus.all_labels
    for item in labels:
        if item["label"] in REVIEW_CRITICAL_LABELS and item["score"] >= 0.6:
            return True
    has_child = any(item["label"] == "child_detected" and item["score"] >= 0.6 for item in labels)
    has_sexual = any(item["label"] in SEXUAL_CONTENT_LABELS and item["score"] >= 0.1 for item in labels)
    if has_child and has_sexual:
        return True
    if consensus.spread > 0.25:
        return True
    if consensus.score < 0.6 and labels and labels[0]["score"] > 0.3:
        return True
    if consensus.recommended_action in (QUARANTINE, HOLD_FOR_REVIEW):
        return True
    return successful_count < MIN_SUCCESSFUL_MODELS


def _failure_reason(exc: BaseException) -> str:
    if isinstance(exc, AdapterError):
        return exc.reason
    if isinstance(exc, asyncio.TimeoutError):
        return TIMEOUT
    return TRANSPORT_ERROR


class ModerationPipeline:
    def __init__(
        self,
        config: Config,
        store: ModerationStore | None = None,
        adapters: AdapterRegistry | Iterable[ModelAdapter] | None = None,
        scheduler: ReviewScheduler | None = None,
        client: ProviderClient | None = None,
    ) -> None:
        self.config = config
        self.client = client or ProviderClient.from_config(config.provider, config.api_key)
        if adapters is None:
            self.registry = AdapterRegistry.from_config(config.models, self.client)
        elif isinstance(adapters, AdapterRegistry):
            self.registry = adapters
        else:
            adapters = list(adapters)
            base = config.base_weights
            self.registry = AdapterRegistry(
                adapters={adapter.model: adapter for adapter in adapters},
                cards={
                    adapter.model: {"kind": adapter.kind, "base_weight": base.get(adapter.model, DEFAULT_BASE_WEIGHT)}
                    for adapter in adapters
                },
            )
        self.store = store or ModerationStore(config.data_dir)
        self.scheduler = scheduler or ReviewScheduler.from_config(config.review)
        self.tracker = PerformanceTracker.from_config(config.consensus, self.registry.base_weights())
        self.engine = ConsensusEngine(self.tracker)
        self.thresholds = thresholds_for(config.policy.get("preset"), config.policy.get("thresholds"))
        self.max_concurrency = config.max_concurrency
        self.max_review_age_hours = float(config.review.get("max_age_hours", 24))
        state_path = config.consensus.get("state_path")
        self.state_path = Path(state_path).expanduser() if state_path else None
        if self.state_path is not None:
            self.tracker.load(self.state_path)

    async def _run_adapters(
        self,
        image_bytes: bytes,
        context: UploadContext,
    ) -> List[Tuple[ModelAdapter, ModelResult | BaseException]]:
        adapters = list(self.registry)
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _call(adapter: ModelAdapter) -> ModelResult:
            async with semaphore:
                return await asyncio.wait_for(
                    adapter.analyze(image_bytes, context),
                    timeout=adapter.deadline_seconds,
                )

        outcomes = await asyncio.gather(*[_call(adapter) for adapter in adapters], return_exceptions=True)
        return list(zip(adapters, outcomes))

    async def _persist_model_result(self, image_id: str, adapter: ModelAdapter, result: ModelResult) -> None:
        record = {
            "type": adapter.kind,
            "input_ref": image_id,
            "labels": [label.to_dict() for label in result.labels],
            "reasons": [],
            "provenance": {"model": result.model_name, "version": result.model_version},
            "raw_output": result.raw_output,
            "review_needed": False,
        }
        try:
            await asyncio.to_thread(self.store.persist_analysis_result, record)
        except PersistenceError:
            logger.warning("Failed to persist %s output for %s", adapter.model, image_id, exc_info=True)

    async def _flag_failure(self, image_id: str, failure: Dict[str, Any]) -> str:
        """Queue a HIGH review for a failed analysis and persist both under one review id."""
        item = self.scheduler.enqueue_human_review(
            image_id,
            priority="high",
            reasons=failure_reasons(failure),
            metadata={"top_label": "analysis_failed", "error": failure.get("error")},
        )
        try:
            return await asyncio.to_thread(self.store.flag_analysis_as_failed, image_id, failure, item.to_dict())
        except PersistenceError:
            self.scheduler.pop_review(item.review_id, action="discarded")
            raise

    async def _flag_model_failure(self, image_id: str, adapter: ModelAdapter, reason: str, message: str) -> None:
        failure = {
            "error": f"{adapter.kind}_{reason}",
            "details": message,
            "metadata": {"model": adapter.model},
        }
        try:
            await self._flag_failure(image_id, failure)
        except PersistenceError:
            logger.warning("Failed to flag %s failure for %s", adapter.model, image_id, exc_info=True)

    def _compute_consensus(self, image_id: str, results: List[ModelResult]) -> ConsensusResult:
        try:
            return self.engine.compute_consensus(results, analysis_id=image_id)
        except (ConsensusComputationError, ArithmeticError, ValueError) as exc:
            logger.warning("Consensus computation failed for %s: %s", image_id, exc)
            return neutral_consensus(["consensus_failure"])

    def _route_review(
        self,
        image_id: str,
        consensus: ConsensusResult,
        action: Any,
        review_needed: bool,
        extra_reasons: List[str],
    ) -> ReviewItem | None:
        if not (action.requires_human_review or review_needed):
            return None
        reasons = list(consensus.reasons) + list(action.reasons) + extra_reasons
        priority = review_priority_for(consensus.all_labels, reasons)
        if action.requires_human_review and PRIORITY_RANK[action.priority] > PRIORITY_RANK[priority]:
            priority = action.priority
        return self.scheduler.enqueue_human_review(
            image_id,
            priority=priority,
            reasons=reasons,
            metadata={"top_label": consensus.top_label, "action": action.action},
        )

    async def analyze_and_persist_image(
        self,
        image_id: str,
        image_bytes: bytes,
        context: UploadContext | Dict[str, Any] | None = None,
        preset: str | None = None,
    ) -> Dict[str, Any]:
        """Analyze one image with every configured model and persist the outcome.

        Expected failure modes are reported through ``success``. A persistence
        failure of the consensus record raises ``PersistenceError`` after the
        failure has been flagged where possible.
        """
        if isinstance(context, UploadContext):
            context = dataclasses.replace(context, metadata=dict(context.metadata))
        else:
            context = UploadContext.from_dict(context)
        if not context.size:
            context.size = len(image_bytes)
        logger.info("Starting analysis for image %s with %d models", image_id, len(self.registry))

        outcomes = await self._run_adapters(image_bytes, context)
        results: List[ModelResult] = []
        models: List[Dict[str, Any]] = []
        failures: List[Tuple[ModelAdapter, str, str]] = []
        succeeded: List[Tuple[ModelAdapter, ModelResult]] = []
        for adapter, outcome in outcomes:
            if isinstance(outcome, BaseException):
                reason = _failure_reason(outcome)
                message = str(outcome) or outcome.__class__.__name__
                logger.warning("%s failed for %s: %s", adapter.model, image_id, message)
                failures.append((adapter, reason, message))
                results.append(fallback_result(adapter.model, adapter.kind, reason))
                models.append({"model": adapter.model, "kind": adapter.kind, "ok": False, "error": reason})
                continue
            results.append(outcome)
            if outcome.failed:
                error = str(outcome.raw_output.get("error") or "fallback")
                failures.append((adapter, error, "lenient fallback result"))
                models.append({"model": adapter.model, "kind": adapter.kind, "ok": False, "error": error})
            else:
                succeeded.append((adapter, outcome))
                models.append({
                    "model": adapter.model,
                    "kind": adapter.kind,
                    "ok": True,
                    "latency_ms": outcome.latency_ms,
                })

        if not succeeded:
            details = "; ".join(f"{adapter.model}: {reason}" for adapter, reason, _ in failures) or "no models configured"
            await self._flag_failure(image_id, {"error": "all_models_failed", "details": details})
            logger.warning("All models failed for %s", image_id)
            return {
                "success": False,
                "image_id": image_id,
                "reason": "all_models_failed",
                "error": "All analysis models failed",
                "models": models,
            }

        for adapter, result in succeeded:
            await self._persist_model_result(image_id, adapter, result)
        for adapter, reason, message in failures:
            await self._flag_model_failure(image_id, adapter, reason, message)

        consensus = self._compute_consensus(image_id, results)
        review_needed = determine_review_need(consensus, len(succeeded))
        thresholds = thresholds_for(preset) if preset else self.thresholds
        action = determine_moderation_action(consensus, thresholds)
        extra_reasons = []
        if len(succeeded) < MIN_SUCCESSFUL_MODELS:
            extra_reasons.append(f"Only {len(succeeded)} of {len(outcomes)} models succeeded")
        review = self._route_review(image_id, consensus, action, review_needed, extra_reasons)

        record = {
            "type": "consensus",
            "input_ref": image_id,
            "labels": consensus.all_labels or [{"label": consensus.top_label, "score": consensus.score}],
            "reasons": list(consensus.reasons) + extra_reasons,
            "provenance": consensus.provenance,
            "raw_output": {
                "consensus": consensus.to_dict(),
                "action": action.to_dict(),
                "context": context.to_dict(),
            },
            "review_needed": review_needed or review is not None,
        }
        try:
            persisted_id = await asyncio.to_thread(
                self.store.persist_analysis_result, record, review.to_dict() if review is not None else None
            )
        except PersistenceError as exc:
            logger.error("Failed to persist consensus for %s: %s", image_id, exc)
            if review is not None:
                self.scheduler.pop_review(review.review_id, action="discarded")
            try:
                await self._flag_failure(image_id, {"error": "consensus_persist_failed", "details": str(exc)})
            except PersistenceError:
                logger.error("Failed to flag persistence failure for %s", image_id)
            raise

        logger.info(
            "Analysis completed for %s: %s (%.2f) -> %s, review=%s",
            image_id, consensus.top_label, consensus.score, action.action, review_needed,
        )
        return {
            "success": True,
            "image_id": image_id,
            "persisted_id": persisted_id,
            "consensus": consensus.to_dict(),
            "action": action.to_dict(),
            "review_needed": review_needed,
            "review": review.to_dict() if review is not None else None,
            "models": models,
        }

    def _archive_review(self, review_id: str, updates: Dict[str, Any], actor: str | None) -> None:
        try:
            self.store.update_review_item(review_id, updates, actor=actor)
        except PersistenceError:
            logger.warning("Failed to archive review %s", review_id, exc_info=True)

    def complete_review(
        self,
        review_id: str,
        action: str | None = None,
        notes: str | None = None,
        actor: str | None = None,
    ) -> bool:
        """Remove a review from the active queue and record the decision in the store."""
        item = self.scheduler.get(review_id)
        if item is None or not self.scheduler.pop_review(review_id, action=action, notes=notes):
            return False
        self._archive_review(review_id, {
            "status": COMPLETED,
            "review_decision": action,
            "review_notes": notes,
            "completed_at": utc_now().isoformat(),
        }, actor or item.assigned_to)
        return True

    def reassign_review(self, review_id: str, reviewer_id: str | None = None, actor: str | None = None) -> ReviewItem | None:
        if not self.scheduler.reassign_review(review_id, reviewer_id):
            return None
        item = self.scheduler.get(review_id)
        self._archive_review(review_id, {"assigned_to": item.assigned_to}, actor)
        return item

    def escalate_review(self, review_id: str, reason: str, actor: str | None = None) -> ReviewItem | None:
        if not self.scheduler.escalate_review(review_id, reason):
            return None
        item = self.scheduler.get(review_id)
        self._archive_review(review_id, {
            "priority": item.priority,
            "assigned_to": item.assigned_to,
            "reasons": list(item.reasons),
        }, actor)
        return item

    def cleanup_old_reviews(self, max_age_hours: float | None = None) -> int:
        hours = self.max_review_age_hours if max_age_hours is None else max_age_hours
        stale = self.scheduler.cleanup_old_reviews(hours)
        for item in stale:
            self._archive_review(item.review_id, {"status": EXPIRED}, None)
        return len(stale)

    def get_model_performance(self) -> List[Dict[str, Any]]:
        return [perf.to_dict() for perf in self.tracker.get_model_performance()]

    def get_current_weights(self) -> Dict[str, float]:
        return self.engine.current_weights()

    def provide_feedback(self, image_id: str, ground_truth: str, correct_action: str) -> bool:
        applied = self.tracker.provide_feedback(image_id, ground_truth, correct_action)
        if applied:
            self._save_state()
        return applied

    def reset_adaptive_learning(self) -> None:
        self.tracker.reset_learning()
        self._save_state()

    def _save_state(self) -> None:
        if self.state_path is None:
            return
        try:
            self.tracker.save(self.state_path)
        except OSError:
            logger.warning("Failed to save performance state to %s", self.state_path, exc_info=True)

    async def drain(self) -> None:
        """Wait until queued performance updates have been applied."""
        await self.engine.worker.drain()
        self._save_state()

    async def aclose(self) -> None:
        await self.engine.worker.stop()
        self._save_state()
        await self.client.aclose()
