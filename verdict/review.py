"""In-process human review queue with specialty- and load-aware assignment."""
from __future__ import annotations

import logging
import re
import uuid
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from verdict.types import PRIORITY_RANK, ReviewItem, Reviewer, utc_now

logger = logging.getLogger(__name__)

CATEGORY_PATTERN = re.compile(r"(nudity|deepfake|violence|hate|sexual|explicit|weapon|blood|discrimination)")
PRIORITY_WEIGHT = {"critical": 5, "high": 3, "medium": 2, "low": 1}
ESCALATION = {"low": "medium", "medium": "high", "high": "critical", "critical": "critical"}

DEFAULT_REVIEWERS: List[Dict[str, Any]] = [
    {"id": "rev-1", "name": "Alice", "specialties": ["nudity", "deepfake"], "max_concurrent": 5},
    {"id": "rev-2", "name": "Bob", "specialties": ["violence", "hate"], "max_concurrent": 5},
    {"id": "rev-3", "name": "Carol", "specialties": ["nudity", "violence", "hate"], "max_concurrent": 3},
]


def detect_categories(reasons: Iterable[str]) -> List[str]:
    categories: List[str] = []
    for reason in reasons:
        for match in CATEGORY_PATTERN.findall(str(reason).lower()):
            if match not in categories:
                categories.append(match)
    return categories


def specialty_matches(reviewer: Reviewer, categories: List[str]) -> int:
    return sum(
        1 for category in categories
        if any(category in specialty.lower() for specialty in reviewer.specialties)
    )


class ReviewScheduler:
    """Owns the pending review items and the reviewer roster.

    Each item holds one load slot on its reviewer. When every reviewer is
    full the least-loaded one still receives the item, but it is tracked as
    overflow and does not take a slot, so ``current_load`` never exceeds
    ``max_concurrent``.
    """

    def __init__(self, reviewers: Iterable[Reviewer] | None = None) -> None:
        roster = list(reviewers) if reviewers is not None else [
            Reviewer(**dict(entry, specialties=list(entry["specialties"]))) for entry in DEFAULT_REVIEWERS
        ]
        self.reviewers: Dict[str, Reviewer] = {reviewer.id: reviewer for reviewer in roster}
        self.items: Dict[str, ReviewItem] = {}
        self._overflow: set[str] = set()

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ReviewScheduler":
        entries = config.get("reviewers") or DEFAULT_REVIEWERS
        reviewers = [
            Reviewer(
                id=str(entry["id"]),
                name=str(entry.get("name", entry["id"])),
                specialties=[str(item) for item in entry.get("specialties", [])],
                max_concurrent=int(entry.get("max_concurrent", 5)),
            )
            for entry in entries
        ]
        return cls(reviewers)

    def _pick_reviewer(self, priority: str, reasons: List[str]) -> Reviewer:
        if not self.reviewers:
            raise RuntimeError("no reviewers configured")
        categories = detect_categories(reasons)
        roster = list(self.reviewers.values())
        available = [reviewer for reviewer in roster if reviewer.has_capacity]
        if categories:
            candidates = [reviewer for reviewer in available if specialty_matches(reviewer, categories) > 0]
        else:
            candidates = available
        if not candidates:
            if available:
                return available[0]
            return min(roster, key=lambda reviewer: reviewer.current_load)

        weight = PRIORITY_WEIGHT.get(priority, 1)
        best: Optional[Reviewer] = None
        best_score = float("-inf")
        for reviewer in candidates:
            score = specialty_matches(reviewer, categories) * 10
            score += (reviewer.max_concurrent - reviewer.current_load) * 2
            score *= weight
            if score > best_score:
                best, best_score = reviewer, score
        return best

    def _acquire(self, review_id: str, reviewer: Reviewer) -> None:
        if reviewer.has_capacity:
            reviewer.current_load += 1
            self._overflow.discard(review_id)
        else:
            logger.warning("All reviewers at capacity, %s assigned to %s as overflow", review_id, reviewer.id)
            self._overflow.add(review_id)

    def _release(self, item: ReviewItem) -> None:
        if item.review_id in self._overflow:
            self._overflow.discard(item.review_id)
            return
        reviewer = self.reviewers.get(item.assigned_to)
        if reviewer is not None and reviewer.current_load > 0:
            reviewer.current_load -= 1

    def enqueue_human_review(
        self,
        image_id: str,
        priority: str = "medium",
        reasons: List[str] | None = None,
        metadata: Dict[str, Any] | None = None,
    ) -> ReviewItem:
        if priority not in PRIORITY_RANK:
            raise ValueError(f"unknown priority: {priority}")
        reasons = list(reasons or [])
        reviewer = self._pick_reviewer(priority, reasons)
        item = ReviewItem(
            review_id=str(uuid.uuid4()),
            image_id=image_id,
            priority=priority,
            assigned_to=reviewer.id,
            reasons=reasons,
            metadata=dict(metadata or {}),
        )
        self._acquire(item.review_id, reviewer)
        self.items[item.review_id] = item
        logger.info("Enqueued review %s for image %s, assigned to %s", item.review_id, image_id, reviewer.id)
        return item

    def get(self, review_id: str) -> ReviewItem | None:
        return self.items.get(review_id)

    def list_pending_reviews(
        self,
        priority: str | None = None,
        assigned_to: str | None = None,
        limit: int | None = None,
    ) -> List[ReviewItem]:
        items = list(self.items.values())
        if priority:
            items = [item for item in items if item.priority == priority]
        if assigned_to:
            items = [item for item in items if item.assigned_to == assigned_to]
        items.sort(key=lambda item: (-PRIORITY_RANK[item.priority], item.created_at))
        if limit:
            items = items[:limit]
        return items

    def pop_review(self, review_id: str, action: str | None = None, notes: str | None = None) -> bool:
        item = self.items.pop(review_id, None)
        if item is None:
            return False
        self._release(item)
        logger.info("Completed review %s with action %s", review_id, action or "unknown")
        return True

    def reassign_review(self, review_id: str, new_reviewer_id: str | None = None) -> bool:
        item = self.items.get(review_id)
        if item is None:
            return False
        if new_reviewer_id is not None and new_reviewer_id not in self.reviewers:
            raise ValueError(f"unknown reviewer: {new_reviewer_id}")
        previous = item.assigned_to
        self._release(item)
        if new_reviewer_id is not None:
            reviewer = self.reviewers[new_reviewer_id]
        else:
            reviewer = self._pick_reviewer(item.priority, item.reasons)
        item.assigned_to = reviewer.id
        self._acquire(item.review_id, reviewer)
        logger.info("Reassigned review %s from %s to %s", review_id, previous, reviewer.id)
        return True

    def escalate_review(self, review_id: str, reason: str) -> bool:
        item = self.items.get(review_id)
        if item is None:
            return False
        new_priority = ESCALATION[item.priority]
        item.reasons.append(f"Escalated: {reason}")
        if new_priority != item.priority:
            item.priority = new_priority
            self.reassign_review(review_id)
        logger.info("Escalated review %s to %s: %s", review_id, new_priority, reason)
        return True

    def cleanup_old_reviews(self, max_age_hours: float = 24) -> List[ReviewItem]:
        """Drop items older than the cutoff and release their load; returns the dropped items."""
        cutoff = utc_now() - timedelta(hours=max_age_hours)
        stale = [item for item in self.items.values() if item.created_at < cutoff]
        for item in stale:
            self.items.pop(item.review_id, None)
            self._release(item)
        if stale:
            logger.info("Cleaned up %d old reviews", len(stale))
        return stale

    def get_review_stats(self) -> Dict[str, Any]:
        by_priority: Dict[str, int] = {}
        for item in self.items.values():
            by_priority[item.priority] = by_priority.get(item.priority, 0) + 1
        now = utc_now()
        ages = [(now - item.created_at).total_seconds() for item in self.items.values()]
        average_age = sum(ages) / len(ages) if ages else 0.0
        return {
            "total": len(self.items),
            "by_priority": by_priority,
            "by_reviewer": [
                {
                    "reviewer_id": reviewer.id,
                    "reviewer_name": reviewer.name,
                    "current_load": reviewer.current_load,
                    "max_concurrent": reviewer.max_concurrent,
                    "utilization": round(reviewer.current_load / reviewer.max_concurrent * 100)
                    if reviewer.max_concurrent else 0,
                }
                for reviewer in self.reviewers.values()
            ],
            "overflow": len(self._overflow),
            "average_age_minutes": round(average_age / 60),
        }
