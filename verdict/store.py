"""File-backed persistence for analysis records and review items."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List
import json
import logging
import uuid
try:
    import fcntl  # type: ignore
except Exception:  # pragma: no cover - non-POSIX environments
    fcntl = None

from verdict.audit import AuditLog
from verdict.policy import review_priority_for, severity_for
from verdict.types import PRIORITY_RANK, utc_now

logger = logging.getLogger(__name__)

PENDING = "pending"
COMPLETED = "completed"
EXPIRED = "expired"
ANALYSIS_TYPES = ("vision", "reasoning", "text", "consensus")


class PersistenceError(Exception):
    """Raised when a primary record cannot be written or read."""
    pass


def _now() -> str:
    return utc_now().isoformat()


def failure_reasons(failure: Dict[str, Any]) -> List[str]:
    error = str(failure.get("error") or "unknown_error")
    details = failure.get("details")
    return [f"Analysis failed: {error}"] + ([str(details)] if details else [])


@dataclass
class ModerationStore:
    data_dir: Path
    audit: AuditLog | None = field(default=None)

    def __post_init__(self) -> None:
        self.data_dir = Path(self.data_dir)
        if self.audit is None:
            self.audit = AuditLog(self.data_dir / "audit.jsonl")

    def _analyses_dir(self) -> Path:
        return self.data_dir / "analyses"

    def _reviews_dir(self) -> Path:
        return self.data_dir / "reviews"

    def _write(self, path: Path, payload: Dict[str, Any]) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(payload, indent=2, default=str))
        except (OSError, TypeError, ValueError) as exc:
            logger.error("Failed to write %s: %s", path, exc)
            raise PersistenceError(f"failed to write {path.name}: {exc}") from exc

    def _read_all(self, directory: Path) -> List[Dict[str, Any]]:
        if not directory.exists():
            return []
        records = []
        try:
            paths = sorted(directory.glob("*.json"))
        except OSError as exc:
            raise PersistenceError(f"failed to list {directory}: {exc}") from exc
        for path in paths:
            try:
                records.append(json.loads(path.read_text()))
            except (OSError, ValueError):
                logger.warning("Skipping unreadable record %s", path)
        return records

    def _locked_update(self, path: Path, updater: Callable[[Dict[str, Any]], Dict[str, Any]]) -> Dict[str, Any] | None:
        if not path.exists():
            return None
        try:
            if fcntl is None:
                record = json.loads(path.read_text())
                updated = updater(record)
                path.write_text(json.dumps(updated, indent=2, default=str))
                return updated
            with path.open("r+", encoding="utf-8") as handle:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                try:
                    handle.seek(0)
                    data = handle.read()
                    if not data.strip():
                        return None
                    updated = updater(json.loads(data))
                    handle.seek(0)
                    handle.truncate()
                    handle.write(json.dumps(updated, indent=2, default=str))
                    return updated
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        except (OSError, ValueError) as exc:
            logger.error("Failed to update %s: %s", path, exc)
            raise PersistenceError(f"failed to update {path.name}: {exc}") from exc

    def _audit(self, event: str, data: Dict[str, Any], actor: str | None = None) -> None:
        try:
            self.audit.log(event, data, actor=actor)
        except Exception:
            logger.warning("Audit log failed for %s", event, exc_info=True)

    def _create_analysis(self, record: Dict[str, Any]) -> Dict[str, Any]:
        analysis = {
            "id": uuid.uuid4().hex,
            "input_ref": str(record["input_ref"]),
            "type": record.get("type", "consensus"),
            "labels": list(record.get("labels") or []),
            "reasons": list(record.get("reasons") or []),
            "provenance": record.get("provenance") or {},
            "raw_output": record.get("raw_output"),
            "review_needed": bool(record.get("review_needed", False)),
            "created_at": _now(),
        }
        self._write(self._analyses_dir() / f"{analysis['id']}.json", analysis)
        return analysis

    def _create_review_item(
        self,
        image_id: str,
        labels: List[Dict[str, Any]],
        reasons: List[str],
        review_item: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        """Persist a review item, reusing the scheduler's id and assignment when given."""
        queued = review_item or {}
        reasons = list(queued.get("reasons") or reasons)
        priority = queued.get("priority") or review_priority_for(labels, reasons)
        item = {
            "id": queued.get("review_id") or uuid.uuid4().hex,
            "image_id": image_id,
            "priority": priority,
            "status": PENDING,
            "assigned_to": queued.get("assigned_to"),
            "reasons": reasons,
            "metadata": {
                "labels": labels,
                "severity": severity_for(labels),
                "triggered_at": _now(),
            },
            "created_at": _now(),
        }
        self._write(self._reviews_dir() / f"{item['id']}.json", item)
        self._audit("review_item_created", {
            "image_id": image_id,
            "review_item_id": item["id"],
            "priority": priority,
            "reasons": reasons,
        })
        return item

    def persist_analysis_result(self, record: Dict[str, Any], review_item: Dict[str, Any] | None = None) -> str:
        """Store one analysis; a review item is created when ``review_needed`` is set.

        ``review_item`` is the scheduler's copy of the item (``ReviewItem.to_dict()``),
        so both queues share one id.
        """
        if not record.get("input_ref"):
            raise PersistenceError("analysis record requires input_ref")
        analysis = self._create_analysis(record)
        if analysis["review_needed"]:
            self._create_review_item(analysis["input_ref"], analysis["labels"], analysis["reasons"], review_item)
        self._audit("analysis_completed", {
            "input_ref": analysis["input_ref"],
            "type": analysis["type"],
            "review_needed": analysis["review_needed"],
            "analysis_id": analysis["id"],
        })
        return analysis["id"]

    def flag_analysis_as_failed(
        self,
        input_ref: str,
        failure: Dict[str, Any],
        review_item: Dict[str, Any] | None = None,
    ) -> str:
        reasons = failure_reasons(failure)
        error = str(failure.get("error") or "unknown_error")
        details = failure.get("details")
        labels = [{"label": "analysis_failed", "score": 1.0}]
        analysis = self._create_analysis({
            "input_ref": input_ref,
            "type": "consensus",
            "labels": labels,
            "reasons": reasons,
            "provenance": {"model": "system", "version": "1.0"},
            "raw_output": {
                "error": error,
                "details": details,
                "metadata": failure.get("metadata"),
                "timestamp": _now(),
            },
            "review_needed": True,
        })
        self._create_review_item(input_ref, labels, reasons, review_item)
        self._audit("analysis_failed", {
            "input_ref": input_ref,
            "error": error,
            "details": details,
            "metadata": failure.get("metadata"),
            "analysis_id": analysis["id"],
        })
        return analysis["id"]

    def get_pending_review_items(
        self,
        priority: str | None = None,
        assigned_to: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        items = [item for item in self._read_all(self._reviews_dir()) if item.get("status") == PENDING]
        if priority:
            items = [item for item in items if item.get("priority") == priority]
        if assigned_to:
            items = [item for item in items if item.get("assigned_to") == assigned_to]
        items.sort(key=lambda item: (-PRIORITY_RANK.get(item.get("priority"), 0), item.get("created_at", "")))
        return items[offset:offset + limit]

    def update_review_item(self, review_id: str, updates: Dict[str, Any], actor: str | None = None) -> Dict[str, Any]:
        allowed = {"status", "assigned_to", "priority", "reasons", "review_decision", "review_notes", "completed_at"}

        def _update(item: Dict[str, Any]) -> Dict[str, Any]:
            for key, value in updates.items():
                if key in allowed:
                    item[key] = value
            item["updated_at"] = _now()
            return item

        updated = self._locked_update(self._reviews_dir() / f"{review_id}.json", _update)
        if updated is None:
            raise PersistenceError(f"review item not found: {review_id}")

        if updates.get("review_decision"):
            latest = self._latest_analysis(updated["image_id"])
            if latest is not None:
                def _stamp(analysis: Dict[str, Any]) -> Dict[str, Any]:
                    analysis["reviewed_at"] = _now()
                    analysis["reviewed_by"] = actor
                    analysis["review_decision"] = updates["review_decision"]
                    analysis["review_notes"] = updates.get("review_notes")
                    return analysis
                self._locked_update(self._analyses_dir() / f"{latest['id']}.json", _stamp)

        self._audit("review_item_updated", {"review_id": review_id, "updates": updates}, actor=actor)
        return updated

    def expire_review_items(self, max_age_hours: float, actor: str | None = None) -> List[str]:
        """Mark pending review items older than ``max_age_hours`` as expired."""
        cutoff = (utc_now() - timedelta(hours=max_age_hours)).isoformat()
        stale = [
            item for item in self._read_all(self._reviews_dir())
            if item.get("status") == PENDING and item.get("created_at", "") < cutoff
        ]
        for item in stale:
            self.update_review_item(item["id"], {"status": EXPIRED}, actor=actor)
        if stale:
            logger.info("Expired %d stale review items", len(stale))
        return [item["id"] for item in stale]

    def _analyses_for(self, input_ref: str) -> List[Dict[str, Any]]:
        analyses = [item for item in self._read_all(self._analyses_dir()) if item.get("input_ref") == input_ref]
        analyses.sort(key=lambda item: item.get("created_at", ""), reverse=True)
        return analyses

    def _latest_analysis(self, input_ref: str) -> Dict[str, Any] | None:
        analyses = self._analyses_for(input_ref)
        return analyses[0] if analyses else None

    def get_analysis_history(self, input_ref: str) -> Dict[str, List[Dict[str, Any]]]:
        review_items = [item for item in self._read_all(self._reviews_dir()) if item.get("image_id") == input_ref]
        review_items.sort(key=lambda item: item.get("created_at", ""), reverse=True)
        return {"analyses": self._analyses_for(input_ref), "review_items": review_items}
