"""Tests for the moderation store and audit log."""
import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from verdict.audit import AuditLog
from verdict.store import ModerationStore, PersistenceError


def _record(**overrides):
    record = {
        "type": "consensus",
        "input_ref": "img-1",
        "labels": [{"label": "violence", "score": 0.7}],
        "reasons": ["Top detection"],
        "provenance": {"models": []},
        "raw_output": {"consensus": {}},
        "review_needed": False,
    }
    record.update(overrides)
    return record


class TestModerationStore(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.data_dir = Path(self._tmp.name)
        self.store = ModerationStore(self.data_dir)

    def tearDown(self):
        self._tmp.cleanup()

    def test_persist_without_review(self):
        record_id = self.store.persist_analysis_result(_record())
        history = self.store.get_analysis_history("img-1")
        self.assertEqual(history["analyses"][0]["id"], record_id)
        self.assertEqual(history["review_items"], [])
        events = [entry["event"] for entry in self.store.audit.entries()]
        self.assertEqual(events, ["analysis_completed"])

    def test_persist_with_review_creates_item(self):
        self.store.persist_analysis_result(_record(review_needed=True))
        items = self.store.get_pending_review_items()
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0]["priority"], "critical")
        self.assertEqual(items[0]["metadata"]["severity"], 0.56)
        events = [entry["event"] for entry in self.store.audit.entries()]
        self.assertEqual(events, ["review_item_created", "analysis_completed"])

    def test_persist_reuses_queued_review_item(self):
        queued = {
            "review_id": "rev-item-1",
            "priority": "high",
            "assigned_to": "rev-2",
            "reasons": ["violence detected"],
        }
        self.store.persist_analysis_result(_record(review_needed=True), queued)
        item = self.store.get_pending_review_items()[0]
        self.assertEqual(item["id"], "rev-item-1")
        self.assertEqual(item["assigned_to"], "rev-2")
        self.assertEqual(item["priority"], "high")
        self.assertEqual(item["reasons"], ["violence detected"])
        self.store.update_review_item("rev-item-1", {"status": "completed"}, actor="rev-2")
        self.assertEqual(self.store.get_pending_review_items(), [])

    def test_flag_failure_reuses_queued_review_item(self):
        queued = {"review_id": "fail-1", "priority": "high", "assigned_to": "rev-1"}
        self.store.flag_analysis_as_failed("img-3", {"error": "all_models_failed"}, queued)
        item = self.store.get_pending_review_items()[0]
        self.assertEqual((item["id"], item["assigned_to"]), ("fail-1", "rev-1"))
        self.assertEqual(item["reasons"], ["Analysis failed: all_models_failed"])

    def test_expire_stale_review_items(self):
        with patch("verdict.store._now", return_value="2020-01-01T00:00:00+00:00"):
            self.store.persist_analysis_result(_record(input_ref="old", review_needed=True))
        self.store.persist_analysis_result(_record(input_ref="new", review_needed=True))
        expired = self.store.expire_review_items(24, actor="cleanup")
        self.assertEqual(len(expired), 1)
        self.assertEqual([item["image_id"] for item in self.store.get_pending_review_items()], ["new"])
        self.assertEqual(self.store.get_analysis_history("old")["review_items"][0]["status"], "expired")

    def test_flag_failure_creates_high_priority_review(self):
        self.store.flag_analysis_as_failed("img-2", {"error": "all_models_failed", "details": "boom"})
        history = self.store.get_analysis_history("img-2")
        analysis = history["analyses"][0]
        self.assertEqual(analysis["labels"], [{"label": "analysis_failed", "score": 1.0}])
        self.assertEqual(analysis["reasons"], ["Analysis failed: all_models_failed", "boom"])
        self.assertTrue(analysis["review_needed"])
        self.assertEqual(history["review_items"][0]["priority"], "high")
        self.assertEqual(len(self.store.audit.entries("analysis_failed")), 1)

    def test_pending_items_sorted_and_paged(self):
        self.store.persist_analysis_result(_record(
            input_ref="a", labels=[{"label": "suggestive", "score": 0.3}], review_needed=True))
        self.store.persist_analysis_result(_record(
            input_ref="b", labels=[{"label": "child_exposed", "score": 0.9}], review_needed=True))
        self.store.persist_analysis_result(_record(
            input_ref="c", labels=[{"label": "suggestive", "score": 0.3}], review_needed=True))
        items = self.store.get_pending_review_items()
        self.assertEqual([item["image_id"] for item in items], ["b", "a", "c"])
        self.assertEqual(len(self.store.get_pending_review_items(priority="medium")), 2)
        page = self.store.get_pending_review_items(limit=1, offset=1)
        self.assertEqual([item["image_id"] for item in page], ["a"])

    def test_update_review_item_stamps_analysis(self):
        self.store.persist_analysis_result(_record(review_needed=True))
        review_id = self.store.get_pending_review_items()[0]["id"]
        updated = self.store.update_review_item(
            review_id,
            {"status": "completed", "review_decision": "remove", "review_notes": "graphic"},
            actor="alice",
        )
        self.assertEqual(updated["status"], "completed")
        self.assertEqual(self.store.get_pending_review_items(), [])
        analysis = self.store.get_analysis_history("img-1")["analyses"][0]
        self.assertEqual(analysis["reviewed_by"], "alice")
        self.assertEqual(analysis["review_decision"], "remove")
        entry = self.store.audit.entries("review_item_updated")[0]
        self.assertEqual(entry["actor"], "alice")

    def test_update_missing_review_raises(self):
        with self.assertRaises(PersistenceError):
            self.store.update_review_item("missing", {"status": "completed"})

    def test_missing_input_ref_raises(self):
        with self.assertRaises(PersistenceError):
            self.store.persist_analysis_result(_record(input_ref=""))

    def test_write_failure_raises_persistence_error(self):
        with patch.object(Path, "write_text", side_effect=OSError("disk full")):
            with self.assertRaises(PersistenceError):
                self.store.persist_analysis_result(_record())

    def test_audit_failure_does_not_abort_write(self):
        with patch.object(AuditLog, "log", side_effect=RuntimeError("audit down")):
            record_id = self.store.persist_analysis_result(_record())
        self.assertEqual(self.store.get_analysis_history("img-1")["analyses"][0]["id"], record_id)


class TestAuditLog(unittest.TestCase):
    def test_entries_default_actor(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            log = AuditLog(Path(tmpdir) / "logs" / "audit.jsonl")
            self.assertTrue(log.log("analysis_completed", {"input_ref": "img-1"}))
            entry = json.loads(log.path.read_text().splitlines()[0])
        self.assertEqual(entry["actor"], "system")
        self.assertEqual(entry["data"], {"input_ref": "img-1"})

    def test_unwritable_path_returns_false(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            blocker = Path(tmpdir) / "blocker"
            blocker.write_text("not a directory")
            log = AuditLog(blocker / "audit.jsonl")
            with self.assertLogs("verdict.audit", level="WARNING"):
                self.assertFalse(log.log("analysis_completed"))


if __name__ == "__main__":
    unittest.main()
