"""Tests for threshold mapping and sensitivity rules."""
import unittest

from verdict.policy import (
    POLICY_PRESETS,
    determine_moderation_action,
    handling_recommendation,
    requires_escalation,
    review_priority_for,
    severity_for,
    thresholds_for,
)
from verdict.types import ConsensusResult, ModelLabel


def _labels(**scores):
    return {"labels": [{"label": name, "score": score} for name, score in scores.items()]}


class TestDetermineModerationAction(unittest.TestCase):
    def test_child_with_sexual_content_escalates_regardless_of_thresholds(self):
        result = _labels(child_detected=0.6, sexual_suggestive=0.1)
        for preset in POLICY_PRESETS:
            action = determine_moderation_action(result, thresholds_for(preset))
            self.assertEqual(action.action, "escalate")
            self.assertEqual(action.priority, "critical")
            self.assertTrue(action.requires_human_review)
        lax = {"quarantine": 1.0, "review": 1.0, "allow": 1.0}
        self.assertEqual(determine_moderation_action(result, lax).action, "escalate")

    def test_rule_order(self):
        action = determine_moderation_action(_labels(deepfake_suspected=0.7, child_exposed=0.9))
        self.assertEqual((action.action, action.priority), ("review", "high"))
        action = determine_moderation_action(_labels(child_exposed=0.5))
        self.assertEqual((action.action, action.priority), ("quarantine", "critical"))
        action = determine_moderation_action(_labels(sexual_nudity=0.85))
        self.assertEqual((action.action, action.priority), ("quarantine", "high"))

    def test_numeric_thresholds(self):
        action = determine_moderation_action(_labels(violence=0.95))
        self.assertEqual((action.action, action.priority), ("quarantine", "high"))
        self.assertIn("exceeds quarantine threshold", action.reasons[0])
        action = determine_moderation_action(_labels(violence=0.8))
        self.assertEqual((action.action, action.priority), ("review", "medium"))
        action = determine_moderation_action(_labels(violence=0.6))
        self.assertEqual((action.action, action.priority, action.requires_human_review), ("allow", "low", False))
        self.assertIn("within allow threshold", action.reasons[0])
        action = determine_moderation_action(_labels(violence=0.2))
        self.assertIn("below allow threshold", action.reasons[0])

    def test_strict_preset_lowers_thresholds(self):
        action = determine_moderation_action(_labels(violence=0.8), thresholds_for("strict"))
        self.assertEqual(action.action, "quarantine")
        action = determine_moderation_action(_labels(violence=0.8), thresholds_for("lenient"))
        self.assertEqual(action.action, "allow")

    def test_near_threshold_sensitive_label_forces_review(self):
        action = determine_moderation_action(_labels(sexual_nudity=0.45))
        self.assertEqual((action.action, action.priority), ("review", "medium"))
        self.assertTrue(action.requires_human_review)
        self.assertEqual(len(action.reasons), 2)

    def test_idempotent(self):
        result = _labels(violence=0.77, deepfake_suspected=0.41)
        first = determine_moderation_action(result)
        second = determine_moderation_action(result)
        self.assertEqual(first, second)

    def test_empty_labels_allow(self):
        action = determine_moderation_action({"labels": []})
        self.assertEqual(action.action, "allow")
        self.assertEqual(action.confidence, 0.0)

    def test_accepts_consensus_and_model_labels(self):
        consensus = ConsensusResult(
            top_label="violence", score=0.5, spread=0.0,
            all_labels=[{"label": "violence", "score": 0.92}],
            provenance={}, recommended_action="monitor", reasons=[],
        )
        self.assertEqual(determine_moderation_action(consensus).action, "quarantine")
        labels = [ModelLabel(label="violence", score=0.8)]
        self.assertEqual(determine_moderation_action(labels).action, "review")


class TestPolicyHelpers(unittest.TestCase):
    def test_requires_escalation(self):
        self.assertTrue(requires_escalation(_labels(child_detected=0.7, sexual_nudity=0.2)))
        self.assertFalse(requires_escalation(_labels(child_exposed=0.9)))

    def test_handling_recommendation_timelines(self):
        rec = handling_recommendation(_labels(child_exposed=0.9))
        self.assertEqual(rec["timeline"], "immediate")
        self.assertEqual(rec["handling_steps"][-1], "Human review required before final decision")
        rec = handling_recommendation(_labels(violence=0.8))
        self.assertEqual(rec["timeline"], "within_day")
        rec = handling_recommendation(_labels(violence=0.1))
        self.assertEqual(rec["timeline"], "standard")
        self.assertEqual(len(rec["handling_steps"]), 3)

    def test_thresholds_for(self):
        self.assertEqual(thresholds_for("strict"), {"quarantine": 0.75, "review": 0.60, "allow": 0.40})
        self.assertEqual(thresholds_for(None)["quarantine"], 0.90)
        self.assertEqual(thresholds_for("standard", {"review": 0.7})["review"], 0.7)
        with self.assertRaises(ValueError):
            thresholds_for("chaotic")

    def test_review_priority(self):
        self.assertEqual(review_priority_for(_labels(violence=0.6)), "critical")
        self.assertEqual(review_priority_for(_labels(hate_symbols=0.85)), "high")
        self.assertEqual(review_priority_for(_labels(suggestive=0.3), ["Analysis failed: x"]), "high")
        self.assertEqual(review_priority_for(_labels(suggestive=0.3)), "medium")

    def test_severity(self):
        self.assertEqual(severity_for(_labels(child_exposed=0.5, suggestive=0.9)), 0.54)
        self.assertEqual(severity_for(_labels(unknown_label=1.0)), 0.3)
        self.assertEqual(severity_for({"labels": []}), 0.0)


if __name__ == "__main__":
    unittest.main()
