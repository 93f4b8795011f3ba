import sys
import unittest
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from context_schema import (
    ActionItem,
    CalendarContextObservation,
    Commitment,
    CompletedAction,
    EmailContextObservation,
    ScreenAnalysis,
    ScreenCapture,
)
from context_store import ContextStore


class ContextStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = ContextStore(":memory:")
        self.addCleanup(self.store.close)

    def _commitment(self, detected_at: int, **overrides) -> int:
        fields = {"text": "I'll send the deck", "type": "send_file", "detected_at": detected_at}
        fields.update(overrides)
        return self.store.insert_commitment(Commitment(**fields))

    def test_commitment_round_trip(self) -> None:
        commitment_id = self._commitment(1_000, recipient="Jane", deadline=5_000, context={"app": "Mail"})

        stored = self.store.get_commitment(commitment_id)

        self.assertEqual(stored.text, "I'll send the deck")
        self.assertEqual(stored.status, "pending")
        self.assertEqual(stored.recipient, "Jane")
        self.assertEqual(stored.deadline, 5_000)
        self.assertEqual(stored.context, {"app": "Mail"})
        self.assertFalse(stored.synced)

    def test_get_commitments_filters_and_orders_newest_first(self) -> None:
        older = self._commitment(1_000)
        newer = self._commitment(2_000)
        self.store.resolve_commitment(older, "dismissed")

        self.assertEqual([c.id for c in self.store.get_commitments()], [newer, older])
        self.assertEqual([c.id for c in self.store.get_commitments(status="pending")], [newer])
        self.assertEqual(len(self.store.get_commitments(limit=1)), 1)

    def test_resolved_commitments_never_return_to_pending(self) -> None:
        commitment_id = self._commitment(1_000)

        self.assertTrue(self.store.resolve_commitment(commitment_id, "completed", 3_000))
        self.assertFalse(self.store.resolve_commitment(commitment_id, "dismissed"))
        with self.assertRaises(ValueError):
            self.store.resolve_commitment(commitment_id, "pending")

        stored = self.store.get_commitment(commitment_id)
        self.assertEqual(stored.status, "completed")
        self.assertEqual(stored.completed_at, 3_000)

    def test_pending_since_respects_window_and_type(self) -> None:
        self._commitment(1_000, type="create_event")
        recent_event = self._commitment(5_000, type="create_event")
        self._commitment(6_000, type="send_email")

        event_ids = [c.id for c in self.store.get_pending_commitments_since(2_000, "create_event")]
        all_recent = self.store.get_pending_commitments_since(2_000)

        self.assertEqual(event_ids, [recent_event])
        self.assertEqual(len(all_recent), 2)

    def test_matching_evidence_queries(self) -> None:
        self.store.insert_calendar_context(
            CalendarContextObservation(timestamp=2_000, app_name="Calendar", action="creating", participants=["a"])
        )
        self.store.insert_email_context(EmailContextObservation(timestamp=3_000, app_name="Mail", action="reading"))
        self.store.insert_completed_action(
            CompletedAction(action_type="created_event", details={"eventTitle": "Sync"}, timestamp=4_000)
        )

        self.assertTrue(self.store.has_calendar_creation_since(1_999))
        self.assertFalse(self.store.has_calendar_creation_since(2_000))
        self.assertFalse(self.store.has_email_activity_since(0))
        self.assertTrue(self.store.has_completed_action_since(3_999))
        self.assertEqual(self.store.get_completed_actions()[0].details, {"eventTitle": "Sync"})

    def test_capture_rows_decode_analysis(self) -> None:
        analysis = ScreenAnalysis(timestamp=1_500, app="Code", activity="coding")
        self.store.insert_screen_capture(
            ScreenCapture(timestamp=1_500, app_name="Code", window_title="main.py", image_hash="abc",
                          text_content="def main(): pass", analysis=analysis)
        )
        self.store.insert_screen_capture(
            ScreenCapture(timestamp=9_000, app_name="Code", window_title="main.py", image_hash="def")
        )

        rows = self.store.get_captures_in_range(1_000, 2_000)

        self.assertEqual(self.store.count_captures(), 2)
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["analysis"]["appContext"]["activity"], "coding")

    def test_action_item_completion(self) -> None:
        item_id = self.store.insert_action_item(
            ActionItem(text="update docs", priority="medium", source="other", detected_at=1_000)
        )

        self.assertTrue(self.store.complete_action_item(item_id, 2_000))
        self.assertFalse(self.store.complete_action_item(item_id, 3_000))
        self.assertEqual(self.store.get_recent_action_items(5)[0].completed_at, 2_000)

    def test_synced_flag(self) -> None:
        first = self._commitment(1_000)
        second = self._commitment(2_000)

        self.store.mark_commitment_synced(first)

        self.assertEqual([c.id for c in self.store.get_unsynced_commitments()], [second])


if __name__ == "__main__":
    unittest.main()
