import os
import sqlite3
import sys
import tempfile
import time
import unittest
from contextlib import ExitStack
from pathlib import Path
from unittest import mock

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from capture_source import ActiveWindowSnapshot, ScreenCaptureSource
from content_analyzer import ContentAnalyzer
from context_schema import CaptureEvent, Commitment, OCRResult, ScreenCapture
from context_store import ContextStore
from follow_up import FollowUpMatcher
from pipeline import PipelineListener, PipelineOrchestrator
from settings_store import DeepContextSettings

PROPOSAL_EMAIL = "To: jane@co.com\nSubject: Follow up\nI'll send you the proposal by Friday."


class _DeferredExecutor:
    def __init__(self):
        self.calls = []

    def submit(self, fn, *args):
        self.calls.append((fn, args))

    def shutdown(self, wait=True):
        pass

    def run_all(self):
        return [fn(*args) for fn, args in self.calls]


class _InlineExecutor:
    def submit(self, fn, *args):
        fn(*args)

    def shutdown(self, wait=True):
        pass


class PipelineTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.settings = DeepContextSettings(llm_enabled=False)
        self.store = ContextStore(":memory:")
        self.addCleanup(self.store.close)
        self.inspector = mock.Mock()
        self.inspector.snapshot.return_value = ActiveWindowSnapshot(app="Mail", title="New Message", window_id=3)
        self.source = ScreenCaptureSource(self.settings, inspector=self.inspector, temp_dir=self._tmp.name)
        self.extractor = mock.Mock()
        self.listener = mock.Mock(spec=PipelineListener)
        self.pipeline = PipelineOrchestrator(
            self.settings,
            store=self.store,
            capture_source=self.source,
            extractor=self.extractor,
            analyzer=ContentAnalyzer(self.settings),
            matcher=FollowUpMatcher(self.store),
        )
        self.pipeline.add_listener(self.listener)

    def _image(self, name: str = "capture_1.png") -> str:
        path = os.path.join(self._tmp.name, name)
        Path(path).write_bytes(b"png")
        return path

    def _capture(self, app: str = "Mail", title: str = "New Message", timestamp: int = None) -> ScreenCapture:
        return ScreenCapture(
            timestamp=timestamp or int(time.time() * 1000),
            app_name=app,
            window_title=title,
            image_hash="hash",
        )


class ProcessCaptureTests(PipelineTestCase):
    def test_mail_capture_flows_through_every_stage(self) -> None:
        image_path = self._image()
        self.extractor.extract.return_value = OCRResult(PROPOSAL_EMAIL, 0.9, [])

        capture_id = self.pipeline.process_capture(self._capture(), image_path)

        self.assertIsNotNone(capture_id)
        self.assertFalse(os.path.exists(image_path))
        self.assertEqual(self.store.count_captures(), 1)
        commitments = self.store.get_commitments()
        self.assertEqual(len(commitments), 1)
        self.assertEqual(commitments[0].type, "send_email")
        self.assertEqual(commitments[0].status, "pending")
        self.assertEqual(commitments[0].confidence, 0.7)
        self.assertEqual(commitments[0].source_capture_id, capture_id)
        self.assertTrue(self.store.has_email_activity_since(0))
        self.assertFalse(self.store.has_calendar_creation_since(0))

        status = self.pipeline.get_status()
        self.assertEqual(status.captures_processed, 1)
        self.assertEqual(status.commitments_detected, 1)
        self.listener.on_commitment_detected.assert_called_once()
        self.listener.on_context_updated.assert_called_once()
        capture, analysis = self.listener.on_context_updated.call_args.args
        self.assertEqual(capture.id, capture_id)
        self.assertEqual(analysis.email_context.to, ["jane@co.com"])

    def test_short_text_stops_before_analysis(self) -> None:
        image_path = self._image()
        self.extractor.extract.return_value = OCRResult("ok", 0.9, [])

        with mock.patch.object(self.pipeline.analyzer, "analyze") as analyze:
            self.assertIsNone(self.pipeline.process_capture(self._capture(), image_path))

        analyze.assert_not_called()
        self.assertFalse(os.path.exists(image_path))
        self.assertEqual(self.store.count_captures(), 0)

    def test_image_is_deleted_when_extraction_raises(self) -> None:
        image_path = self._image()
        self.extractor.extract.side_effect = RuntimeError("vision crashed")

        self.assertIsNone(self.pipeline.process_capture(self._capture(), image_path))

        self.assertFalse(os.path.exists(image_path))

    def test_missing_image_is_logged_not_raised(self) -> None:
        self.extractor.extract.side_effect = FileNotFoundError("gone.png")

        self.assertIsNone(self.pipeline.process_capture(self._capture(), "/nonexistent/gone.png"))
        self.assertEqual(self.store.count_captures(), 0)

    def test_store_failure_is_scoped_to_one_capture(self) -> None:
        self.extractor.extract.return_value = OCRResult(PROPOSAL_EMAIL, 0.9, [])

        with mock.patch.object(self.store, "insert_screen_capture", side_effect=sqlite3.OperationalError("locked")):
            self.assertIsNone(self.pipeline.process_capture(self._capture(), self._image("capture_a.png")))

        self.assertIsNotNone(self.pipeline.process_capture(self._capture(), self._image("capture_b.png")))
        self.assertEqual(self.store.count_captures(), 1)

    def test_commitment_tracking_can_be_disabled(self) -> None:
        self.pipeline.update_settings(commitment_tracking_enabled=False)
        self.extractor.extract.return_value = OCRResult(PROPOSAL_EMAIL, 0.9, [])

        self.pipeline.process_capture(self._capture(), self._image())

        self.assertEqual(self.store.get_commitments(), [])
        self.assertEqual(self.store.count_captures(), 1)

    def test_ocr_disabled_stores_capture_without_text(self) -> None:
        self.pipeline.update_settings(ocr_enabled=False)
        image_path = self._image()

        self.pipeline.process_capture(self._capture(), image_path)

        self.extractor.extract.assert_not_called()
        self.assertFalse(os.path.exists(image_path))
        self.assertEqual(self.store.count_captures(), 1)

    def test_calendar_creation_resolves_matching_commitment(self) -> None:
        commitment_id = self.store.insert_commitment(
            Commitment(
                text="I'll set up the team sync meeting",
                type="create_event",
                detected_at=int(time.time() * 1000) - 10 * 60 * 1000,
            )
        )
        self.extractor.extract.return_value = OCRResult("Event: Team Sync\n10:00 AM - 10:30 AM", 0.9, [])

        self.pipeline.process_capture(self._capture(app="Calendar", title="New Event"), self._image())

        self.assertEqual(self.store.get_commitment(commitment_id).status, "completed")
        self.assertEqual(len(self.store.get_completed_actions(commitment_id)), 1)
        self.assertEqual(self.pipeline.get_status().actions_completed, 1)
        self.listener.on_action_completed.assert_called_once()

    def test_late_results_after_stop_are_discarded(self) -> None:
        self.extractor.extract.return_value = OCRResult(PROPOSAL_EMAIL, 0.9, [])
        self.pipeline._discard_results = True

        self.assertIsNone(self.pipeline.process_capture(self._capture(), self._image()))
        self.assertEqual(self.store.count_captures(), 0)

    def test_failing_listener_does_not_block_others(self) -> None:
        class Exploding(PipelineListener):
            def on_context_updated(self, capture, analysis):
                raise RuntimeError("ui went away")

        second = mock.Mock(spec=PipelineListener)
        self.pipeline._listeners.insert(0, Exploding())
        self.pipeline.add_listener(second)
        self.extractor.extract.return_value = OCRResult(PROPOSAL_EMAIL, 0.9, [])

        self.assertIsNotNone(self.pipeline.process_capture(self._capture(), self._image()))
        second.on_context_updated.assert_called_once()


class CaptureEventTests(PipelineTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.pipeline._running = True
        self.pipeline._executor = _InlineExecutor()
        self.extractor.extract.return_value = OCRResult(PROPOSAL_EMAIL, 0.9, [])

    def _write_frame(self, payload: bytes):
        def _capture(destination, _snapshot):
            Path(destination).write_bytes(payload)
            return True

        return _capture

    def test_identical_frames_persist_one_row(self) -> None:
        with mock.patch.object(self.source, "_capture_to_file", side_effect=self._write_frame(b"same")):
            self.source.capture()
            time.sleep(0.002)
            self.source.capture()

        self.assertEqual(self.store.count_captures(), 1)
        self.assertEqual(self.extractor.extract.call_count, 1)
        self.assertEqual(os.listdir(self._tmp.name), [])

    def test_excluded_app_never_reaches_the_extractor(self) -> None:
        self.inspector.snapshot.return_value = ActiveWindowSnapshot(app="1Password", title="Vault", window_id=9)

        with mock.patch.object(self.source, "_capture_to_file", side_effect=self._write_frame(b"secret")):
            self.source.capture()

        self.extractor.extract.assert_not_called()
        self.assertEqual(self.store.count_captures(), 0)

    def test_capture_after_stop_only_cleans_up(self) -> None:
        self.pipeline._running = False

        with mock.patch.object(self.source, "_capture_to_file", side_effect=self._write_frame(b"frame")):
            self.source.capture()

        self.extractor.extract.assert_not_called()
        self.assertEqual(os.listdir(self._tmp.name), [])


class ReadApiTests(PipelineTestCase):
    def _insert(self, minutes_ago: int, **fields) -> int:
        values = {"text": "I'll book a room", "type": "create_event"}
        values.update(fields)
        return self.store.insert_commitment(
            Commitment(detected_at=int(time.time() * 1000) - minutes_ago * 60 * 1000, **values)
        )

    def test_complete_counts_only_real_transitions(self) -> None:
        commitment_id = self._insert(5)

        self.assertTrue(self.pipeline.complete_commitment(commitment_id))
        self.assertFalse(self.pipeline.complete_commitment(commitment_id))
        self.assertFalse(self.pipeline.dismiss_commitment(commitment_id))

        self.assertEqual(self.pipeline.actions_completed, 1)
        self.assertEqual(self.store.get_commitment(commitment_id).status, "completed")

    def test_dismiss_pending_commitment(self) -> None:
        commitment_id = self._insert(5)

        self.assertTrue(self.pipeline.dismiss_commitment(commitment_id))
        self.assertEqual(self.pipeline.get_commitments(status="dismissed")[0].id, commitment_id)
        self.assertEqual(self.pipeline.actions_completed, 0)

    def test_enriched_context_summary_sections(self) -> None:
        self._insert(45, text="I'll schedule the kickoff")
        self.extractor.extract.return_value = OCRResult(PROPOSAL_EMAIL, 0.9, [])
        self.pipeline.process_capture(self._capture(), self._image())
        self.extractor.extract.return_value = OCRResult("TODO: review invoices before Monday", 0.9, [])
        self.pipeline.process_capture(self._capture(app="Notes", title="Todo"), self._image("capture_2.png"))

        summary = self.pipeline.get_enriched_context_summary()

        self.assertIn("PENDING FOLLOW-UPS:", summary)
        self.assertIn('- Create the calendar event: "I\'ll schedule the kickoff" (medium urgency)', summary)
        self.assertIn("RECENT COMMITMENTS:", summary)
        self.assertIn("ACTION ITEMS:", summary)
        self.assertIn("- [MEDIUM] review invoices before Monday", summary)

    def test_empty_summary(self) -> None:
        self.assertEqual(self.pipeline.get_enriched_context_summary(), "")

    def test_deep_context_for_range(self) -> None:
        start = int(time.time() * 1000) - 1000
        self.extractor.extract.return_value = OCRResult(PROPOSAL_EMAIL, 0.9, [])
        self.pipeline.process_capture(self._capture(), self._image())

        context = self.pipeline.get_deep_context_for_range(start, start + 60 * 60 * 1000)

        self.assertEqual(context["semantic_category"], "composing_email")
        self.assertEqual(context["ocr_text"], PROPOSAL_EMAIL)
        self.assertEqual(context["commitments"][0]["type"], "send_email")
        self.assertIsNone(self.pipeline.get_deep_context_for_range(0, 1000))

    def test_status_includes_pending_follow_ups(self) -> None:
        self._insert(20)

        status = self.pipeline.get_status()

        self.assertFalse(status.is_running)
        self.assertEqual(status.pending_follow_ups, 1)
        self.assertFalse(status.settings["llm_enabled"])


class LifecycleTests(PipelineTestCase):
    def test_disabled_pipeline_does_not_start(self) -> None:
        self.pipeline.update_settings(enabled=False)

        with mock.patch.object(self.source, "start") as start:
            self.pipeline.start()

        start.assert_not_called()
        self.assertFalse(self.pipeline.is_running)

    def test_start_and_stop_drive_every_component(self) -> None:
        with mock.patch.object(self.source, "start") as source_start, mock.patch.object(
            self.source, "stop"
        ) as source_stop, mock.patch.object(self.pipeline.matcher, "start") as matcher_start, mock.patch.object(
            self.pipeline.matcher, "stop"
        ) as matcher_stop:
            self.pipeline.start()
            self.assertTrue(self.pipeline.is_running)
            self.pipeline.stop()

        source_start.assert_called_once()
        matcher_start.assert_called_once()
        source_stop.assert_called_once()
        matcher_stop.assert_called_once()
        self.assertFalse(self.pipeline.is_running)


    def _patched_components(self):
        stack = ExitStack()
        self.addCleanup(stack.close)
        stack.enter_context(mock.patch.object(self.source, "capture"))
        stack.enter_context(mock.patch.object(self.pipeline.matcher, "start"))
        stack.enter_context(mock.patch.object(self.pipeline.matcher, "stop"))
        return stack

    def test_interval_change_keeps_in_flight_capture(self) -> None:
        self._patched_components()
        self.extractor.extract.return_value = OCRResult(PROPOSAL_EMAIL, 0.9, [])
        self.pipeline.start()
        self.addCleanup(self.pipeline.stop)
        image_path = self._image()

        self.pipeline.update_settings(capture_interval_ms=60000)

        self.assertTrue(self.source.is_running())
        self.assertEqual(self.source.settings.capture_interval_ms, 60000)
        self.assertTrue(os.path.exists(image_path))
        self.assertIsNotNone(self.pipeline.process_capture(self._capture(), image_path))
        self.listener.on_context_updated.assert_called_once()

    def test_capture_from_previous_run_is_dropped_after_restart(self) -> None:
        self._patched_components()
        self.extractor.extract.return_value = OCRResult(PROPOSAL_EMAIL, 0.9, [])
        self.pipeline.start()
        deferred = _DeferredExecutor()
        self.pipeline._executor = deferred
        image_path = self._image()
        self.pipeline.handle_capture_event(
            CaptureEvent(kind="capture_complete", capture=self._capture(), image_path=image_path)
        )

        self.pipeline.stop()
        self.pipeline.start()
        self.addCleanup(self.pipeline.stop)

        self.assertEqual(deferred.run_all(), [None])
        self.assertEqual(self.store.count_captures(), 0)
        self.assertFalse(os.path.exists(image_path))
        self.listener.on_context_updated.assert_not_called()


if __name__ == "__main__":
    unittest.main()
