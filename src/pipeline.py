import logging
import sqlite3
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from capture_source import ScreenCaptureSource
from constants import MAX_BATCH_SIZE, MIN_TEXT_LENGTH
from content_analyzer import ContentAnalyzer
from context_schema import (
    ActionItem,
    CalendarContextObservation,
    CaptureEvent,
    Commitment,
    EmailContextObservation,
    PendingFollowUp,
    PipelineStatus,
    ScreenAnalysis,
    ScreenCapture,
    clamp_confidence,
)
from context_store import ContextStore
from follow_up import FollowUpMatcher, parse_deadline
from settings_store import DeepContextSettings, load_settings
from text_extractor import TextExtractor

logger = logging.getLogger(__name__)

RANGE_TEXT_LIMIT = 500
RANGE_COMMITMENT_LIMIT = 10


class PipelineListener:
    """Override the hooks you care about; every hook defaults to a no-op."""

    def on_commitment_detected(self, commitment: Commitment) -> None:
        pass

    def on_action_completed(self, details: Dict[str, Any]) -> None:
        pass

    def on_follow_up_needed(self, follow_ups: List[PendingFollowUp]) -> None:
        pass

    def on_context_updated(self, capture: ScreenCapture, analysis: Optional[ScreenAnalysis]) -> None:
        pass


def _now_ms() -> int:
    return int(time.time() * 1000)


class PipelineOrchestrator:
    """
    Runs each capture through extract -> analyze -> persist and owns the
    counters and read API the rest of the application uses.

    Stages for one capture are strictly sequential. Captures themselves are
    processed on a small worker pool so a slow analysis never delays the next
    screenshot. Failures stay scoped to the capture that hit them.
    """

    def __init__(
        self,
        settings: Optional[DeepContextSettings] = None,
        *,
        store: Optional[ContextStore] = None,
        capture_source: Optional[ScreenCaptureSource] = None,
        extractor: Optional[TextExtractor] = None,
        analyzer: Optional[ContentAnalyzer] = None,
        matcher: Optional[FollowUpMatcher] = None,
        db_path: Optional[str] = None,
        max_workers: int = MAX_BATCH_SIZE,
    ) -> None:
        self.settings = settings or load_settings()
        self.store = store or ContextStore(db_path)
        self.extractor = extractor or TextExtractor()
        self.analyzer = analyzer or ContentAnalyzer(self.settings)
        self.capture_source = capture_source or ScreenCaptureSource(self.settings)
        self.capture_source.on_event = self.handle_capture_event
        self.matcher = matcher or FollowUpMatcher(self.store)
        self.matcher.on_follow_up = self._emit_follow_ups
        self.matcher.on_action_completed = self._record_action_completed

        self.max_workers = max(1, max_workers)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._listeners: List[PipelineListener] = []
        self._lock = threading.Lock()
        self._running = False
        self._discard_results = False
        self._generation = 0

        self.captures_processed = 0
        self.commitments_detected = 0
        self.actions_completed = 0
        self.last_capture_time: Optional[int] = None

    # Lifecycle ------------------------------------------------------------

    def start(self) -> None:
        if self._running:
            logger.warning("Pipeline already running.")
            return
        if not self.settings.enabled:
            logger.info("Deep context disabled in settings; pipeline not started.")
            return
        self._running = True
        self._discard_results = False
        self._generation += 1
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="CaptureWorker")
        self.analyzer.start()
        self.capture_source.start()
        self.matcher.start()
        logger.info("Deep context pipeline started.")

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._discard_results = True
        self.capture_source.stop()
        self.matcher.stop()
        self.analyzer.stop()
        if self._executor:
            self._executor.shutdown(wait=False)
            self._executor = None
        logger.info("Deep context pipeline stopped.")

    @property
    def is_running(self) -> bool:
        return self._running

    def update_settings(self, **changes: Any) -> DeepContextSettings:
        new_settings = self.settings.merged(changes)
        self.settings = new_settings
        self.analyzer.update_settings(new_settings)
        self.capture_source.update_settings(new_settings)
        if self._running and not new_settings.enabled:
            self.stop()
        return new_settings

    # Listeners ------------------------------------------------------------

    def add_listener(self, listener: PipelineListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: PipelineListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, hook: str, *args: Any) -> None:
        for listener in list(self._listeners):
            try:
                getattr(listener, hook)(*args)
            except Exception as exc:
                logger.exception("Listener %s.%s failed: %s", type(listener).__name__, hook, exc)

    def _emit_follow_ups(self, follow_ups: List[PendingFollowUp]) -> None:
        self._notify("on_follow_up_needed", follow_ups)

    def _record_action_completed(self, details: Dict[str, Any]) -> None:
        with self._lock:
            self.actions_completed += 1
        self._notify("on_action_completed", details)

    # Capture processing ---------------------------------------------------

    def handle_capture_event(self, event: CaptureEvent) -> None:
        if event.kind != "capture_complete" or event.capture is None:
            logger.debug("%s: %s", event.kind, event.reason)
            return
        if not self._running or self._executor is None:
            self.capture_source.cleanup_capture(event.image_path or "")
            return
        self._executor.submit(self.process_capture, event.capture, event.image_path, self._generation)

    def process_capture(
        self, capture: ScreenCapture, image_path: Optional[str], generation: Optional[int] = None
    ) -> Optional[int]:
        """Run one capture through every stage; returns the stored capture id, if any.

        `generation` is the run the capture was submitted in; results from an
        earlier run are dropped even if the pipeline has been started again.
        """
        try:
            return self._process_capture(capture, image_path, generation)
        except sqlite3.Error as exc:
            logger.exception("Persistence failed for capture at %s: %s", capture.timestamp, exc)
        except Exception as exc:
            logger.exception("Capture processing failed: %s", exc)
        finally:
            if image_path:
                self.capture_source.cleanup_capture(image_path)
        return None

    def _process_capture(
        self, capture: ScreenCapture, image_path: Optional[str], generation: Optional[int]
    ) -> Optional[int]:
        self.last_capture_time = capture.timestamp
        settings = self.settings

        text: Optional[str] = None
        if settings.ocr_enabled and image_path:
            try:
                text = self.extractor.extract(image_path).text
            except FileNotFoundError:
                logger.warning("Capture image missing: %s", image_path)
            finally:
                self.capture_source.cleanup_capture(image_path)
            if not text or len(text.strip()) < MIN_TEXT_LENGTH:
                logger.debug("Not enough text in %s capture; skipping.", capture.app_name)
                return None

        analysis: Optional[ScreenAnalysis] = None
        if settings.semantic_analysis_enabled and text:
            analysis = self.analyzer.analyze(text, capture.app_name, capture.window_title)

        if self._discard_results or (generation is not None and generation != self._generation):
            logger.debug("Pipeline stopped; discarding late capture result.")
            return None

        capture.text_content = text
        capture.analysis = analysis
        capture_id = self.store.insert_screen_capture(capture)
        capture.id = capture_id
        with self._lock:
            self.captures_processed += 1

        if analysis is not None:
            if settings.commitment_tracking_enabled:
                self._store_commitments(capture, analysis)
            self._store_action_items(capture, analysis)
            self._track_email_context(capture, analysis)
            self._track_calendar_context(capture, analysis)

        self._notify("on_context_updated", capture, analysis)
        return capture_id

    def _store_commitments(self, capture: ScreenCapture, analysis: ScreenAnalysis) -> None:
        for detected in analysis.commitments:
            commitment = Commitment(
                text=detected.text,
                type=detected.type,
                recipient=detected.recipient,
                deadline=parse_deadline(detected.deadline) if detected.deadline else None,
                detected_at=capture.timestamp,
                status="pending",
                source_capture_id=capture.id,
                context={"app": capture.app_name, "windowTitle": capture.window_title},
                confidence=clamp_confidence(detected.confidence),
                synced=False,
            )
            commitment.id = self.store.insert_commitment(commitment)
            with self._lock:
                self.commitments_detected += 1
            logger.info("Commitment detected (%s): %s", commitment.type, commitment.text[:60])
            self._notify("on_commitment_detected", commitment)

    def _store_action_items(self, capture: ScreenCapture, analysis: ScreenAnalysis) -> None:
        for detected in analysis.action_items:
            self.store.insert_action_item(
                ActionItem(
                    text=detected.text,
                    priority=detected.priority,
                    source=detected.source,
                    detected_at=capture.timestamp,
                    status="pending",
                    source_capture_id=capture.id,
                )
            )

    def _track_email_context(self, capture: ScreenCapture, analysis: ScreenAnalysis) -> None:
        email = analysis.email_context
        if email is None:
            return
        self.store.insert_email_context(
            EmailContextObservation(
                timestamp=_now_ms(),
                app_name=capture.app_name,
                action="composing" if email.composing else "reading",
                recipient=", ".join(email.to) or None,
                subject=email.subject or None,
                body_preview=email.body_preview or None,
                has_attachment=bool(email.attachments),
                source_capture_id=capture.id,
            )
        )

    def _track_calendar_context(self, capture: ScreenCapture, analysis: ScreenAnalysis) -> None:
        calendar = analysis.calendar_context
        if calendar is None or not calendar.creating:
            return
        self.store.insert_calendar_context(
            CalendarContextObservation(
                timestamp=_now_ms(),
                app_name=capture.app_name,
                action="creating",
                event_title=calendar.event_title,
                event_time=calendar.event_time,
                participants=list(calendar.participants),
                source_capture_id=capture.id,
            )
        )
        if calendar.event_title:
            self.matcher.match_calendar_event(calendar.event_title)

    # Read API -------------------------------------------------------------

    def get_status(self) -> PipelineStatus:
        return PipelineStatus(
            is_running=self._running,
            captures_processed=self.captures_processed,
            commitments_detected=self.commitments_detected,
            actions_completed=self.actions_completed,
            pending_follow_ups=len(self.get_pending_follow_ups()),
            last_capture_time=self.last_capture_time,
            settings=self.settings.to_dict(),
        )

    def get_commitments(self, status: Optional[str] = None, limit: int = 20) -> List[Commitment]:
        return self.store.get_commitments(status=status, limit=limit)

    def get_recent_commitments(self, limit: int = 10) -> List[Commitment]:
        return self.store.get_commitments(limit=limit)

    def get_recent_action_items(self, limit: int = 10) -> List[ActionItem]:
        return self.store.get_recent_action_items(limit)

    def get_pending_follow_ups(self) -> List[PendingFollowUp]:
        return self.matcher.get_pending_follow_ups()

    def get_enriched_context_summary(self) -> str:
        """Plain-text digest of open follow-ups, commitments and action items for the chat assistant."""
        now_ms = _now_ms()
        follow_ups = self.get_pending_follow_ups()
        commitments = [c for c in self.get_recent_commitments(5) if c.status == "pending"]
        action_items = [a for a in self.get_recent_action_items(5) if a.status == "pending"]

        lines: List[str] = []
        if follow_ups:
            lines.append("PENDING FOLLOW-UPS:")
            for follow_up in follow_ups[:3]:
                lines.append(
                    f'- {follow_up.suggested_action}: "{follow_up.commitment.text}" ({follow_up.urgency} urgency)'
                )
            lines.append("")
        if commitments:
            lines.append("RECENT COMMITMENTS:")
            for commitment in commitments[:3]:
                age = int(round((now_ms - commitment.detected_at) / 60000))
                lines.append(f'- "{commitment.text}" ({age} min ago, {commitment.status})')
            lines.append("")
        if action_items:
            lines.append("ACTION ITEMS:")
            for item in action_items[:3]:
                lines.append(f"- [{item.priority.upper()}] {item.text}")
        return "\n".join(lines)

    def complete_commitment(self, commitment_id: int) -> bool:
        changed = self.store.resolve_commitment(commitment_id, "completed", _now_ms())
        if changed:
            with self._lock:
                self.actions_completed += 1
        return changed

    def dismiss_commitment(self, commitment_id: int) -> bool:
        return self.store.resolve_commitment(commitment_id, "dismissed")

    def complete_action_item(self, item_id: int) -> bool:
        return self.store.complete_action_item(item_id, _now_ms())

    def get_deep_context_for_range(self, start_ms: int, end_ms: int) -> Optional[Dict[str, Any]]:
        captures = self.store.get_captures_in_range(start_ms, end_ms)
        if not captures:
            return None

        all_text = " ".join(
            row["text_content"] for row in captures
            if row["text_content"] and len(row["text_content"]) > MIN_TEXT_LENGTH
        )
        ocr_text = all_text[:RANGE_TEXT_LIMIT] + "..." if len(all_text) > RANGE_TEXT_LIMIT else all_text

        categories: Counter = Counter()
        for row in captures:
            analysis = row["analysis"] or {}
            activity = (analysis.get("appContext") or {}).get("activity")
            if activity:
                categories[activity] += 1
        semantic_category = categories.most_common(1)[0][0] if categories else None

        commitments = [
            {
                "text": c.text,
                "type": c.type,
                "recipient": c.recipient,
                "deadline": c.deadline,
                "confidence": c.confidence,
            }
            for c in self.store.get_commitments_in_range(start_ms, end_ms)[:RANGE_COMMITMENT_LIMIT]
        ]
        return {
            "ocr_text": ocr_text,
            "semantic_category": semantic_category,
            "commitments": commitments,
        }

    def get_current_hour_deep_context(self) -> Optional[Dict[str, Any]]:
        now = datetime.now()
        hour_start = now.replace(minute=0, second=0, microsecond=0)
        return self.get_deep_context_for_range(int(hour_start.timestamp() * 1000), int(now.timestamp() * 1000))

    def get_last_hour_deep_context(self) -> Optional[Dict[str, Any]]:
        hour_start = datetime.now().replace(minute=0, second=0, microsecond=0) - timedelta(hours=1)
        start_ms = int(hour_start.timestamp() * 1000)
        return self.get_deep_context_for_range(start_ms, start_ms + 60 * 60 * 1000)
