import logging
import re
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from dateutil import parser as date_parser

from constants import (
    EAGER_MATCH_LOOKBACK_MS,
    FOLLOW_UP_INITIAL_DELAY_SECONDS,
    FOLLOW_UP_LOOKBACK_MS,
    FOLLOW_UP_SCAN_INTERVAL_SECONDS,
)
from context_schema import Commitment, CompletedAction, PendingFollowUp
from context_store import ContextStore

logger = logging.getLogger(__name__)

SUGGESTED_ACTIONS = {
    "send_email": "Send the email you mentioned",
    "create_event": "Create the calendar event",
    "send_file": "Send the file you mentioned",
    "follow_up": "Follow up as promised",
    "make_call": "Make the call you mentioned",
}
DEFAULT_SUGGESTED_ACTION = "Complete the action you mentioned"

# Title words this short ("the", "with", ...) never count as overlap.
MIN_MATCH_WORD_LENGTH = 4


def suggested_action_for(commitment_type: str) -> str:
    return SUGGESTED_ACTIONS.get(commitment_type, DEFAULT_SUGGESTED_ACTION)


def urgency_for_age(age_minutes: int) -> str:
    if age_minutes > 60:
        return "high"
    if age_minutes > 30:
        return "medium"
    return "low"


def parse_deadline(text: str, now: Optional[datetime] = None) -> Optional[int]:
    """
    Best-effort conversion of a free-text deadline to epoch milliseconds.

    "tomorrow" is 09:00 the next day, "today" is 17:00 today and "next week"
    is seven days from now. Anything else goes through dateutil; unparseable
    text yields None.
    """
    if not text:
        return None
    now = now or datetime.now()
    lower = text.lower()

    if "tomorrow" in lower:
        target = (now + timedelta(days=1)).replace(hour=9, minute=0, second=0, microsecond=0)
        return int(target.timestamp() * 1000)
    if "today" in lower:
        target = now.replace(hour=17, minute=0, second=0, microsecond=0)
        return int(target.timestamp() * 1000)
    if "next week" in lower:
        return int((now + timedelta(days=7)).timestamp() * 1000)

    try:
        parsed = date_parser.parse(text, default=now.replace(hour=0, minute=0, second=0, microsecond=0))
    except (ValueError, OverflowError):
        return None
    return int(parsed.timestamp() * 1000)


class FollowUpMatcher:
    """
    Reconciles pending commitments against observed activity.

    `scan` is the periodic, content-agnostic check that surfaces reminders.
    `match_calendar_event` is the eager, content-aware resolution triggered
    when the user is seen creating a calendar event.
    """

    def __init__(
        self,
        store: ContextStore,
        *,
        on_follow_up: Optional[Callable[[List[PendingFollowUp]], None]] = None,
        on_action_completed: Optional[Callable[[Dict], None]] = None,
        scan_interval: float = FOLLOW_UP_SCAN_INTERVAL_SECONDS,
        initial_delay: float = FOLLOW_UP_INITIAL_DELAY_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.on_follow_up = on_follow_up
        self.on_action_completed = on_action_completed
        self.scan_interval = scan_interval
        self.initial_delay = initial_delay
        self._clock = clock

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ------------------------------------------------------------------ Public API
    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            logger.warning("FollowUpMatcher already running.")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="FollowUpMatcher", daemon=True)
        self._thread.start()
        logger.info("FollowUpMatcher started with %ss interval.", self.scan_interval)

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    def get_pending_follow_ups(self, now_ms: Optional[int] = None) -> List[PendingFollowUp]:
        now_ms = now_ms if now_ms is not None else self._now_ms()
        follow_ups: List[PendingFollowUp] = []
        for commitment in self.store.get_pending_commitments_since(now_ms - FOLLOW_UP_LOOKBACK_MS):
            if self.has_matching_action(commitment):
                continue
            age_minutes = int(round((now_ms - commitment.detected_at) / 60000))
            follow_ups.append(
                PendingFollowUp(
                    commitment=commitment,
                    suggested_action=suggested_action_for(commitment.type),
                    context=f"Mentioned {age_minutes} minutes ago but no action detected",
                    urgency=urgency_for_age(age_minutes),
                )
            )
        return follow_ups

    def scan(self, now_ms: Optional[int] = None) -> List[PendingFollowUp]:
        follow_ups = self.get_pending_follow_ups(now_ms)
        if follow_ups:
            logger.info("Found %d pending follow-up(s)", len(follow_ups))
            if self.on_follow_up:
                self.on_follow_up(follow_ups)
        return follow_ups

    def has_matching_action(self, commitment: Commitment) -> bool:
        """Any later observation of the right category counts; content is not compared."""
        if commitment.type == "create_event":
            return self.store.has_calendar_creation_since(commitment.detected_at)
        if commitment.type == "send_email":
            return self.store.has_email_activity_since(commitment.detected_at)
        return self.store.has_completed_action_since(commitment.detected_at)

    def match_calendar_event(self, event_title: str, now_ms: Optional[int] = None) -> List[int]:
        """Resolve pending create_event commitments whose text shares a word with `event_title`."""
        if not event_title:
            return []
        now_ms = now_ms if now_ms is not None else self._now_ms()
        words = [word for word in re.split(r"\s+", event_title.lower()) if len(word) >= MIN_MATCH_WORD_LENGTH]
        if not words:
            return []

        resolved: List[int] = []
        candidates = self.store.get_pending_commitments_since(now_ms - EAGER_MATCH_LOOKBACK_MS, "create_event")
        for commitment in candidates:
            lower_text = commitment.text.lower()
            if not any(word in lower_text for word in words):
                continue
            if not self.store.resolve_commitment(commitment.id, "completed", now_ms):
                continue
            self.store.insert_completed_action(
                CompletedAction(
                    action_type="created_event",
                    details={"eventTitle": event_title},
                    timestamp=now_ms,
                    app_name="Calendar",
                    matched_commitment_id=commitment.id,
                )
            )
            resolved.append(commitment.id)
            logger.info("Matched commitment %r with calendar event %r", commitment.text[:40], event_title)
            if self.on_action_completed:
                self.on_action_completed(
                    {"commitmentId": commitment.id, "actionType": "created_event", "eventTitle": event_title}
                )
        return resolved

    # ----------------------------------------------------------------- Internals
    def _run_loop(self) -> None:
        if self._stop_event.wait(self.initial_delay):
            return
        while not self._stop_event.is_set():
            try:
                self.scan()
            except Exception as exc:
                logger.exception("Follow-up scan failed: %s", exc)
            self._stop_event.wait(self.scan_interval)
