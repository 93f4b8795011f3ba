import json
import logging
import re
import time
from dataclasses import dataclass
from typing import List, Optional, Pattern, Tuple

from analysis_queue import AnalysisQueue, AnalysisRequest
from api_models import Model, create_model, get_api_key
from constants import HEURISTIC_CONFIDENCE, MAX_LLM_TEXT_CHARS, MIN_LLM_TEXT_LENGTH
from context_schema import (
    ACTIVITY_TYPES,
    CalendarContext,
    DetectedActionItem,
    DetectedCommitment,
    EmailContext,
    ScreenAnalysis,
    _pick,
)
from prompts import SCREEN_ANALYSIS_SYSTEM_PROMPT, SCREEN_ANALYSIS_USER_PROMPT
from settings_store import DeepContextSettings

logger = logging.getLogger(__name__)

# Checked in order; the first keyword contained in the lower-cased app name wins.
APP_ACTIVITY_MAP: Tuple[Tuple[str, str], ...] = (
    ("mail", "composing_email"),
    ("outlook", "composing_email"),
    ("gmail", "composing_email"),
    ("thunderbird", "composing_email"),
    ("spark", "composing_email"),
    ("airmail", "composing_email"),
    ("calendar", "calendar"),
    ("fantastical", "calendar"),
    ("visual studio code", "coding"),
    ("vs code", "coding"),
    ("code", "coding"),
    ("xcode", "coding"),
    ("intellij", "coding"),
    ("webstorm", "coding"),
    ("sublime", "coding"),
    ("vim", "coding"),
    ("neovim", "coding"),
    ("cursor", "coding"),
    ("slack", "chatting"),
    ("discord", "chatting"),
    ("teams", "chatting"),
    ("messages", "chatting"),
    ("whatsapp", "chatting"),
    ("telegram", "chatting"),
    ("zoom", "meeting"),
    ("google meet", "meeting"),
    ("facetime", "meeting"),
    ("webex", "meeting"),
    ("skype", "meeting"),
    ("notion", "editing_doc"),
    ("obsidian", "editing_doc"),
    ("word", "editing_doc"),
    ("pages", "editing_doc"),
    ("google docs", "editing_doc"),
    ("notes", "editing_doc"),
    ("chrome", "browsing"),
    ("safari", "browsing"),
    ("firefox", "browsing"),
    ("arc", "browsing"),
    ("brave", "browsing"),
    ("edge", "browsing"),
    ("opera", "browsing"),
    ("terminal", "coding"),
    ("iterm", "coding"),
    ("warp", "coding"),
    ("hyper", "coding"),
    ("figma", "editing_doc"),
    ("sketch", "editing_doc"),
    ("canva", "editing_doc"),
    ("adobe photoshop", "editing_doc"),
    ("adobe illustrator", "editing_doc"),
    ("numbers", "editing_doc"),
    ("excel", "editing_doc"),
    ("google sheets", "editing_doc"),
)

EMAIL_APPS = ("mail", "outlook", "gmail", "thunderbird", "spark", "airmail")
CALENDAR_APPS = ("calendar", "fantastical", "outlook")
EMAIL_HEADER_PREFIXES = ("to:", "cc:", "bcc:", "subject:", "from:")


@dataclass(frozen=True)
class ExtractionRule:
    """A regex bound to the tag it produces; `group` selects the reported text."""

    pattern: Pattern
    tag: str
    group: int = 0

    def extract(self, text: str) -> List[str]:
        found = []
        for match in self.pattern.finditer(text):
            value = (match.group(self.group) or "").strip() if self.group else ""
            found.append(value or match.group(0).strip())
        return found


def _rule(pattern: str, tag: str, group: int = 0) -> ExtractionRule:
    return ExtractionRule(re.compile(pattern, re.IGNORECASE), tag, group)


_WILL = r"\bI(?:['’]ll| will)"

COMMITMENT_RULES: Tuple[ExtractionRule, ...] = (
    _rule(_WILL + r" (?:send|email) (?:you |them |him |her )?(?:a |the )?(\w+.*?)(?:\.|$)", "send_email"),
    _rule(_WILL + r" (?:create|schedule|set up|book) (?:a |the )?(?:meeting|event|call|appointment)(.*?)(?:\.|$)", "create_event"),
    _rule(_WILL + r" (?:send|share|forward) (?:you |them )?(?:the |a )?(?:file|document|doc|pdf|attachment)(.*?)(?:\.|$)", "send_file"),
    _rule(_WILL + r" (?:follow up|get back|call|reach out)(.*?)(?:\.|$)", "follow_up"),
    _rule(_WILL + r" (?:call|phone|ring)(.*?)(?:\.|$)", "make_call"),
    _rule(r"\blet me (?:send|email|schedule|create|set up)(.*?)(?:\.|$)", "other"),
    _rule(r"\b(?:going to|will) send (?:you |them )?(?:a |the )?calendar (?:invite|invitation)(.*?)(?:\.|$)", "create_event"),
)

ACTION_ITEM_RULES: Tuple[ExtractionRule, ...] = (
    _rule(r"\bTODO:?\s*(.+?)(?:\n|$)", "medium", group=1),
    _rule(r"\bURGENT:?\s*(.+?)(?:\n|$)", "high", group=1),
    _rule(r"\bACTION:?\s*(.+?)(?:\n|$)", "high", group=1),
    _rule(r"\b(?:need|have) to (?:do|complete|finish|send|email)(.+?)(?:\.|$)", "medium", group=1),
    _rule(r"\breminder:?\s*(.+?)(?:\n|$)", "medium", group=1),
)

_TO_LINE = re.compile(r"to:\s*([^\n]+)", re.IGNORECASE)
_SUBJECT_LINE = re.compile(r"subject:\s*([^\n]+)", re.IGNORECASE)
_EVENT_TITLE = re.compile(r"(?:title|event|meeting):\s*([^\n]+)", re.IGNORECASE)
_EVENT_TIME = re.compile(
    r"(\d{1,2}:\d{2}(?:\s*(?:AM|PM))?(?:\s*-\s*\d{1,2}:\d{2}(?:\s*(?:AM|PM))?)?)",
    re.IGNORECASE,
)


def detect_activity(app_name: str, window_title: str, text: str) -> str:
    lower_app = (app_name or "").lower()
    lower_title = (window_title or "").lower()
    for keyword, activity in APP_ACTIVITY_MAP:
        if keyword in lower_app:
            return activity

    if "compose" in lower_title or "new message" in lower_title:
        return "composing_email"
    if "inbox" in lower_title or "mail" in lower_title:
        return "reading_email"
    if "calendar" in lower_title or "event" in lower_title:
        return "calendar"

    lower_text = (text or "").lower()
    if "to:" in lower_text and "subject:" in lower_text:
        return "composing_email"
    if "create event" in lower_text or "new event" in lower_text:
        return "calendar"
    return "other"


def extract_commitments(text: str) -> List[DetectedCommitment]:
    """Run every commitment rule in order; a phrase is reported once, under its first rule."""
    commitments: List[DetectedCommitment] = []
    seen = set()
    for rule in COMMITMENT_RULES:
        for phrase in rule.extract(text or ""):
            if not phrase or phrase.lower() in seen:
                continue
            seen.add(phrase.lower())
            commitments.append(DetectedCommitment(text=phrase, type=rule.tag, confidence=HEURISTIC_CONFIDENCE))
    return commitments


def extract_action_items(text: str) -> List[DetectedActionItem]:
    items: List[DetectedActionItem] = []
    for rule in ACTION_ITEM_RULES:
        for phrase in rule.extract(text or ""):
            if phrase:
                items.append(DetectedActionItem(text=phrase, priority=rule.tag, source="other"))
    return items


def detect_email_context(text: str, app_name: str, window_title: str) -> Optional[EmailContext]:
    lower_app = (app_name or "").lower()
    lower_title = (window_title or "").lower()
    lower_text = (text or "").lower()

    is_email_app = any(app in lower_app for app in EMAIL_APPS)
    if not is_email_app and "to:" not in lower_text:
        return None

    composing = (
        "compose" in lower_title
        or "new message" in lower_title
        or "draft" in lower_title
        or "to:" in lower_text
    )

    to: List[str] = []
    to_match = _TO_LINE.search(text or "")
    if to_match:
        to = [part.strip() for part in re.split(r"[,;]", to_match.group(1)) if part.strip()]

    subject_match = _SUBJECT_LINE.search(text or "")
    subject = subject_match.group(1).strip() if subject_match else ""

    body_lines = [
        line for line in (text or "").split("\n")
        if not line.lower().startswith(EMAIL_HEADER_PREFIXES)
    ]
    return EmailContext(
        composing=composing,
        to=to,
        subject=subject,
        body_preview=" ".join(body_lines)[:200],
        attachments=[],
    )


def detect_calendar_context(text: str, app_name: str, window_title: str) -> Optional[CalendarContext]:
    lower_app = (app_name or "").lower()
    lower_title = (window_title or "").lower()
    lower_text = (text or "").lower()

    is_calendar_app = any(app in lower_app or app in lower_title for app in CALENDAR_APPS)
    if not is_calendar_app and "event" not in lower_text and "meeting" not in lower_text:
        return None

    title_match = _EVENT_TITLE.search(text or "")
    time_match = _EVENT_TIME.search(text or "")
    return CalendarContext(
        viewing="new" not in lower_title and "create" not in lower_title,
        creating="new" in lower_title or "create" in lower_title or "create event" in lower_text,
        event_title=title_match.group(1).strip() if title_match else None,
        event_time=time_match.group(1) if time_match else None,
        participants=[],
    )


def strip_code_fences(content: str) -> str:
    cleaned = (content or "").strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def parse_llm_response(content: str, timestamp: int, app_name: str) -> ScreenAnalysis:
    """
    Convert the model's JSON reply into a ScreenAnalysis.

    Raises ValueError when the reply is empty or not a JSON object, so the
    queue can fall back to heuristics for that item.
    """
    cleaned = strip_code_fences(content)
    if not cleaned:
        raise ValueError("Empty LLM response.")
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end == -1:
        raise ValueError("JSON braces not found.")
    parsed = json.loads(cleaned[start : end + 1])
    if not isinstance(parsed, dict):
        raise ValueError("LLM response is not a JSON object.")

    commitments = [
        DetectedCommitment.from_dict(item)
        for item in parsed.get("commitments") or []
        if isinstance(item, dict)
    ]
    action_items = [
        DetectedActionItem.from_dict(item)
        for item in parsed.get("actionItems") or []
        if isinstance(item, dict)
    ]
    email = parsed.get("emailContext")
    calendar = parsed.get("calendarContext")
    return ScreenAnalysis(
        timestamp=timestamp,
        app=app_name,
        activity=_pick(parsed.get("activity"), ACTIVITY_TYPES, "other"),
        commitments=[item for item in commitments if item.text],
        action_items=[item for item in action_items if item.text],
        email_context=EmailContext.from_dict(email) if isinstance(email, dict) else None,
        calendar_context=CalendarContext.from_dict(calendar) if isinstance(calendar, dict) else None,
    )


class ContentAnalyzer:
    """
    Two-tier screen text analysis.

    The heuristic tier always runs. Text of at least MIN_LLM_TEXT_LENGTH
    characters is additionally routed through the batching queue to the LLM
    when it is enabled and credentials exist; any LLM failure resolves to the
    heuristic result for the same text.
    """

    def __init__(
        self,
        settings: Optional[DeepContextSettings] = None,
        *,
        model: Optional[Model] = None,
        queue: Optional[AnalysisQueue] = None,
    ) -> None:
        self.settings = settings or DeepContextSettings()
        self._model = model
        self._model_unavailable_logged = False
        self.queue = queue or AnalysisQueue(self._analyze_with_llm, self._fallback_for_request)

    def analyze(self, text: str, app_name: str, window_title: str) -> ScreenAnalysis:
        timestamp = int(time.time() * 1000)
        quick = self.quick_analysis(text, app_name, window_title, timestamp)
        if not text or len(text) < MIN_LLM_TEXT_LENGTH:
            return quick
        if not self.llm_available():
            return quick
        future = self.queue.submit(text, app_name, window_title, timestamp)
        return future.result()

    def quick_analysis(self, text: str, app_name: str, window_title: str, timestamp: int) -> ScreenAnalysis:
        return ScreenAnalysis(
            timestamp=timestamp,
            app=app_name,
            activity=detect_activity(app_name, window_title, text),
            commitments=extract_commitments(text),
            action_items=extract_action_items(text),
            email_context=detect_email_context(text, app_name, window_title),
            calendar_context=detect_calendar_context(text, app_name, window_title),
        )

    def llm_available(self) -> bool:
        if not self.settings.llm_enabled:
            return False
        if self._model is not None:
            return True
        if not get_api_key():
            self._log_unavailable("GEMINI_API_KEY not set; using heuristic analysis only.")
            return False
        try:
            self._model = create_model(self.settings.model_name)
        except (EnvironmentError, NotImplementedError) as exc:
            self._log_unavailable(f"LLM analysis disabled: {exc}")
            return False
        return True

    def update_settings(self, settings: DeepContextSettings) -> None:
        if settings.model_name != self.settings.model_name:
            self._model = None
        self.settings = settings

    def stop(self) -> None:
        self.queue.stop()

    def start(self) -> None:
        self.queue.restart()

    def _log_unavailable(self, message: str) -> None:
        if not self._model_unavailable_logged:
            logger.info(message)
            self._model_unavailable_logged = True

    def _analyze_with_llm(self, request: AnalysisRequest) -> ScreenAnalysis:
        if self._model is None:
            raise RuntimeError("LLM model not initialised.")
        user_prompt = SCREEN_ANALYSIS_USER_PROMPT.format(
            app_name=request.app_name,
            window_title=request.window_title,
            text=request.text[:MAX_LLM_TEXT_CHARS],
        )
        content = self._model.call_model(user_prompt=user_prompt, system_prompt=SCREEN_ANALYSIS_SYSTEM_PROMPT)
        analysis = parse_llm_response(content, request.timestamp, request.app_name)
        logger.debug(
            "LLM analysis complete: activity=%s commitments=%d action_items=%d",
            analysis.activity,
            len(analysis.commitments),
            len(analysis.action_items),
        )
        return analysis

    def _fallback_for_request(self, request: AnalysisRequest) -> ScreenAnalysis:
        return self.quick_analysis(request.text, request.app_name, request.window_title, request.timestamp)
