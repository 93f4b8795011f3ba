from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

COMMITMENT_TYPES = ("send_email", "create_event", "send_file", "follow_up", "make_call", "other")
COMMITMENT_STATUSES = ("pending", "completed", "dismissed", "expired")
ACTION_PRIORITIES = ("high", "medium", "low")
ACTION_SOURCES = ("email", "document", "chat", "calendar", "browser", "other")
ACTIVITY_TYPES = (
    "composing_email",
    "reading_email",
    "editing_doc",
    "browsing",
    "coding",
    "meeting",
    "calendar",
    "chatting",
    "other",
)
URGENCY_LEVELS = ("low", "medium", "high")

RegionBounds = Tuple[float, float, float, float]


def clamp_confidence(value: Any, default: float = 0.7) -> float:
    """Coerce a model-supplied confidence into [0, 1]."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return max(0.0, min(1.0, number))


def _pick(value: Any, allowed: Tuple[str, ...], fallback: str) -> str:
    text = str(value or "").strip().lower()
    return text if text in allowed else fallback


@dataclass
class TextRegion:
    text: str
    confidence: float
    bounds: Optional[RegionBounds] = None


@dataclass
class OCRResult:
    text: str
    confidence: float
    regions: List[TextRegion] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "OCRResult":
        return cls(text="", confidence=0.0, regions=[])


@dataclass
class DetectedCommitment:
    """A promise found in screen text, before it becomes a stored Commitment."""

    text: str
    type: str = "other"
    recipient: Optional[str] = None
    deadline: Optional[str] = None
    confidence: float = 0.7

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"text": self.text, "type": self.type, "confidence": self.confidence}
        if self.recipient:
            data["recipient"] = self.recipient
        if self.deadline:
            data["deadline"] = self.deadline
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DetectedCommitment":
        recipient = data.get("recipient")
        deadline = data.get("deadline")
        return cls(
            text=str(data.get("text") or "").strip(),
            type=_pick(data.get("type"), COMMITMENT_TYPES, "other"),
            recipient=str(recipient).strip() if recipient else None,
            deadline=str(deadline).strip() if deadline else None,
            confidence=clamp_confidence(data.get("confidence") or 0.7),
        )


@dataclass
class DetectedActionItem:
    text: str
    priority: str = "medium"
    source: str = "other"

    def to_dict(self) -> Dict[str, Any]:
        return {"text": self.text, "priority": self.priority, "source": self.source}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DetectedActionItem":
        return cls(
            text=str(data.get("text") or "").strip(),
            priority=_pick(data.get("priority"), ACTION_PRIORITIES, "medium"),
            source=_pick(data.get("source"), ACTION_SOURCES, "other"),
        )


@dataclass
class EmailContext:
    composing: bool = False
    to: List[str] = field(default_factory=list)
    subject: str = ""
    body_preview: str = ""
    attachments: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "composing": self.composing,
            "to": list(self.to),
            "subject": self.subject,
            "bodyPreview": self.body_preview,
            "attachments": list(self.attachments),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmailContext":
        to = data.get("to") or []
        if isinstance(to, str):
            to = [part.strip() for part in to.split(",") if part.strip()]
        return cls(
            composing=bool(data.get("composing")),
            to=[str(item) for item in to],
            subject=str(data.get("subject") or ""),
            body_preview=str(data.get("bodyPreview") or data.get("body_preview") or ""),
            attachments=[str(item) for item in data.get("attachments") or []],
        )


@dataclass
class CalendarContext:
    viewing: bool = False
    creating: bool = False
    event_title: Optional[str] = None
    event_time: Optional[str] = None
    participants: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "viewing": self.viewing,
            "creating": self.creating,
            "participants": list(self.participants),
        }
        if self.event_title:
            data["eventTitle"] = self.event_title
        if self.event_time:
            data["eventTime"] = self.event_time
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CalendarContext":
        return cls(
            viewing=bool(data.get("viewing")),
            creating=bool(data.get("creating")),
            event_title=data.get("eventTitle") or data.get("event_title") or None,
            event_time=data.get("eventTime") or data.get("event_time") or None,
            participants=[str(item) for item in data.get("participants") or []],
        )


@dataclass
class ScreenAnalysis:
    """
    Structured semantic record for one capture.

    Both analyzer tiers produce this shape; `to_dict` is the JSON persisted in
    `screen_captures.analysis_json`.
    """

    timestamp: int
    app: str
    activity: str = "other"
    commitments: List[DetectedCommitment] = field(default_factory=list)
    action_items: List[DetectedActionItem] = field(default_factory=list)
    email_context: Optional[EmailContext] = None
    calendar_context: Optional[CalendarContext] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "timestamp": self.timestamp,
            "appContext": {"app": self.app, "activity": self.activity},
            "commitments": [item.to_dict() for item in self.commitments],
            "actionItems": [item.to_dict() for item in self.action_items],
        }
        if self.email_context is not None:
            data["emailContext"] = self.email_context.to_dict()
        if self.calendar_context is not None:
            data["calendarContext"] = self.calendar_context.to_dict()
        return data


@dataclass
class ScreenCapture:
    timestamp: int
    app_name: str
    window_title: str
    image_hash: Optional[str]
    text_content: Optional[str] = None
    analysis: Optional[ScreenAnalysis] = None
    id: Optional[int] = None


@dataclass
class CaptureEvent:
    """Outcome of one capture tick: capture_complete, capture_skipped or capture_failed."""

    kind: str
    capture: Optional[ScreenCapture] = None
    image_path: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class Commitment:
    text: str
    type: str
    detected_at: int
    status: str = "pending"
    confidence: float = 0.7
    recipient: Optional[str] = None
    deadline: Optional[int] = None
    completed_at: Optional[int] = None
    source_capture_id: Optional[int] = None
    context: Optional[Dict[str, Any]] = None
    synced: bool = False
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "type": self.type,
            "recipient": self.recipient,
            "deadline": self.deadline,
            "detectedAt": self.detected_at,
            "completedAt": self.completed_at,
            "status": self.status,
            "sourceCaptureId": self.source_capture_id,
            "confidence": self.confidence,
            "synced": self.synced,
        }


@dataclass
class ActionItem:
    text: str
    priority: str
    source: str
    detected_at: int
    status: str = "pending"
    completed_at: Optional[int] = None
    source_capture_id: Optional[int] = None
    context: Optional[Dict[str, Any]] = None
    id: Optional[int] = None


@dataclass
class EmailContextObservation:
    timestamp: int
    app_name: str
    action: str
    recipient: Optional[str] = None
    subject: Optional[str] = None
    body_preview: Optional[str] = None
    has_attachment: bool = False
    source_capture_id: Optional[int] = None


@dataclass
class CalendarContextObservation:
    timestamp: int
    app_name: str
    action: str
    event_title: Optional[str] = None
    event_time: Optional[str] = None
    participants: List[str] = field(default_factory=list)
    source_capture_id: Optional[int] = None


@dataclass
class CompletedAction:
    action_type: str
    details: Dict[str, Any]
    timestamp: int
    app_name: Optional[str] = None
    matched_commitment_id: Optional[int] = None
    id: Optional[int] = None


@dataclass
class PendingFollowUp:
    """Derived reminder; recomputed on every scan and never stored."""

    commitment: Commitment
    suggested_action: str
    context: str
    urgency: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "commitment": self.commitment.to_dict(),
            "suggestedAction": self.suggested_action,
            "context": self.context,
            "urgency": self.urgency,
        }


@dataclass
class PipelineStatus:
    is_running: bool
    captures_processed: int
    commitments_detected: int
    actions_completed: int
    pending_follow_ups: int
    last_capture_time: Optional[int]
    settings: Dict[str, Any] = field(default_factory=dict)
