import logging
import os
import re
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Dict, List, Optional

import pytesseract
from PIL import Image

from constants import FALLBACK_OCR_CONFIDENCE, OCR_TIMEOUT_SECONDS
from context_schema import OCRResult, TextRegion

try:
    import Vision  # type: ignore
    from Foundation import NSURL  # type: ignore
except ImportError:  # pragma: no cover - optional on non-mac systems
    Vision = None
    NSURL = None

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"[\w.-]+@[\w.-]+\.\w+")
URL_PATTERN = re.compile(r"https?://[^\s]+")
DATE_PATTERN = re.compile(
    r"\b\d{1,2}/\d{1,2}/\d{2,4}\b"
    r"|\b\d{1,2}-\d{1,2}-\d{2,4}\b"
    r"|\b(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]* \d{1,2},? \d{4}\b",
    re.IGNORECASE,
)
TIME_PATTERN = re.compile(r"\b\d{1,2}:\d{2}(?::\d{2})?\s*(?:AM|PM|am|pm)?\b")

EMAIL_INDICATORS = [
    re.compile(r"^to:", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^cc:", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^bcc:", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^subject:", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^from:", re.IGNORECASE | re.MULTILINE),
    re.compile(r"compose.*email", re.IGNORECASE),
    re.compile(r"new message", re.IGNORECASE),
    re.compile(r"reply\s+all", re.IGNORECASE),
]

CALENDAR_INDICATORS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"create.*event",
        r"new.*event",
        r"calendar",
        r"schedule",
        r"meeting",
        r"appointment",
        r"add.*invitees",
        r"attendees",
    )
]

COMMITMENT_PHRASE_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\bI(?:['’]ll| will| am going to) (?:send|email|call|follow up|get back|schedule|create|set up)[^.!?]*",
        r"\blet me (?:send|email|call|follow up|get back|schedule|create|set up)[^.!?]*",
        r"\b(?:will|going to) (?:send|forward|share|schedule|book|create)[^.!?]*",
        r"\bremind(?:er)?(?:\s+me)?\s+to\s+[^.!?]*",
        r"\b(?:need|have) to (?:send|email|call|follow up|schedule)[^.!?]*",
    )
]

_OCR_ARTIFACTS = re.compile(r"[|\\\[\]{}]")
_WHITESPACE = re.compile(r"\s+")


class TextExtractor:
    """
    Turns a captured window image into text.

    Apple Vision is tried first; Tesseract is the degraded fallback. When both
    fail the caller gets an empty OCRResult rather than an exception.
    """

    def __init__(self, timeout_seconds: float = OCR_TIMEOUT_SECONDS) -> None:
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="VisionOCR")

    def extract(self, image_path: str) -> OCRResult:
        if not os.path.exists(image_path):
            raise FileNotFoundError(image_path)

        result = self._extract_with_vision(image_path)
        if result is not None and result.text:
            return result

        fallback = self._extract_with_tesseract(image_path)
        if fallback is not None:
            return fallback

        logger.warning("All OCR methods failed for %s", os.path.basename(image_path))
        return OCRResult.empty()

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def _extract_with_vision(self, image_path: str) -> Optional[OCRResult]:
        if Vision is None or NSURL is None:
            return None
        future = self._executor.submit(_recognize_with_vision, image_path)
        try:
            regions = future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError:
            logger.warning("Vision OCR timed out after %ss", self.timeout_seconds)
            return None
        except Exception as exc:
            logger.debug("Vision OCR failed, falling back: %s", exc)
            return None
        return build_result(regions)

    def _extract_with_tesseract(self, image_path: str) -> Optional[OCRResult]:
        try:
            with Image.open(image_path) as img:
                text = pytesseract.image_to_string(img, timeout=self.timeout_seconds)
        except (RuntimeError, OSError, pytesseract.TesseractError) as exc:
            logger.warning("Fallback OCR failed: %s", exc)
            return None
        text = (text or "").strip()
        if not text:
            return None
        return OCRResult(text=text, confidence=FALLBACK_OCR_CONFIDENCE, regions=[])


def _recognize_with_vision(image_path: str) -> List[TextRegion]:
    url = NSURL.fileURLWithPath_(image_path)
    handler = Vision.VNImageRequestHandler.alloc().initWithURL_options_(url, None)
    request = Vision.VNRecognizeTextRequest.alloc().init()
    request.setRecognitionLevel_(Vision.VNRequestTextRecognitionLevelAccurate)
    request.setUsesLanguageCorrection_(True)
    success, error = handler.performRequests_error_([request], None)
    if not success:
        raise RuntimeError(f"Vision request failed: {error}")

    regions: List[TextRegion] = []
    for observation in request.results() or []:
        candidates = observation.topCandidates_(1)
        if not candidates:
            continue
        candidate = candidates[0]
        box = observation.boundingBox()
        regions.append(
            TextRegion(
                text=str(candidate.string()),
                confidence=float(candidate.confidence()),
                bounds=(box.origin.x, box.origin.y, box.size.width, box.size.height),
            )
        )
    return regions


def build_result(regions: List[TextRegion]) -> OCRResult:
    """Join region text line by line; confidence is the mean over regions."""
    if not regions:
        return OCRResult.empty()
    text = "\n".join(region.text for region in regions)
    confidence = sum(region.confidence for region in regions) / len(regions)
    return OCRResult(text=text, confidence=confidence, regions=list(regions))


def clean_text(text: str) -> str:
    text = _OCR_ARTIFACTS.sub("", text or "")
    return _WHITESPACE.sub(" ", text).strip()


def extract_patterns(text: str) -> Dict[str, List[str]]:
    return {
        "emails": EMAIL_PATTERN.findall(text or ""),
        "urls": URL_PATTERN.findall(text or ""),
        "dates": DATE_PATTERN.findall(text or ""),
        "times": TIME_PATTERN.findall(text or ""),
    }


def is_email_composition(text: str) -> bool:
    return any(pattern.search(text or "") for pattern in EMAIL_INDICATORS)


def is_calendar_content(text: str) -> bool:
    return any(pattern.search(text or "") for pattern in CALENDAR_INDICATORS)


def extract_commitment_phrases(text: str) -> List[str]:
    """Commitment-shaped phrases in order of first appearance, without repeats."""
    seen = set()
    phrases: List[str] = []
    for pattern in COMMITMENT_PHRASE_PATTERNS:
        for match in pattern.finditer(text or ""):
            phrase = match.group(0).strip()
            if phrase and phrase not in seen:
                seen.add(phrase)
                phrases.append(phrase)
    return phrases
