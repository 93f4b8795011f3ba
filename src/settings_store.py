import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from constants import DEFAULT_CAPTURE_INTERVAL_MS

logger = logging.getLogger(__name__)

SETTINGS_DIR = Path.home() / ".followthrough"
SETTINGS_PATH = SETTINGS_DIR / "settings.json"

# Keys written by the desktop shell use camelCase.
_CAMEL_KEYS = {
    "captureIntervalMs": "capture_interval_ms",
    "excludedApps": "excluded_apps",
    "ocrEnabled": "ocr_enabled",
    "semanticAnalysisEnabled": "semantic_analysis_enabled",
    "commitmentTrackingEnabled": "commitment_tracking_enabled",
    "llmEnabled": "llm_enabled",
    "modelName": "model_name",
}


@dataclass
class DeepContextSettings:
    enabled: bool = True
    capture_interval_ms: int = DEFAULT_CAPTURE_INTERVAL_MS
    excluded_apps: List[str] = field(default_factory=list)
    ocr_enabled: bool = True
    semantic_analysis_enabled: bool = True
    commitment_tracking_enabled: bool = True
    llm_enabled: bool = True
    model_name: str = "gemini-2.0-flash"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeepContextSettings":
        settings = cls()
        return settings.merged(data)

    def merged(self, changes: Dict[str, Any]) -> "DeepContextSettings":
        """Return a copy with `changes` applied; unknown keys are ignored."""
        known = {f.name for f in fields(self)}
        values = asdict(self)
        for key, value in (changes or {}).items():
            name = _CAMEL_KEYS.get(key, key)
            if name not in known or value is None:
                continue
            values[name] = value
        values["capture_interval_ms"] = max(1000, int(values["capture_interval_ms"]))
        values["excluded_apps"] = [str(item).strip() for item in values["excluded_apps"] if str(item).strip()]
        for flag in ("enabled", "ocr_enabled", "semantic_analysis_enabled", "commitment_tracking_enabled", "llm_enabled"):
            values[flag] = bool(values[flag])
        return DeepContextSettings(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _env_excluded_apps() -> List[str]:
    raw = os.environ.get("FOLLOWTHROUGH_EXCLUDED_APPS", "")
    return [item.strip() for item in raw.split(",") if item.strip()]


def load_settings(path: Optional[Path] = None) -> DeepContextSettings:
    """Read persisted deep-context settings, falling back to defaults."""
    target = Path(path) if path else SETTINGS_PATH
    data: Dict[str, Any] = {}
    if target.exists():
        try:
            raw = json.loads(target.read_text(encoding="utf-8"))
            if isinstance(raw, dict):
                data = raw
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable settings file %s: %s", target, exc)
    settings = DeepContextSettings.from_dict(data)
    extra = _env_excluded_apps()
    if extra:
        settings = settings.merged({"excluded_apps": settings.excluded_apps + extra})
    return settings


def save_settings(settings: DeepContextSettings, path: Optional[Path] = None) -> None:
    """Persist deep-context settings to disk."""
    target = Path(path) if path else SETTINGS_PATH
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(settings.to_dict(), indent=2), encoding="utf-8")
