import hashlib
import logging
import os
import platform
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import mss
from PIL import Image

from constants import (
    BUILTIN_EXCLUDED_APPS,
    CAPTURE_FILE_PREFIX,
    CAPTURE_TIMEOUT_SECONDS,
    TEMP_DIR_NAME,
    WINDOW_QUERY_TIMEOUT_SECONDS,
)
from context_schema import CaptureEvent, ScreenCapture
from settings_store import DeepContextSettings

try:
    from AppKit import NSWorkspace  # type: ignore
    from Quartz import (  # type: ignore
        CGWindowListCopyWindowInfo,
        kCGWindowListOptionOnScreenOnly,
        kCGNullWindowID,
    )
except ImportError:  # pragma: no cover - optional on non-mac systems
    NSWorkspace = None
    CGWindowListCopyWindowInfo = None
    kCGWindowListOptionOnScreenOnly = None
    kCGNullWindowID = None

logger = logging.getLogger(__name__)

WindowBounds = Tuple[int, int, int, int]

_OSASCRIPT_QUERY = """
tell application "System Events"
  set frontApp to first application process whose frontmost is true
  set appName to name of frontApp
  set windowTitle to ""
  set windowId to 0
  try
    set windowTitle to name of first window of frontApp
  end try
  try
    set windowId to id of first window of frontApp
  end try
  return appName & "|||" & windowTitle & "|||" & windowId
end tell
"""


@dataclass
class ActiveWindowSnapshot:
    """The frontmost window: owning app, title, and geometry/id when known."""

    app: str
    title: str = ""
    bounds: Optional[WindowBounds] = None
    window_id: Optional[int] = None


class ActiveWindowInspector:
    """Caches frontmost window metadata to avoid redundant OS calls."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cache: Optional[ActiveWindowSnapshot] = None
        self._last_fetch = 0.0

    def snapshot(self, *, cache_max_age: float = 0.25) -> Optional[ActiveWindowSnapshot]:
        now = time.time()
        with self._lock:
            if cache_max_age >= 0 and now - self._last_fetch <= cache_max_age and self._cache:
                return self._cache
            self._cache = self._fetch_snapshot()
            self._last_fetch = now
            return self._cache

    def _fetch_snapshot(self) -> Optional[ActiveWindowSnapshot]:
        if platform.system() != "Darwin":
            return None
        if NSWorkspace and CGWindowListCopyWindowInfo:
            try:
                workspace = NSWorkspace.sharedWorkspace()
                active_app = workspace.frontmostApplication()
                if active_app:
                    app_name = active_app.localizedName() or ""
                    pid = active_app.processIdentifier()
                    windows = CGWindowListCopyWindowInfo(kCGWindowListOptionOnScreenOnly, kCGNullWindowID)
                    title, bounds, window_id = self._extract_window_details(pid, windows)
                    if app_name:
                        return ActiveWindowSnapshot(app=app_name, title=title, bounds=bounds, window_id=window_id)
            except Exception as exc:
                logger.debug("Native window query failed, trying osascript: %s", exc)
        return self._query_osascript()

    @staticmethod
    def _extract_window_details(
        pid: int, windows: List[dict]
    ) -> Tuple[str, Optional[WindowBounds], Optional[int]]:
        for window in windows or []:
            if window.get("kCGWindowOwnerPID") != pid:
                continue
            if window.get("kCGWindowLayer", 0) != 0:
                continue
            bounds_dict = window.get("kCGWindowBounds") or {}
            width = int(bounds_dict.get("Width", 0))
            height = int(bounds_dict.get("Height", 0))
            if width <= 0 or height <= 0:
                continue
            bounds = (
                int(bounds_dict.get("X", 0)),
                int(bounds_dict.get("Y", 0)),
                width,
                height,
            )
            window_id = window.get("kCGWindowNumber")
            return window.get("kCGWindowName") or "", bounds, int(window_id) if window_id else None
        return "", None, None

    @staticmethod
    def _query_osascript() -> Optional[ActiveWindowSnapshot]:
        try:
            result = subprocess.run(
                ["osascript", "-e", _OSASCRIPT_QUERY],
                capture_output=True,
                text=True,
                timeout=WINDOW_QUERY_TIMEOUT_SECONDS,
                check=True,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.debug("osascript window query failed: %s", exc)
            return None
        return parse_osascript_output(result.stdout)


def parse_osascript_output(output: str) -> Optional[ActiveWindowSnapshot]:
    parts = (output or "").strip().split("|||")
    app_name = parts[0].strip() if parts else ""
    if not app_name:
        return None
    title = parts[1].strip() if len(parts) > 1 else ""
    try:
        window_id = int(parts[2]) if len(parts) > 2 else 0
    except ValueError:
        window_id = 0
    return ActiveWindowSnapshot(app=app_name, title=title, window_id=window_id or None)


def is_excluded_app(app_name: str, extra_patterns: Iterable[str] = ()) -> bool:
    """Case-insensitive substring match against the built-in and user deny-lists."""
    lower_name = (app_name or "").lower()
    for pattern in list(BUILTIN_EXCLUDED_APPS) + list(extra_patterns):
        pattern = pattern.strip().lower()
        if pattern and pattern in lower_name:
            return True
    return False


class ScreenCaptureSource:
    """
    Takes deduplicated screenshots of the active window on a timer.

    Every tick produces exactly one CaptureEvent for `on_event`: capture_complete
    with a temp image path the consumer must clean up, or capture_skipped /
    capture_failed with a reason.
    """

    def __init__(
        self,
        settings: Optional[DeepContextSettings] = None,
        *,
        on_event: Optional[Callable[[CaptureEvent], None]] = None,
        inspector: Optional[ActiveWindowInspector] = None,
        temp_dir: Optional[str] = None,
    ) -> None:
        self.settings = settings or DeepContextSettings()
        self.on_event = on_event
        self.inspector = inspector or ActiveWindowInspector()
        self.temp_dir = temp_dir or os.path.join(tempfile.gettempdir(), TEMP_DIR_NAME)
        os.makedirs(self.temp_dir, exist_ok=True)

        self.last_image_hash: Optional[str] = None
        self.capture_count = 0

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    # Thread control -------------------------------------------------------

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            logger.warning("Screen capture already running.")
            return
        if not self.settings.enabled:
            logger.info("Deep context disabled; screen capture not started.")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="ScreenCapture", daemon=True)
        self._thread.start()
        logger.info("Screen capture started (interval %d ms).", self.settings.capture_interval_ms)

    def stop(self) -> None:
        if not self._stop_loop():
            return
        self.cleanup_temp_files()
        logger.info("Screen capture stopped.")

    def _stop_loop(self) -> bool:
        """Join the loop thread only; images already handed to consumers stay on disk."""
        if not self._thread:
            return False
        self._stop_event.set()
        self._thread.join(timeout=CAPTURE_TIMEOUT_SECONDS + 2)
        self._thread = None
        return True

    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def update_settings(self, settings: DeepContextSettings) -> None:
        interval_changed = settings.capture_interval_ms != self.settings.capture_interval_ms
        self.settings = settings
        if not self.is_running():
            return
        if not settings.enabled:
            self.stop()
        elif interval_changed:
            self._stop_loop()
            self.start()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.capture()
            except Exception as exc:
                logger.exception("Capture loop error: %s", exc)
            self._stop_event.wait(self.settings.capture_interval_ms / 1000.0)

    # Capture --------------------------------------------------------------

    def capture(self) -> Optional[ScreenCapture]:
        if not self.settings.enabled:
            return None
        try:
            snapshot = self.inspector.snapshot(cache_max_age=0.0)
            if not snapshot:
                self._emit(CaptureEvent(kind="capture_skipped", reason="No active window"))
                return None

            if is_excluded_app(snapshot.app, self.settings.excluded_apps):
                logger.debug("Skipping excluded app %s", snapshot.app)
                self._emit(CaptureEvent(kind="capture_skipped", reason=f"Excluded app: {snapshot.app}"))
                return None

            timestamp = int(time.time() * 1000)
            image_path = os.path.join(self.temp_dir, f"{CAPTURE_FILE_PREFIX}{timestamp}.png")
            if not self._capture_to_file(image_path, snapshot) or not os.path.exists(image_path):
                self._emit(CaptureEvent(kind="capture_failed", reason="Screenshot failed"))
                return None

            image_hash = self._hash_file(image_path)
            if image_hash == self.last_image_hash:
                self.cleanup_capture(image_path)
                logger.debug("Skipping duplicate frame for %s", snapshot.app)
                self._emit(CaptureEvent(kind="capture_skipped", reason="Duplicate content"))
                return None

            self.last_image_hash = image_hash
            self.capture_count += 1
            capture = ScreenCapture(
                timestamp=timestamp,
                app_name=snapshot.app,
                window_title=snapshot.title,
                image_hash=image_hash,
            )
            logger.debug("Captured #%d: %s - %s", self.capture_count, snapshot.app, snapshot.title[:40])
            self._emit(CaptureEvent(kind="capture_complete", capture=capture, image_path=image_path))
            return capture
        except Exception as exc:
            logger.error("Capture failed: %s", exc)
            self._emit(CaptureEvent(kind="capture_failed", reason=str(exc)))
            return None

    def _capture_to_file(self, destination: str, snapshot: ActiveWindowSnapshot) -> bool:
        """Write a PNG of the active window only; never falls back to the full screen."""
        if platform.system() == "Darwin" and snapshot.window_id:
            try:
                result = subprocess.run(
                    ["screencapture", "-x", "-o", "-t", "png", "-l", str(snapshot.window_id), destination],
                    capture_output=True,
                    timeout=CAPTURE_TIMEOUT_SECONDS,
                    check=False,
                )
                if result.returncode == 0:
                    return True
                logger.debug("screencapture exited with %s", result.returncode)
            except subprocess.TimeoutExpired:
                logger.warning("screencapture timed out after %ss", CAPTURE_TIMEOUT_SECONDS)
                return False
            except OSError as exc:
                logger.debug("screencapture unavailable: %s", exc)

        if not snapshot.bounds:
            return False
        x, y, width, height = snapshot.bounds
        with mss.mss() as sct:
            raw = sct.grab({"left": x, "top": y, "width": width, "height": height})
            img = Image.frombytes("RGB", raw.size, raw.bgra, "raw", "BGRX")
            img.save(destination)
        return True

    @staticmethod
    def _hash_file(path: str) -> str:
        digest = hashlib.md5()
        with open(path, "rb") as handle:
            for chunk in iter(lambda: handle.read(65536), b""):
                digest.update(chunk)
        return digest.hexdigest()

    def _emit(self, event: CaptureEvent) -> None:
        if not self.on_event:
            return
        try:
            self.on_event(event)
        except Exception as exc:
            logger.exception("Capture listener failed: %s", exc)

    # Cleanup --------------------------------------------------------------

    def cleanup_capture(self, image_path: str) -> None:
        try:
            if os.path.exists(image_path):
                os.remove(image_path)
        except OSError as exc:
            logger.debug("Failed to delete %s: %s", image_path, exc)

    def _capture_files(self) -> List[str]:
        try:
            names = os.listdir(self.temp_dir)
        except OSError:
            return []
        return [name for name in names if name.startswith(CAPTURE_FILE_PREFIX) and name.endswith(".png")]

    def cleanup_temp_files(self) -> None:
        files = self._capture_files()
        for name in files:
            self.cleanup_capture(os.path.join(self.temp_dir, name))
        if files:
            logger.debug("Cleaned up %d temp captures", len(files))

    def cleanup_old_captures(self, older_than_minutes: int = 5) -> None:
        cutoff = int(time.time() * 1000) - older_than_minutes * 60 * 1000
        for name in self._capture_files():
            stamp = name[len(CAPTURE_FILE_PREFIX):-len(".png")]
            try:
                taken_at = int(stamp)
            except ValueError:
                continue
            if taken_at < cutoff:
                self.cleanup_capture(os.path.join(self.temp_dir, name))

    def stats(self) -> Dict[str, object]:
        return {
            "is_running": self.is_running(),
            "capture_count": self.capture_count,
            "last_capture_hash": self.last_image_hash,
            "settings": self.settings.to_dict(),
        }
