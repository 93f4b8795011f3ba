import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from constants import BATCH_DELAY_SECONDS, MAX_BATCH_SIZE
from context_schema import ScreenAnalysis

logger = logging.getLogger(__name__)


@dataclass
class AnalysisRequest:
    """One queued LLM analysis; `future` resolves when its turn in a flush comes."""

    text: str
    app_name: str
    window_title: str
    timestamp: int
    future: Future = field(default_factory=Future)


class AnalysisQueue:
    """
    Collects LLM analysis requests and flushes them in small serial batches.

    A flush happens `batch_delay` seconds after the first request lands in an
    empty queue, or immediately once `max_batch_size` requests are waiting,
    whichever comes first. Each flush takes at most `max_batch_size` items and
    calls `process` on them one at a time; if `process` raises, that item is
    resolved with `fallback` instead. Callers never see the exception.
    """

    def __init__(
        self,
        process: Callable[[AnalysisRequest], ScreenAnalysis],
        fallback: Callable[[AnalysisRequest], ScreenAnalysis],
        *,
        batch_delay: float = BATCH_DELAY_SECONDS,
        max_batch_size: int = MAX_BATCH_SIZE,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ) -> None:
        self._process = process
        self._fallback = fallback
        self.batch_delay = batch_delay
        self.max_batch_size = max(1, max_batch_size)
        self._timer_factory = timer_factory

        self._lock = threading.Lock()
        self._queue: List[AnalysisRequest] = []
        self._timer: Optional[threading.Timer] = None
        self._timer_token: Optional[object] = None
        self._processing = False
        self._stopped = False

    # ------------------------------------------------------------------ Public API
    def submit(self, text: str, app_name: str, window_title: str, timestamp: int) -> Future:
        request = AnalysisRequest(text=text, app_name=app_name, window_title=window_title, timestamp=timestamp)
        flush_now = False
        with self._lock:
            if self._stopped:
                request.future.set_result(self._safe_fallback(request))
                return request.future
            self._queue.append(request)
            if self._timer is None:
                self._arm_timer()
            if len(self._queue) >= self.max_batch_size:
                self._cancel_timer()
                flush_now = True
        if flush_now:
            self.flush()
        return request.future

    def flush(self) -> None:
        with self._lock:
            if self._processing or not self._queue:
                return
            self._processing = True
            self._cancel_timer()
            batch = self._queue[: self.max_batch_size]
            del self._queue[: self.max_batch_size]

        logger.debug("Flushing %d analysis request(s)", len(batch))
        try:
            for request in batch:
                self._resolve(request)
        finally:
            with self._lock:
                self._processing = False
                if self._queue and self._timer is None and not self._stopped:
                    self._arm_timer()

    def pending_count(self) -> int:
        with self._lock:
            return len(self._queue)

    def stop(self) -> None:
        """Cancel the flush timer and answer anything still queued heuristically."""
        with self._lock:
            self._stopped = True
            self._cancel_timer()
            leftovers = list(self._queue)
            self._queue.clear()
        for request in leftovers:
            if not request.future.done():
                request.future.set_result(self._safe_fallback(request))

    def restart(self) -> None:
        with self._lock:
            self._stopped = False

    # ----------------------------------------------------------------- Internals
    def _arm_timer(self) -> None:
        token = object()
        timer = self._timer_factory(self.batch_delay, self._on_timer, args=(token,))
        timer.daemon = True
        self._timer = timer
        self._timer_token = token
        timer.start()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._timer_token = None

    def _on_timer(self, token: object) -> None:
        with self._lock:
            if token is not self._timer_token:
                return
            self._timer = None
            self._timer_token = None
        try:
            self.flush()
        except Exception as exc:
            logger.exception("Analysis flush failed: %s", exc)

    def _resolve(self, request: AnalysisRequest) -> None:
        if request.future.done():
            return
        try:
            result = self._process(request)
        except Exception as exc:
            logger.warning("LLM analysis failed for %s, using heuristics: %s", request.app_name, exc)
            result = self._safe_fallback(request)
        request.future.set_result(result)

    def _safe_fallback(self, request: AnalysisRequest) -> ScreenAnalysis:
        try:
            return self._fallback(request)
        except Exception as exc:
            logger.exception("Heuristic fallback failed: %s", exc)
            return ScreenAnalysis(timestamp=request.timestamp, app=request.app_name)
