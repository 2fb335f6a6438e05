"""Base scraper and the per-cycle execution context"""
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, List, Optional
from metrics.models import MetricDescriptor, MetricValue
from logging_config import get_logger
from .errors import ScrapeCancelled


logger = get_logger(__name__)


class ScrapeContext:
    """Cancellable context shared by every scraper of one cycle.

    Callbacks registered with on_cancel run exactly once, in the thread that
    cancels the context. They are how an in-flight query gets interrupted.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self.deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled.is_set():
                return
            self._cancelled.set()
            callbacks, self._callbacks = self._callbacks, []

        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning("Cancel callback failed", error=str(e), error_type=type(e).__name__)

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run `callback` on cancellation; returns a function that unregisters it.

        The callback runs immediately when the context is already cancelled.
        """
        with self._lock:
            if not self._cancelled.is_set():
                self._callbacks.append(callback)
                return lambda: self._unregister(callback)
        callback()
        return lambda: None

    def _unregister(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    @property
    def cancelled(self) -> bool:
        if self._cancelled.is_set():
            return True
        if self.deadline is not None and time.monotonic() >= self.deadline:
            self.cancel()
            return True
        return False

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, None when unbounded"""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check(self, scraper: Optional[str] = None) -> None:
        """Raise ScrapeCancelled once the context is cancelled or expired"""
        if self.cancelled:
            raise ScrapeCancelled("scrape cancelled", scraper=scraper)


class Scraper(ABC):
    """Base class for all scrapers.

    A scraper queries one diagnostic table and maps its rows to samples. It
    must not keep the connection past its own call and must close every
    cursor it opens, whatever the outcome.
    """

    def __init__(self, name: str, help_text: str = "", min_version: float = 0.0):
        self._name = name
        self._help_text = help_text
        self._min_version = float(min_version)

    @property
    def name(self) -> str:
        return self._name

    @property
    def help_text(self) -> str:
        return self._help_text or f"Collect metrics from {self.name}"

    @property
    def min_version(self) -> float:
        """Lowest target version this scraper supports"""
        return self._min_version

    def supports(self, version: float) -> bool:
        return self._min_version <= version

    @abstractmethod
    def descriptors(self) -> List[MetricDescriptor]:
        """Descriptors this scraper emits samples for"""
        pass

    @abstractmethod
    def scrape(self, pool, ctx: ScrapeContext) -> List[MetricValue]:
        """Run the scraper's queries and return the samples.

        Raises a ScrapeError subclass on failure. No rows is success with an
        empty list.
        """
        pass
