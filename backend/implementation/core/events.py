"""
Observer sink and cancellation token for the Engine

Observers are handed to the Engine at construction. Delivery is
synchronous: each observer sees progress snapshots and events in the
order the Engine produced them, before the Engine continues.
"""
import logging
from typing import Callable, Iterable, List, Optional

from implementation.schemas import ImplementationEvent, ImplementationProgress

logger = logging.getLogger(__name__)


class ImplementationObserver:
    """Receives progress snapshots and discrete events from an Engine"""

    def on_progress(self, progress: ImplementationProgress) -> None:
        pass

    def on_event(self, event: ImplementationEvent) -> None:
        pass


class CallbackObserver(ImplementationObserver):
    """Adapts plain callables to the observer interface"""

    def __init__(
        self,
        on_progress: Optional[Callable[[ImplementationProgress], None]] = None,
        on_event: Optional[Callable[[ImplementationEvent], None]] = None,
    ):
        self._on_progress = on_progress
        self._on_event = on_event

    def on_progress(self, progress: ImplementationProgress) -> None:
        if self._on_progress:
            self._on_progress(progress)

    def on_event(self, event: ImplementationEvent) -> None:
        if self._on_event:
            self._on_event(event)


class ObserverList:
    """Ordered fan-out to a fixed set of observers"""

    def __init__(self, observers: Optional[Iterable[ImplementationObserver]] = None):
        self._observers: List[ImplementationObserver] = list(observers or [])

    def add(self, observer: ImplementationObserver) -> None:
        self._observers.append(observer)

    def publish_progress(self, progress: ImplementationProgress) -> None:
        for observer in self._observers:
            # Each observer gets its own copy so none can mutate what the next one sees
            snapshot = progress.model_copy(deep=True)
            try:
                observer.on_progress(snapshot)
            except Exception as e:
                # Notifications are fire-and-forget; a broken observer must not stop the run
                logger.warning(f"[Engine] Observer failed on progress: {e}", exc_info=True)

    def publish_event(self, event: ImplementationEvent) -> None:
        for observer in self._observers:
            try:
                observer.on_event(event.model_copy(deep=True))
            except Exception as e:
                logger.warning(f"[Engine] Observer failed on event {event.type.value}: {e}", exc_info=True)

    def __len__(self):
        return len(self._observers)


class CancellationToken:
    """Cooperative cancellation flag checked between steps"""

    def __init__(self):
        self._cancelled = False
        self.reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        self._cancelled = True
        self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled


__all__ = [
    "ImplementationObserver",
    "CallbackObserver",
    "ObserverList",
    "CancellationToken",
]
