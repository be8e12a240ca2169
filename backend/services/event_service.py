"""
Event Service - Fans engine progress and events out to SSE subscribers

Provides:
- EventStreamObserver: ImplementationObserver that records and broadcasts
- subscribe(): Subscribe to events for a task (SSE generator)
- get_events_since(): Catch up after a reconnect

Events are kept in memory per task id; nothing is persisted.
"""
import asyncio
import json
import logging
import threading
from collections import defaultdict
from typing import Any, AsyncGenerator, Dict, List, Optional

from implementation.core.events import ImplementationObserver
from implementation.schemas import (
    ImplementationEvent,
    ImplementationProgress,
    TERMINAL_STATUSES,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

# SSE event name used for progress snapshots; discrete events use their EventType value
PROGRESS_EVENT = "progress"

MAX_HISTORY = 1000
QUEUE_SIZE = 100
KEEPALIVE_SECONDS = 30.0

_TERMINAL_VALUES = {status.value for status in TERMINAL_STATUSES}

# In-memory subscribers and history for real-time event delivery
_subscribers: Dict[str, List[asyncio.Queue]] = defaultdict(list)
_history: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
_subscribers_lock = threading.Lock()

# Store the main event loop for thread-safe event dispatch
_main_loop: Optional[asyncio.AbstractEventLoop] = None


def set_main_loop(loop: asyncio.AbstractEventLoop):
    """Set the main event loop for thread-safe event dispatch"""
    global _main_loop
    _main_loop = loop


class EventStreamObserver(ImplementationObserver):
    """Records a task's progress snapshots and events and notifies subscribers"""

    def __init__(self, task_id: str):
        self.task_id = task_id

    def on_progress(self, progress: ImplementationProgress) -> None:
        publish(self.task_id, PROGRESS_EVENT, progress.model_dump(mode="json"))

    def on_event(self, event: ImplementationEvent) -> None:
        publish(self.task_id, event.type.value, event.model_dump(mode="json"))


def publish(task_id: str, event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Record an event for a task and notify real-time subscribers

    Returns:
        The event record as delivered to subscribers
    """
    with _subscribers_lock:
        history = _history[task_id]
        event_data = {
            "id": history[-1]["id"] + 1 if history else 1,
            "task_id": task_id,
            "event_type": event_type,
            "payload": payload,
            "created_at": utc_now_iso(),
        }
        history.append(event_data)
        if len(history) > MAX_HISTORY:
            del history[: len(history) - MAX_HISTORY]
        queues = list(_subscribers.get(task_id, []))  # Copy to avoid holding lock during put

    for queue in queues:
        try:
            # Try to use the event loop's thread-safe method if available
            if _main_loop and _main_loop.is_running() and not _in_loop(_main_loop):
                _main_loop.call_soon_threadsafe(lambda q=queue, d=event_data: _safe_put(q, d))
            else:
                _safe_put(queue, event_data)
        except RuntimeError as e:
            # Loop closed: subscriber is gone
            logger.warning(f"[EventService] Failed to notify subscriber: {e}")

    return event_data


def _in_loop(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False


def _safe_put(queue: asyncio.Queue, data: dict):
    """Safely put data into queue, ignore if full"""
    try:
        queue.put_nowait(data)
    except asyncio.QueueFull:
        logger.warning(f"[EventService] Subscriber queue full, dropping event {data.get('id')}")


def is_terminal(event_data: Dict[str, Any]) -> bool:
    """True for a progress snapshot whose status ends the run"""
    return (
        event_data.get("event_type") == PROGRESS_EVENT
        and event_data.get("payload", {}).get("status") in _TERMINAL_VALUES
    )


def format_sse(event_data: Dict[str, Any]) -> str:
    return f"id: {event_data['id']}\nevent: {event_data['event_type']}\ndata: {json.dumps(event_data)}\n\n"


async def subscribe(task_id: str, since_id: Optional[int] = None) -> AsyncGenerator[str, None]:
    """
    Subscribe to events for a task (SSE generator)

    Replays recorded events first, then streams new ones. The stream
    ends after a terminal progress snapshot.

    Usage:
        @router.get("/api/implementations/{task_id}/events")
        async def get_events(task_id: str):
            return StreamingResponse(subscribe(task_id), media_type="text/event-stream")
    """
    global _main_loop
    try:
        _main_loop = asyncio.get_running_loop()
    except RuntimeError:
        pass

    queue: asyncio.Queue = asyncio.Queue(maxsize=QUEUE_SIZE)

    # Snapshot and register atomically so no event falls between them
    with _subscribers_lock:
        backlog = [e for e in _history.get(task_id, []) if since_id is None or e["id"] > since_id]
        _subscribers[task_id].append(queue)

    try:
        yield f": connected to task {task_id}\n\n"

        for event_data in backlog:
            yield format_sse(event_data)
            if is_terminal(event_data):
                return

        while True:
            try:
                event_data = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                # Send keepalive comment to keep connection alive
                yield ": keepalive\n\n"
                continue
            yield format_sse(event_data)
            if is_terminal(event_data):
                return
    finally:
        with _subscribers_lock:
            queues = _subscribers.get(task_id)
            if queues is not None:
                try:
                    queues.remove(queue)
                except ValueError:
                    pass
                if not queues:
                    del _subscribers[task_id]


def get_events_since(task_id: str, since_id: Optional[int] = None, limit: int = 100) -> List[Dict[str, Any]]:
    """
    Get recorded events for a task after a given event id

    Useful for catching up on missed events after reconnection.
    """
    with _subscribers_lock:
        events = [e for e in _history.get(task_id, []) if since_id is None or e["id"] > since_id]
    return events[:limit]


def clear_events(task_id: str) -> None:
    """Forget a task's recorded events"""
    with _subscribers_lock:
        _history.pop(task_id, None)


__all__ = [
    "EventStreamObserver",
    "PROGRESS_EVENT",
    "publish",
    "subscribe",
    "get_events_since",
    "clear_events",
    "format_sse",
    "is_terminal",
    "set_main_loop",
]
