"""In-process event bus shared by discovery, transfer and API layers."""

import asyncio
import inspect
import logging

logger = logging.getLogger(__name__)

# --- Event names ---
PEER_DISCOVERED = "peer-discovered"
PEER_UPDATED = "peer-updated"
PEER_EXPIRED = "peer-expired"
TRANSFER_PROGRESS = "transfer-progress"
TRANSFER_COMPLETED = "transfer-completed"
TRANSFER_ERROR = "transfer-error"
TRANSFER_CANCELLED = "transfer-cancelled"
RECEIVE_PROGRESS = "receive-progress"
RECEIVE_COMPLETED = "receive-completed"
RECEIVE_FAILED = "receive-failed"


class EventBus:
    """Fans events out to registered callbacks.

    Callbacks have the signature ``fn(event: str, data: dict)`` and may be
    plain functions or coroutine functions. Plain callbacks run inline, in
    publish order; coroutines are scheduled on the running event loop.
    """

    def __init__(self) -> None:
        self._callbacks: list = []
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, callback) -> None:
        """Register a callback for every published event."""
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unsubscribe(self, callback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def publish(self, event: str, data: dict) -> None:
        """Deliver an event to all subscribers; failures are logged, not raised."""
        for cb in list(self._callbacks):
            try:
                result = cb(event, data)
            except Exception as e:
                logger.error(f"Event callback error for {event}: {e}")
                continue

            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Async event callback error: {exc}")
