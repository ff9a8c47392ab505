"""
Per-session event channel.

Replaces ambient socket callbacks with an explicit bus scoped to one session.
The registry closes the channel on teardown, which unregisters every handler;
emissions after close are dropped.
"""

import logging
from collections import defaultdict
from typing import Any, Callable, DefaultDict, List, Optional

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]


class ChannelEvents:
    # ProviderStreamClient -> registry
    READY = "ready"
    PROVIDER_EVENT = "provider-event"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    RECONNECTED = "reconnected"
    TERMINATED = "terminated"
    PROVIDER_ERROR = "provider-error"
    FATAL = "fatal"
    # LiveTranscriptionSession -> registry
    UPDATE = "update"
    INCONSISTENCY = "inconsistency"
    TURN_ABANDONED = "turn-abandoned"


class SessionEventChannel:
    """Synchronous publish/subscribe bus for one session."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self._handlers: DefaultDict[str, List[Handler]] = defaultdict(list)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, event_name: str, handler: Handler) -> Callable[[], None]:
        """Register a handler; returns a callable that unregisters it."""
        if self._closed:
            raise RuntimeError(f"Channel for session {self.session_id} is closed")
        self._handlers[event_name].append(handler)

        def unsubscribe():
            handlers = self._handlers.get(event_name)
            if handlers and handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def emit(self, event_name: str, payload: Any = None) -> int:
        """
        Deliver `payload` to every handler of `event_name` in registration order.

        Handler errors are logged and do not stop delivery.

        Returns:
            int: Number of handlers invoked
        """
        if self._closed:
            logger.debug(f"[{self.session_id}] Dropping '{event_name}' on closed channel")
            return 0

        delivered = 0
        for handler in list(self._handlers.get(event_name, ())):
            try:
                handler(payload)
                delivered += 1
            except Exception as e:
                logger.error(f"[{self.session_id}] Error in '{event_name}' handler: {e}", exc_info=True)
        return delivered

    def listener_count(self, event_name: Optional[str] = None) -> int:
        if event_name is not None:
            return len(self._handlers.get(event_name, ()))
        return sum(len(handlers) for handlers in self._handlers.values())

    def close(self):
        """Unregister every handler; idempotent."""
        if self._closed:
            return
        self._closed = True
        self._handlers.clear()
