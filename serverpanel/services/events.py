# serverpanel/services/events.py
"""
Live event fan-out.

Supervisors and the coordinator emit events here; the WebSocket layer
subscribes. Subscribers are called in order for every event, so a subscriber
that only enqueues (no awaiting) sees events for a server in emission order.
"""

import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List

logger = logging.getLogger(__name__)

STATUS_CHANGE = "status_change"
LOG = "log"
STATS = "stats"
COMMAND = "command"
EXIT = "exit"
ERROR = "error"
INSTALL_PROGRESS = "install_progress"
PLAYER_JOIN = "player_join"
PLAYER_LEAVE = "player_leave"


@dataclass
class PanelEvent:
    type: str
    server_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "server_id": self.server_id,
            "data": self.data,
            "timestamp": self.timestamp,
        }


class EventBus:
    def __init__(self):
        self._subscribers: List[Callable] = []

    def subscribe(self, callback: Callable):
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable):
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    async def emit(self, event_type: str, server_id: str, **data: Any) -> PanelEvent:
        event = PanelEvent(event_type, server_id, data)
        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.debug(f"Subscriber failed on {event_type} event, removing", exc_info=True)
                self.unsubscribe(callback)
        return event
