# neuralstride/posture_engine/bridge/channel.py
"""
Message transports between the host process and the extension process.

`Channel` is the point-to-point, request/response boundary: a send never raises,
its outcome arrives later through `callback(response, error)`. `InProcessChannel`
implements it on top of a Scheduler so both processes can run side by side,
with hooks to take an endpoint offline or make it go silent.

`BroadcastBus` models the origin-scoped window message bus inside the host
process; delivery is asynchronous and receivers check the origin themselves.
"""
import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple
from ..common.models import BroadcastEnvelope
from .scheduler import Scheduler

logger = logging.getLogger(__name__)

Envelope = Dict[str, Any]
ResponseCallback = Callable[[Optional[Envelope], Optional[str]], None]
Handler = Callable[[Envelope, Optional[str]], Optional[Envelope]]
BroadcastListener = Callable[[BroadcastEnvelope, str], None]

NO_RECEIVER_ERROR = "Could not establish connection. Receiving end does not exist."

class Channel(ABC):
    @abstractmethod
    def send(self, target_id: str, envelope: Envelope,
             callback: Optional[ResponseCallback] = None,
             sender_id: Optional[str] = None) -> None:
        """Sends `envelope` to `target_id`. Never raises on transport failure."""

class InProcessChannel(Channel):
    """Loopback channel between registered endpoints, driven by a Scheduler."""

    def __init__(self, scheduler: Scheduler, latency: float = 0.0):
        self.scheduler = scheduler
        self.latency = latency
        self._handlers: Dict[str, Handler] = {}
        self._offline: set = set()
        self._silent: set = set()
        self._failures: Dict[str, int] = {}
        self.delivered: List[Tuple[str, Envelope]] = []

    def register(self, endpoint_id: str, handler: Handler) -> None:
        self._handlers[endpoint_id] = handler

    def unregister(self, endpoint_id: str) -> None:
        self._handlers.pop(endpoint_id, None)

    def set_available(self, endpoint_id: str, available: bool) -> None:
        if available:
            self._offline.discard(endpoint_id)
        else:
            self._offline.add(endpoint_id)

    def set_silent(self, endpoint_id: str, silent: bool) -> None:
        """A silent endpoint swallows messages without ever answering."""
        if silent:
            self._silent.add(endpoint_id)
        else:
            self._silent.discard(endpoint_id)

    def fail_next(self, endpoint_id: str, count: int = 1) -> None:
        self._failures[endpoint_id] = self._failures.get(endpoint_id, 0) + count

    def send(self, target_id: str, envelope: Envelope,
             callback: Optional[ResponseCallback] = None,
             sender_id: Optional[str] = None) -> None:
        # Receivers get their own copy, as with a structured-clone transport.
        self.scheduler.call_later(self.latency, self._deliver, target_id, copy.deepcopy(envelope),
                                  callback, sender_id)

    def _deliver(self, target_id: str, envelope: Envelope,
                 callback: Optional[ResponseCallback], sender_id: Optional[str]) -> None:
        handler = self._handlers.get(target_id)
        error = None
        if handler is None or target_id in self._offline:
            error = NO_RECEIVER_ERROR
        elif self._failures.get(target_id, 0) > 0:
            self._failures[target_id] -= 1
            error = "The message port closed before a response was received."

        if error is not None:
            logger.debug("Delivery of %s to %s failed: %s", envelope.get('action'), target_id, error)
            if callback is not None:
                self.scheduler.call_later(self.latency, callback, None, error)
            return

        if target_id in self._silent:
            return

        self.delivered.append((target_id, envelope))
        response = handler(envelope, sender_id)
        if callback is not None:
            self.scheduler.call_later(self.latency, callback, response, None)

class BroadcastBus:
    """Asynchronous same-process message bus; every envelope is tagged with its posting origin."""

    def __init__(self, scheduler: Scheduler):
        self.scheduler = scheduler
        self._listeners: List[BroadcastListener] = []

    def add_listener(self, listener: BroadcastListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: BroadcastListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def post(self, envelope: BroadcastEnvelope, origin: str) -> None:
        self.scheduler.call_later(0.0, self._dispatch, envelope, origin)

    def _dispatch(self, envelope: BroadcastEnvelope, origin: str) -> None:
        # Listeners registered by the time of dispatch receive the envelope.
        for listener in list(self._listeners):
            if listener in self._listeners:
                listener(envelope, origin)
