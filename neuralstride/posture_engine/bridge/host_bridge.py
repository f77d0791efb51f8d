# neuralstride/posture_engine/bridge/host_bridge.py
"""
Host-side end of the messaging bridge.

The bridge owns a BridgeConnection and keeps it honest over an unreliable
channel:

* discovery: the extension id learnt from the CONTENT_SCRIPT_READY announce is
  used first; a configured `known_peer_id` is only a development fallback;
* liveness: a `ping` must be answered with `{"status": "connected"}` before
  `ping_timeout` seconds;
* delivery: every outbound message goes through `pending_queue` and is sent
  one at a time, oldest first. A message leaves the queue only once its
  delivery callback reports success, so a failure or a send left unanswered
  for `ping_timeout` keeps it at the head. A drain covers the queue as of its
  start; messages queued meanwhile wait for the next drain;
* recovery: failed checks are retried `max_retries` times per cycle, a
  reconnection monitor starts new cycles while disconnected and gives up after
  `max_failed_cycles` until a visibility change or a fresh announce;
* heartbeat: a fire-and-forget `heartbeat` while connected.
"""
import logging
from functools import partial
from typing import Any, Dict, Optional
from ..common.enums import BroadcastType, MessageSource
from ..common.models import BridgeConnection, BroadcastEnvelope, Message, PostureMetrics
from .channel import BroadcastBus, Channel, Envelope
from .scheduler import Scheduler, TaskHandle

logger = logging.getLogger(__name__)

class HostBridge:
    def __init__(self, config: dict, channel: Channel, scheduler: Scheduler,
                 bus: Optional[BroadcastBus] = None, sender_id: Optional[str] = None):
        self.config = config
        self.channel = channel
        self.scheduler = scheduler
        self.bus = bus
        self.sender_id = sender_id
        self.origin = config.get('origin', 'http://localhost:3000')
        self.known_peer_id = config.get('known_peer_id')
        self.max_retries = config.get('max_retries', 3)
        self.retry_delay = config.get('retry_delay', 2.0)
        self.resend_check_delay = config.get('resend_check_delay', 1.0)
        self.announce_check_delay = config.get('announce_check_delay', 0.5)
        self.ping_timeout = config.get('ping_timeout', 2.0)
        self.monitor_interval = config.get('monitor_interval', 10.0)
        self.max_failed_cycles = config.get('max_failed_cycles', 6)
        self.heartbeat_interval = config.get('heartbeat_interval', 5.0)

        self.connection = BridgeConnection()
        self._announced_peer_id: Optional[str] = None
        self._check_token = 0
        self._checking = False
        self._in_flight: Optional[Message] = None
        self._send_token = 0
        self._drain_remaining = 0
        self._status_seq = 0
        self._retry_timer: Optional[TaskHandle] = None
        self._send_timer: Optional[TaskHandle] = None
        self._next_drain: Optional[TaskHandle] = None
        self._ping_timer: Optional[TaskHandle] = None
        self._monitor_timer: Optional[TaskHandle] = None
        self._heartbeat_timer: Optional[TaskHandle] = None
        self._destroyed = False

    # ------------------------------------------------------------------ lifecycle

    def start(self) -> None:
        """Listens for announces, starts the reconnection monitor and runs a first check."""
        if self.bus is not None:
            self.bus.add_listener(self._on_broadcast)
        self._start_monitor()
        self.check_connection()

    def destroy(self) -> None:
        self._destroyed = True
        for timer in (self._retry_timer, self._ping_timer, self._monitor_timer, self._heartbeat_timer,
                      self._send_timer, self._next_drain):
            if timer is not None:
                timer.cancel()
        self._retry_timer = self._ping_timer = self._monitor_timer = self._heartbeat_timer = None
        self._send_timer = self._next_drain = None
        if self.bus is not None:
            self.bus.remove_listener(self._on_broadcast)
        logger.info("Bridge destroyed with %d undelivered message(s)", len(self.connection.pending_queue))

    @property
    def gave_up(self) -> bool:
        return self.connection.failed_cycles >= self.max_failed_cycles

    def get_connection_status(self) -> Dict[str, Any]:
        return {
            'connected': self.connection.connected,
            'extensionId': self.connection.peer_id,
            'pending': len(self.connection.pending_queue),
        }

    def on_visibility_change(self, visible: bool) -> None:
        """An external trigger: a page becoming visible restarts discovery from scratch."""
        if not visible or self._destroyed:
            return
        self.connection.failed_cycles = 0
        if not self.connection.connected:
            self.connection.retry_count = 0
            self._start_monitor()
            self.check_connection()

    # ------------------------------------------------------------------ discovery & liveness

    def _candidate_peer(self) -> Optional[str]:
        return self.connection.peer_id or self._announced_peer_id or self.known_peer_id

    def check_connection(self) -> None:
        """Pings the peer; the outcome arrives asynchronously."""
        if self._destroyed or self._checking:
            return
        self._cancel_retry()

        peer = self._candidate_peer()
        if peer is None:
            logger.info("No extension id known yet, waiting for announce (attempt %d/%d)",
                        self.connection.retry_count + 1, self.max_retries)
            self._schedule_retry()
            return

        self.connection.peer_id = peer
        self._checking = True
        self._check_token += 1
        token = self._check_token
        logger.debug("Pinging extension %s", peer)
        self._ping_timer = self.scheduler.call_later(self.ping_timeout, self._on_ping_timeout, token)
        self.channel.send(peer, Message.ping().to_envelope(), partial(self._on_ping_reply, token),
                          sender_id=self.sender_id)

    def _on_ping_reply(self, token: int, response: Optional[Envelope], error: Optional[str]) -> None:
        if token != self._check_token or not self._checking or self._destroyed:
            return
        self._finish_check()
        if error is None and response is not None and response.get('status') == 'connected':
            self._on_connected()
        else:
            self._on_check_failed(error or f"unexpected ping reply {response!r}")

    def _on_ping_timeout(self, token: int) -> None:
        if token != self._check_token or not self._checking or self._destroyed:
            return
        self._finish_check()
        self._on_check_failed("ping timed out")

    def _finish_check(self) -> None:
        self._checking = False
        if self._ping_timer is not None:
            self._ping_timer.cancel()
            self._ping_timer = None

    def _on_connected(self) -> None:
        was_connected = self.connection.connected
        self.connection.connected = True
        self.connection.retry_count = 0
        self.connection.failed_cycles = 0
        self._cancel_retry()
        if self._monitor_timer is not None:
            self._monitor_timer.cancel()
            self._monitor_timer = None
        if self._heartbeat_timer is None:
            self._heartbeat_timer = self.scheduler.call_every(self.heartbeat_interval, self._send_heartbeat)
        if not was_connected:
            logger.info("Extension connection established with %s", self.connection.peer_id)
        self._pump()

    def _on_check_failed(self, reason: str) -> None:
        logger.info("Extension check failed: %s", reason)
        self._mark_disconnected(reason)
        self._schedule_retry()

    def _mark_disconnected(self, reason: str) -> None:
        if self.connection.connected:
            logger.warning("Extension connection lost: %s", reason)
        self.connection.connected = False
        self._drain_remaining = 0
        if self._next_drain is not None:
            self._next_drain.cancel()
            self._next_drain = None
        if self._heartbeat_timer is not None:
            self._heartbeat_timer.cancel()
            self._heartbeat_timer = None
        self._start_monitor()

    def _schedule_retry(self) -> None:
        if self.connection.retry_count < self.max_retries:
            self.connection.retry_count += 1
            self._cancel_retry()
            self._retry_timer = self.scheduler.call_later(self.retry_delay, self._on_retry_timer)
            return

        self.connection.failed_cycles += 1
        logger.warning("Extension unreachable after %d retries (%d failed cycle(s))",
                       self.max_retries, self.connection.failed_cycles)
        if self.gave_up:
            logger.warning("Giving up on extension until the page becomes visible or the extension announces itself")
            if self._monitor_timer is not None:
                self._monitor_timer.cancel()
                self._monitor_timer = None

    def _on_retry_timer(self) -> None:
        self._retry_timer = None
        self.check_connection()

    def _cancel_retry(self) -> None:
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None

    def _start_monitor(self) -> None:
        if self._monitor_timer is None and not self.gave_up and not self._destroyed:
            self._monitor_timer = self.scheduler.call_every(self.monitor_interval, self._on_monitor_tick)

    def _on_monitor_tick(self) -> None:
        if self.connection.connected or self._checking or self._retry_timer is not None:
            return
        logger.info("Connection lost, attempting to reconnect")
        self.connection.retry_count = 0
        self.check_connection()

    def _send_heartbeat(self) -> None:
        if not self.connection.connected or self.connection.peer_id is None:
            return
        self.channel.send(self.connection.peer_id, Message.heartbeat().to_envelope(),
                          self._on_heartbeat_result, sender_id=self.sender_id)

    def _on_heartbeat_result(self, response: Optional[Envelope], error: Optional[str]) -> None:
        # The extension never answers heartbeats; only a transport error matters.
        if error is not None and self.connection.connected and not self._destroyed:
            logger.info("Heartbeat failed (%s), running liveness check", error)
            self.check_connection()

    # ------------------------------------------------------------------ sending

    def send(self, message: Message) -> None:
        """Queues `message` for FIFO delivery. Transport failures never reach the caller."""
        if self._destroyed:
            logger.debug("Bridge destroyed, dropping %s", message.action.value)
            return
        self.connection.pending_queue.append(message)
        if self.connection.connected:
            self._pump()
            return
        logger.debug("Queued %s (%d pending)", message.action.value, len(self.connection.pending_queue))
        if self.connection.retry_count == 0 and not self._checking and not self.gave_up:
            self.check_connection()

    def send_posture_data(self, metrics: PostureMetrics) -> None:
        self.send(Message.posture_update(metrics))

    def send_session_status(self, is_active: bool) -> int:
        """Queues a session status tagged with a fresh sequence number, which is returned."""
        self._status_seq += 1
        self.send(Message.session_status(is_active, seq=self._status_seq))
        return self._status_seq

    @property
    def last_status_seq(self) -> int:
        """Sequence number of the most recent session status handed to `send`."""
        return self._status_seq

    def _pump(self) -> None:
        queue = self.connection.pending_queue
        if self._in_flight is not None or not self.connection.connected or not queue or self._destroyed:
            return
        if self._drain_remaining <= 0:
            if self._next_drain is not None:
                return
            self._drain_remaining = len(queue)
            logger.debug("Processing %d queued message(s)", self._drain_remaining)
        message = queue[0]
        self._in_flight = message
        self._send_token += 1
        token = self._send_token
        self._send_timer = self.scheduler.call_later(self.ping_timeout, self._on_send_timeout, token)
        self.channel.send(self.connection.peer_id, message.to_envelope(),
                          partial(self._on_delivery, token, message), sender_id=self.sender_id)

    def _start_next_drain(self) -> None:
        self._next_drain = None
        self._pump()

    def _finish_send(self) -> None:
        self._in_flight = None
        if self._send_timer is not None:
            self._send_timer.cancel()
            self._send_timer = None

    def _on_send_timeout(self, token: int) -> None:
        if token != self._send_token or self._in_flight is None or self._destroyed:
            return
        self._send_timer = None
        self._in_flight = None
        # A reply arriving after this point belongs to an abandoned attempt.
        self._send_token += 1
        self._on_send_failed("no reply to queued message")

    def _on_send_failed(self, reason: str) -> None:
        logger.info("Message send failed: %s", reason)
        was_connected = self.connection.connected
        self._mark_disconnected(reason)
        if was_connected and not self._checking:
            self._cancel_retry()
            self._retry_timer = self.scheduler.call_later(self.resend_check_delay, self._on_retry_timer)

    def _on_delivery(self, token: int, message: Message,
                     response: Optional[Envelope], error: Optional[str]) -> None:
        if token != self._send_token or self._in_flight is None:
            logger.debug("Ignoring late reply for %s", message.action.value)
            return
        self._finish_send()
        queue = self.connection.pending_queue
        if self._destroyed:
            return

        if error is not None:
            self._on_send_failed(error)
            return

        if queue and queue[0] is message:
            queue.pop(0)
        self._drain_remaining -= 1
        if isinstance(response, dict) and response.get('status') == 'error':
            logger.warning("Extension rejected %s: %s", message.action.value, response.get('message'))
        if self._drain_remaining <= 0 and queue:
            # Messages queued during the drain go out in the next one.
            self._next_drain = self.scheduler.call_later(0.0, self._start_next_drain)
            return
        self._pump()

    # ------------------------------------------------------------------ broadcast handshake

    def _on_broadcast(self, envelope: BroadcastEnvelope, origin: str) -> None:
        if origin != self.origin:
            logger.debug("Ignoring %s from foreign origin %s", envelope.type.value, origin)
            return
        if envelope.type != BroadcastType.CONTENT_SCRIPT_READY or envelope.source != MessageSource.EXTENSION:
            return

        peer = envelope.data.get('extensionId')
        logger.info("Extension content script announced itself (%s)", peer)
        if peer:
            self._announced_peer_id = peer
            if not self.connection.connected:
                self.connection.peer_id = peer
        if self.bus is not None:
            self.bus.post(BroadcastEnvelope(type=BroadcastType.CONTENT_SCRIPT_CONFIRMED,
                                            source=MessageSource.WEBAPP,
                                            timestamp=self.scheduler.now(),
                                            data={'extensionId': peer}), self.origin)
        if not self.connection.connected and not self._checking:
            self.connection.retry_count = 0
            self.connection.failed_cycles = 0
            self._start_monitor()
            self._cancel_retry()
            self._retry_timer = self.scheduler.call_later(self.announce_check_delay, self._on_retry_timer)
