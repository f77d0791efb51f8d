# neuralstride/posture_engine/bridge/content_relay.py
import logging
from typing import Optional
from ..common.enums import BroadcastType, MessageAction, MessageSource
from ..common.models import BroadcastEnvelope
from .channel import BroadcastBus, Channel, Envelope
from .extension_service import internal_endpoint
from .scheduler import Scheduler, TaskHandle

logger = logging.getLogger(__name__)

class ContentRelay:
    """
    Extension code running inside the host page. It announces the extension to the
    page (CONTENT_SCRIPT_READY, retried until confirmed) and turns the extension's
    start/stop notifications into START_MONITORING / STOP_MONITORING broadcasts.
    """

    def __init__(self, config: dict, channel: Channel, scheduler: Scheduler,
                 bus: BroadcastBus, extension_id: str):
        self.config = config
        self.channel = channel
        self.scheduler = scheduler
        self.bus = bus
        self.extension_id = extension_id
        self.origin = config.get('origin', 'http://localhost:3000')
        self.tab_id = config.get('tab_id', 'tab-1')
        self.announce_interval = config.get('announce_interval', 1.0)
        self.max_announce_attempts = config.get('max_announce_attempts', 5)
        self.announce_attempts = 0
        self.confirmed = False
        self._announce_timer: Optional[TaskHandle] = None

    def load(self) -> None:
        self.channel.register(self.tab_id, self.handle_extension_message)
        self.bus.add_listener(self._on_broadcast)
        self.channel.send(internal_endpoint(self.extension_id),
                          {'action': MessageAction.READY.value, 'tabId': self.tab_id},
                          self._on_ready_ack, sender_id=self.tab_id)
        self._announce()
        self._announce_timer = self.scheduler.call_every(self.announce_interval, self._announce)
        logger.info("Content relay loaded in %s", self.tab_id)

    def unload(self) -> None:
        self._stop_announcing()
        self.channel.unregister(self.tab_id)
        self.bus.remove_listener(self._on_broadcast)

    def _announce(self) -> None:
        if self.confirmed or self.announce_attempts >= self.max_announce_attempts:
            self._stop_announcing()
            return
        self.announce_attempts += 1
        logger.debug("Announcing extension %s (attempt %d/%d)",
                     self.extension_id, self.announce_attempts, self.max_announce_attempts)
        self._post(BroadcastType.CONTENT_SCRIPT_READY, {'extensionId': self.extension_id})

    def _stop_announcing(self) -> None:
        if self._announce_timer is not None:
            self._announce_timer.cancel()
            self._announce_timer = None

    def _post(self, message_type: BroadcastType, data: Optional[dict] = None) -> None:
        self.bus.post(BroadcastEnvelope(type=message_type, source=MessageSource.EXTENSION,
                                        timestamp=self.scheduler.now(), data=data or {}), self.origin)

    def _on_ready_ack(self, response: Optional[Envelope], error: Optional[str]) -> None:
        if error is not None:
            logger.warning("Extension did not register %s: %s", self.tab_id, error)

    def _on_broadcast(self, envelope: BroadcastEnvelope, origin: str) -> None:
        if origin != self.origin:
            return
        if envelope.source != MessageSource.WEBAPP:
            return
        if envelope.type == BroadcastType.CONTENT_SCRIPT_CONFIRMED:
            if not self.confirmed:
                logger.info("Host page confirmed the extension announce")
            self.confirmed = True
            self._stop_announcing()
        elif envelope.type == BroadcastType.WEBAPP_READY:
            logger.info("Web app is ready for communication")
            if not self.confirmed:
                # The page may have loaded after the announces ran out.
                self._post(BroadcastType.CONTENT_SCRIPT_READY, {'extensionId': self.extension_id})

    def handle_extension_message(self, envelope: Envelope, sender_id: Optional[str] = None) -> Envelope:
        action = envelope.get('action')
        # The host status sequence, if any, rides along on the broadcast.
        data = {'seq': envelope['seq']} if 'seq' in envelope else None
        if action == MessageAction.EXTENSION_STARTED.value:
            logger.info("Extension started monitoring, notifying web app")
            self._post(BroadcastType.START_MONITORING, data)
            return {'received': True}
        if action == MessageAction.EXTENSION_STOPPED.value:
            logger.info("Extension stopped monitoring, notifying web app")
            self._post(BroadcastType.STOP_MONITORING, data)
            return {'received': True}
        return {'received': False}
