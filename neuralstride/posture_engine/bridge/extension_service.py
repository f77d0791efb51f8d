# neuralstride/posture_engine/bridge/extension_service.py
import logging
import numbers
from functools import partial
from typing import Any, Dict, List, Optional, Tuple
from ..common.enums import MessageAction, PlantState
from ..common.models import Message
from .channel import Channel, Envelope
from .scheduler import Scheduler

logger = logging.getLogger(__name__)

BADGE_GREEN = '#10B981'
BADGE_AMBER = '#F59E0B'
BADGE_RED = '#EF4444'

def plant_state_for(score: float, is_monitoring: bool) -> PlantState:
    if not is_monitoring or score == 0:
        return PlantState.DORMANT
    if score >= 85:
        return PlantState.BLOOM
    if score >= 70:
        return PlantState.FLOWERING
    if score >= 50:
        return PlantState.GROWING
    if score >= 30:
        return PlantState.SPROUT
    return PlantState.WILTING

def badge_for(score: float, is_monitoring: bool) -> Tuple[str, Optional[str]]:
    """Badge text and colour; an empty text clears the badge."""
    if not is_monitoring or score <= 0:
        return '', None
    color = BADGE_GREEN if score >= 70 else BADGE_AMBER if score >= 50 else BADGE_RED
    return str(int(round(score))), color

class StatusPresenter:
    """Receives badge and notification updates. Presentation itself happens elsewhere."""

    def update_badge(self, text: str, color: Optional[str]) -> None:
        logger.debug("Badge -> %r (%s)", text, color)

    def notify(self, title: str, message: str) -> None:
        logger.info("Notification: %s - %s", title, message)

def internal_endpoint(extension_id: str) -> str:
    """Endpoint used by the extension's own contexts (content scripts, popup)."""
    return f"{extension_id}/internal"

def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)

class ExtensionService:
    """
    The privileged extension process: answers the host bridge, owns the extension's
    `is_monitoring` flag and pushes start/stop changes back to every host tab.
    """

    def __init__(self, config: dict, channel: Channel, scheduler: Scheduler,
                 presenter: Optional[StatusPresenter] = None):
        self.config = config
        self.channel = channel
        self.scheduler = scheduler
        self.presenter = presenter or StatusPresenter()
        self.extension_id = config.get('extension_id', 'neuralstride-extension')
        self.notification_threshold = config.get('notification_threshold', 40)
        self.notification_cooldown = config.get('notification_cooldown', 60.0)
        self.tab_retry_limit = config.get('tab_retry_limit', 3)
        self.tab_retry_delay = config.get('tab_retry_delay', 1.0)

        self.is_monitoring = False
        self.current_score: float = 50
        self.plant_state = PlantState.GROWING
        self.last_posture: Optional[Dict[str, Any]] = None
        self.last_heartbeat_at: Optional[float] = None
        self._last_notification_at: Optional[float] = None
        # Sequence of the last session status applied from the host.
        self.host_status_seq: Optional[int] = None
        self.tab_ids: List[str] = list(config.get('tab_ids', []))

    def attach(self) -> None:
        self.channel.register(self.extension_id, self.handle_external)
        self.channel.register(internal_endpoint(self.extension_id), self.handle_internal)
        logger.info("Extension service listening as %s", self.extension_id)

    def detach(self) -> None:
        self.channel.unregister(self.extension_id)
        self.channel.unregister(internal_endpoint(self.extension_id))

    def register_tab(self, tab_id: str) -> None:
        if tab_id not in self.tab_ids:
            self.tab_ids.append(tab_id)

    def unregister_tab(self, tab_id: str) -> None:
        if tab_id in self.tab_ids:
            self.tab_ids.remove(tab_id)

    # ------------------------------------------------------------------ message handling

    def handle_external(self, envelope: Envelope, sender_id: Optional[str] = None) -> Optional[Envelope]:
        """Messages from the host page."""
        try:
            message = Message.from_envelope(envelope)
        except ValueError as e:
            logger.warning("Rejected external message %r: %s", envelope, e)
            return {'status': 'error', 'message': str(e)}

        if message.action == MessageAction.PING:
            return {'status': 'connected', 'extensionId': self.extension_id}
        if message.action == MessageAction.HEARTBEAT:
            self.last_heartbeat_at = self.scheduler.now()
            return None
        if message.action == MessageAction.UPDATE_POSTURE:
            return self._handle_posture_update(message)
        if message.action == MessageAction.SESSION_STATUS:
            return self._handle_session_status(message)
        return {'status': 'error', 'message': f"Unsupported external action: {message.action.value}"}

    def handle_internal(self, envelope: Envelope, sender_id: Optional[str] = None) -> Optional[Envelope]:
        """Messages from the extension's own contexts."""
        try:
            message = Message.from_envelope(envelope)
        except ValueError as e:
            return {'success': False, 'message': str(e)}

        if message.action == MessageAction.START_MONITORING:
            self.start_monitoring()
            return {'success': True}
        if message.action == MessageAction.STOP_MONITORING:
            self.stop_monitoring()
            return {'success': True}
        if message.action == MessageAction.GET_STATUS:
            return self.get_status()
        if message.action == MessageAction.UPDATE_SCORE:
            score = message.body.get('score')
            if not _is_number(score):
                return {'success': False, 'message': 'No score provided'}
            self.current_score = score
            self._update_plant(score)
            return {'success': True}
        if message.action == MessageAction.READY:
            tab_id = message.body.get('tabId') or sender_id
            if not tab_id:
                return {'success': False, 'message': 'No tab id provided'}
            self.register_tab(tab_id)
            return {'success': True, 'isMonitoring': self.is_monitoring}
        return {'success': False, 'message': f"Unsupported internal action: {message.action.value}"}

    def get_status(self) -> Dict[str, Any]:
        return {
            'isMonitoring': self.is_monitoring,
            'currentScore': self.current_score,
            'plantState': self.plant_state.value,
        }

    def _handle_posture_update(self, message: Message) -> Envelope:
        data = message.data
        if not isinstance(data, dict):
            logger.warning("Posture update without data")
            return {'status': 'error', 'message': 'No data provided'}
        score = data.get('postureScore')
        if score is not None and not _is_number(score):
            return {'status': 'error', 'message': 'postureScore must be a number'}

        self.current_score = score or 0
        # Posture data only flows while the host monitors.
        self._set_monitoring(True, self.host_status_seq)
        self.last_posture = {
            'score': score,
            'angle': data.get('cervicalAngle'),
            'detected': data.get('isPersonDetected'),
            'timestamp': self.scheduler.now(),
        }
        self._update_plant(self.current_score)
        self._maybe_notify_poor_posture()
        return {'status': 'updated', 'currentScore': self.current_score}

    def _handle_session_status(self, message: Message) -> Envelope:
        is_active = message.body.get('isActive')
        if not isinstance(is_active, bool):
            return {'status': 'error', 'message': 'isActive must be a boolean'}
        seq = message.body.get('seq')
        if _is_number(seq):
            self.host_status_seq = int(seq)
        was_monitoring = self.is_monitoring
        self._set_monitoring(is_active, self.host_status_seq)
        if not is_active:
            self._update_plant(0)
        return {'status': 'received', 'wasMonitoring': was_monitoring, 'isMonitoring': self.is_monitoring}

    # ------------------------------------------------------------------ monitoring state

    def start_monitoring(self) -> None:
        """Started from the extension UI."""
        logger.info("Monitoring started from extension")
        # Unchanged flag: re-send so tabs that missed the last change catch up.
        if not self._set_monitoring(True):
            self._notify_tabs(MessageAction.EXTENSION_STARTED)
        self.presenter.notify('NeuralStride Started', 'Posture monitoring is now active')

    def stop_monitoring(self) -> None:
        logger.info("Monitoring stopped from extension")
        if not self._set_monitoring(False):
            self._notify_tabs(MessageAction.EXTENSION_STOPPED)
        self._update_plant(0)

    def _set_monitoring(self, active: bool, seq: Optional[int] = None) -> bool:
        """
        Updates the flag; a real change is pushed back to the host. Returns True if it changed.
        Changes caused by host messages carry the host status `seq` they were based on.
        """
        if self.is_monitoring == active:
            return False
        self.is_monitoring = active
        self._notify_tabs(MessageAction.EXTENSION_STARTED if active else MessageAction.EXTENSION_STOPPED, seq)
        return True

    def _update_plant(self, score: float) -> None:
        self.plant_state = plant_state_for(score, self.is_monitoring)
        text, color = badge_for(score, self.is_monitoring)
        self.presenter.update_badge(text, color)

    def _maybe_notify_poor_posture(self) -> None:
        if self.current_score >= self.notification_threshold or not self.last_posture['detected']:
            return
        now = self.scheduler.now()
        if self._last_notification_at is not None and now - self._last_notification_at <= self.notification_cooldown:
            return
        self._last_notification_at = now
        self.presenter.notify('Poor Posture Detected',
                              f"Your posture score is {self.current_score}. Sit up straight!")

    # ------------------------------------------------------------------ host notification

    def _notify_tabs(self, action: MessageAction, seq: Optional[int] = None) -> None:
        if not self.tab_ids:
            logger.info("No host tabs registered for %s", action.value)
            return
        for tab_id in list(self.tab_ids):
            self._send_to_tab(tab_id, action, seq, 0)

    def _send_to_tab(self, tab_id: str, action: MessageAction, seq: Optional[int], attempt: int) -> None:
        envelope = {'action': action.value}
        if seq is not None:
            envelope['seq'] = seq
        self.channel.send(tab_id, envelope,
                          partial(self._on_tab_reply, tab_id, action, seq, attempt),
                          sender_id=self.extension_id)

    def _on_tab_reply(self, tab_id: str, action: MessageAction, seq: Optional[int], attempt: int,
                      response: Optional[Envelope], error: Optional[str]) -> None:
        if error is None:
            logger.debug("Tab %s acknowledged %s", tab_id, action.value)
            return
        if attempt < self.tab_retry_limit:
            logger.info("Tab %s did not take %s (%s), retrying %d/%d",
                        tab_id, action.value, error, attempt + 1, self.tab_retry_limit)
            self.scheduler.call_later(self.tab_retry_delay, self._send_to_tab, tab_id, action, seq, attempt + 1)
        else:
            logger.warning("Tab %s not responding after %d retries", tab_id, self.tab_retry_limit)
