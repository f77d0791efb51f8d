# neuralstride/posture_engine/session/monitoring_session.py
import logging
from typing import Any, List, Optional
from ..common.enums import BroadcastType, MessageSource
from ..common.models import BroadcastEnvelope, FrameMetadata, PostureMetrics, PostureResult
from ..bridge.channel import BroadcastBus
from ..bridge.host_bridge import HostBridge
from ..bridge.scheduler import Scheduler, TaskHandle
from ..feedback.health_model import HealthModel
from ..feedback.session_stats import SessionTracker
from ..feedback.voice_coach import VoiceFeedbackController
from ..processing.posture_processor import PostureProcessor

logger = logging.getLogger(__name__)

class MonitoringSession:
    """
    Host-page orchestrator. Holds the host process's only `is_monitoring` flag,
    feeds each frame through the processor into the feedback channels and the
    bridge, and converges with start/stop requests coming from the extension.
    """

    def __init__(self, config: dict, processor: PostureProcessor, voice: VoiceFeedbackController,
                 health: HealthModel, bridge: HostBridge, scheduler: Scheduler,
                 bus: Optional[BroadcastBus] = None):
        self.config = config
        self.processor = processor
        self.voice = voice
        self.health = health
        self.bridge = bridge
        self.scheduler = scheduler
        self.bus = bus
        self.origin = config.get('origin', 'http://localhost:3000')
        self.feedback_interval = config.get('feedback_interval', 5.0)
        self.bridge_update_interval = config.get('bridge_update_interval', 1.0)
        self.stats_interval = config.get('stats_interval', 1.0)
        self.start_announcement_delay = config.get('start_announcement_delay', 1.0)
        self.end_announcement_delay = config.get('end_announcement_delay', 0.5)
        self.min_session_for_summary = config.get('min_session_for_summary', 30)
        self.break_interval = config.get('break_interval', 0)

        self.is_monitoring = False
        self.metrics = PostureMetrics()
        self.last_result: Optional[PostureResult] = None
        self.tracker = SessionTracker()
        self._last_feedback_at: Optional[float] = None
        self._last_bridge_update_at: Optional[float] = None
        self._timers: List[TaskHandle] = []
        self._opened = False

    def open(self) -> None:
        """Wires the page up: bridge discovery, health ticking and the broadcast listener."""
        if self._opened:
            return
        self._opened = True
        if self.bus is not None:
            self.bus.add_listener(self._on_broadcast)
        self.bridge.start()
        self.health.start(self.scheduler)
        if self.bus is not None:
            self.bus.post(BroadcastEnvelope(type=BroadcastType.WEBAPP_READY, source=MessageSource.WEBAPP,
                                            timestamp=self.scheduler.now()), self.origin)

    def close(self) -> None:
        self.stop()
        self.health.stop()
        self.bridge.destroy()
        if self.bus is not None:
            self.bus.remove_listener(self._on_broadcast)
        self._opened = False

    # ------------------------------------------------------------------ monitoring state

    def start(self) -> bool:
        """Starts a session. Returns False if one is already running."""
        if self.is_monitoring:
            return False
        now = self.scheduler.now()
        self.is_monitoring = True
        self.metrics = PostureMetrics()
        self.tracker.start(now)
        self.voice.reset()
        self.health.set_monitoring(True, now)
        self._last_feedback_at = None
        self._last_bridge_update_at = None
        self.bridge.send_session_status(True)

        self._timers.append(self.scheduler.call_every(self.stats_interval, self._on_stats_tick))
        if self.break_interval:
            self._timers.append(self.scheduler.call_every(self.break_interval, self.voice.provide_break_reminder))
        self._timers.append(self.scheduler.call_later(self.start_announcement_delay, self.voice.announce_session_start))
        logger.info("Monitoring started")
        return True

    def stop(self) -> bool:
        if not self.is_monitoring:
            return False
        self.is_monitoring = False
        for timer in self._timers:
            timer.cancel()
        self._timers = []
        self.health.set_monitoring(False, self.scheduler.now())
        self.bridge.send_session_status(False)

        stats = self.tracker.snapshot()
        if stats.session_seconds > self.min_session_for_summary:
            self.scheduler.call_later(self.end_announcement_delay, self.voice.announce_session_end,
                                      stats.session_seconds, stats.average_score)
        logger.info("Monitoring stopped after %ds (average score %d)", stats.session_seconds, stats.average_score)
        return True

    def _on_broadcast(self, envelope: BroadcastEnvelope, origin: str) -> None:
        if origin != self.origin:
            logger.debug("Ignoring %s from foreign origin %s", envelope.type.value, origin)
            return
        if envelope.source != MessageSource.EXTENSION:
            return
        if envelope.type not in (BroadcastType.START_MONITORING, BroadcastType.STOP_MONITORING):
            return
        seq = envelope.data.get('seq')
        if isinstance(seq, int) and seq < self.bridge.last_status_seq:
            # Echo of a status the host has since superseded.
            logger.debug("Ignoring stale %s (seq %d < %d)", envelope.type.value, seq, self.bridge.last_status_seq)
            return
        if envelope.type == BroadcastType.START_MONITORING:
            logger.info("Extension triggered start")
            self.start()
        elif envelope.type == BroadcastType.STOP_MONITORING:
            logger.info("Extension triggered stop")
            self.stop()

    # ------------------------------------------------------------------ frames

    def process_frame(self, frame: Any, metadata: FrameMetadata) -> Optional[PostureResult]:
        """Runs one frame through the pipeline. Frames are ignored while not monitoring."""
        if not self.is_monitoring:
            return None
        now = self.scheduler.now()
        result = self.processor.process_frame(frame, metadata)
        self.last_result = result
        self.metrics = result.metrics

        if result.metrics.is_person_detected:
            self.health.set_score(result.metrics.posture_score)

        if (self._last_bridge_update_at is None
                or now - self._last_bridge_update_at >= self.bridge_update_interval):
            self._last_bridge_update_at = now
            self.bridge.send_posture_data(result.metrics)

        if result.metrics.is_person_detected and (
                self._last_feedback_at is None or now - self._last_feedback_at > self.feedback_interval):
            self._last_feedback_at = now
            self.voice.provide_posture_feedback(result.metrics.posture_score, now)

        return result

    def _on_stats_tick(self) -> None:
        self.tracker.record(self.metrics, self.scheduler.now())

    @property
    def health_state(self):
        return self.health.state

    @property
    def stats(self):
        return self.tracker.snapshot()
