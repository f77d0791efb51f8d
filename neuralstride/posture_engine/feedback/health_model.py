# neuralstride/posture_engine/feedback/health_model.py
import logging
from typing import Optional
from ..common.models import HealthState
from ..bridge.scheduler import Scheduler, TaskHandle

logger = logging.getLogger(__name__)

NEUTRAL_HEALTH = 50.0

# (minimum score, health change per second), checked top-down.
CHANGE_RATES = (
    (85, 0.8),
    (70, 0.5),
    (55, 0.2),
    (45, -0.1),
    (35, -0.5),
    (25, -1.0),
)
CRITICAL_RATE = -1.8

# (minimum health, stage), checked top-down.
STAGE_THRESHOLDS = (
    (85.0, 5),
    (68.0, 4),
    (48.0, 3),
    (25.0, 2),
)

def change_rate(score: float) -> float:
    for minimum, rate in CHANGE_RATES:
        if score >= minimum:
            return rate
    return CRITICAL_RATE

def stage_for(health: float) -> int:
    for minimum, stage in STAGE_THRESHOLDS:
        if health >= minimum:
            return stage
    return 1

class HealthModel:
    """
    Health grows or decays with the current score on a fixed tick while monitoring,
    and drifts back toward the neutral midpoint while idle.
    """

    def __init__(self, config: dict):
        self.config = config
        self.tick_interval = config.get('tick_interval', 2.0)
        self.neutral_drift = config.get('neutral_drift', 0.5)
        initial = float(config.get('initial_health', NEUTRAL_HEALTH))
        self.state = HealthState(health=initial, stage=stage_for(initial))
        self.score: float = NEUTRAL_HEALTH
        self.is_monitoring = False
        self._last_update: Optional[float] = None
        self._scheduler: Optional[Scheduler] = None
        self._timer: Optional[TaskHandle] = None

    def start(self, scheduler: Scheduler) -> None:
        """Starts the repeating tick on `scheduler`."""
        self.stop()
        self._scheduler = scheduler
        self._last_update = scheduler.now()
        self._timer = scheduler.call_every(self.tick_interval, self._on_timer)

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self.tick(self._scheduler.now())

    def set_score(self, score: float) -> None:
        self.score = score

    def set_monitoring(self, active: bool, now: float) -> None:
        if active and not self.is_monitoring:
            # Elapsed time is measured from the moment monitoring resumed.
            self._last_update = now
        self.is_monitoring = active

    def tick(self, now: float) -> HealthState:
        health = self.state.health
        if self.is_monitoring:
            elapsed = 0.0 if self._last_update is None else max(0.0, now - self._last_update)
            health += change_rate(self.score) * elapsed
        elif health > NEUTRAL_HEALTH:
            health = max(NEUTRAL_HEALTH, health - self.neutral_drift)
        elif health < NEUTRAL_HEALTH:
            health = min(NEUTRAL_HEALTH, health + self.neutral_drift)
        self._last_update = now

        health = max(0.0, min(100.0, health))
        stage = stage_for(health)
        if stage != self.state.stage:
            logger.info("Health stage %d -> %d (health %.1f)", self.state.stage, stage, health)
        self.state = HealthState(health=health, stage=stage)
        return self.state
