# neuralstride/posture_engine/feedback/session_stats.py
from typing import Optional
from ..common.models import PostureMetrics, SessionStats
from ..processing.scoring import round_half_up

GOOD_POSTURE_SCORE = 70

class SessionTracker:
    """Per-second session statistics: elapsed time, good-posture seconds, average detected score."""

    def __init__(self):
        self.started_at: Optional[float] = None
        self._good_seconds = 0
        self._score_total = 0.0
        self._samples = 0
        self._elapsed = 0

    def start(self, now: float) -> None:
        self.started_at = now
        self._good_seconds = 0
        self._score_total = 0.0
        self._samples = 0
        self._elapsed = 0

    def record(self, metrics: PostureMetrics, now: float) -> None:
        """Called once per stats interval with the latest metrics."""
        if self.started_at is None:
            return
        self._elapsed = int(now - self.started_at)
        if metrics.posture_score >= GOOD_POSTURE_SCORE:
            self._good_seconds += 1
        if metrics.is_person_detected:
            self._score_total += metrics.posture_score
            self._samples += 1

    @property
    def average_score(self) -> int:
        if self._samples == 0:
            return 0
        return round_half_up(self._score_total / self._samples)

    def snapshot(self) -> SessionStats:
        return SessionStats(
            session_seconds=self._elapsed,
            good_posture_seconds=self._good_seconds,
            average_score=self.average_score,
            samples=self._samples,
        )
