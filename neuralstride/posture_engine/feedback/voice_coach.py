# neuralstride/posture_engine/feedback/voice_coach.py
"""
Voice feedback controller.

Scores are bucketed into good (>= 70), fair (>= 45) and poor. A bucket has to
be held for the frequency gate (10/7/5 s) before its single message is spoken.
A score below 30 held for more than 3 s triggers the critical message straight
away, once per bucket, or again after three consecutive poor messages.
Independently of buckets, two utterances are never started less than 3 s
apart; requests inside that window are dropped.
"""
import logging
import random
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional
from ..common.enums import FeedbackFrequency, PostureBucket, VoiceType
from ..common.models import VoiceFeedbackState

logger = logging.getLogger(__name__)

GOOD_THRESHOLD = 70
FAIR_THRESHOLD = 45
EMERGENCY_SCORE = 30
EMERGENCY_MIN_DWELL = 3.0
MIN_SPEECH_SPACING = 3.0
CONSECUTIVE_POOR_LIMIT = 3

FREQUENCY_DELAYS = {
    FeedbackFrequency.LOW: 10.0,
    FeedbackFrequency.MEDIUM: 7.0,
    FeedbackFrequency.HIGH: 5.0,
}

POOR_MESSAGE = "Your posture is declining. Sit up straighter."
FAIR_RECOVERING_MESSAGE = "Better! Keep improving your posture."
FAIR_MESSAGE = "Your posture needs some adjustment."
GOOD_MESSAGE = "Excellent posture! Keep it up."
CRITICAL_MESSAGE = "Critical! Your posture needs immediate correction."

BREAK_MESSAGES = (
    "Time for a quick break. Stand up and stretch for 30 seconds.",
    "You've been working hard. Take a moment to stretch your neck and shoulders.",
    "Break time! Roll your shoulders back and take a deep breath.",
    "Let's take a neural reset. Stand up and move around for a bit.",
)

# Errors reported when an utterance is cut short on purpose.
BENIGN_SPEECH_ERRORS = ('interrupted', 'canceled')

class SpeechEngine(ABC):
    """Text-to-speech collaborator."""

    @abstractmethod
    def speak(self, text: str, voice: VoiceType,
              on_start: Callable[[], None],
              on_end: Callable[[], None],
              on_error: Callable[[str], None]) -> None:
        ...

    def cancel(self) -> None:
        """Stops any utterance in progress."""

class LoggingSpeechEngine(SpeechEngine):
    """Speech engine that writes utterances to the log. Used for replay and headless runs."""

    def speak(self, text, voice, on_start, on_end, on_error):
        on_start()
        logger.info("[%s voice] %s", voice.value, text)
        on_end()

def bucket_for(score: float) -> PostureBucket:
    if score >= GOOD_THRESHOLD:
        return PostureBucket.GOOD
    if score >= FAIR_THRESHOLD:
        return PostureBucket.FAIR
    return PostureBucket.POOR

class VoiceFeedbackController:
    def __init__(self, config: dict, speech: SpeechEngine,
                 clock: Callable[[], float] = time.monotonic,
                 rng: Optional[random.Random] = None):
        self.config = config
        self.speech = speech
        self.clock = clock
        self.rng = rng or random.Random()
        self.enabled = config.get('enabled', True)
        self.voice = VoiceType(config.get('voice', 'female'))
        self.frequency = FeedbackFrequency(config.get('frequency', 'medium'))
        self.state = VoiceFeedbackState()

    @property
    def required_delay(self) -> float:
        return FREQUENCY_DELAYS[self.frequency]

    @property
    def is_speaking(self) -> bool:
        return self.state.is_speaking

    def reset(self) -> None:
        """Starts a fresh session; any utterance in flight keeps its speaking flag."""
        speaking = self.state.is_speaking
        self.state = VoiceFeedbackState(is_speaking=speaking)

    # ------------------------------------------------------------------ speech

    def speak(self, text: str, now: Optional[float] = None) -> bool:
        """
        Hands `text` to the speech engine unless feedback is disabled or another
        utterance started less than MIN_SPEECH_SPACING seconds ago.
        Returns True when the request was accepted.
        """
        if not self.enabled:
            return False
        now = self.clock() if now is None else now
        last = self.state.last_speech_at
        if last is not None and now - last < MIN_SPEECH_SPACING:
            logger.debug("Skipping speech, too soon since last message: %s", text)
            return False

        try:
            self.speech.cancel()
        except Exception as e:
            logger.debug("Cancel of previous utterance failed: %s", e)

        self.state.last_speech_at = now
        logger.debug("Attempting to speak: %s", text)
        try:
            self.speech.speak(text, self.voice, self._on_start, self._on_end, self._on_error)
        except Exception as e:
            # Speech is best effort: log, clear the indicator, carry on.
            logger.warning("Speech failed: %s", e)
            self.state.is_speaking = False
        return True

    def _on_start(self) -> None:
        self.state.is_speaking = True

    def _on_end(self) -> None:
        self.state.is_speaking = False
        logger.debug("Speech ended")

    def _on_error(self, error: str) -> None:
        self.state.is_speaking = False
        if error not in BENIGN_SPEECH_ERRORS:
            logger.warning("Speech warning: %s", error)

    # ------------------------------------------------------------------ posture feedback

    def provide_posture_feedback(self, score: float, now: Optional[float] = None) -> Optional[str]:
        """Evaluates one score sample. Returns the message that was spoken, if any."""
        if not self.enabled:
            return None
        now = self.clock() if now is None else now
        state = self.state

        bucket = bucket_for(score)
        if bucket != state.current_bucket:
            logger.debug("Posture bucket change: %s -> %s",
                         state.current_bucket.value if state.current_bucket else None, bucket.value)
            state.previous_bucket = state.current_bucket
            state.current_bucket = bucket
            state.bucket_entered_at = now
            state.has_spoken_for_bucket = False

        time_in_bucket = now - state.bucket_entered_at
        spoken = None

        if time_in_bucket >= self.required_delay and not state.has_spoken_for_bucket:
            text = self._bucket_message(bucket)
            if self.speak(text, now):
                state.has_spoken_for_bucket = True
                if bucket == PostureBucket.POOR:
                    state.consecutive_poor_speech_count += 1
                else:
                    state.consecutive_poor_speech_count = 0
                spoken = text

        if score < EMERGENCY_SCORE and time_in_bucket > EMERGENCY_MIN_DWELL:
            if (not state.has_spoken_for_bucket
                    or state.consecutive_poor_speech_count >= CONSECUTIVE_POOR_LIMIT):
                if self.speak(CRITICAL_MESSAGE, now):
                    state.has_spoken_for_bucket = True
                    state.consecutive_poor_speech_count = 0
                    spoken = CRITICAL_MESSAGE

        return spoken

    def _bucket_message(self, bucket: PostureBucket) -> str:
        if bucket == PostureBucket.POOR:
            return POOR_MESSAGE
        if bucket == PostureBucket.FAIR:
            if self.state.previous_bucket == PostureBucket.POOR:
                return FAIR_RECOVERING_MESSAGE
            return FAIR_MESSAGE
        return GOOD_MESSAGE

    # ------------------------------------------------------------------ session messages

    def provide_break_reminder(self, now: Optional[float] = None) -> bool:
        return self.speak(self.rng.choice(BREAK_MESSAGES), now)

    def provide_encouragement(self, avg_score: float, now: Optional[float] = None) -> bool:
        if avg_score >= 85:
            text = "Outstanding work today! Your posture has been excellent."
        elif avg_score >= 70:
            text = "Great job maintaining good posture. Keep up the healthy habits."
        elif avg_score >= 55:
            text = "You're doing well, but there's room for improvement. Stay mindful of your posture."
        else:
            text = "Your posture needs attention. Remember to sit up straight throughout the day."
        return self.speak(text, now)

    def announce_session_start(self, now: Optional[float] = None) -> bool:
        return self.speak("NeuralStride monitoring activated. "
                          "I'll help you maintain healthy posture throughout your session.", now)

    def announce_session_end(self, duration_seconds: float, avg_score: float,
                             now: Optional[float] = None) -> bool:
        return self.speak(f"Session complete. You worked for {format_duration(duration_seconds)} "
                          f"with an average posture score of {int(round(avg_score))}. Great effort!", now)

def format_duration(duration_seconds: float) -> str:
    minutes = int(duration_seconds // 60)
    hours = minutes // 60
    remaining = minutes % 60
    if hours > 0:
        return (f"{hours} hour{'s' if hours > 1 else ''} and "
                f"{remaining} minute{'s' if remaining != 1 else ''}")
    return f"{minutes} minute{'s' if minutes != 1 else ''}"
