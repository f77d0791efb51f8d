import random
import unittest
from unittest.mock import MagicMock

from posture_engine.common.enums import PostureBucket, VoiceType
from posture_engine.feedback.voice_coach import (
    BREAK_MESSAGES, CRITICAL_MESSAGE, FAIR_MESSAGE, FAIR_RECOVERING_MESSAGE, GOOD_MESSAGE, MIN_SPEECH_SPACING,
    POOR_MESSAGE, SpeechEngine, VoiceFeedbackController, bucket_for, format_duration,
)


class RecordingSpeechEngine(SpeechEngine):
    """Finishes every utterance immediately and records what was said."""

    def __init__(self):
        self.spoken = []

    def speak(self, text, voice, on_start, on_end, on_error):
        self.spoken.append((text, voice))
        on_start()
        on_end()


def feed(controller, samples):
    """Feeds (time, score) samples; returns the (time, message) pairs actually spoken."""
    out = []
    for t, score in samples:
        text = controller.provide_posture_feedback(score, t)
        if text is not None:
            out.append((t, text))
    return out


class TestVoiceFeedbackController(unittest.TestCase):

    def setUp(self):
        self.engine = RecordingSpeechEngine()

    def make(self, frequency='medium', **config):
        config.setdefault('frequency', frequency)
        return VoiceFeedbackController(config, self.engine, clock=lambda: 0.0)

    def test_bucket_thresholds(self):
        self.assertEqual(bucket_for(70), PostureBucket.GOOD)
        self.assertEqual(bucket_for(69.9), PostureBucket.FAIR)
        self.assertEqual(bucket_for(45), PostureBucket.FAIR)
        self.assertEqual(bucket_for(44), PostureBucket.POOR)

    def test_poor_message_waits_for_gate(self):
        voice = self.make('high')
        samples = [(t, 80) for t in range(3)] + [(t, 40) for t in range(3, 12)]
        spoken = feed(voice, samples)
        # Poor entered at t=3; the high-frequency gate is 5 s.
        self.assertEqual(spoken, [(8, POOR_MESSAGE)])

    def test_critical_score_preempts_gate(self):
        voice = self.make('high')
        samples = [(t, 80) for t in range(3)] + [(t, 20) for t in range(3, 8)]
        spoken = feed(voice, samples)
        # More than 3 s below 30 fires before the 5 s gate would.
        self.assertEqual(spoken, [(7, CRITICAL_MESSAGE)])

    def test_one_message_per_bucket(self):
        voice = self.make('low')
        spoken = feed(voice, [(t, 20) for t in range(60)])
        self.assertEqual(spoken, [(4, CRITICAL_MESSAGE)])

    def test_good_posture_praised_after_gate(self):
        voice = self.make('medium')
        spoken = feed(voice, [(t, 90) for t in range(10)])
        self.assertEqual(spoken, [(7, GOOD_MESSAGE)])

    def test_frequency_gates(self):
        for frequency, expected in (('low', 10), ('medium', 7), ('high', 5)):
            with self.subTest(frequency=frequency):
                engine = RecordingSpeechEngine()
                voice = VoiceFeedbackController({'frequency': frequency}, engine)
                spoken = feed(voice, [(t, 50) for t in range(12)])
                self.assertEqual(spoken, [(expected, FAIR_MESSAGE)])

    def test_fair_after_poor_is_encouraging(self):
        voice = self.make('medium')
        samples = [(t, 35) for t in range(8)] + [(t, 55) for t in range(8, 16)]
        spoken = feed(voice, samples)
        self.assertEqual(spoken, [(7, POOR_MESSAGE), (15, FAIR_RECOVERING_MESSAGE)])

    def test_fair_after_good_is_adjustment(self):
        voice = self.make('medium')
        samples = [(t, 85) for t in range(8)] + [(t, 55) for t in range(8, 16)]
        spoken = feed(voice, samples)
        self.assertEqual(spoken, [(7, GOOD_MESSAGE), (15, FAIR_MESSAGE)])

    def test_consecutive_poor_messages_allow_another_critical(self):
        voice = self.make('medium')
        samples = []
        # Three poor stretches split by one-second fair blips, each long enough for the gate.
        for start in (0, 9, 18):
            samples += [(t, 35) for t in range(start, start + 8)]
            samples.append((start + 8, 50))
        samples.pop()
        samples += [(t, 20) for t in range(26, 40)]
        spoken = feed(voice, samples)

        self.assertEqual([text for _, text in spoken], [POOR_MESSAGE] * 3 + [CRITICAL_MESSAGE])
        self.assertEqual([t for t, _ in spoken], [7, 16, 25, 28])
        self.assertEqual(voice.state.consecutive_poor_speech_count, 0)

    def test_good_bucket_resets_poor_count(self):
        voice = self.make('medium')
        samples = [(t, 35) for t in range(8)] + [(t, 90) for t in range(8, 16)]
        feed(voice, samples)
        self.assertEqual(voice.state.consecutive_poor_speech_count, 0)

    def test_minimum_spacing_over_random_sequences(self):
        rng = random.Random(1234)
        for frequency in ('low', 'medium', 'high'):
            starts = []
            engine = MagicMock(spec=SpeechEngine)
            voice = VoiceFeedbackController({'frequency': frequency}, engine)
            t = 0.0
            for _ in range(2000):
                t += rng.uniform(0.05, 2.0)
                before = engine.speak.call_count
                choice = rng.random()
                if choice < 0.9:
                    voice.provide_posture_feedback(rng.choice([10, 25, 35, 50, 60, 75, 95]), t)
                elif choice < 0.95:
                    voice.provide_break_reminder(t)
                else:
                    voice.announce_session_start(t)
                if engine.speak.call_count > before:
                    starts.append(t)
            self.assertGreater(len(starts), 10)
            gaps = [b - a for a, b in zip(starts, starts[1:])]
            self.assertGreaterEqual(min(gaps), MIN_SPEECH_SPACING)

    def test_request_inside_window_is_dropped(self):
        voice = self.make()
        self.assertTrue(voice.speak("first", now=10.0))
        self.assertFalse(voice.speak("second", now=12.9))
        self.assertTrue(voice.speak("third", now=13.0))
        self.assertEqual([text for text, _ in self.engine.spoken], ["first", "third"])

    def test_disabled_never_speaks(self):
        voice = self.make(enabled=False)
        self.assertEqual(feed(voice, [(t, 10) for t in range(30)]), [])
        self.assertFalse(voice.announce_session_start(0.0))
        self.assertEqual(self.engine.spoken, [])

    def test_voice_selection(self):
        voice = self.make(voice='male')
        voice.speak("hello", now=0.0)
        self.assertEqual(self.engine.spoken, [("hello", VoiceType.MALE)])

    def test_engine_exception_is_logged_and_clears_speaking(self):
        engine = MagicMock(spec=SpeechEngine)
        engine.speak.side_effect = RuntimeError("no audio device")
        voice = VoiceFeedbackController({}, engine)
        voice.state.is_speaking = True
        with self.assertLogs('posture_engine.feedback.voice_coach', level='WARNING') as logs:
            accepted = voice.speak("hello", now=0.0)
        self.assertTrue(accepted)
        self.assertFalse(voice.is_speaking)
        self.assertIn("no audio device", logs.output[0])

    def test_error_callback_clears_speaking(self):
        engine = MagicMock(spec=SpeechEngine)
        voice = VoiceFeedbackController({}, engine)
        voice.speak("hello", now=0.0)
        on_start, on_end, on_error = engine.speak.call_args[0][2:]
        on_start()
        self.assertTrue(voice.is_speaking)
        on_error('interrupted')
        self.assertFalse(voice.is_speaking)

    def test_reset_clears_bucket_state(self):
        voice = self.make()
        feed(voice, [(t, 35) for t in range(8)])
        voice.reset()
        self.assertIsNone(voice.state.current_bucket)
        self.assertIsNone(voice.state.last_speech_at)
        self.assertEqual(voice.state.consecutive_poor_speech_count, 0)

    def test_encouragement_bands(self):
        voice = self.make()
        for i, (avg, opening) in enumerate(((90, "Outstanding"), (75, "Great job"),
                                            (60, "You're doing well"), (30, "Your posture needs attention"))):
            voice.provide_encouragement(avg, now=i * 10.0)
            self.assertTrue(self.engine.spoken[-1][0].startswith(opening))

    def test_break_reminder_is_a_stretch_prompt(self):
        voice = VoiceFeedbackController({}, self.engine, rng=random.Random(3))
        self.assertTrue(voice.provide_break_reminder(now=0.0))
        self.assertIn(self.engine.spoken[-1][0], BREAK_MESSAGES)

    def test_session_end_summary(self):
        voice = self.make()
        voice.announce_session_end(3720, 81.6, now=0.0)
        text = self.engine.spoken[-1][0]
        self.assertIn("1 hour and 2 minutes", text)
        self.assertIn("score of 82", text)


class TestFormatDuration(unittest.TestCase):

    def test_minutes_only(self):
        self.assertEqual(format_duration(59), "0 minutes")
        self.assertEqual(format_duration(60), "1 minute")
        self.assertEqual(format_duration(600), "10 minutes")

    def test_hours(self):
        self.assertEqual(format_duration(3600), "1 hour and 0 minutes")
        self.assertEqual(format_duration(7260), "2 hours and 1 minute")


if __name__ == '__main__':
    unittest.main()
