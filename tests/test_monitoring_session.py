import unittest
from unittest.mock import MagicMock

from posture_engine.bridge.channel import BroadcastBus, InProcessChannel
from posture_engine.bridge.content_relay import ContentRelay
from posture_engine.bridge.extension_service import ExtensionService, internal_endpoint
from posture_engine.bridge.host_bridge import HostBridge
from posture_engine.bridge.scheduler import ManualScheduler
from posture_engine.common.config import load_config
from posture_engine.common.enums import BroadcastType, DetectionState, MessageAction, MessageSource
from posture_engine.common.models import BroadcastEnvelope, FrameMetadata, LandmarkSet
from posture_engine.feedback.health_model import HealthModel
from posture_engine.feedback.voice_coach import BREAK_MESSAGES, SpeechEngine, VoiceFeedbackController
from posture_engine.processing.posture_processor import PostureProcessor
from posture_engine.session.monitoring_session import MonitoringSession
from landmark_fixtures import make_posture


def recorded_detector(frame):
    if frame is None or isinstance(frame, LandmarkSet):
        return frame
    return LandmarkSet.from_sequence(frame)


class SessionTestCase(unittest.TestCase):

    def setUp(self):
        self.config = load_config()
        self.scheduler = ManualScheduler()
        self.channel = InProcessChannel(self.scheduler)
        self.bus = BroadcastBus(self.scheduler)
        self.speech = MagicMock(spec=SpeechEngine)

        self.extension = ExtensionService(self.config['extension'], self.channel, self.scheduler)
        self.relay = ContentRelay(self.config['relay'], self.channel, self.scheduler, self.bus,
                                  self.extension.extension_id)
        self.bridge = HostBridge(self.config['bridge'], self.channel, self.scheduler, bus=self.bus,
                                 sender_id='webapp')
        self.voice = VoiceFeedbackController(self.config['voice'], self.speech, clock=self.scheduler.now)
        self.health = HealthModel(self.config['health'])
        self.session = MonitoringSession(self.config['session'],
                                         PostureProcessor(self.config['posture'], recorded_detector),
                                         self.voice, self.health, self.bridge, self.scheduler, bus=self.bus)
        self.frame_id = 0

        self.extension.attach()
        self.relay.load()
        self.session.open()
        self.scheduler.advance(1.0)

    def tearDown(self):
        self.session.close()
        self.relay.unload()

    def frame(self, landmarks):
        self.frame_id += 1
        return self.session.process_frame(
            landmarks, FrameMetadata(frame_id=self.frame_id, timestamp=self.scheduler.now()))

    def run_frames(self, seconds, landmarks, fps=10):
        for _ in range(int(seconds * fps)):
            self.scheduler.advance(1.0 / fps)
            self.frame(landmarks)

    def spoken(self):
        return [c[0][0] for c in self.speech.speak.call_args_list]


class TestHandshake(SessionTestCase):

    def test_announce_connects_bridge(self):
        self.assertTrue(self.bridge.connection.connected)
        self.assertEqual(self.bridge.connection.peer_id, self.extension.extension_id)
        self.assertTrue(self.relay.confirmed)
        self.assertEqual(self.extension.tab_ids, ['tab-1'])


class TestConvergence(SessionTestCase):

    def test_start_from_host(self):
        self.assertTrue(self.session.start())
        self.scheduler.advance(1.0)
        self.assertTrue(self.session.is_monitoring)
        self.assertTrue(self.extension.is_monitoring)

        self.assertTrue(self.session.stop())
        self.scheduler.advance(1.0)
        self.assertFalse(self.session.is_monitoring)
        self.assertFalse(self.extension.is_monitoring)

    def test_start_from_extension(self):
        self.channel.send(internal_endpoint(self.extension.extension_id),
                          {'action': MessageAction.START_MONITORING.value})
        self.scheduler.advance(1.0)
        self.assertTrue(self.extension.is_monitoring)
        self.assertTrue(self.session.is_monitoring)

        self.channel.send(internal_endpoint(self.extension.extension_id),
                          {'action': MessageAction.STOP_MONITORING.value})
        self.scheduler.advance(1.0)
        self.assertFalse(self.extension.is_monitoring)
        self.assertFalse(self.session.is_monitoring)

    def test_start_while_extension_unreachable_converges_later(self):
        self.extension.detach()
        self.session.start()
        self.scheduler.advance(3.0)
        self.assertFalse(self.extension.is_monitoring)

        self.extension.attach()
        self.bridge.on_visibility_change(True)
        self.scheduler.advance(3.0)
        self.assertTrue(self.extension.is_monitoring)
        self.assertTrue(self.session.is_monitoring)

    def test_foreign_origin_start_is_ignored(self):
        self.bus.post(BroadcastEnvelope(type=BroadcastType.START_MONITORING, source=MessageSource.EXTENSION,
                                        timestamp=self.scheduler.now()), 'https://evil.example')
        self.scheduler.advance(1.0)
        self.assertFalse(self.session.is_monitoring)

    def session_statuses(self):
        return [env['isActive'] for target, env in self.channel.delivered
                if env['action'] == MessageAction.SESSION_STATUS.value]

    def test_quick_start_stop_settles(self):
        self.session.start()
        self.session.stop()
        self.scheduler.advance(30.0)
        self.assertEqual(self.session_statuses(), [True, False])
        self.assertFalse(self.session.is_monitoring)
        self.assertFalse(self.extension.is_monitoring)

    def test_quick_start_stop_from_extension_settles(self):
        internal = internal_endpoint(self.extension.extension_id)
        self.channel.send(internal, {'action': MessageAction.START_MONITORING.value})
        self.channel.send(internal, {'action': MessageAction.STOP_MONITORING.value})
        self.scheduler.advance(30.0)
        self.assertEqual(self.session_statuses(), [True, False])
        self.assertFalse(self.session.is_monitoring)
        self.assertFalse(self.extension.is_monitoring)

    def test_stale_echo_is_ignored(self):
        self.session.start()
        self.scheduler.advance(1.0)
        self.session.stop()
        self.bus.post(BroadcastEnvelope(type=BroadcastType.START_MONITORING, source=MessageSource.EXTENSION,
                                        timestamp=self.scheduler.now(), data={'seq': 1}), self.session.origin)
        self.scheduler.advance(1.0)
        self.assertFalse(self.session.is_monitoring)

    def test_second_start_is_noop(self):
        self.assertTrue(self.session.start())
        self.assertFalse(self.session.start())


class TestFramePipeline(SessionTestCase):

    def test_frames_ignored_while_idle(self):
        self.assertIsNone(self.frame(make_posture(160.0)))

    def test_good_posture_session(self):
        self.session.start()
        self.run_frames(12, make_posture(160.0))

        result = self.session.last_result
        self.assertEqual(result.status, DetectionState.TRACKING)
        self.assertEqual(result.metrics.posture_score, 100)
        self.assertIsNotNone(result.stress)
        self.assertEqual(self.extension.current_score, 100)
        self.assertEqual(self.extension.last_posture['score'], 100)
        self.assertGreater(self.session.health_state.health, 50.0)
        self.assertEqual(self.session.stats.average_score, 100)
        self.assertGreaterEqual(self.session.stats.good_posture_seconds, 10)

        spoken = self.spoken()
        self.assertTrue(spoken[0].startswith("NeuralStride monitoring activated"))
        self.assertIn("Excellent posture! Keep it up.", spoken)

    def test_bridge_updates_throttled(self):
        self.session.start()
        self.scheduler.advance(0.5)
        before = len([e for t, e in self.channel.delivered if e['action'] == 'updatePosture'])
        self.run_frames(5, make_posture(160.0))
        after = len([e for t, e in self.channel.delivered if e['action'] == 'updatePosture'])
        self.assertEqual(after - before, 5)

    def test_missed_frames_do_not_move_health_score(self):
        self.session.start()
        self.run_frames(2, make_posture(160.0))
        self.run_frames(2, None)
        self.assertEqual(self.health.score, 100)
        self.assertEqual(self.session.last_result.status, DetectionState.SEARCHING)
        self.assertFalse(self.session.metrics.is_person_detected)

    def test_malformed_frame_counts_as_miss(self):
        self.session.start()
        self.scheduler.advance(0.1)
        result = self.frame([[0.1]])
        self.assertEqual(result.status, DetectionState.SEARCHING)
        self.assertEqual(result.metrics.posture_score, 0)

    def test_long_session_announces_summary(self):
        self.session.start()
        self.run_frames(35, make_posture(160.0), fps=2)
        self.session.stop()
        self.scheduler.advance(1.0)
        self.assertTrue(self.spoken()[-1].startswith("Session complete."))

    def test_short_session_has_no_summary(self):
        self.session.start()
        self.run_frames(5, make_posture(160.0), fps=2)
        self.session.stop()
        self.scheduler.advance(1.0)
        self.assertFalse(any(text.startswith("Session complete.") for text in self.spoken()))

    def test_break_reminders(self):
        self.session.break_interval = 15
        self.session.start()
        self.run_frames(40, make_posture(160.0), fps=2)
        reminders = [text for text in self.spoken() if text in BREAK_MESSAGES]
        self.assertEqual(len(reminders), 2)

    def test_idle_health_drifts_back(self):
        self.session.start()
        self.run_frames(20, make_posture(160.0), fps=2)
        self.session.stop()
        peak = self.health.state.health
        self.scheduler.advance(60.0)
        self.assertLess(self.health.state.health, peak)
        self.assertGreaterEqual(self.health.state.health, 50.0)


if __name__ == '__main__':
    unittest.main()
