import unittest

from posture_engine.bridge.channel import BroadcastBus, InProcessChannel
from posture_engine.bridge.content_relay import ContentRelay
from posture_engine.bridge.extension_service import ExtensionService
from posture_engine.bridge.scheduler import ManualScheduler
from posture_engine.common.enums import BroadcastType, MessageSource
from posture_engine.common.models import BroadcastEnvelope

ORIGIN = 'http://localhost:3000'
EXT_ID = 'ext-1'


class TestContentRelay(unittest.TestCase):

    def setUp(self):
        self.scheduler = ManualScheduler()
        self.channel = InProcessChannel(self.scheduler)
        self.bus = BroadcastBus(self.scheduler)
        self.extension = ExtensionService({'extension_id': EXT_ID}, self.channel, self.scheduler)
        self.extension.attach()
        self.relay = ContentRelay({'origin': ORIGIN, 'tab_id': 'tab-1'}, self.channel, self.scheduler,
                                  self.bus, EXT_ID)
        self.seen = []
        self.bus.add_listener(lambda envelope, origin: self.seen.append((envelope, origin)))

    def of_type(self, message_type):
        return [env for env, _ in self.seen if env.type == message_type]

    def post_from_webapp(self, message_type, origin=ORIGIN):
        self.bus.post(BroadcastEnvelope(type=message_type, source=MessageSource.WEBAPP,
                                        timestamp=self.scheduler.now()), origin)

    def test_load_registers_tab_with_extension(self):
        self.relay.load()
        self.scheduler.run_pending()
        self.assertEqual(self.extension.tab_ids, ['tab-1'])

    def test_announces_until_attempts_run_out(self):
        self.relay.load()
        self.scheduler.advance(20.0)
        announces = self.of_type(BroadcastType.CONTENT_SCRIPT_READY)
        self.assertEqual(len(announces), 5)
        self.assertEqual(announces[0].data, {'extensionId': EXT_ID})
        self.assertEqual(announces[0].source, MessageSource.EXTENSION)

    def test_confirmation_stops_announcing(self):
        self.relay.load()
        self.scheduler.advance(1.5)
        self.post_from_webapp(BroadcastType.CONTENT_SCRIPT_CONFIRMED)
        self.scheduler.advance(10.0)
        self.assertTrue(self.relay.confirmed)
        self.assertEqual(len(self.of_type(BroadcastType.CONTENT_SCRIPT_READY)), 2)

    def test_foreign_confirmation_is_ignored(self):
        self.relay.load()
        self.post_from_webapp(BroadcastType.CONTENT_SCRIPT_CONFIRMED, origin='https://evil.example')
        self.scheduler.advance(10.0)
        self.assertFalse(self.relay.confirmed)

    def test_late_webapp_gets_fresh_announce(self):
        self.relay.load()
        self.scheduler.advance(20.0)
        self.post_from_webapp(BroadcastType.WEBAPP_READY)
        self.scheduler.run_pending()
        self.assertEqual(len(self.of_type(BroadcastType.CONTENT_SCRIPT_READY)), 6)

    def test_extension_notifications_become_broadcasts(self):
        self.relay.load()
        self.scheduler.run_pending()
        self.extension.start_monitoring()
        self.scheduler.run_pending()
        self.extension.stop_monitoring()
        self.scheduler.run_pending()
        types = [env.type for env, origin in self.seen if origin == ORIGIN
                 and env.type in (BroadcastType.START_MONITORING, BroadcastType.STOP_MONITORING)]
        self.assertEqual(types, [BroadcastType.START_MONITORING, BroadcastType.STOP_MONITORING])

    def test_host_sequence_is_forwarded(self):
        self.relay.handle_extension_message({'action': 'extensionStartedMonitoring', 'seq': 3})
        self.relay.handle_extension_message({'action': 'extensionStoppedMonitoring'})
        self.scheduler.run_pending()
        self.assertEqual(self.of_type(BroadcastType.START_MONITORING)[0].data, {'seq': 3})
        self.assertEqual(self.of_type(BroadcastType.STOP_MONITORING)[0].data, {})

    def test_unknown_extension_message(self):
        self.assertEqual(self.relay.handle_extension_message({'action': 'ping'}), {'received': False})

    def test_unload(self):
        self.relay.load()
        self.relay.unload()
        self.scheduler.advance(10.0)
        self.assertEqual(len(self.of_type(BroadcastType.CONTENT_SCRIPT_READY)), 1)


if __name__ == '__main__':
    unittest.main()
