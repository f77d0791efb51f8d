# neuralstride/main.py
import argparse
import json
import os
import numpy as np
import yaml
from collections import deque
from typing import Any, Dict, List, Optional, Tuple

from posture_engine.common.config import configure_logging, load_config
from posture_engine.common.enums import MessageAction
from posture_engine.common.models import FrameMetadata, LandmarkSet
from posture_engine.bridge.channel import BroadcastBus, InProcessChannel
from posture_engine.bridge.content_relay import ContentRelay
from posture_engine.bridge.extension_service import ExtensionService, internal_endpoint
from posture_engine.bridge.host_bridge import HostBridge
from posture_engine.bridge.scheduler import ManualScheduler
from posture_engine.feedback.health_model import HealthModel
from posture_engine.feedback.voice_coach import LoggingSpeechEngine, VoiceFeedbackController
from posture_engine.processing.posture_processor import PostureProcessor
from posture_engine.session.monitoring_session import MonitoringSession

HOST_ENDPOINT = 'webapp'

def load_recording(path: str) -> List[Tuple[float, Optional[list]]]:
    """Reads a JSON-lines recording of `{"t": seconds, "landmarks": [[x, y, z], ...] | null}`."""
    frames = []
    with open(path, 'r') as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            record = json.loads(line)
            if 't' not in record:
                raise ValueError(f"{path}:{line_no}: frame has no 't' timestamp")
            frames.append((float(record['t']), record.get('landmarks')))
    frames.sort(key=lambda frame: frame[0])
    return frames

def detect_recorded(frame: Optional[list]) -> Optional[LandmarkSet]:
    """Pose detector for replay: a recorded frame already is its landmark rows."""
    if frame is None:
        return None
    return LandmarkSet.from_sequence(frame)

def build_system(config: Dict[str, Any], scheduler: ManualScheduler) -> Dict[str, Any]:
    """Wires a host page and an extension process together over in-process transports."""
    channel = InProcessChannel(scheduler)
    bus = BroadcastBus(scheduler)

    extension = ExtensionService(config['extension'], channel, scheduler)
    relay = ContentRelay(config['relay'], channel, scheduler, bus, extension.extension_id)
    bridge = HostBridge(config['bridge'], channel, scheduler, bus=bus, sender_id=HOST_ENDPOINT)
    processor = PostureProcessor(config['posture'], detect_recorded)
    voice = VoiceFeedbackController(config['voice'], LoggingSpeechEngine(), clock=scheduler.now)
    health = HealthModel(config['health'])
    session = MonitoringSession(config['session'], processor, voice, health, bridge, scheduler, bus=bus)

    return {
        'channel': channel,
        'bus': bus,
        'extension': extension,
        'relay': relay,
        'bridge': bridge,
        'session': session,
    }

def replay(config: Dict[str, Any], frames: List[Tuple[float, Optional[list]]], start_from: str) -> Dict[str, Any]:
    scheduler = ManualScheduler()
    system = build_system(config, scheduler)
    session = system['session']

    system['extension'].attach()
    system['relay'].load()
    session.open()
    scheduler.advance(1.0)

    if start_from == 'extension':
        # Same path as the extension popup's start button.
        system['channel'].send(internal_endpoint(system['extension'].extension_id),
                               {'action': MessageAction.START_MONITORING.value})
        scheduler.advance(0.1)
    else:
        session.start()

    processing_times = deque(maxlen=100)
    t0 = scheduler.now() - (frames[0][0] if frames else 0.0)
    for frame_id, (t, landmarks) in enumerate(frames):
        scheduler.advance_to(t0 + t)
        result = session.process_frame(landmarks, FrameMetadata(frame_id=frame_id, timestamp=scheduler.now()))
        if result is not None:
            processing_times.append(result.processing_time_ms)

    stats = session.stats
    session.stop()
    scheduler.advance(5.0)

    summary = {
        'frames': len(frames),
        'session_seconds': stats.session_seconds,
        'good_posture_seconds': stats.good_posture_seconds,
        'average_score': stats.average_score,
        'health': round(session.health_state.health, 1),
        'stage': session.health_state.stage,
        'avg_processing_ms': float(np.mean(processing_times)) if processing_times else 0.0,
        'bridge': system['bridge'].get_connection_status(),
        'extension': system['extension'].get_status(),
    }
    session.close()
    system['relay'].unload()
    system['extension'].detach()
    return summary

def main(argv=None):
    """
    Replays a recorded landmark stream through the full pipeline: posture scoring,
    voice coaching, the health model and the host/extension bridge.
    """
    script_dir = os.path.dirname(os.path.abspath(__file__))
    parser = argparse.ArgumentParser(description='Replay a landmark recording through the posture engine.')
    parser.add_argument('recording', help='JSON-lines landmark recording')
    parser.add_argument('--config', default=os.path.join(script_dir, 'config.yaml'))
    parser.add_argument('--start-from', choices=('webapp', 'extension'), default='webapp',
                        help='which process starts the monitoring session')
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except FileNotFoundError:
        print(f"ERROR: Configuration file '{args.config}' not found.")
        return 1
    except yaml.YAMLError as e:
        print(f"ERROR: Failed to parse configuration file '{args.config}'. {e}")
        return 1

    try:
        configure_logging(config['logging'])
    except ValueError as e:
        print(f"ERROR: Invalid logging configuration. {e}")
        return 1

    try:
        frames = load_recording(args.recording)
    except (IOError, ValueError) as e:
        print(f"ERROR: Failed to load recording. {e}")
        return 1

    summary = replay(config, frames, args.start_from)
    print(json.dumps(summary, indent=2))
    return 0

if __name__ == "__main__":
    raise SystemExit(main())
