# neuralstride/posture_engine/common/config.py
import copy
import logging
import yaml
from typing import Any, Dict, Optional
from .enums import LogLevel

DEFAULT_CONFIG: Dict[str, Any] = {
    'posture': {
        'compute_stress': True,
    },
    'voice': {
        'enabled': True,
        'voice': 'female',
        'frequency': 'medium',
    },
    'health': {
        'tick_interval': 2.0,
        'initial_health': 50.0,
        'neutral_drift': 0.5,
    },
    'session': {
        'origin': 'http://localhost:3000',
        'feedback_interval': 5.0,
        'bridge_update_interval': 1.0,
        'stats_interval': 1.0,
        'start_announcement_delay': 1.0,
        'end_announcement_delay': 0.5,
        'min_session_for_summary': 30,
        'break_interval': 0,
    },
    'bridge': {
        'origin': 'http://localhost:3000',
        'known_peer_id': None,
        'max_retries': 3,
        'retry_delay': 2.0,
        'resend_check_delay': 1.0,
        'announce_check_delay': 0.5,
        'ping_timeout': 2.0,
        'monitor_interval': 10.0,
        'max_failed_cycles': 6,
        'heartbeat_interval': 5.0,
    },
    'extension': {
        'extension_id': 'neuralstride-extension',
        'notification_threshold': 40,
        'notification_cooldown': 60.0,
        'tab_retry_limit': 3,
        'tab_retry_delay': 1.0,
    },
    'relay': {
        'origin': 'http://localhost:3000',
        'tab_id': 'tab-1',
        'announce_interval': 1.0,
        'max_announce_attempts': 5,
    },
    'logging': {
        'level': 'INFO',
        'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    },
}

def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged

def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Loads a YAML configuration file and merges it over DEFAULT_CONFIG.
    With no path the defaults are returned. Raises FileNotFoundError or yaml.YAMLError.
    """
    if path is None:
        return copy.deepcopy(DEFAULT_CONFIG)
    with open(path, 'r') as f:
        loaded = yaml.safe_load(f) or {}
    if not isinstance(loaded, dict):
        raise yaml.YAMLError(f"Top level of '{path}' must be a mapping")
    return _merge(DEFAULT_CONFIG, loaded)

def configure_logging(config: Dict[str, Any]) -> None:
    """Applies the `logging` section. Unknown levels raise ValueError."""
    level = LogLevel(str(config.get('level', 'INFO')).upper())
    logging.basicConfig(
        level=getattr(logging, level.value),
        format=config.get('format', DEFAULT_CONFIG['logging']['format']),
    )
