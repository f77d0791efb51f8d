# neuralstride/posture_engine/common/enums.py
from enum import Enum, IntEnum

class DetectionState(str, Enum):
    """Defines the per-frame detection state reported by the PostureProcessor."""
    INITIALIZING = "INITIALIZING"
    SEARCHING = "SEARCHING"
    TRACKING = "TRACKING"

class LogLevel(str, Enum):
    """Defines logging levels for structured logging."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"

class BodyLandmark(IntEnum):
    """Indices of the body points the geometry engine reads (pose landmark numbering)."""
    NOSE = 0
    LEFT_EAR = 7
    RIGHT_EAR = 8
    LEFT_SHOULDER = 11
    RIGHT_SHOULDER = 12
    LEFT_HIP = 23
    RIGHT_HIP = 24

class PostureBucket(str, Enum):
    """Coarse posture-quality states used for voice feedback gating."""
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"

class FeedbackFrequency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

class VoiceType(str, Enum):
    FEMALE = "female"
    MALE = "male"

class StressLevel(str, Enum):
    """Ordinal stress labels for a spine region."""
    OPTIMAL = "optimal"
    GOOD = "good"
    CAUTION = "caution"
    WARNING = "warning"
    CRITICAL = "critical"

class PlantState(str, Enum):
    """Badge-level plant state shown by the extension process."""
    DORMANT = "dormant"
    WILTING = "wilting"
    SPROUT = "sprout"
    GROWING = "growing"
    FLOWERING = "flowering"
    BLOOM = "bloom"

class MessageAction(str, Enum):
    """Actions carried in the cross-process `{action, data}` envelope."""
    PING = "ping"
    UPDATE_POSTURE = "updatePosture"
    SESSION_STATUS = "sessionStatus"
    START_MONITORING = "startMonitoring"
    STOP_MONITORING = "stopMonitoring"
    GET_STATUS = "getStatus"
    UPDATE_SCORE = "updateScore"
    HEARTBEAT = "heartbeat"
    READY = "ready"
    EXTENSION_STARTED = "extensionStartedMonitoring"
    EXTENSION_STOPPED = "extensionStoppedMonitoring"

class BroadcastType(str, Enum):
    """Types of the origin-scoped envelopes exchanged inside the host process."""
    CONTENT_SCRIPT_READY = "CONTENT_SCRIPT_READY"
    WEBAPP_READY = "WEBAPP_READY"
    START_MONITORING = "START_MONITORING"
    STOP_MONITORING = "STOP_MONITORING"
    HEARTBEAT = "HEARTBEAT"
    CONTENT_SCRIPT_CONFIRMED = "CONTENT_SCRIPT_CONFIRMED"

class MessageSource(str, Enum):
    WEBAPP = "webapp"
    EXTENSION = "extension"
