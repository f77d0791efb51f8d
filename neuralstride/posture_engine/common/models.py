# neuralstride/posture_engine/common/models.py
import numpy as np
from pydantic import BaseModel, Field
from typing import Any, Dict, Iterable, List, Optional
from .enums import (
    BodyLandmark, BroadcastType, DetectionState, MessageAction, MessageSource,
    PostureBucket, StressLevel,
)

REQUIRED_LANDMARKS = (
    BodyLandmark.NOSE,
    BodyLandmark.LEFT_EAR,
    BodyLandmark.RIGHT_EAR,
    BodyLandmark.LEFT_SHOULDER,
    BodyLandmark.RIGHT_SHOULDER,
    BodyLandmark.LEFT_HIP,
    BodyLandmark.RIGHT_HIP,
)

class FrameMetadata(BaseModel):
    """Metadata associated with a single video frame."""
    frame_id: int
    timestamp: float

class LandmarkSet(BaseModel):
    """Normalized landmark positions for one frame, one row (x, y, z) per body point."""
    points: np.ndarray

    class Config:
        arbitrary_types_allowed = True
        frozen = True

    @classmethod
    def from_sequence(cls, landmarks: Iterable[Any]) -> "LandmarkSet":
        """
        Builds a LandmarkSet from rows, dicts with x/y/z keys, or objects exposing
        x/y/z attributes (the shape pose-estimation libraries hand back).
        Raises ValueError if a row cannot be read as coordinates.
        """
        rows = []
        for lm in landmarks:
            if isinstance(lm, dict):
                rows.append([lm.get('x', np.nan), lm.get('y', np.nan), lm.get('z', 0.0)])
            elif hasattr(lm, 'x') and hasattr(lm, 'y'):
                rows.append([lm.x, lm.y, getattr(lm, 'z', 0.0)])
            else:
                values = list(lm)
                if len(values) < 2:
                    raise ValueError(f"Landmark row needs at least x and y, got {values!r}")
                rows.append([values[0], values[1], values[2] if len(values) > 2 else 0.0])

        points = np.array(rows, dtype=float).reshape(-1, 3)
        points.setflags(write=False)
        return cls(points=points)

    def __len__(self) -> int:
        return self.points.shape[0]

    def has_required(self) -> bool:
        """True when every landmark the geometry engine reads is present and finite."""
        if self.points.ndim != 2 or self.points.shape[1] < 2:
            return False
        if len(self) <= max(REQUIRED_LANDMARKS):
            return False
        rows = self.points[[int(i) for i in REQUIRED_LANDMARKS], :2]
        return bool(np.all(np.isfinite(rows)))

    def xy(self, landmark: BodyLandmark) -> np.ndarray:
        return self.points[int(landmark), :2]

class PostureMetrics(BaseModel):
    """Per-frame posture metrics; all-zero with is_person_detected=False on a detection miss."""
    posture_score: int = 0
    cervical_angle: float = 0.0
    shoulder_alignment: int = 0
    head_forward: int = 0
    is_person_detected: bool = False

    class Config:
        frozen = True

    def snapshot(self) -> Dict[str, Any]:
        """The subset forwarded to the extension process, in wire field names."""
        return {
            'postureScore': self.posture_score,
            'cervicalAngle': self.cervical_angle,
            'isPersonDetected': self.is_person_detected,
        }

class RegionalStress(BaseModel):
    """Stress per spine region (0-100) with its ordinal label."""
    cervical: float
    thoracic: float
    lumbar: float
    cervical_level: StressLevel
    thoracic_level: StressLevel
    lumbar_level: StressLevel

    class Config:
        frozen = True

class PostureResult(BaseModel):
    """Encapsulates the complete result of a single frame's posture processing."""
    timestamp: float
    frame_id: int
    processing_time_ms: float
    status: DetectionState
    metrics: PostureMetrics
    stress: Optional[RegionalStress] = None

class VoiceFeedbackState(BaseModel):
    """Trigger state of the voice coach. Mutated only by VoiceFeedbackController."""
    current_bucket: Optional[PostureBucket] = None
    previous_bucket: Optional[PostureBucket] = None
    bucket_entered_at: float = 0.0
    has_spoken_for_bucket: bool = False
    consecutive_poor_speech_count: int = 0
    last_speech_at: Optional[float] = None
    is_speaking: bool = False

class HealthState(BaseModel):
    health: float = 50.0
    stage: int = 3

class SessionStats(BaseModel):
    session_seconds: int = 0
    good_posture_seconds: int = 0
    average_score: int = 0
    samples: int = 0

class Message(BaseModel):
    """
    One cross-process message. `body` holds every envelope field besides `action`,
    so the wire form is `{"action": ..., **body}`.
    """
    action: MessageAction
    body: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        frozen = True

    @classmethod
    def ping(cls) -> "Message":
        return cls(action=MessageAction.PING)

    @classmethod
    def heartbeat(cls) -> "Message":
        return cls(action=MessageAction.HEARTBEAT)

    @classmethod
    def posture_update(cls, metrics: PostureMetrics) -> "Message":
        return cls(action=MessageAction.UPDATE_POSTURE, body={'data': metrics.snapshot()})

    @classmethod
    def session_status(cls, is_active: bool, seq: Optional[int] = None) -> "Message":
        body = {'isActive': bool(is_active)}
        if seq is not None:
            body['seq'] = seq
        return cls(action=MessageAction.SESSION_STATUS, body=body)

    @classmethod
    def update_score(cls, score: float) -> "Message":
        return cls(action=MessageAction.UPDATE_SCORE, body={'score': score})

    @classmethod
    def from_envelope(cls, envelope: Dict[str, Any]) -> "Message":
        """Parses a wire envelope. Raises ValueError for a missing or unknown action."""
        if not isinstance(envelope, dict) or 'action' not in envelope:
            raise ValueError("Envelope has no action")
        try:
            action = MessageAction(envelope['action'])
        except ValueError:
            raise ValueError(f"Unknown action: {envelope['action']}") from None
        body = {k: v for k, v in envelope.items() if k != 'action'}
        return cls(action=action, body=body)

    @property
    def data(self) -> Optional[Dict[str, Any]]:
        return self.body.get('data')

    def to_envelope(self) -> Dict[str, Any]:
        envelope = {'action': self.action.value}
        envelope.update(self.body)
        return envelope

class BridgeConnection(BaseModel):
    """Connection state kept by the querying (host) side of the bridge."""
    peer_id: Optional[str] = None
    connected: bool = False
    pending_queue: List[Message] = Field(default_factory=list)
    retry_count: int = 0
    failed_cycles: int = 0

class BroadcastEnvelope(BaseModel):
    """Typed envelope posted on the origin-scoped broadcast bus."""
    type: BroadcastType
    source: MessageSource
    timestamp: float
    data: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        frozen = True
