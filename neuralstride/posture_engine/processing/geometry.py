# neuralstride/posture_engine/processing/geometry.py
"""
Geometry engine: turns one frame's landmarks into PostureMetrics.

Every function here is pure. A missing or malformed LandmarkSet is a detection
miss and yields the all-zero metrics value rather than an exception.
"""
import numpy as np
from typing import Optional
from ..common.enums import BodyLandmark
from ..common.models import LandmarkSet, PostureMetrics
from .scoring import compose_score, round_half_up

NEUTRAL_ANGLE = 90.0
SHOULDER_SENSITIVITY = 500.0
HEAD_FORWARD_SCALE = 200.0

def _midpoint(landmarks: LandmarkSet, left: BodyLandmark, right: BodyLandmark) -> np.ndarray:
    return (landmarks.xy(left) + landmarks.xy(right)) / 2.0

def angle_between(vertex: np.ndarray, a: np.ndarray, b: np.ndarray) -> float:
    """Angle in degrees at `vertex` between the directions to `a` and `b`."""
    va = a - vertex
    vb = b - vertex
    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return NEUTRAL_ANGLE
    cos_theta = np.clip(np.dot(va, vb) / (norm_a * norm_b), -1.0, 1.0)
    return float(np.degrees(np.arccos(cos_theta)))

def cervical_angle(landmarks: LandmarkSet) -> float:
    """Ear-shoulder-hip angle measured at the shoulder midpoint."""
    ear = _midpoint(landmarks, BodyLandmark.LEFT_EAR, BodyLandmark.RIGHT_EAR)
    shoulder = _midpoint(landmarks, BodyLandmark.LEFT_SHOULDER, BodyLandmark.RIGHT_SHOULDER)
    hip = _midpoint(landmarks, BodyLandmark.LEFT_HIP, BodyLandmark.RIGHT_HIP)
    return angle_between(shoulder, ear, hip)

def shoulder_alignment(landmarks: LandmarkSet) -> int:
    """100 for level shoulders, decreasing linearly with the vertical offset down to 0."""
    offset = abs(landmarks.xy(BodyLandmark.LEFT_SHOULDER)[1] - landmarks.xy(BodyLandmark.RIGHT_SHOULDER)[1])
    return round_half_up(max(0.0, 100.0 - offset * SHOULDER_SENSITIVITY))

def head_forward(landmarks: LandmarkSet) -> int:
    """Horizontal nose-to-shoulder-midpoint distance on a 0-100 scale."""
    shoulder_x = _midpoint(landmarks, BodyLandmark.LEFT_SHOULDER, BodyLandmark.RIGHT_SHOULDER)[0]
    distance = abs(landmarks.xy(BodyLandmark.NOSE)[0] - shoulder_x)
    return min(100, round_half_up(distance * HEAD_FORWARD_SCALE))

def extract_metrics(landmarks: Optional[LandmarkSet]) -> PostureMetrics:
    if landmarks is None or not landmarks.has_required():
        return PostureMetrics()

    angle = cervical_angle(landmarks)
    alignment = shoulder_alignment(landmarks)
    forward = head_forward(landmarks)

    return PostureMetrics(
        posture_score=compose_score(angle, alignment, forward),
        cervical_angle=round_half_up(angle * 10) / 10,
        shoulder_alignment=alignment,
        head_forward=forward,
        is_person_detected=True,
    )
