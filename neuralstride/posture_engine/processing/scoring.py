# neuralstride/posture_engine/processing/scoring.py
import math

CERVICAL_WEIGHT = 0.6
SHOULDER_WEIGHT = 0.2
HEAD_FORWARD_WEIGHT = 0.2

IDEAL_ANGLE_RANGE = (155.0, 165.0)

def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))

def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))

def cervical_subscore(angle: float) -> float:
    """
    Piecewise-linear score for the cervical angle. 155-165 degrees is ideal (100);
    the score falls off on either side and bottoms out near 0 below ~115 degrees.
    """
    low, high = IDEAL_ANGLE_RANGE
    if low <= angle <= high:
        return 100.0
    if angle >= 150:
        # Also covers the too-upright side (> 165).
        return 95.0 - abs(angle - 160.0) * 2.0
    if angle >= 145:
        return 85.0 - (150.0 - angle) * 1.5
    if angle >= 135:
        return 70.0 - (145.0 - angle) * 2.0
    if angle >= 125:
        return 50.0 - (135.0 - angle) * 2.5
    if angle >= 115:
        return 25.0 - (125.0 - angle) * 2.0
    return max(0.0, 10.0 - (115.0 - angle) * 0.5)

def head_forward_subscore(head_forward: float) -> float:
    return max(0.0, 100.0 - head_forward * 1.5)

def compose_score(cervical_angle: float, shoulder_alignment: float, head_forward: float) -> int:
    """Weighted composite posture score, rounded and clamped to [0, 100] for any input."""
    if any(math.isnan(value) for value in (cervical_angle, shoulder_alignment, head_forward)):
        return 0
    total = (
        cervical_subscore(cervical_angle) * CERVICAL_WEIGHT
        + shoulder_alignment * SHOULDER_WEIGHT
        + head_forward_subscore(head_forward) * HEAD_FORWARD_WEIGHT
    )
    if math.isnan(total):
        return 0
    return round_half_up(clamp(total))
