# neuralstride/posture_engine/processing/stress_mapper.py
from ..common.enums import StressLevel
from ..common.models import RegionalStress
from .scoring import IDEAL_ANGLE_RANGE, clamp

THORACIC_WEIGHT = 0.7
THORACIC_CASCADE_ANGLE = 140.0
THORACIC_CASCADE_PENALTY = 15.0

# Upper bounds (inclusive) of each label, in ascending order.
LEVEL_CUT_POINTS = (
    (20.0, StressLevel.OPTIMAL),
    (40.0, StressLevel.GOOD),
    (60.0, StressLevel.CAUTION),
    (80.0, StressLevel.WARNING),
)

def cervical_stress(angle: float) -> float:
    low, high = IDEAL_ANGLE_RANGE
    if low <= angle <= high:
        return 0.0
    if angle > high:
        return clamp(min(25.0, (angle - high) * 3.0))
    if angle >= 145:
        stress = 20.0 + (155.0 - angle) * 2.0
    elif angle >= 135:
        stress = 40.0 + (145.0 - angle) * 3.0
    elif angle >= 125:
        stress = 70.0 + (135.0 - angle) * 2.5
    else:
        stress = 95.0 + (125.0 - angle) * 0.5
    return clamp(stress)

def thoracic_stress(score: float, angle: float) -> float:
    stress = max(0.0, 100.0 - score) * THORACIC_WEIGHT
    if angle < THORACIC_CASCADE_ANGLE:
        stress += THORACIC_CASCADE_PENALTY
    return clamp(stress)

def lumbar_stress(score: float) -> float:
    if score >= 70:
        stress = 10.0
    elif score >= 50:
        stress = 20.0 + (70.0 - score) * 1.5
    elif score >= 30:
        stress = 50.0 + (50.0 - score) * 2.0
    else:
        stress = 90.0 + (30.0 - score) * 0.5
    return clamp(stress)

def classify(stress: float) -> StressLevel:
    for upper, level in LEVEL_CUT_POINTS:
        if stress <= upper:
            return level
    return StressLevel.CRITICAL

def map_stress(score: float, angle: float) -> RegionalStress:
    """Stateless regional stress for the current score and cervical angle."""
    cervical = cervical_stress(angle)
    thoracic = thoracic_stress(score, angle)
    lumbar = lumbar_stress(score)
    return RegionalStress(
        cervical=cervical,
        thoracic=thoracic,
        lumbar=lumbar,
        cervical_level=classify(cervical),
        thoracic_level=classify(thoracic),
        lumbar_level=classify(lumbar),
    )
