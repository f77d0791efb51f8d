# neuralstride/posture_engine/processing/posture_processor.py
import logging
import time
from typing import Any, Callable, Optional
from ..common.models import FrameMetadata, LandmarkSet, PostureResult
from ..common.enums import DetectionState
from .geometry import extract_metrics
from .stress_mapper import map_stress

logger = logging.getLogger(__name__)

Detector = Callable[[Any], Optional[LandmarkSet]]

class PostureProcessor:
    """Runs the external pose detector on a frame and derives metrics and regional stress."""

    def __init__(self, config: dict, detector: Detector):
        self.config = config
        self.state = DetectionState.INITIALIZING
        self.detector = detector
        self.compute_stress = config.get('compute_stress', True)
        self.state = DetectionState.SEARCHING

    def process_frame(self, frame: Any, metadata: FrameMetadata) -> PostureResult:
        """Processes a single frame into a PostureResult."""
        start_time = time.perf_counter()

        try:
            landmarks = self.detector(frame)
        except (ValueError, TypeError) as e:
            # A frame the detector cannot read counts as a detection miss.
            logger.warning("Pose detector rejected frame %d: %s", metadata.frame_id, e)
            landmarks = None

        metrics = extract_metrics(landmarks)
        stress = None
        if metrics.is_person_detected:
            self.state = DetectionState.TRACKING
            if self.compute_stress:
                stress = map_stress(metrics.posture_score, metrics.cervical_angle)
        else:
            if self.state == DetectionState.TRACKING:
                logger.debug("Lost subject at frame %d", metadata.frame_id)
            self.state = DetectionState.SEARCHING

        processing_time_ms = (time.perf_counter() - start_time) * 1000

        return PostureResult(
            timestamp=metadata.timestamp,
            frame_id=metadata.frame_id,
            processing_time_ms=processing_time_ms,
            status=self.state,
            metrics=metrics,
            stress=stress,
        )
