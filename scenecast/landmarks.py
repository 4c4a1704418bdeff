"""
Hand landmark detection and palm-pose helpers using MediaPipe.
"""
import logging
import math
from typing import Optional, List, Tuple

import cv2
import numpy as np

from .types import DetectedHand, FrameDetection, Landmark, RecognizerStatus

logger = logging.getLogger(__name__)

WRIST = 0
# (tip, pip) for index, middle, ring, pinky
FINGER_PAIRS: List[Tuple[int, int]] = [(8, 6), (12, 10), (16, 14), (20, 18)]


class HandsTracker:
    """Hand landmark tracker using MediaPipe Hands (up to two labelled hands)."""

    def __init__(self, max_num_hands: int = 2, min_detection_conf: float = 0.6, min_tracking_conf: float = 0.5):
        """
        Create the tracker. The MediaPipe graph is built by initialize().

        Args:
            max_num_hands: Maximum number of hands to detect
            min_detection_conf: Minimum confidence for hand detection
            min_tracking_conf: Minimum confidence for hand tracking
        """
        self.max_num_hands = max_num_hands
        self.min_detection_conf = min_detection_conf
        self.min_tracking_conf = min_tracking_conf
        self.hands = None
        self.status = RecognizerStatus.UNINITIALIZED
        self.error: Optional[str] = None

    def initialize(self) -> bool:
        """Build the detector. A failure leaves the tracker in the FAILED state."""
        if self.hands is not None:
            return True
        try:
            import mediapipe as mp
            self.hands = mp.solutions.hands.Hands(
                static_image_mode=False,
                max_num_hands=self.max_num_hands,
                min_detection_confidence=self.min_detection_conf,
                min_tracking_confidence=self.min_tracking_conf
            )
        except Exception as e:
            logger.error(f"❌ [Gestures] Hand landmarker init failed: {e}")
            self.hands = None
            self.status = RecognizerStatus.FAILED
            self.error = str(e)
            return False
        self.status = RecognizerStatus.READY
        self.error = None
        logger.info("✅ [Gestures] MediaPipe hands initialized")
        return True

    def process(self, frame_bgr: np.ndarray, timestamp: float) -> FrameDetection:
        """
        Detect hands in a frame.

        Args:
            frame_bgr: Input frame in BGR format
            timestamp: Frame timestamp in seconds

        Returns:
            FrameDetection with every hand whose handedness is Left or Right
        """
        detection = FrameDetection(timestamp=timestamp)
        if self.hands is None:
            return detection

        frame_rgb = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)
        results = self.hands.process(frame_rgb)
        if not results.multi_hand_landmarks:
            return detection

        handedness = results.multi_handedness or []
        for index, hand_landmarks in enumerate(results.multi_hand_landmarks):
            label = None
            if index < len(handedness) and handedness[index].classification:
                label = handedness[index].classification[0].label
            if label not in ("Left", "Right"):
                continue
            points = [(lm.x, lm.y) for lm in hand_landmarks.landmark]
            detection.hands.append(DetectedHand(label=label, landmarks=points))
        return detection

    def close(self) -> None:
        if self.hands is not None:
            self.hands.close()
            self.hands = None
        self.status = RecognizerStatus.UNINITIALIZED

    def draw_landmarks(self, frame: np.ndarray, detection: FrameDetection) -> np.ndarray:
        """Draw every detected hand's landmarks on the frame."""
        height, width = frame.shape[:2]
        for hand in detection.hands:
            color = (0, 255, 0) if hand.label == "Right" else (255, 128, 0)
            for x, y in hand.landmarks:
                cv2.circle(frame, (int(x * width), int(y * height)), 3, color, -1)
            cx, cy = palm_center(hand.landmarks)
            cv2.circle(frame, (int(cx * width), int(cy * height)), 8, (0, 0, 255), -1)
            cv2.putText(frame, hand.label, (int(cx * width) + 10, int(cy * height) - 10),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.5, (0, 0, 255), 2)
        return frame


def palm_center(landmarks: List[Landmark]) -> Tuple[float, float]:
    """
    Mean of all landmark points.

    Args:
        landmarks: List of 21 hand landmarks

    Returns:
        (x, y) coordinates of palm center in [0..1] range
    """
    count = len(landmarks) or 1
    x_sum = sum(point[0] for point in landmarks)
    y_sum = sum(point[1] for point in landmarks)
    return (x_sum / count, y_sum / count)


def fingers_extended(landmarks: List[Landmark], min_delta: float) -> int:
    """
    Count index..pinky fingers whose tip sits above the PIP joint by more than min_delta.

    The thumb is ignored; image y grows downward.
    """
    extended_count = 0
    for tip_idx, pip_idx in FINGER_PAIRS:
        if tip_idx >= len(landmarks) or pip_idx >= len(landmarks):
            continue
        if landmarks[pip_idx][1] - landmarks[tip_idx][1] > min_delta:
            extended_count += 1
    return extended_count


def average_tip_distance(landmarks: List[Landmark]) -> Optional[float]:
    """Average fingertip-to-wrist distance, or None without a wrist point."""
    if not landmarks:
        return None
    wrist = landmarks[WRIST]
    distances = [
        math.hypot(landmarks[tip][0] - wrist[0], landmarks[tip][1] - wrist[1])
        for tip, _ in FINGER_PAIRS
        if tip < len(landmarks)
    ]
    if not distances:
        return 0.0
    return sum(distances) / len(distances)


def is_palm_open(landmarks: List[Landmark], min_delta: float, min_avg_tip_distance: float) -> bool:
    """
    Open palm: at least 3 of 4 fingers extended and fingertips spread away from the wrist.

    Args:
        landmarks: List of 21 hand landmarks
        min_delta: Minimum tip-above-PIP vertical delta for a finger to count
        min_avg_tip_distance: Minimum average fingertip-to-wrist distance

    Returns:
        True if the palm is open
    """
    if not landmarks:
        return False
    if fingers_extended(landmarks, min_delta) < 3:
        return False
    spread = average_tip_distance(landmarks)
    return spread is not None and spread >= min_avg_tip_distance
