"""
Gesture recognition: converts per-frame hand landmarks into dial and clap commands.
"""
import asyncio
import logging
import math
import threading
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Tuple

from .config import Cfg
from .landmarks import HandsTracker, is_palm_open, palm_center
from .status import StatusBoard
from .types import (
    HAND_LABELS,
    Command,
    FrameDetection,
    HandLabel,
    HandObservation,
    HandSample,
    LockState,
    RecognizerStatus,
)

logger = logging.getLogger(__name__)

STATUS_LOCKED = "Gestures locked while session active."


class HandHistory:
    """Sliding window of palm-centre samples for one hand label."""

    def __init__(self, window_s: float):
        self.window_s = window_s
        self.samples: Deque[HandSample] = deque()

    def push(self, sample: HandSample) -> None:
        self.samples.append(sample)
        cutoff = sample.timestamp - self.window_s
        while self.samples and self.samples[0].timestamp < cutoff:
            self.samples.popleft()

    def clear(self) -> None:
        self.samples.clear()

    def __len__(self) -> int:
        return len(self.samples)

    def displacement(self) -> Optional[Tuple[float, float, float]]:
        """(dx, dy, elapsed_s) between the oldest and newest sample, or None."""
        if len(self.samples) < 2:
            return None
        first = self.samples[0]
        last = self.samples[-1]
        elapsed = last.timestamp - first.timestamp
        if elapsed <= 0:
            return None
        return (last.x - first.x, last.y - first.y, elapsed)


class ClapDetector:
    """
    Detects two open palms moving quickly together.

    Fires only when the inter-hand distance shrank by at least the delta
    threshold between consecutive samples no more than max_interval apart,
    the hands end up closer than the distance threshold, and the cooldown
    has elapsed.
    """

    def __init__(self, cfg: Cfg):
        self.cfg = cfg
        self.last_distance: Optional[Tuple[float, float]] = None  # (distance, timestamp)
        self.last_clap_time = -math.inf

    def reset(self) -> None:
        self.last_distance = None

    def update(self, observations: List[HandObservation], t_now: float, allow_fire: bool = True) -> bool:
        lefts = [obs for obs in observations if obs.label == "Left"]
        rights = [obs for obs in observations if obs.label == "Right"]
        if len(lefts) != 1 or len(rights) != 1:
            self.reset()
            return False

        left, right = lefts[0].center, rights[0].center
        distance = math.hypot(left[0] - right[0], left[1] - right[1])

        gestures = self.cfg.gestures
        if allow_fire and self.last_distance is not None:
            previous, previous_time = self.last_distance
            elapsed = t_now - previous_time
            if (
                elapsed <= gestures.clap_max_interval_ms / 1000.0
                and previous - distance >= gestures.clap_delta_threshold
                and distance <= gestures.clap_distance_threshold
                and t_now - self.last_clap_time > gestures.clap_cooldown_ms / 1000.0
            ):
                self.last_clap_time = t_now
                self.reset()
                return True

        self.last_distance = (distance, t_now)
        return False


class GestureRecognizer:
    """
    Classifies hand detections into at most one Command per frame.

    Features:
    - Closed palms are ignored and their history dropped, so gripping motion never swipes
    - Vertical swipes (spin) are checked before horizontal swipes (switch)
    - Separate cooldowns for spin, switch and clap
    - Clap only considered when no swipe fired in the same frame
    """

    def __init__(self, cfg: Cfg, status: StatusBoard, locks: LockState):
        self.cfg = cfg
        self.status = status
        self.locks = locks
        window_s = cfg.gestures.history_window_ms / 1000.0
        self.histories: Dict[HandLabel, HandHistory] = {
            label: HandHistory(window_s) for label in HAND_LABELS
        }
        self.clap = ClapDetector(cfg)
        self.last_spin_time = -math.inf
        self.last_switch_time = -math.inf

    def reset(self) -> None:
        """Drop all motion state. Cooldown timestamps are kept."""
        for history in self.histories.values():
            history.clear()
        self.clap.reset()

    def process_frame(self, detection: FrameDetection, t_now: Optional[float] = None) -> Optional[Command]:
        """
        Classify one frame.

        Args:
            detection: Hands detected in the frame
            t_now: Classification time in seconds (defaults to the frame timestamp)

        Returns:
            The command recognized in this frame, or None
        """
        if self.locks.gestures_locked:
            return None
        t_now = detection.timestamp if t_now is None else t_now

        if not detection.hands:
            self.reset()
            self.status.set_gesture_idle("Hands not detected.", t_now)
            return None

        gestures = self.cfg.gestures
        seen = set()
        observations: List[HandObservation] = []
        closed_palm = False

        for hand in detection.hands:
            seen.add(hand.label)
            if not is_palm_open(hand.landmarks, gestures.finger_extension_min_delta,
                                gestures.palm_open_min_avg_tip_distance):
                closed_palm = True
                self.histories[hand.label].clear()
                continue
            center = palm_center(hand.landmarks)
            self.histories[hand.label].push(HandSample(x=center[0], y=center[1], timestamp=t_now))
            observations.append(HandObservation(label=hand.label, center=center))

        for label in HAND_LABELS:
            if label not in seen:
                self.histories[label].clear()

        if not observations:
            self.clap.reset()
            message = "Palms closed, move freely." if closed_palm else "Hands not detected."
            self.status.set_gesture_idle(message, t_now)
            return None

        command = self._classify_swipe(observations, t_now)
        clapped = self.clap.update(observations, t_now, allow_fire=command is None)
        if command is None and clapped:
            command = Command.CLAP
            self.status.set_gesture_status("Clap detected, submitting.", t_now)

        if command is None:
            self.status.set_gesture_idle("Hands ready.", t_now)
        return command

    def _classify_swipe(self, observations: List[HandObservation], t_now: float) -> Optional[Command]:
        gestures = self.cfg.gestures
        window_s = gestures.history_window_ms / 1000.0
        threshold = gestures.swipe_min_displacement

        if t_now - self.last_spin_time > gestures.spin_cooldown_ms / 1000.0:
            for obs in observations:
                displacement = self.histories[obs.label].displacement()
                if displacement is None:
                    continue
                dx, dy, elapsed = displacement
                if elapsed <= window_s and abs(dy) >= threshold and abs(dy) > abs(dx):
                    self.last_spin_time = t_now
                    if dy < 0:
                        self.status.set_gesture_status("Dial up", t_now)
                        return Command.SPIN_UP
                    self.status.set_gesture_status("Dial down", t_now)
                    return Command.SPIN_DOWN

        if t_now - self.last_switch_time > gestures.switch_cooldown_ms / 1000.0:
            for obs in observations:
                displacement = self.histories[obs.label].displacement()
                if displacement is None:
                    continue
                dx, dy, elapsed = displacement
                if elapsed <= window_s and abs(dx) >= threshold and abs(dx) > abs(dy):
                    self.last_switch_time = t_now
                    # Preview is mirrored: moving left on screen advances to the next dial.
                    if dx < 0:
                        self.status.set_gesture_status("Next dial", t_now)
                        return Command.NEXT_DIAL
                    self.status.set_gesture_status("Previous dial", t_now)
                    return Command.PREV_DIAL

        return None


class GestureLoop:
    """
    Frame-driven recognition task.

    Pulls the latest camera frame at sensor cadence and classifies each distinct
    frame timestamp exactly once. A busy flag keeps classification non-reentrant,
    and the tracker lock stays held by a worker thread that outlives a stop().
    """

    def __init__(self, tracker: HandsTracker, recognizer: GestureRecognizer, frame_source,
                 on_command: Callable[[Command], None], status: StatusBoard,
                 poll_interval_s: float = 1.0 / 60):
        self.tracker = tracker
        self.recognizer = recognizer
        self.frame_source = frame_source
        self.on_command = on_command
        self.status = status
        self.poll_interval_s = poll_interval_s
        self._task: Optional[asyncio.Task] = None
        self._busy = False
        self._tracker_lock = threading.Lock()
        self._last_timestamp: Optional[float] = None
        self.last_detection: Optional[FrameDetection] = None
        self.permissions_granted = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> bool:
        if self.running:
            return True
        if self.recognizer.locks.gestures_locked:
            self.status.set_gesture_status(STATUS_LOCKED)
            return False
        if self.tracker.status != RecognizerStatus.READY:
            self.status.set_gesture_status("Initializing gestures...")
            if not self.tracker.initialize():
                self.status.set_gesture_status(f"Gesture init failed: {self.tracker.error}")
                return False
        self.status.set_gesture_status("Gestures ready.")
        self._last_timestamp = None
        self._task = asyncio.create_task(self._run())
        return True

    def stop(self) -> None:
        """Cancel the loop immediately and drop motion state."""
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self._busy = False
        self._last_timestamp = None
        self.last_detection = None
        self.recognizer.reset()
        if self.recognizer.locks.gestures_locked:
            self.status.set_gesture_status(STATUS_LOCKED)
        elif self.permissions_granted:
            self.status.set_gesture_status("Gestures paused.")
        else:
            self.status.set_gesture_status("Gestures inactive.")

    async def _run(self) -> None:
        while True:
            frame, timestamp = self.frame_source.latest()
            if frame is None or timestamp == self._last_timestamp:
                await asyncio.sleep(self.poll_interval_s)
                continue
            self._last_timestamp = timestamp
            await self.step(frame, timestamp)

    async def step(self, frame, timestamp: float) -> Optional[Command]:
        """Classify one frame; returns None if a classification is already running."""
        if self._busy or self._tracker_lock.locked():
            return None
        self._busy = True
        try:
            detection = await asyncio.to_thread(self._process_blocking, frame, timestamp)
            if self.recognizer.locks.gestures_locked:
                return None
            self.last_detection = detection
            command = self.recognizer.process_frame(detection)
        finally:
            self._busy = False
        if command is not None:
            logger.info(f"🖐️ [Gestures] {command.value}")
            self.on_command(command)
        return command

    def _process_blocking(self, frame, timestamp: float) -> FrameDetection:
        with self._tracker_lock:
            return self.tracker.process(frame, timestamp)
