"""
Camera and microphone handles shared by the preview, the gesture loop and the recorder.
"""
import asyncio
import logging
import time
from typing import List, Optional, Tuple

import cv2
import numpy as np
import pyaudio

from .config import AudioConfig, CameraConfig
from .errors import DeviceError
from .status import StatusBoard
from .types import AudioBlob

logger = logging.getLogger(__name__)

FORMAT = pyaudio.paInt16
CHANNELS = 1


class MicrophoneStream:
    """Opened PyAudio input stream."""

    def __init__(self, audio: pyaudio.PyAudio, stream, sample_rate: int, channels: int):
        self._audio = audio
        self._stream = stream
        self.sample_rate = sample_rate
        self.channels = channels

    def read(self, frames: int) -> bytes:
        return self._stream.read(frames, exception_on_overflow=False)

    def close(self) -> None:
        try:
            self._stream.stop_stream()
            self._stream.close()
        finally:
            self._audio.terminate()


class MicrophoneDevice:
    """Opens the microphone once and hands out the same stream until released."""

    def __init__(self, cfg: AudioConfig):
        self.cfg = cfg
        self.stream: Optional[MicrophoneStream] = None

    async def acquire(self) -> MicrophoneStream:
        if self.stream is not None:
            return self.stream
        self.stream = await asyncio.to_thread(self._open)
        return self.stream

    def _open(self) -> MicrophoneStream:
        audio = pyaudio.PyAudio()
        try:
            stream = audio.open(
                format=FORMAT,
                channels=CHANNELS,
                rate=self.cfg.capture_sample_rate,
                input=True,
                input_device_index=self.cfg.device_index,
                frames_per_buffer=self.cfg.frames_per_buffer
            )
        except Exception as e:
            audio.terminate()
            raise DeviceError(f"Microphone unavailable: {e}") from e
        logger.info(f"🎤 Microphone open at {self.cfg.capture_sample_rate} Hz")
        return MicrophoneStream(audio, stream, self.cfg.capture_sample_rate, CHANNELS)

    def release(self) -> None:
        if self.stream is not None:
            self.stream.close()
            self.stream = None


class MicrophoneRecorder:
    """Records a fixed-duration sample from a borrowed stream."""

    def __init__(self, frames_per_buffer: int = 1024):
        self.frames_per_buffer = frames_per_buffer

    async def record(self, stream: MicrophoneStream, duration_s: float) -> AudioBlob:
        return await asyncio.to_thread(self._record_blocking, stream, duration_s)

    def _record_blocking(self, stream: MicrophoneStream, duration_s: float) -> AudioBlob:
        remaining = int(stream.sample_rate * duration_s)
        chunks: List[bytes] = []
        try:
            while remaining > 0:
                frames = min(self.frames_per_buffer, remaining)
                chunks.append(stream.read(frames))
                remaining -= frames
        except OSError as e:
            raise DeviceError(f"Recording failed: {e}") from e
        return AudioBlob(pcm=b"".join(chunks), sample_rate=stream.sample_rate,
                         channels=stream.channels, sample_width=2)


class CameraFeed:
    """OpenCV capture keeping the latest frame and its timestamp."""

    def __init__(self, cfg: CameraConfig):
        self.cfg = cfg
        self.cap: Optional[cv2.VideoCapture] = None
        self._frame: Optional[np.ndarray] = None
        self._timestamp = -1.0

    @property
    def is_open(self) -> bool:
        return self.cap is not None and self.cap.isOpened()

    def open(self) -> None:
        if self.is_open:
            return
        cap = cv2.VideoCapture(self.cfg.index)
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.cfg.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.cfg.height)
        cap.set(cv2.CAP_PROP_FPS, self.cfg.fps)
        if not cap.isOpened():
            cap.release()
            raise DeviceError(f"Failed to open camera {self.cfg.index}")
        self.cap = cap

    def read(self) -> Optional[np.ndarray]:
        """Grab a frame; the timestamp only advances on a successful read."""
        if not self.is_open:
            return None
        ret, frame = self.cap.read()
        if not ret:
            return None
        # Mirror so on-screen motion matches the user's own movement.
        self._frame = cv2.flip(frame, 1)
        self._timestamp = max(time.time(), self._timestamp + 1e-6)
        return self._frame

    def latest(self) -> Tuple[Optional[np.ndarray], float]:
        return self._frame, self._timestamp

    def release(self) -> None:
        if self.cap is not None:
            self.cap.release()
            self.cap = None
        self._frame = None


class MediaDevices:
    """Camera + microphone acquired together; the capture device the pipeline borrows from."""

    def __init__(self, camera: CameraFeed, microphone: MicrophoneDevice, status: StatusBoard):
        self.camera = camera
        self.microphone = microphone
        self.status = status
        self.permissions_granted = False

    async def ensure(self) -> bool:
        """Open both devices if needed. Returns False (and reports) on failure."""
        if self.camera.is_open and self.microphone.stream is not None:
            return True
        self.status.log_event("Requesting access to camera and microphone streams...")
        try:
            self.camera.open()
            await self.microphone.acquire()
        except DeviceError as e:
            self.status.set("mic", "Microphone inactive.")
            self.status.log_event(f"Failed to start camera/microphone: {e}", "error")
            return False
        self.permissions_granted = True
        self.status.set("mic", "Listening to microphone.")
        self.status.log_event("Camera and microphone streams ready.")
        return True

    async def acquire(self) -> MicrophoneStream:
        if not await self.ensure():
            raise DeviceError("Microphone unavailable. Ensure camera/microphone access is granted.")
        return self.microphone.stream

    def release(self) -> None:
        self.camera.release()
        self.microphone.release()
        self.status.log_event("Camera and microphone streams stopped.")
