"""
Type definitions for the gesture-driven background companion.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Literal, Optional, Protocol, Tuple, Union, runtime_checkable


HandLabel = Literal["Left", "Right"]
HAND_LABELS: Tuple[HandLabel, HandLabel] = ("Left", "Right")

Landmark = Tuple[float, float]


@dataclass
class HandSample:
    """Palm-centre sample kept in a per-hand sliding history."""
    x: float
    y: float
    timestamp: float  # seconds


@dataclass
class HandObservation:
    """Open hand seen during one classification pass."""
    label: HandLabel
    center: Tuple[float, float]


@dataclass
class DetectedHand:
    """One hand from the landmark detector: handedness plus 21 normalized points."""
    label: HandLabel
    landmarks: List[Landmark]


@dataclass
class FrameDetection:
    """All hands detected in one video frame."""
    timestamp: float
    hands: List[DetectedHand] = field(default_factory=list)


class Command(Enum):
    """Discrete command produced by the gesture recognizer."""
    SPIN_UP = "spin_up"
    SPIN_DOWN = "spin_down"
    NEXT_DIAL = "next_dial"
    PREV_DIAL = "prev_dial"
    CLAP = "clap"


class RecognizerStatus(Enum):
    """Lifecycle of the landmark detection capability."""
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    FAILED = "failed"


class PipelineStage(Enum):
    """Stage of the capture pipeline."""
    IDLE = "idle"
    RECORDING = "recording"
    ENCODING = "encoding"
    TRANSCRIBING = "transcribing"
    DECIDING = "deciding"
    SKIPPED = "skipped"
    RENDERING = "rendering"


@dataclass(frozen=True)
class Generate:
    """Model accepted the transcript; render this prompt."""
    prompt: str


@dataclass(frozen=True)
class Skip:
    """Model rejected the transcript."""
    reason: str


PromptDecision = Union[Generate, Skip]


@dataclass
class DialState:
    """Persisted dial positions plus the active dial."""
    positions: List[int]
    active_index: int = 0

    def to_dict(self) -> dict:
        return {"positions": list(self.positions), "activeIndex": self.active_index}


@dataclass
class LockState:
    """Input freeze flags owned by the session coordinator."""
    dials_locked: bool = False
    gestures_locked: bool = False


@dataclass
class AudioBlob:
    """Raw PCM captured from the microphone."""
    pcm: bytes
    sample_rate: int
    channels: int = 1
    sample_width: int = 2


@dataclass
class EncodedAudio:
    """WAV sample ready for upload."""
    base64: str
    wav_byte_length: int
    duration_seconds: float
    sample_rate: int


@dataclass
class RenderedImage:
    """Generated background image."""
    data: bytes
    mime: str


@dataclass
class RegistrationFlags:
    """Extra flags sent with a registration."""
    requires_image_key: bool = True
    has_local_image_key: bool = False


# Collaborator protocols. The pipeline and coordinator only depend on these.

@runtime_checkable
class MicrophoneStreamProto(Protocol):
    """Opened audio input shared by preview and recording."""
    sample_rate: int
    channels: int

    def read(self, frames: int) -> bytes:
        ...


@runtime_checkable
class CaptureDeviceProto(Protocol):
    """Capture device that hands out the shared audio stream."""

    async def acquire(self) -> MicrophoneStreamProto:
        ...


@runtime_checkable
class RecorderProto(Protocol):
    """Fixed-duration recorder over a borrowed stream."""

    async def record(self, stream: MicrophoneStreamProto, duration_s: float) -> AudioBlob:
        ...


@runtime_checkable
class SpeechModelProto(Protocol):
    async def transcribe(self, model_id: str, instruction: str, audio_base64: str, fmt: str) -> str:
        ...


@runtime_checkable
class PromptModelProto(Protocol):
    async def decide(self, model_id: str, system_instructions: str, user_message: str) -> str:
        ...


@runtime_checkable
class ImageRendererProto(Protocol):
    async def render(self, prompt: str) -> RenderedImage:
        ...


@runtime_checkable
class RegistrationProto(Protocol):
    async def register(self, name: str, tunnel_url: str, flags: RegistrationFlags) -> str:
        ...

    async def unregister(self, name: str) -> str:
        ...


@runtime_checkable
class DialStoreProto(Protocol):
    """Key-value persistence for dial state."""

    def load_dial_state(self) -> Optional[dict]:
        ...

    def save_dial_state(self, state: dict) -> None:
        ...


@dataclass
class SessionContext:
    """Session-wide state shared by the coordinator, dials, gesture loop and pipeline."""
    locks: LockState = field(default_factory=LockState)
    permissions_granted: bool = False
    last_accepted_prompt: Optional[str] = None
    active: bool = False
    screen_name: Optional[str] = None
