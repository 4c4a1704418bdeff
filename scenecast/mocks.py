"""
Mock collaborators for offline runs and tests.

Each mock records its calls so tests can assert on them.
"""
import asyncio
import base64
import json
import logging
from typing import List, Optional, Tuple

from .errors import DeviceError, NetworkError
from .types import AudioBlob, RegistrationFlags, RenderedImage

logger = logging.getLogger(__name__)

# 1x1 transparent PNG.
PLACEHOLDER_PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)


class MockHub:
    """Registration service that logs instead of calling the hub."""

    def __init__(self, fail_register: bool = False, fail_unregister: bool = False,
                 gate: Optional[asyncio.Event] = None):
        self.fail_register = fail_register
        self.fail_unregister = fail_unregister
        self.gate = gate
        self.registered: List[Tuple[str, str, RegistrationFlags]] = []
        self.unregistered: List[str] = []

    async def register(self, name: str, tunnel_url: str, flags: RegistrationFlags) -> str:
        self.registered.append((name, tunnel_url, flags))
        logger.info(f"[MockHub] Register: name={name} (call #{len(self.registered)})")
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_register:
            raise NetworkError("Failed to register agent: mock failure", status=500)
        return f"Agent registered with tunnel: {tunnel_url or 'mock'}"

    async def unregister(self, name: str) -> str:
        self.unregistered.append(name)
        logger.info(f"[MockHub] Unregister: name={name} (call #{len(self.unregistered)})")
        if self.fail_unregister:
            raise NetworkError("Failed to unregister agent: mock failure", status=500)
        return "Agent unregistered."


class MockTunnel:
    """Tunnel that hands out a fixed URL and counts starts and stops."""

    def __init__(self, url: str = "https://mock.trycloudflare.com", error: Optional[Exception] = None):
        self.url = url
        self.error = error
        self.starts = 0
        self.stops = 0

    async def start(self) -> str:
        self.starts += 1
        if self.error is not None:
            raise self.error
        return self.url

    async def stop(self) -> None:
        self.stops += 1


class MockStream:
    sample_rate = 16000
    channels = 1

    def read(self, frames: int) -> bytes:
        return b"\x00\x00" * frames


class MockCaptureDevice:
    """Capture device; `available=False` simulates denied access."""

    def __init__(self, available: bool = True):
        self.available = available
        self.stream = MockStream()
        self.acquire_count = 0
        self.permissions_granted = False

    async def acquire(self) -> MockStream:
        self.acquire_count += 1
        if not self.available:
            raise DeviceError("Microphone unavailable")
        return self.stream

    async def ensure(self) -> bool:
        if self.available:
            self.permissions_granted = True
        return self.available


class MockRecorder:
    """Returns silence immediately, or waits on `gate` when one is set."""

    def __init__(self, gate: Optional[asyncio.Event] = None):
        self.gate = gate
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0

    async def record(self, stream, duration_s: float) -> AudioBlob:
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            frames = int(stream.sample_rate * 0.1)
            return AudioBlob(pcm=stream.read(frames), sample_rate=stream.sample_rate, channels=1)
        finally:
            self.in_flight -= 1


class MockSpeechModel:
    """Returns queued transcripts, then `default`."""

    def __init__(self, transcripts: Optional[List[str]] = None, default: str = "a quiet lake at dusk",
                 error: Optional[Exception] = None):
        self.transcripts = list(transcripts or [])
        self.default = default
        self.error = error
        self.calls: List[Tuple[str, str, str, str]] = []

    async def transcribe(self, model_id: str, instruction: str, audio_base64: str, fmt: str) -> str:
        self.calls.append((model_id, instruction, audio_base64, fmt))
        if self.error is not None:
            raise self.error
        if self.transcripts:
            return self.transcripts.pop(0)
        return self.default


class MockPromptModel:
    """Returns queued replies, then a generate decision echoing the transcript."""

    def __init__(self, replies: Optional[List[str]] = None, error: Optional[Exception] = None):
        self.replies = list(replies or [])
        self.error = error
        self.calls: List[Tuple[str, str, str]] = []

    async def decide(self, model_id: str, system_instructions: str, user_message: str) -> str:
        self.calls.append((model_id, system_instructions, user_message))
        if self.error is not None:
            raise self.error
        if self.replies:
            return self.replies.pop(0)
        transcript = user_message.rsplit("\n", 1)[-1].replace("Transcript: ", "")
        return json.dumps({"status": "generate", "prompt": transcript})


class MockImageRenderer:
    """Returns a placeholder PNG; waits on `gate` when one is set."""

    def __init__(self, gate: Optional[asyncio.Event] = None, error: Optional[Exception] = None):
        self.gate = gate
        self.error = error
        self.prompts: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def render(self, prompt: str) -> RenderedImage:
        self.prompts.append(prompt)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.error is not None:
                raise self.error
            return RenderedImage(data=PLACEHOLDER_PNG, mime="image/png")
        finally:
            self.in_flight -= 1


class MemoryDialStore:
    """In-memory dial state store recording every save."""

    def __init__(self, stored: Optional[dict] = None, fail_load: bool = False, fail_save: bool = False):
        self.stored = stored
        self.fail_load = fail_load
        self.fail_save = fail_save
        self.saves: List[dict] = []

    def load_dial_state(self) -> Optional[dict]:
        if self.fail_load:
            raise OSError("mock load failure")
        return self.stored

    def save_dial_state(self, state: dict) -> None:
        if self.fail_save:
            raise OSError("mock save failure")
        self.saves.append(dict(state))
        self.stored = dict(state)
