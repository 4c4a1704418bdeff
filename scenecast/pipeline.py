"""
Capture pipeline: record, encode, transcribe, decide, render, reschedule.

Two single-flight guards keep the pipeline honest:
- capture_busy covers Recording through Deciding; a second trigger is rejected
- render_busy covers Rendering; it is independent so a slow render never
  blocks the next capture, but two renders never overlap

The auto-loop is a TickScheduler holding at most one pending tick.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Set, Tuple

from .audio import prepare_transcription_payload
from .completions import BACKGROUND_PROMPT_SYSTEM_PROMPT, build_decision_message, parse_prompt_decision
from .config import Cfg
from .errors import ConcurrencyRejection, DeviceError, format_error
from .status import StatusBoard
from .types import (
    CaptureDeviceProto,
    EncodedAudio,
    Generate,
    ImageRendererProto,
    PipelineStage,
    PromptDecision,
    PromptModelProto,
    RecorderProto,
    RenderedImage,
    SessionContext,
    Skip,
    SpeechModelProto,
)

logger = logging.getLogger(__name__)


class TickScheduler:
    """One pending timer at a time. Scheduling replaces it; cancelling drops it."""

    def __init__(self, on_tick: Callable[[], None]):
        self.on_tick = on_tick
        self._handle: Optional[asyncio.TimerHandle] = None
        self.reason: Optional[str] = None
        self.delay_s: Optional[float] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self, delay_s: float, reason: str = "") -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self.reason = reason
        self.delay_s = delay_s
        self._handle = loop.call_later(max(0.0, delay_s), self._fire)
        logger.info(f"⏱️ [Auto] Next capture in {delay_s * 1000:.0f} ms ({reason})")

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self.reason = None
        self.delay_s = None

    def _fire(self) -> None:
        self._handle = None
        self.reason = None
        self.delay_s = None
        self.on_tick()


@dataclass
class PipelineRunState:
    """Current stage plus the single-flight guards."""
    stage: PipelineStage = PipelineStage.IDLE
    capture_busy: bool = False
    render_busy: bool = False
    awaiting_render: bool = False


class CapturePipeline:
    """
    Orchestrates one capture cycle at a time and, when looping, reschedules itself.

    Stage failures are caught at their own boundary, reported on the status
    board, and end the cycle; the loop always reschedules. stop_loop() only
    drops the pending tick: a cycle or render already in flight runs to
    completion, and a render finishing after the stop updates the last
    accepted prompt but is not published.
    """

    def __init__(self, cfg: Cfg, context: SessionContext, status: StatusBoard,
                 capture_device: CaptureDeviceProto, recorder: RecorderProto,
                 transcriber: SpeechModelProto, decider: PromptModelProto,
                 renderer: ImageRendererProto,
                 model_ids: Callable[[], Tuple[str, str]],
                 on_image: Optional[Callable[[RenderedImage], Awaitable[object]]] = None):
        self.cfg = cfg
        self.context = context
        self.status = status
        self.capture_device = capture_device
        self.recorder = recorder
        self.transcriber = transcriber
        self.decider = decider
        self.renderer = renderer
        self.model_ids = model_ids
        self.on_image = on_image

        pipeline = cfg.pipeline
        self.initial_delay_s = pipeline.initial_delay_ms / 1000.0
        self.retry_delay_s = pipeline.retry_delay_ms / 1000.0
        self.fallback_delay_s = pipeline.fallback_delay_ms / 1000.0
        self.post_image_delay_s = pipeline.post_image_delay_ms / 1000.0

        self.state = PipelineRunState()
        self.scheduler = TickScheduler(self._on_tick)
        self.looping = False
        self.render_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        # Bumped on every stop so late renders know their session is gone.
        self._epoch = 0

    # Loop control

    def start_loop(self, delay_s: Optional[float] = None) -> None:
        self.looping = True
        self.state.awaiting_render = False
        self.status.log_event("[Auto] Automatic transcription enabled.")
        self.scheduler.schedule(self.initial_delay_s if delay_s is None else delay_s, "loop start")

    def stop_loop(self) -> None:
        self.looping = False
        self.scheduler.cancel()
        self.state.awaiting_render = False
        self._epoch += 1
        self._settle_stage()
        self.status.log_event("[Auto] Automatic transcription disabled.")

    def _on_tick(self) -> None:
        task = asyncio.ensure_future(self.trigger())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _reschedule(self, delay_s: float, reason: str) -> None:
        if self.looping:
            self.scheduler.schedule(delay_s, reason)

    def _reject(self, rejection: ConcurrencyRejection) -> None:
        logger.info(f"⏭️ [Auto] {rejection}")
        self.status.log_event(f"[Auto] {rejection}")

    # Cycle

    async def trigger(self) -> bool:
        """
        Run one capture cycle.

        Returns:
            False if a capture was already in flight (the attempt is rescheduled
            when looping), True once the cycle has finished
        """
        if self.state.capture_busy:
            self._reject(ConcurrencyRejection("Capture already in progress; retrying shortly."))
            self._reschedule(self.retry_delay_s, "capture busy")
            return False

        self.scheduler.cancel()
        self.state.capture_busy = True
        self.state.awaiting_render = False
        epoch = self._epoch
        delay_s = self.fallback_delay_s
        try:
            delay_s = await self._run_cycle(epoch)
        except Exception as e:
            logger.exception(f"❌ [Auto] Capture cycle failed at {self.state.stage.value}")
            self.status.log_event(f"[Auto] Capture cycle failed: {format_error(e)}", "error")
        finally:
            self.state.capture_busy = False
            self._settle_stage()
            if not self.state.awaiting_render:
                self._reschedule(delay_s, "next cycle")
        return True

    async def _run_cycle(self, epoch: int) -> float:
        """Returns the delay before the next tick if this cycle doesn't hand off to a render."""
        blob = await self._record()
        if blob is None:
            return self.retry_delay_s

        encoded = await self._encode(blob)
        if encoded is None:
            return self.fallback_delay_s

        transcript = await self._transcribe(encoded)
        if not transcript:
            return self.fallback_delay_s

        decision = await self._decide(transcript)
        if isinstance(decision, Generate):
            self._launch_render(decision.prompt, epoch)
        elif isinstance(decision, Skip):
            self.state.stage = PipelineStage.SKIPPED
            self.status.set("image", "No new background generated.")
        return self.fallback_delay_s

    async def _record(self):
        self.state.stage = PipelineStage.RECORDING
        duration = self.cfg.audio.sample_duration_s
        self.status.set("mic", f"Recording {duration:g}s sample...")
        self.status.log_event(f"[Transcription] Recording {duration:g}s audio sample.")
        try:
            stream = await self.capture_device.acquire()
            return await self.recorder.record(stream, duration)
        except DeviceError as e:
            self.status.set("mic", f"Transcription failed: {format_error(e)}")
            self.status.log_event(f"[Transcription] Capture failed: {format_error(e)}", "error")
            return None

    async def _encode(self, blob) -> Optional[EncodedAudio]:
        self.state.stage = PipelineStage.ENCODING
        self.status.log_event("[Transcription] Preparing audio payload.")
        try:
            encoded = await asyncio.to_thread(
                prepare_transcription_payload, blob, self.cfg.audio.target_sample_rate
            )
        except Exception as e:
            self.status.set("mic", f"Transcription failed: {format_error(e)}")
            self.status.log_event(f"[Transcription] Encoding failed: {format_error(e)}", "error")
            return None
        self.status.log_event(
            f"[Transcription] Encoded WAV bytes={encoded.wav_byte_length} "
            f"(base64 length={len(encoded.base64)}), duration={encoded.duration_seconds:.2f}s, "
            f"sampleRate={encoded.sample_rate}Hz."
        )
        return encoded

    async def _transcribe(self, encoded: EncodedAudio) -> str:
        self.state.stage = PipelineStage.TRANSCRIBING
        self.status.set("mic", "Transcribing sample...")
        transcription_model, _ = self.model_ids()
        models = self.cfg.models
        try:
            transcript = await self.transcriber.transcribe(
                transcription_model, models.transcription_prompt, encoded.base64, models.audio_format
            )
        except Exception as e:
            self.status.set("mic", f"Transcription failed: {format_error(e)}")
            self.status.log_event(f"[Transcription] Request failed: {format_error(e)}", "error")
            return ""

        transcript = (transcript or "").strip()
        if not transcript:
            self.status.set("mic", "Transcription succeeded, but no text was returned.")
            self.status.log_event("[Transcription] Request completed but no transcript text was returned.")
            return ""
        self.status.set("mic", f"Transcript: {transcript}")
        self.status.log_event(f"[Transcription] Transcript: \"{transcript}\"")
        return transcript

    async def _decide(self, transcript: str) -> Optional[PromptDecision]:
        self.state.stage = PipelineStage.DECIDING
        self.status.set("prompt", "Generating virtual background prompt...")
        self.status.log_event("[Background] Generating virtual background prompt...")
        _, prompt_model = self.model_ids()
        message = build_decision_message(transcript, self.context.last_accepted_prompt)
        try:
            completion = await self.decider.decide(prompt_model, BACKGROUND_PROMPT_SYSTEM_PROMPT, message)
        except Exception as e:
            self.status.set("prompt", f"Virtual background prompt failed: {format_error(e)}")
            self.status.set("image", "Background image unavailable.")
            self.status.log_event(f"[Background] Prompt generation failed: {format_error(e)}", "error")
            return None

        decision = parse_prompt_decision(completion)
        if isinstance(decision, Generate):
            self.status.set("prompt", f"Virtual background prompt: {decision.prompt}")
            self.status.log_event(f"[Background] Prompt: \"{decision.prompt}\"")
        else:
            self.status.set("prompt", f"Virtual background prompt skipped: {decision.reason}")
            self.status.log_event(f"[Background] Prompt request skipped by model: {decision.reason}")
        return decision

    # Render

    def _launch_render(self, prompt: str, epoch: int) -> bool:
        if self.state.render_busy:
            self._reject(ConcurrencyRejection(
                "Skipping image request because another generation is in progress."
            ))
            return False
        self.state.render_busy = True
        if self.looping:
            self.state.awaiting_render = True
        self.render_task = asyncio.create_task(self._render(prompt, epoch))
        self._tasks.add(self.render_task)
        self.render_task.add_done_callback(self._tasks.discard)
        return True

    async def _render(self, prompt: str, epoch: int) -> None:
        self._settle_stage()
        self.status.set("image", "Generating background preview...")
        self.status.log_event("[Background] Requesting nano banana image preview...")
        try:
            image = await self.renderer.render(prompt)
        except Exception as e:
            self.status.set("image", "Background image unavailable.")
            self.status.log_event(f"[Background] Image generation failed: {format_error(e)}", "error")
        else:
            self.context.last_accepted_prompt = prompt
            if epoch != self._epoch:
                logger.info("🗑️ [Background] Session stopped during render; discarding image.")
            else:
                if self.on_image is not None:
                    await self.on_image(image)
                self.status.set("image", "Background ready.")
                self.status.log_event("[Background] Background image preview updated.")
        finally:
            self.state.render_busy = False
            waited = self.state.awaiting_render
            self.state.awaiting_render = False
            # An in-flight capture reschedules on its own when it finishes.
            if not self.state.capture_busy and (waited or not self.scheduler.pending):
                self._reschedule(self.post_image_delay_s, "post-image")
            self._settle_stage()

    def _settle_stage(self) -> None:
        if self.state.capture_busy:
            return
        self.state.stage = PipelineStage.RENDERING if self.state.render_busy else PipelineStage.IDLE

    async def drain(self) -> None:
        """Wait for in-flight cycles and renders (used on shutdown and in tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
