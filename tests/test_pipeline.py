"""
Test cases for the capture pipeline: single-flight guards, auto-loop scheduling
and the last accepted prompt.
"""
import asyncio
import json
import unittest

from scenecast.config import load_config
from scenecast.errors import NetworkError
from scenecast.mocks import (
    MockCaptureDevice,
    MockImageRenderer,
    MockPromptModel,
    MockRecorder,
    MockSpeechModel,
)
from scenecast.pipeline import CapturePipeline
from scenecast.status import StatusBoard
from scenecast.types import PipelineStage, RenderedImage, SessionContext

SKIP_REPLY = json.dumps({"status": "skip", "reason": "silence"})


async def wait_for(predicate, timeout=2.0):
    """Yield to the loop until predicate() holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class PipelineTestCase(unittest.IsolatedAsyncioTestCase):
    """Delays are long so scheduled ticks never fire on their own mid-test."""

    def make_pipeline(self, device=None, recorder=None, transcriber=None, decider=None, renderer=None):
        cfg = load_config()
        cfg.pipeline.initial_delay_ms = 5000
        cfg.pipeline.retry_delay_ms = 3000
        cfg.pipeline.fallback_delay_ms = 2000
        cfg.pipeline.post_image_delay_ms = 1000

        self.context = SessionContext()
        self.status = StatusBoard()
        self.device = device or MockCaptureDevice()
        self.recorder = recorder or MockRecorder()
        self.transcriber = transcriber or MockSpeechModel()
        self.decider = decider or MockPromptModel()
        self.renderer = renderer or MockImageRenderer()
        self.published = []

        async def on_image(image: RenderedImage):
            self.published.append(image)

        self.pipeline = CapturePipeline(
            cfg, self.context, self.status, self.device, self.recorder,
            self.transcriber, self.decider, self.renderer,
            model_ids=lambda: ("speech-model", "prompt-model"),
            on_image=on_image,
        )
        return self.pipeline

    async def asyncTearDown(self):
        pipeline = getattr(self, "pipeline", None)
        if pipeline is not None:
            pipeline.stop_loop()
            if self.renderer.gate is not None:
                self.renderer.gate.set()
            if self.recorder.gate is not None:
                self.recorder.gate.set()
            await pipeline.drain()

    def log_text(self):
        return "\n".join(entry.message for entry in self.status.entries)


class TestSingleFlight(PipelineTestCase):

    async def test_second_trigger_rejected_while_capturing(self):
        gate = asyncio.Event()
        pipeline = self.make_pipeline(recorder=MockRecorder(gate))

        first = asyncio.create_task(pipeline.trigger())
        await wait_for(lambda: self.recorder.in_flight == 1)
        self.assertTrue(pipeline.state.capture_busy)
        self.assertEqual(pipeline.state.stage, PipelineStage.RECORDING)

        self.assertFalse(await pipeline.trigger())
        self.assertIn("Capture already in progress", self.log_text())

        gate.set()
        self.assertTrue(await first)
        await pipeline.drain()

        self.assertEqual(self.recorder.calls, 1)
        self.assertEqual(self.recorder.max_in_flight, 1)
        self.assertFalse(pipeline.state.capture_busy)

    async def test_rejected_trigger_reschedules_when_looping(self):
        gate = asyncio.Event()
        pipeline = self.make_pipeline(recorder=MockRecorder(gate))
        pipeline.looping = True

        first = asyncio.create_task(pipeline.trigger())
        await wait_for(lambda: self.recorder.in_flight == 1)
        self.assertFalse(await pipeline.trigger())
        self.assertTrue(pipeline.scheduler.pending)
        self.assertEqual(pipeline.scheduler.delay_s, 3.0)

        gate.set()
        await first

    async def test_capture_may_overlap_render_but_renders_never_overlap(self):
        render_gate = asyncio.Event()
        pipeline = self.make_pipeline(
            transcriber=MockSpeechModel(["first scene", "second scene"]),
            renderer=MockImageRenderer(render_gate),
        )

        self.assertTrue(await pipeline.trigger())
        await wait_for(lambda: self.renderer.in_flight == 1)
        self.assertTrue(pipeline.state.render_busy)
        self.assertEqual(pipeline.state.stage, PipelineStage.RENDERING)

        # Capture runs to completion while the render is still pending.
        self.assertTrue(await pipeline.trigger())
        self.assertEqual(self.recorder.calls, 2)
        self.assertEqual(len(self.decider.calls), 2)
        self.assertEqual(self.renderer.prompts, ["first scene"])
        self.assertIn("another generation is in progress", self.log_text())

        render_gate.set()
        await pipeline.drain()

        self.assertEqual(self.renderer.max_in_flight, 1)
        self.assertEqual(len(self.published), 1)
        self.assertFalse(pipeline.state.render_busy)
        self.assertEqual(pipeline.state.stage, PipelineStage.IDLE)


class TestStageFailures(PipelineTestCase):

    async def test_device_error_ends_cycle_with_retry_delay(self):
        pipeline = self.make_pipeline(device=MockCaptureDevice(available=False))
        pipeline.start_loop()

        self.assertTrue(await pipeline.trigger())

        self.assertEqual(self.transcriber.calls, [])
        self.assertIn("Transcription failed", self.status.get("mic"))
        self.assertEqual(pipeline.scheduler.delay_s, 3.0)

    async def test_empty_transcript_skips_decision(self):
        pipeline = self.make_pipeline(transcriber=MockSpeechModel(["   "]))
        pipeline.start_loop()

        await pipeline.trigger()

        self.assertEqual(self.status.get("mic"), "Transcription succeeded, but no text was returned.")
        self.assertEqual(self.decider.calls, [])
        self.assertEqual(pipeline.scheduler.delay_s, 2.0)

    async def test_transcription_error_is_reported(self):
        pipeline = self.make_pipeline(transcriber=MockSpeechModel(error=NetworkError("boom", status=503)))
        pipeline.start_loop()

        self.assertTrue(await pipeline.trigger())

        self.assertIn("boom", self.status.get("mic"))
        self.assertEqual(self.decider.calls, [])
        self.assertEqual(pipeline.scheduler.delay_s, 2.0)

    async def test_decider_error_is_reported(self):
        pipeline = self.make_pipeline(decider=MockPromptModel(error=NetworkError("down")))

        await pipeline.trigger()

        self.assertIn("Virtual background prompt failed", self.status.get("prompt"))
        self.assertEqual(self.status.get("image"), "Background image unavailable.")
        self.assertEqual(self.renderer.prompts, [])

    async def test_render_error_keeps_previous_prompt(self):
        pipeline = self.make_pipeline(renderer=MockImageRenderer(error=NetworkError("quota")))
        pipeline.start_loop()

        await pipeline.trigger()
        await pipeline.drain()

        self.assertIsNone(self.context.last_accepted_prompt)
        self.assertEqual(self.published, [])
        self.assertEqual(self.status.get("image"), "Background image unavailable.")
        self.assertEqual(pipeline.scheduler.delay_s, 1.0)


class TestAutoLoop(PipelineTestCase):

    async def test_stop_cancels_pending_tick(self):
        pipeline = self.make_pipeline()
        pipeline.start_loop(delay_s=0.05)
        self.assertTrue(pipeline.scheduler.pending)

        pipeline.stop_loop()
        self.assertFalse(pipeline.scheduler.pending)

        await asyncio.sleep(0.15)
        self.assertEqual(self.recorder.calls, 0)

    async def test_skip_reschedules_with_fallback_delay(self):
        pipeline = self.make_pipeline(decider=MockPromptModel([SKIP_REPLY]))
        pipeline.start_loop()

        await pipeline.trigger()

        self.assertEqual(self.renderer.prompts, [])
        self.assertEqual(self.status.get("image"), "No new background generated.")
        self.assertEqual(self.status.get("prompt"), "Virtual background prompt skipped: silence")
        self.assertEqual(pipeline.scheduler.delay_s, 2.0)

    async def test_generate_waits_for_render_then_post_image_delay(self):
        render_gate = asyncio.Event()
        pipeline = self.make_pipeline(renderer=MockImageRenderer(render_gate))
        pipeline.start_loop(delay_s=0)

        await wait_for(lambda: self.renderer.in_flight == 1)
        await wait_for(lambda: not pipeline.state.capture_busy)
        self.assertTrue(pipeline.state.awaiting_render)
        self.assertFalse(pipeline.scheduler.pending)

        render_gate.set()
        await wait_for(lambda: pipeline.scheduler.pending)

        self.assertEqual(pipeline.scheduler.delay_s, 1.0)
        self.assertFalse(pipeline.state.awaiting_render)
        self.assertEqual(len(self.published), 1)
        self.assertEqual(self.status.get("image"), "Background ready.")

    async def test_stale_render_is_not_published(self):
        render_gate = asyncio.Event()
        pipeline = self.make_pipeline(renderer=MockImageRenderer(render_gate))
        pipeline.start_loop(delay_s=0)
        await wait_for(lambda: self.renderer.in_flight == 1)

        pipeline.stop_loop()
        render_gate.set()
        await pipeline.drain()

        self.assertEqual(self.published, [])
        self.assertEqual(self.context.last_accepted_prompt, "a quiet lake at dusk")
        self.assertFalse(pipeline.scheduler.pending)
        self.assertEqual(pipeline.state.stage, PipelineStage.IDLE)

    async def test_restart_during_cycle_keeps_loop_alive(self):
        record_gate = asyncio.Event()
        pipeline = self.make_pipeline(
            recorder=MockRecorder(record_gate),
            decider=MockPromptModel([json.dumps({"status": "generate", "prompt": "a lake"}), SKIP_REPLY]),
        )
        pipeline.start_loop(delay_s=0)
        await wait_for(lambda: self.recorder.in_flight == 1)

        pipeline.stop_loop()
        pipeline.start_loop()
        record_gate.set()
        await pipeline.drain()

        # The old cycle's render is discarded but the restarted loop still has a tick.
        self.assertEqual(self.published, [])
        self.assertEqual(self.context.last_accepted_prompt, "a lake")
        self.assertFalse(pipeline.state.awaiting_render)
        self.assertTrue(pipeline.scheduler.pending)
        self.assertEqual(pipeline.scheduler.delay_s, 1.0)

        # A later skipped cycle reschedules normally.
        await pipeline.trigger()
        self.assertEqual(self.recorder.calls, 2)
        self.assertTrue(pipeline.scheduler.pending)
        self.assertEqual(pipeline.scheduler.delay_s, 2.0)


class TestLastAcceptedPrompt(PipelineTestCase):

    async def test_accepted_prompt_feeds_next_decision(self):
        pipeline = self.make_pipeline(transcriber=MockSpeechModel(["a beach at sunset", "a boat appears"]))

        await pipeline.trigger()
        await pipeline.drain()
        self.assertEqual(self.context.last_accepted_prompt, "a beach at sunset")

        await pipeline.trigger()
        await pipeline.drain()

        first_message = self.decider.calls[0][2]
        second_message = self.decider.calls[1][2]
        self.assertNotIn("Previous prompt:", first_message)
        self.assertIn("Previous prompt: a beach at sunset\n\nTranscript: a boat appears", second_message)
        self.assertEqual(self.context.last_accepted_prompt, "a boat appears")
        self.assertEqual(self.renderer.prompts, ["a beach at sunset", "a boat appears"])

    async def test_skip_leaves_prompt_unchanged(self):
        pipeline = self.make_pipeline(decider=MockPromptModel([SKIP_REPLY]))
        self.context.last_accepted_prompt = "a forest"

        await pipeline.trigger()
        await pipeline.drain()

        self.assertEqual(self.context.last_accepted_prompt, "a forest")

    async def test_model_ids_are_resolved_per_call(self):
        pipeline = self.make_pipeline()

        await pipeline.trigger()
        await pipeline.drain()

        model_id, instruction, audio_base64, fmt = self.transcriber.calls[0]
        self.assertEqual(model_id, "speech-model")
        self.assertEqual(fmt, "wav")
        self.assertTrue(audio_base64)
        self.assertEqual(self.decider.calls[0][0], "prompt-model")


if __name__ == '__main__':
    unittest.main()
