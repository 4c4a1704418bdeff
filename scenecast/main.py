"""
Main application for the gesture-driven background companion.
"""
import argparse
import asyncio
import logging
from typing import Optional, Set

import cv2
import numpy as np
from dotenv import load_dotenv

from .completions import ModelRunner, PromptDecider, SpeechTranscriber
from .config import load_config
from .devices import CameraFeed, MediaDevices, MicrophoneDevice, MicrophoneRecorder
from .dials import CHARSET, DialInputController
from .gestures import GestureLoop, GestureRecognizer
from .hub import HubClient
from .imaging import BackgroundStore, NanoBananaRenderer
from .landmarks import HandsTracker
from .mocks import MockHub, MockImageRenderer, MockPromptModel, MockSpeechModel, MockTunnel
from .pipeline import CapturePipeline
from .server import create_app, serve
from .session import SessionCoordinator
from .settings_store import SettingsStore
from .status import StatusBoard
from .tunnel import build_tunnel
from .types import Command, SessionContext

logger = logging.getLogger(__name__)

WHITE = (255, 255, 255)
GREEN = (0, 255, 0)
RED = (0, 0, 255)
YELLOW = (0, 255, 255)


class CompanionApp:
    """Wires devices, gestures, dials, the capture pipeline and the HTTP API together."""

    def __init__(self, config_path: Optional[str] = None, offline: bool = False, serve_api: bool = True):
        """Initialize the application with configuration."""
        self.config = load_config(config_path)
        cfg = self.config
        self.serve_api = serve_api

        self.status = StatusBoard(idle_delay_s=cfg.gestures.idle_status_delay_ms / 1000.0)
        self.context = SessionContext()
        self.settings = SettingsStore(cfg.settings.directory)
        self.background = BackgroundStore()

        self.camera = CameraFeed(cfg.camera)
        self.microphone = MicrophoneDevice(cfg.audio)
        self.devices = MediaDevices(self.camera, self.microphone, self.status)
        self.recorder = MicrophoneRecorder(cfg.audio.frames_per_buffer)

        self.tracker = HandsTracker(
            max_num_hands=cfg.mediapipe.max_num_hands,
            min_detection_conf=cfg.mediapipe.min_detection_confidence,
            min_tracking_conf=cfg.mediapipe.min_tracking_confidence
        )
        self.recognizer = GestureRecognizer(cfg, self.status, self.context.locks)
        self.gesture_loop = GestureLoop(self.tracker, self.recognizer, self.camera,
                                        on_command=self._on_command, status=self.status)
        self.dials = DialInputController(cfg, self.settings, self.context.locks, self.status)

        # Choose collaborators
        if offline:
            hub = MockHub()
            tunnel = MockTunnel()
            transcriber = MockSpeechModel()
            decider = MockPromptModel()
            renderer = MockImageRenderer()
            model_runner = None
            logger.info("🧪 Offline mode: using mock hub, tunnel, models and renderer")
        else:
            hub = HubClient(cfg.hub.url)
            tunnel = build_tunnel(cfg)
            transcriber = SpeechTranscriber(cfg.models.runner_base_url, cfg.models.completions_path)
            decider = PromptDecider(cfg.models.runner_base_url, cfg.models.completions_path)
            renderer = NanoBananaRenderer(cfg.image, self.background, self.settings.resolve_image_key)
            model_runner = ModelRunner(cfg.models.runner_base_url)

        self.pipeline = CapturePipeline(
            cfg, self.context, self.status, self.devices, self.recorder,
            transcriber, decider, renderer,
            model_ids=self.settings.model_ids,
            on_image=self.background.publish
        )
        self.coordinator = SessionCoordinator(
            cfg, self.context, self.status, self.devices, self.dials, self.gesture_loop,
            self.pipeline, hub, self.settings, tunnel, model_runner=model_runner
        )
        self._tasks: Set[asyncio.Task] = set()

    def _on_command(self, command: Command) -> None:
        self.coordinator.handle_command(command)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def run(self):
        """Run the main application loop."""
        cfg = self.config
        print(f"Starting {cfg.display.window_name}")
        print("🎯 Gestures (open palm):")
        print("  - Vertical swipe = Spin active dial")
        print("  - Horizontal swipe = Switch dial")
        print("  - Clap = Start session")
        print("Keys: 's' start, 'x' stop, 't' capture now, 'q' quit")

        self.dials.load()
        server_task = None
        if self.serve_api:
            app = create_app(self.background, self.settings, cfg.server.long_poll_timeout_s)
            server_task = asyncio.create_task(serve(app, cfg.server))
        await self.coordinator.ensure_devices()

        try:
            while True:
                frame = await asyncio.to_thread(self.camera.read)
                if frame is None:
                    frame = np.zeros((cfg.camera.height, cfg.camera.width, 3), dtype=np.uint8)
                else:
                    frame = frame.copy()

                self.draw_overlay(frame)
                cv2.imshow(cfg.display.window_name, frame)

                key = cv2.waitKey(1) & 0xFF
                if key == ord('q'):
                    break
                if key == ord('s'):
                    self._spawn(self.coordinator.start())
                elif key == ord('x'):
                    self._spawn(self.coordinator.stop())
                elif key == ord('t'):
                    self._spawn(self.pipeline.trigger())
                await asyncio.sleep(0)
        finally:
            await self.coordinator.shutdown()
            if server_task is not None:
                server_task.cancel()
            self.devices.release()
            self.tracker.close()
            cv2.destroyAllWindows()

    def draw_overlay(self, frame: np.ndarray) -> None:
        cfg = self.config
        detection = self.gesture_loop.last_detection
        if cfg.display.show_landmarks and detection is not None:
            self.tracker.draw_landmarks(frame, detection)

        # Dial strip
        x = 10
        for index, position in enumerate(self.dials.positions):
            symbol = CHARSET[position]
            label = "_" if symbol == " " else symbol
            active = index == self.dials.active_index
            color = YELLOW if active else WHITE
            if self.context.locks.dials_locked:
                color = RED
            cv2.putText(frame, label, (x, 40), cv2.FONT_HERSHEY_SIMPLEX, 0.9, color, 2)
            if active:
                cv2.line(frame, (x, 48), (x + 18, 48), color, 2)
            x += 26

        # Status channels
        y = 80
        for channel in ("session", "gesture", "dials", "mic", "prompt", "image"):
            message = self.status.get(channel)
            if not message:
                continue
            cv2.putText(frame, f"{channel}: {message}"[:110], (10, y),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.5, GREEN if channel == "session" else WHITE, 1)
            y += 22

        # Recent events
        height = frame.shape[0]
        entries = self.status.recent(cfg.display.show_log_lines)
        for offset, entry in enumerate(entries):
            color = RED if entry.level == "error" else WHITE
            cv2.putText(frame, entry.formatted()[:120], (10, height - 20 - offset * 20),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.45, color, 1)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Gesture-driven virtual background companion")
    parser.add_argument("--config", help="Path to a YAML config file")
    parser.add_argument("--offline", action="store_true",
                        help="Use mock hub, tunnel, model and image collaborators")
    parser.add_argument("--no-server", action="store_true", help="Do not start the companion HTTP API")
    return parser.parse_args(argv)


async def main(argv=None):
    """Entry point for the application."""
    args = parse_args(argv)
    try:
        app = CompanionApp(config_path=args.config, offline=args.offline, serve_api=not args.no_server)
        await app.run()
    except KeyboardInterrupt:
        print("\nApplication interrupted by user")


def run():
    load_dotenv()
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())


if __name__ == "__main__":
    run()
