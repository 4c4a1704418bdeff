"""
Session coordinator: validates, registers, locks input and drives the auto-loop.
"""
import asyncio
import logging
from typing import Optional

from .completions import ModelRunner
from .config import Cfg
from .dials import DialInputController
from .errors import ValidationError, format_error
from .gestures import STATUS_LOCKED, GestureLoop
from .pipeline import CapturePipeline
from .settings_store import SettingsStore
from .status import StatusBoard
from .types import Command, RegistrationFlags, RegistrationProto, SessionContext

logger = logging.getLogger(__name__)


class SessionCoordinator:
    """
    Owns the session lifecycle and the input lock.

    While a session is active the dials and gestures are frozen and the
    capture pipeline loops. Stopping always unlocks, whatever the hub says.
    """

    def __init__(self, cfg: Cfg, context: SessionContext, status: StatusBoard,
                 devices, dials: DialInputController, gesture_loop: GestureLoop,
                 pipeline: CapturePipeline, hub: RegistrationProto, settings: SettingsStore,
                 tunnel, model_runner: Optional[ModelRunner] = None):
        self.cfg = cfg
        self.context = context
        self.status = status
        self.devices = devices
        self.dials = dials
        self.gesture_loop = gesture_loop
        self.pipeline = pipeline
        self.hub = hub
        self.settings = settings
        self.tunnel = tunnel
        self.model_runner = model_runner
        self._starting = False
        self._start_task: Optional[asyncio.Task] = None
        # Bumped by stop() so a start still awaiting the hub knows it was overtaken.
        self._stop_generation = 0

    @property
    def locks(self):
        return self.context.locks

    # Devices

    async def ensure_devices(self) -> bool:
        """Acquire camera and microphone; start gestures the first time permissions are granted."""
        ready = await self.devices.ensure()
        if ready and not self.context.permissions_granted:
            self.context.permissions_granted = True
            self.gesture_loop.permissions_granted = True
            if not self.locks.gestures_locked:
                await self.gesture_loop.start()
        return ready

    # Locks

    def set_dials_locked(self, locked: bool) -> None:
        changed = self.locks.dials_locked != locked
        self.locks.dials_locked = locked
        self.dials.refresh_status()
        if changed:
            self.status.log_event("[Dials] Dial controls locked." if locked else "[Dials] Dial controls unlocked.")

    async def set_gestures_locked(self, locked: bool) -> None:
        if self.locks.gestures_locked == locked:
            if locked:
                self.status.set_gesture_status(STATUS_LOCKED)
            return
        self.locks.gestures_locked = locked
        if locked:
            self.gesture_loop.stop()
            self.status.log_event("[Gestures] Gesture recognition locked.")
            return
        if self.context.permissions_granted:
            await self.gesture_loop.start()
        else:
            self.status.set_gesture_status("Gestures inactive.")
        self.status.log_event("[Gestures] Gesture recognition unlocked.")

    # Lifecycle

    def validate_name(self) -> str:
        """Returns the screen name, or raises ValidationError."""
        name = self.dials.compute_name()
        if not name:
            raise ValidationError("Please configure your screen name using the dials.")
        if len(name) < self.cfg.dials.min_name_length:
            raise ValidationError(
                f"Screen name must be at least {self.cfg.dials.min_name_length} characters."
            )
        return name

    async def start(self) -> bool:
        """
        Validate, register and lock.

        Returns:
            True if the session is now active
        """
        if self.context.active or self._starting:
            return False
        self._starting = True
        try:
            return await self._start()
        finally:
            self._starting = False

    async def _start(self) -> bool:
        try:
            if not self.context.permissions_granted:
                raise ValidationError("Grant camera and microphone access before starting the agent.")
            if not await self.ensure_devices():
                raise ValidationError("Unable to access camera and microphone. Check permissions and try again.")
            name = self.validate_name()
        except ValidationError as e:
            self.status.set("session", format_error(e))
            self.status.log_event(f"Agent start blocked: {format_error(e)}", "error")
            return False

        self.status.set("session", f"Starting agent for {name}...")
        self.status.log_event(f"[Session] Starting agent for {name}...")
        self.set_dials_locked(True)
        await self.set_gestures_locked(True)
        generation = self._stop_generation

        try:
            if self.model_runner is not None and self.cfg.models.ensure_models:
                self.status.set("session", "Checking local models...")
                await self.model_runner.ensure_models(self.settings.model_ids())
            if generation != self._stop_generation:
                self.status.log_event("[Session] Start abandoned; agent was stopped.")
                return False
            self.status.set("session", "Starting tunnel...")
            tunnel_url = await self.tunnel.start()
            if generation != self._stop_generation:
                self.status.log_event("[Session] Start abandoned; agent was stopped.")
                await self._stop_tunnel()
                return False
            flags = RegistrationFlags(
                requires_image_key=True,
                has_local_image_key=self.settings.has_local_image_key(),
            )
            message = await self.hub.register(name, tunnel_url, flags)
        except Exception as e:
            await self._stop_tunnel()
            self.set_dials_locked(False)
            await self.set_gestures_locked(False)
            self.status.set("session", f"Error: {format_error(e)}")
            self.status.log_event(f"Agent start failed: {format_error(e)}", "error")
            return False

        if generation != self._stop_generation:
            await self._rollback_registration(name)
            return False

        self.context.active = True
        self.context.screen_name = name
        self.status.set("session", message)
        self.status.log_event(message)
        self.pipeline.start_loop()
        return True

    async def stop(self) -> None:
        """Stop the loop, unregister best-effort, and always unlock."""
        self._stop_generation += 1
        self.pipeline.stop_loop()
        name = self.context.screen_name or self.dials.compute_name()
        self.status.set("session", "Stopping agent...")
        self.status.log_event("[Session] Stopping agent...")
        try:
            message = await self.hub.unregister(name)
            self.status.set("session", message)
            self.status.log_event(message)
        except Exception as e:
            self.status.set("session", f"Error: {format_error(e)}")
            self.status.log_event(f"Agent stop failed: {format_error(e)}", "error")
        finally:
            await self._stop_tunnel()
            self.settings.delivered_image_key = None
            self.context.active = False
            self.context.screen_name = None
            self.set_dials_locked(False)
            await self.set_gestures_locked(False)

    async def _rollback_registration(self, name: str) -> None:
        """A stop landed while registering: undo the registration, stay unlocked."""
        self.status.log_event("[Session] Agent was stopped while registering; unregistering.")
        try:
            await self.hub.unregister(name)
        except Exception as e:
            self.status.log_event(f"Agent stop failed: {format_error(e)}", "error")
        await self._stop_tunnel()
        self.status.set("session", "Agent stopped.")

    async def _stop_tunnel(self) -> None:
        try:
            await self.tunnel.stop()
        except Exception as e:
            self.status.log_event(f"Tunnel stop failed: {format_error(e)}", "error")

    # Commands

    def handle_command(self, command: Command) -> None:
        """Route a gesture command. Clap starts a session in the background."""
        active = self.dials.active_index
        if command == Command.SPIN_UP:
            self.dials.adjust(active, -1)
        elif command == Command.SPIN_DOWN:
            self.dials.adjust(active, 1)
        elif command == Command.NEXT_DIAL:
            self.dials.set_active(active + 1)
        elif command == Command.PREV_DIAL:
            self.dials.set_active(active - 1)
        elif command == Command.CLAP:
            if self.context.active or self._starting or self.locks.gestures_locked:
                logger.info("👏 [Session] Clap ignored; session already active or starting.")
                return
            self.status.log_event("[Gestures] Clap detected; starting agent.")
            self._start_task = asyncio.ensure_future(self.start())

    async def shutdown(self) -> None:
        if self.context.active:
            await self.stop()
        self.gesture_loop.stop()
        self.dials.flush()
        await self.pipeline.drain()

