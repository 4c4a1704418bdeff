"""
Rotary dials used to spell the screen name without a keyboard.
"""
import asyncio
import logging
import math
import string
from typing import List, Optional

from .config import Cfg
from .status import StatusBoard
from .types import DialState, DialStoreProto, LockState

logger = logging.getLogger(__name__)

CHARSET: List[str] = [" ", "@", ".", "-"] + list(string.ascii_lowercase) + list(string.digits)


def char_for_position(position: int) -> str:
    return CHARSET[position % len(CHARSET)]


class DialInputController:
    """
    Owns the dial positions and the active dial.

    Every mutation schedules a debounced save; only the last state inside the
    debounce window is written. While dials are locked, mutations are no-ops.
    """

    def __init__(self, cfg: Cfg, store: DialStoreProto, locks: LockState, status: StatusBoard):
        self.count = cfg.dials.count
        self.save_delay_s = cfg.dials.save_delay_ms / 1000.0
        self.store = store
        self.locks = locks
        self.status = status
        self.positions: List[int] = [0] * self.count
        self.active_index = 0
        self._save_handle: Optional[asyncio.TimerHandle] = None

    @property
    def state(self) -> DialState:
        return DialState(positions=list(self.positions), active_index=self.active_index)

    def set_active(self, index: int) -> None:
        if self.locks.dials_locked:
            return
        self.active_index = index % self.count
        self._changed()

    def adjust(self, index: int, delta: int) -> None:
        if self.locks.dials_locked:
            return
        index = index % self.count
        self.positions[index] = (self.positions[index] + delta) % len(CHARSET)
        self._changed()

    def compute_name(self) -> str:
        """Symbols at each dial, trimmed, with internal whitespace runs collapsed."""
        raw = "".join(char_for_position(position) for position in self.positions)
        return " ".join(raw.split())

    def load(self) -> None:
        """Apply persisted state if valid; anything malformed keeps the defaults."""
        try:
            stored = self.store.load_dial_state()
        except Exception as e:
            logger.warning(f"⚠️ [Dials] Failed to load dial state: {e}")
            stored = None
        if stored and self.apply_persisted(stored):
            logger.info(f"✅ [Dials] Restored dial state for '{self.compute_name()}'")
        self.refresh_status()

    def apply_persisted(self, stored: dict) -> bool:
        positions = stored.get("positions") if isinstance(stored, dict) else None
        if not isinstance(positions, list) or len(positions) != self.count:
            return False
        try:
            normalized = [int(math.floor(float(value) + 0.5)) % len(CHARSET) for value in positions]
        except (TypeError, ValueError, OverflowError):
            return False

        active = stored.get("activeIndex")
        if isinstance(active, (int, float)) and not isinstance(active, bool) and math.isfinite(active):
            active_index = int(active) % self.count
        else:
            active_index = self.active_index

        self.positions = normalized
        self.active_index = active_index
        return True

    def flush(self) -> None:
        """Write any pending save now."""
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None
            self._persist()

    def _changed(self) -> None:
        self.refresh_status()
        self._schedule_save()

    def refresh_status(self) -> None:
        name = self.compute_name() or "(blank)"
        active = f"Active dial: {self.active_index + 1}"
        if self.locks.dials_locked:
            active += " (locked)"
        self.status.set("dials", f"Screen name: {name} | {active}")

    def _schedule_save(self) -> None:
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop (e.g. setup code): write straight away.
            self._persist()
            return
        self._save_handle = loop.call_later(self.save_delay_s, self._on_save_timer)

    def _on_save_timer(self) -> None:
        self._save_handle = None
        self._persist()

    def _persist(self) -> None:
        try:
            self.store.save_dial_state(self.state.to_dict())
        except Exception as e:
            logger.error(f"❌ [Dials] Failed to persist dial state: {e}")
