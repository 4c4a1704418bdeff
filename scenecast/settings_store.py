"""
Persisted companion settings: dial state, model ids and the image API key.
"""
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ParseError

logger = logging.getLogger(__name__)

DEFAULT_TRANSCRIPTION_MODEL_ID = "hf.co/ggml-org/ultravox-v0_5-llama-3_1-8b-gguf"
DEFAULT_PROMPT_MODEL_ID = "hf.co/unsloth/gemma-3n-e2b-it-gguf:q8_k_xl"

SETTINGS_FILE = "settings.json"
LEGACY_WHEEL_STATE_FILE = "wheel_state.json"


class Settings(BaseModel):
    """On-disk settings document (camelCase keys)."""
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    wheels: Optional[Dict[str, Any]] = None
    nanobanana_api_key: Optional[str] = Field(default=None, alias="nanobananaApiKey")
    model_transcription: Optional[str] = Field(default=None, alias="modelTranscription")
    model_prompt: Optional[str] = Field(default=None, alias="modelPrompt")


class SettingsStore:
    """JSON settings file in the settings directory."""

    def __init__(self, directory: str):
        self.directory = Path(directory).expanduser()
        self.path = self.directory / SETTINGS_FILE
        self.legacy_path = self.directory / LEGACY_WHEEL_STATE_FILE
        # Image key delivered by the hub at registration time; never written to disk.
        self.delivered_image_key: Optional[str] = None

    def load(self) -> Settings:
        """Read settings, filling in default model ids (and writing them back when missing)."""
        self.directory.mkdir(parents=True, exist_ok=True)
        if self.path.exists():
            try:
                settings = Settings.model_validate_json(self.path.read_text(encoding="utf-8"))
            except (PydanticValidationError, ValueError) as e:
                raise ParseError(f"Failed to parse settings: {e}") from e
            needs_save = False
            if settings.model_transcription is None:
                settings.model_transcription = DEFAULT_TRANSCRIPTION_MODEL_ID
                needs_save = True
            if settings.model_prompt is None:
                settings.model_prompt = DEFAULT_PROMPT_MODEL_ID
                needs_save = True
            if needs_save:
                self.save(settings)
            return settings

        settings = self._migrate_legacy_wheel_state() or Settings()
        settings.model_transcription = DEFAULT_TRANSCRIPTION_MODEL_ID
        settings.model_prompt = DEFAULT_PROMPT_MODEL_ID
        self.save(settings)
        return settings

    def save(self, settings: Settings) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        self.path.write_text(settings.model_dump_json(by_alias=True, indent=2), encoding="utf-8")

    def _migrate_legacy_wheel_state(self) -> Optional[Settings]:
        if not self.legacy_path.exists():
            return None
        try:
            wheels = json.loads(self.legacy_path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise ParseError(f"Failed to parse legacy wheel state: {e}") from e
        logger.info(f"📦 Migrated legacy dial state from {self.legacy_path}")
        try:
            self.legacy_path.unlink()
        except OSError as e:
            logger.warning(f"⚠️ Could not remove legacy dial state file: {e}")
        return Settings(wheels=wheels if isinstance(wheels, dict) else None)

    # Dial state key-value contract

    def load_dial_state(self) -> Optional[dict]:
        try:
            return self.load().wheels
        except Exception as e:
            logger.warning(f"⚠️ Failed to load dial state: {e}")
            return None

    def save_dial_state(self, state: dict) -> None:
        settings = self.load()
        settings.wheels = dict(state)
        self.save(settings)

    def model_ids(self) -> Tuple[str, str]:
        """(transcription model id, prompt model id)."""
        try:
            settings = self.load()
        except Exception as e:
            logger.error(f"❌ Failed to load settings, using default models: {e}")
            return DEFAULT_TRANSCRIPTION_MODEL_ID, DEFAULT_PROMPT_MODEL_ID
        return (
            settings.model_transcription or DEFAULT_TRANSCRIPTION_MODEL_ID,
            settings.model_prompt or DEFAULT_PROMPT_MODEL_ID,
        )

    # Image API key

    def _local_image_key(self) -> Optional[str]:
        try:
            value = (self.load().nanobanana_api_key or "").strip()
        except ParseError:
            value = ""
        if value:
            return value
        value = os.getenv("NANOBANANA_API_KEY", "").strip()
        return value or None

    def has_local_image_key(self) -> bool:
        return self._local_image_key() is not None

    def resolve_image_key(self) -> Optional[str]:
        """Settings value, then NANOBANANA_API_KEY, then the hub-delivered key."""
        return self._local_image_key() or self.delivered_image_key
