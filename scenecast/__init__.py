"""
Scenecast Companion

A hands-free companion that reads webcam frames, recognizes hand gestures with
MediaPipe to spell a screen name on rotary dials, and turns short speech samples
into generated virtual-meeting backgrounds.
"""

__version__ = "0.1.0"
__author__ = "Scenecast Team"

from .types import Command, Generate, Skip, PromptDecision, DialState, LockState, SessionContext
from .config import load_config, Cfg
from .errors import (
    CompanionError,
    ConcurrencyRejection,
    DeviceError,
    NetworkError,
    ParseError,
    ValidationError,
)
from .gestures import GestureRecognizer
from .dials import DialInputController
from .completions import parse_prompt_decision, extract_completion_text

__all__ = [
    "Command",
    "Generate",
    "Skip",
    "PromptDecision",
    "DialState",
    "LockState",
    "SessionContext",
    "load_config",
    "Cfg",
    "CompanionError",
    "ConcurrencyRejection",
    "DeviceError",
    "NetworkError",
    "ParseError",
    "ValidationError",
    "GestureRecognizer",
    "DialInputController",
    "parse_prompt_decision",
    "extract_completion_text",
]
