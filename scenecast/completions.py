"""
Clients for the local model runner's chat-completions endpoint.

The same OpenAI-compatible endpoint serves both the speech model (audio in,
transcript out) and the prompt model (transcript in, JSON decision out).
"""
import asyncio
import logging
import time
from typing import Any, Iterable, List, Optional

from .errors import NetworkError, ParseError
from .transport import ensure_success, get_json, parse_json, post_json
from .types import Generate, PromptDecision, Skip

logger = logging.getLogger(__name__)

BACKGROUND_PROMPT_SYSTEM_PROMPT = (
    "You are a helpful assistant that writes vivid prompts for image generation models."
)

BACKGROUND_PROMPT_INSTRUCTIONS = "\n".join([
    BACKGROUND_PROMPT_SYSTEM_PROMPT,
    "Given a transcript and potentially a previous background prompt, decide whether the "
    "transcript is rich enough to inspire a fresh virtual background.",
    "If the transcript is descriptive, respond with JSON exactly like "
    "{\"status\":\"generate\",\"prompt\":\"<vivid 1-2 sentence background prompt>\"}.",
    "If the transcript lacks descriptive detail but conveys a clear emotion (e.g., happiness, "
    "excitement, frustration), analyze the emotion. Then, modify the previous background prompt "
    "to reflect this emotion. Respond with JSON exactly like "
    "{\"status\":\"generate\",\"prompt\":\"<vivid 1-2 sentence background prompt reflecting the emotion>\"}.",
    "If the transcript is brief, contains mostly silence or filler sounds, and lacks both "
    "descriptive detail and clear emotion, respond with JSON exactly like "
    "{\"status\":\"skip\",\"reason\":\"brief explanation\"}.",
    "If a previous prompt is provided, the new prompt should aim to modify the scene rather than "
    "starting over. For example, if the old prompt was \"a tranquil beach at sunset\" and the "
    "transcript mentions a boat, a good new prompt would be \"a tranquil beach at sunset with a "
    "small sailboat on the water\". When modifying for emotion, you could change the weather or "
    "time of day, for example, a happy emotion could be a bright sunny day, and a sad emotion "
    "could be a rainy day.",
    "Do not include personally identifiable information such as names or emails.",
    "Return a single-line JSON object with double-quoted keys and values. Do not include any "
    "text before or after the JSON.",
    "",
    "Transcript:",
])

SKIP_EMPTY_RESPONSE = "empty response"
SKIP_DEFAULT_REASON = "transcript not suitable"
SKIP_OMITTED_PROMPT = "omitted prompt"


def extract_completion_text(payload: Any) -> str:
    """
    Pull the completion text out of a chat-completions response.

    Precedence: choices[0].text when non-empty, then a string message content,
    then the non-blank structured content parts joined by a space.
    """
    if not isinstance(payload, dict):
        return ""
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""

    first = choices[0]
    if not isinstance(first, dict):
        return ""
    text = first.get("text")
    if isinstance(text, str) and text.strip():
        return text.strip()

    message = first.get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        parts = [_part_text(part) for part in content]
        return " ".join(part for part in parts if part.strip()).strip()
    return ""


def _part_text(part: Any) -> str:
    if not isinstance(part, dict):
        return ""
    for key in ("text", "value"):
        value = part.get(key)
        if isinstance(value, str):
            return value
    return ""


def parse_prompt_decision(raw: str) -> PromptDecision:
    """
    Parse the prompt model's single-line JSON reply.

    Anything non-empty that isn't a recognised skip/generate object is accepted
    as the prompt itself. This is permissive: chatter from the model can end up
    rendered as a background.
    """
    trimmed = (raw or "").strip()
    if not trimmed:
        return Skip(SKIP_EMPTY_RESPONSE)

    try:
        parsed = parse_json(trimmed)
    except ParseError:
        parsed = None

    if isinstance(parsed, dict):
        status = parsed.get("status")
        status = status.lower() if isinstance(status, str) else ""
        if status == "skip":
            reason = parsed.get("reason")
            if isinstance(reason, str) and reason.strip():
                return Skip(reason.strip())
            return Skip(SKIP_DEFAULT_REASON)
        if status == "generate":
            prompt = parsed.get("prompt")
            prompt = prompt.strip() if isinstance(prompt, str) else ""
            if prompt:
                return Generate(prompt)
            return Skip(SKIP_OMITTED_PROMPT)

    return Generate(trimmed)


def build_decision_message(transcript: str, last_prompt: Optional[str] = None) -> str:
    if last_prompt:
        return f"{BACKGROUND_PROMPT_INSTRUCTIONS}\nPrevious prompt: {last_prompt}\n\nTranscript: {transcript}"
    return f"{BACKGROUND_PROMPT_INSTRUCTIONS}\n{transcript}"


class CompletionsClient:
    """POSTs chat-completions payloads to the model runner."""

    def __init__(self, base_url: str, completions_path: str):
        self.base_url = base_url.rstrip("/")
        self.url = f"{self.base_url}{completions_path}"

    async def complete(self, payload: dict, tag: str) -> Any:
        started = time.perf_counter()
        status, body = await post_json(self.url, payload)
        latency_ms = (time.perf_counter() - started) * 1000
        logger.info(f"📡 [{tag}] Request completed in {latency_ms:.0f} ms with status {status}.")
        ensure_success(status, body, f"{tag} request")
        return parse_json(body)


class SpeechTranscriber(CompletionsClient):
    """Speech model: one user message with an instruction and an input_audio part."""

    async def transcribe(self, model_id: str, instruction: str, audio_base64: str, fmt: str = "wav") -> str:
        payload = {
            "model": model_id,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": instruction},
                        {"type": "input_audio", "input_audio": {"data": audio_base64, "format": fmt}},
                    ],
                }
            ],
        }
        parsed = await self.complete(payload, "Transcription")
        return extract_completion_text(parsed)


class PromptDecider(CompletionsClient):
    """Prompt model: system instructions plus the composed user message."""

    async def decide(self, model_id: str, system_instructions: str, user_message: str) -> str:
        payload = {
            "model": model_id,
            "messages": [
                {"role": "system", "content": system_instructions},
                {"role": "user", "content": user_message},
            ],
        }
        parsed = await self.complete(payload, "Background")
        completion = extract_completion_text(parsed)
        logger.info(f"🧠 [Background] Model completion text: {completion}")
        return completion


class ModelRunner:
    """Makes sure the required models are pulled into the local runner."""

    def __init__(self, base_url: str, warmup_attempts: int = 10, warmup_delay_s: float = 1.0,
                 poll_attempts: int = 60, poll_delay_s: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.warmup_attempts = warmup_attempts
        self.warmup_delay_s = warmup_delay_s
        self.poll_attempts = poll_attempts
        self.poll_delay_s = poll_delay_s

    async def list_models(self) -> List[dict]:
        models = await get_json(f"{self.base_url}/models")
        if not isinstance(models, list):
            raise ParseError("Model list was not a JSON array")
        return [entry for entry in models if isinstance(entry, dict)]

    @staticmethod
    def missing(models: List[dict], required: Iterable[str]) -> List[str]:
        available = set()
        for entry in models:
            tags = entry.get("tags") or []
            available.update(tag for tag in tags if isinstance(tag, str))
        return [model for model in required if model not in available]

    async def wait_until_ready(self) -> None:
        for attempt in range(self.warmup_attempts):
            try:
                await self.list_models()
                return
            except (NetworkError, ParseError) as e:
                if attempt + 1 >= self.warmup_attempts:
                    raise
                logger.warning(f"⏳ [Models] Model list check failed (attempt {attempt + 1}): {e}")
                await asyncio.sleep(self.warmup_delay_s)

    async def ensure_models(self, model_ids: Iterable[str]) -> None:
        """Request any missing model and wait until all are listed. Raises NetworkError on timeout."""
        required = [model for model in model_ids if model]
        await self.wait_until_ready()

        pending = self.missing(await self.list_models(), required)
        if not pending:
            logger.info("✅ [Models] All required models are already available.")
            return

        logger.info(f"📥 [Models] Missing models: {', '.join(pending)}. Requesting downloads.")
        for model in pending:
            status, body = await post_json(f"{self.base_url}/models/create", {"from": model})
            ensure_success(status, body, f"Model download request for \"{model}\"")

        for attempt in range(self.poll_attempts):
            await asyncio.sleep(self.poll_delay_s)
            pending = self.missing(await self.list_models(), pending)
            if not pending:
                logger.info(f"✅ [Models] All required models are available after {attempt + 1} poll attempts.")
                return
            logger.info(f"⏳ [Models] Waiting for models to download (attempt {attempt + 1}): pending {', '.join(pending)}")

        raise NetworkError(f"Timed out waiting for required models to become available: {', '.join(pending)}")
