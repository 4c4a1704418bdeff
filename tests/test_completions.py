"""
Test cases for completion text extraction, the decision grammar and the model clients.
"""
import unittest

from aiohttp import web
from aiohttp.test_utils import TestServer

from scenecast.completions import (
    BACKGROUND_PROMPT_INSTRUCTIONS,
    ModelRunner,
    PromptDecider,
    SpeechTranscriber,
    build_decision_message,
    extract_completion_text,
    parse_prompt_decision,
)
from scenecast.errors import NetworkError, ParseError
from scenecast.types import Generate, Skip


class TestParsePromptDecision(unittest.TestCase):

    def test_skip_with_reason(self):
        self.assertEqual(parse_prompt_decision('{"status":"skip","reason":"silence"}'), Skip("silence"))

    def test_generate_with_prompt(self):
        self.assertEqual(parse_prompt_decision('{"status":"generate","prompt":"a lake"}'), Generate("a lake"))

    def test_plain_text_is_a_prompt(self):
        self.assertEqual(parse_prompt_decision("a lake at dusk"), Generate("a lake at dusk"))

    def test_empty_reply(self):
        self.assertEqual(parse_prompt_decision(""), Skip("empty response"))
        self.assertEqual(parse_prompt_decision("   \n"), Skip("empty response"))

    def test_skip_reason_defaults(self):
        decision = parse_prompt_decision('{"status":"skip","reason":"  "}')
        self.assertIsInstance(decision, Skip)
        self.assertTrue(decision.reason)
        self.assertEqual(parse_prompt_decision('{"status":"skip"}'), decision)

    def test_generate_without_prompt_is_skipped(self):
        self.assertEqual(parse_prompt_decision('{"status":"generate","prompt":""}'), Skip("omitted prompt"))
        self.assertEqual(parse_prompt_decision('{"status":"generate"}'), Skip("omitted prompt"))

    def test_status_is_case_insensitive(self):
        self.assertEqual(parse_prompt_decision('{"status":"SKIP","reason":"quiet"}'), Skip("quiet"))
        self.assertEqual(parse_prompt_decision('{"status":"Generate","prompt":" a hill "}'), Generate("a hill"))

    def test_json_without_status_falls_back_to_raw_text(self):
        raw = '{"prompt":"a lake"}'
        self.assertEqual(parse_prompt_decision(raw), Generate(raw))

    def test_unknown_status_falls_back_to_raw_text(self):
        raw = '{"status":"maybe"}'
        self.assertEqual(parse_prompt_decision(raw), Generate(raw))

    def test_reply_is_trimmed(self):
        self.assertEqual(parse_prompt_decision("  a forest  \n"), Generate("a forest"))


class TestExtractCompletionText(unittest.TestCase):

    def test_flat_text_wins(self):
        payload = {"choices": [{"text": " hello ", "message": {"content": "ignored"}}]}
        self.assertEqual(extract_completion_text(payload), "hello")

    def test_blank_flat_text_falls_through(self):
        payload = {"choices": [{"text": "  ", "message": {"content": " from message "}}]}
        self.assertEqual(extract_completion_text(payload), "from message")

    def test_structured_parts_joined(self):
        payload = {"choices": [{"message": {"content": [
            {"type": "output_text", "text": "first"},
            {"type": "text", "text": "   "},
            {"value": "second"},
            {"type": "image"},
            "not a part",
        ]}}]}
        self.assertEqual(extract_completion_text(payload), "first second")

    def test_unexpected_shapes(self):
        self.assertEqual(extract_completion_text(None), "")
        self.assertEqual(extract_completion_text([]), "")
        self.assertEqual(extract_completion_text({"choices": []}), "")
        self.assertEqual(extract_completion_text({"choices": [{}]}), "")
        self.assertEqual(extract_completion_text({"choices": [{"message": {"content": 3}}]}), "")


class TestBuildDecisionMessage(unittest.TestCase):

    def test_without_previous_prompt(self):
        message = build_decision_message("we are at the beach")
        self.assertEqual(message, f"{BACKGROUND_PROMPT_INSTRUCTIONS}\nwe are at the beach")

    def test_with_previous_prompt(self):
        message = build_decision_message("a boat appears", "a tranquil beach at sunset")
        self.assertTrue(message.startswith(BACKGROUND_PROMPT_INSTRUCTIONS))
        self.assertIn("\nPrevious prompt: a tranquil beach at sunset\n\nTranscript: a boat appears", message)


class ModelServerTestCase(unittest.IsolatedAsyncioTestCase):
    """Runs a local aiohttp app standing in for the model runner."""

    async def asyncSetUp(self):
        self.requests = []
        self.completion = {"choices": [{"message": {"content": "hello there"}}]}
        self.completion_status = 200
        self.models = [{"tags": ["speech-model"]}]
        self.created = []

        async def completions(request):
            self.requests.append(await request.json())
            if self.completion_status != 200:
                return web.Response(status=self.completion_status, text="runner exploded")
            if isinstance(self.completion, str):
                return web.Response(text=self.completion)
            return web.json_response(self.completion)

        async def list_models(request):
            return web.json_response(self.models)

        async def create_model(request):
            body = await request.json()
            self.created.append(body["from"])
            self.models.append({"tags": [body["from"]]})
            return web.json_response({})

        app = web.Application()
        app.router.add_post("/engines/v1/chat/completions", completions)
        app.router.add_get("/models", list_models)
        app.router.add_post("/models/create", create_model)
        self.server = TestServer(app)
        await self.server.start_server()
        self.base_url = str(self.server.make_url("")).rstrip("/")

    async def asyncTearDown(self):
        await self.server.close()


class TestSpeechTranscriber(ModelServerTestCase):

    async def test_transcribe_payload_and_result(self):
        transcriber = SpeechTranscriber(self.base_url, "/engines/v1/chat/completions")
        text = await transcriber.transcribe("speech-model", "Transcribe this.", "UklGRg==", "wav")

        self.assertEqual(text, "hello there")
        payload = self.requests[0]
        self.assertEqual(payload["model"], "speech-model")
        content = payload["messages"][0]["content"]
        self.assertEqual(payload["messages"][0]["role"], "user")
        self.assertEqual(content[0], {"type": "text", "text": "Transcribe this."})
        self.assertEqual(content[1], {"type": "input_audio", "input_audio": {"data": "UklGRg==", "format": "wav"}})

    async def test_non_success_raises_network_error(self):
        self.completion_status = 500
        transcriber = SpeechTranscriber(self.base_url, "/engines/v1/chat/completions")
        with self.assertRaises(NetworkError) as ctx:
            await transcriber.transcribe("speech-model", "Transcribe this.", "UklGRg==", "wav")
        self.assertEqual(ctx.exception.status, 500)

    async def test_non_json_raises_parse_error(self):
        self.completion = "not json"
        transcriber = SpeechTranscriber(self.base_url, "/engines/v1/chat/completions")
        with self.assertRaises(ParseError):
            await transcriber.transcribe("speech-model", "Transcribe this.", "UklGRg==", "wav")


class TestPromptDecider(ModelServerTestCase):

    async def test_decide_sends_system_and_user_messages(self):
        self.completion = {"choices": [{"message": {"content": '{"status":"skip","reason":"quiet"}'}}]}
        decider = PromptDecider(self.base_url, "/engines/v1/chat/completions")
        reply = await decider.decide("prompt-model", "system text", "user text")

        self.assertEqual(reply, '{"status":"skip","reason":"quiet"}')
        messages = self.requests[0]["messages"]
        self.assertEqual(messages, [
            {"role": "system", "content": "system text"},
            {"role": "user", "content": "user text"},
        ])


class TestModelRunner(ModelServerTestCase):

    async def test_present_models_are_not_requested(self):
        runner = ModelRunner(self.base_url, warmup_delay_s=0, poll_delay_s=0)
        await runner.ensure_models(["speech-model"])
        self.assertEqual(self.created, [])

    async def test_missing_models_are_requested(self):
        runner = ModelRunner(self.base_url, warmup_delay_s=0, poll_delay_s=0)
        await runner.ensure_models(["speech-model", "prompt-model"])
        self.assertEqual(self.created, ["prompt-model"])

    def test_missing_matches_tags(self):
        models = [{"tags": ["a", "b"]}, {"tags": None}, {}]
        self.assertEqual(ModelRunner.missing(models, ["a", "c"]), ["c"])


if __name__ == '__main__':
    unittest.main()
