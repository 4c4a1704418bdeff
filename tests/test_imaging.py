"""
Test cases for the background store and the image renderer.
"""
import asyncio
import base64
import unittest

from aiohttp import web
from aiohttp.test_utils import TestServer

from scenecast.config import load_config
from scenecast.errors import NetworkError, ParseError, ValidationError
from scenecast.imaging import BackgroundStore, NanoBananaRenderer, extract_base64_image
from scenecast.mocks import PLACEHOLDER_PNG
from scenecast.types import RenderedImage

PNG_B64 = base64.b64encode(PLACEHOLDER_PNG).decode("ascii")


class TestExtractBase64Image(unittest.TestCase):

    def test_gemini_inline_data(self):
        response = {"candidates": [{"content": {"parts": [
            {"text": "here you go"},
            {"inlineData": {"mimeType": "image/jpeg", "data": PNG_B64}},
        ]}}]}
        self.assertEqual(extract_base64_image(response), (PNG_B64, "image/jpeg"))

    def test_alternate_keys(self):
        self.assertEqual(extract_base64_image({"b64_json": PNG_B64}), (PNG_B64, None))
        self.assertEqual(extract_base64_image([{"bytesBase64": PNG_B64, "mimeType": "image/png"}]),
                         (PNG_B64, "image/png"))

    def test_short_or_invalid_values_are_ignored(self):
        self.assertIsNone(extract_base64_image({"data": "aGVsbG8="}))
        self.assertIsNone(extract_base64_image({"data": "not base64 at all, definitely not!!"}))
        self.assertIsNone(extract_base64_image({"parts": [{"text": "no image"}]}))
        self.assertIsNone(extract_base64_image("just a string"))


class TestBackgroundStore(unittest.IsolatedAsyncioTestCase):

    async def test_publish_bumps_version(self):
        store = BackgroundStore()
        self.assertEqual(store.snapshot(), (0, None))
        image = RenderedImage(data=PLACEHOLDER_PNG, mime="image/png")
        self.assertEqual(await store.publish(image), 1)
        self.assertEqual(await store.publish(image), 2)
        self.assertEqual(store.snapshot(), (2, image))

    async def test_wait_times_out(self):
        self.assertFalse(await BackgroundStore().wait_for_update(0.05))

    async def test_wait_wakes_on_publish(self):
        store = BackgroundStore()
        waiter = asyncio.create_task(store.wait_for_update(2.0))
        await asyncio.sleep(0.05)
        await store.publish(RenderedImage(data=PLACEHOLDER_PNG, mime="image/png"))
        self.assertTrue(await waiter)


class TestBuildRequest(unittest.IsolatedAsyncioTestCase):

    async def test_first_request_is_text_only(self):
        renderer = NanoBananaRenderer(load_config().image, BackgroundStore(), lambda: "key")
        request = renderer.build_request("a lake")
        self.assertEqual(request["contents"], [{"parts": [{"text": "a lake"}]}])
        self.assertEqual(request["generationConfig"], {"imageConfig": {"aspectRatio": "16:9"}})

    async def test_previous_background_is_sent_along(self):
        store = BackgroundStore()
        await store.publish(RenderedImage(data=PLACEHOLDER_PNG, mime="image/png"))
        renderer = NanoBananaRenderer(load_config().image, store, lambda: "key")

        parts = renderer.build_request("a lake with a boat")["contents"][0]["parts"]

        self.assertEqual(parts[0], {"text": "a lake with a boat"})
        self.assertEqual(parts[1], {"inlineData": {"mimeType": "image/png", "data": PNG_B64}})


class TestRender(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.requests = []
        self.reply = {"candidates": [{"content": {"parts": [{"inlineData": {"data": PNG_B64}}]}}]}
        self.reply_status = 200

        async def generate(request):
            self.requests.append((request.match_info["model"], request.headers.get("X-Goog-Api-Key"),
                                  await request.json()))
            if self.reply_status != 200:
                return web.Response(status=self.reply_status, text="quota exceeded")
            return web.json_response(self.reply)

        app = web.Application()
        app.router.add_post("/v1beta/models/{model}", generate)
        self.server = TestServer(app)
        await self.server.start_server()

        self.cfg = load_config().image
        self.cfg.endpoint = str(self.server.make_url("/v1beta/models"))
        self.key = "secret-key"
        self.renderer = NanoBananaRenderer(self.cfg, BackgroundStore(), lambda: self.key)

    async def asyncTearDown(self):
        await self.server.close()

    async def test_render_returns_image(self):
        image = await self.renderer.render("a lake")

        self.assertEqual(image.data, PLACEHOLDER_PNG)
        self.assertEqual(image.mime, "image/png")
        model, key, body = self.requests[0]
        self.assertEqual(model, f"{self.cfg.model}:generateContent")
        self.assertEqual(key, "secret-key")
        self.assertEqual(body["contents"][0]["parts"][0], {"text": "a lake"})

    async def test_missing_key(self):
        self.key = None
        with self.assertRaises(ValidationError):
            await self.renderer.render("a lake")
        self.assertEqual(self.requests, [])

    async def test_empty_prompt(self):
        with self.assertRaises(ValidationError):
            await self.renderer.render("   ")

    async def test_error_status(self):
        self.reply_status = 429
        with self.assertRaises(NetworkError) as ctx:
            await self.renderer.render("a lake")
        self.assertEqual(ctx.exception.status, 429)
        self.assertIn("quota exceeded", str(ctx.exception))

    async def test_reply_without_image(self):
        self.reply = {"candidates": [{"content": {"parts": [{"text": "I cannot draw that"}]}}]}
        with self.assertRaises(ParseError):
            await self.renderer.render("a lake")


if __name__ == '__main__':
    unittest.main()
