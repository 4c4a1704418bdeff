"""
Companion HTTP API, reached by the meeting client through the tunnel.

Endpoints:
- GET  /                              health check
- GET  /background/latest             latest background (long-poll with wait=true)
- POST /internal/secrets/nanobanana   hub-delivered image API key
"""
import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Response
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from .config import ServerConfig
from .imaging import BackgroundStore
from .settings_store import SettingsStore
from .types import RenderedImage

logger = logging.getLogger(__name__)

HEALTH_TEXT = "scenecast companion tunnel working"


class SecretPayload(BaseModel):
    secret: str


def build_background_response(asset: Optional[RenderedImage], version: int) -> Response:
    headers = {
        "x-background-version": str(version),
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Expose-Headers": "x-background-version,content-type",
    }
    if asset is None:
        return Response(status_code=204, headers=headers)
    return Response(content=asset.data, status_code=200, media_type=asset.mime, headers=headers)


def create_app(store: BackgroundStore, settings: SettingsStore, long_poll_timeout_s: float = 25.0) -> FastAPI:
    app = FastAPI(
        title="Scenecast Companion API",
        description="Serves generated meeting backgrounds",
        version="1.0.0"
    )

    @app.get("/", response_class=PlainTextResponse)
    async def root():
        """Health check endpoint"""
        return HEALTH_TEXT

    @app.get("/background/latest")
    async def background_latest(since: int = 0, wait: bool = False):
        """Image bytes when the version differs from `since`, else 204."""
        while True:
            version, asset = store.snapshot()
            if version != 0 and version != since:
                return build_background_response(asset, version)
            if wait and await store.wait_for_update(long_poll_timeout_s):
                continue
            return build_background_response(None, version)

    @app.post("/internal/secrets/nanobanana", status_code=204)
    async def set_nanobanana_secret(payload: SecretPayload):
        secret = payload.secret.strip()
        if not secret:
            raise HTTPException(status_code=400, detail="Secret must not be empty")
        settings.delivered_image_key = secret
        logger.info("🔑 [HTTP] Received nano banana key from hub")
        return Response(status_code=204)

    return app


async def serve(app: FastAPI, cfg: ServerConfig) -> None:
    """Run uvicorn inside the current event loop until cancelled."""
    config = uvicorn.Config(app, host=cfg.host, port=cfg.port, log_level="info")
    server = uvicorn.Server(config)
    logger.info(f"🚀 Companion API listening on http://{cfg.host}:{cfg.port}")
    await server.serve()
