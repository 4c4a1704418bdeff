"""
Public tunnel to the companion API, handed to the hub at registration.

The default provider runs a cloudflared quick tunnel in a Docker container and
reads the trycloudflare URL from its logs. A fixed URL can be configured instead.
"""
import asyncio
import logging
import re
from typing import Callable, Optional

import docker
from docker.errors import DockerException

from .config import Cfg, TunnelConfig
from .errors import NetworkError, ValidationError
from .transport import ERROR_BODY_LIMIT

logger = logging.getLogger(__name__)

TUNNEL_URL_PATTERN = re.compile(r"(https://[a-zA-Z0-9-]+\.trycloudflare\.com)")


def find_tunnel_url(logs: str) -> Optional[str]:
    match = TUNNEL_URL_PATTERN.search(logs)
    return match.group(1) if match else None


class StaticTunnel:
    """A tunnel managed outside the companion; its URL comes from config."""

    def __init__(self, url: str):
        self.url = url.strip()

    async def start(self) -> str:
        if not self.url:
            raise ValidationError("No tunnel URL configured. Set SCENECAST_TUNNEL_URL or use the cloudflared tunnel.")
        return self.url

    async def stop(self) -> None:
        return None


class CloudflaredTunnel:
    """
    cloudflared quick tunnel forwarding to the local API port.

    start() launches the container and polls its logs until the public URL
    appears; stop() stops (and so removes) the container.
    """

    def __init__(self, cfg: TunnelConfig, target_port: int,
                 client_factory: Callable[[], "docker.DockerClient"] = docker.from_env):
        self.cfg = cfg
        self.target_port = target_port
        self.client_factory = client_factory
        self.container = None
        self.url: Optional[str] = None

    async def start(self) -> str:
        if self.container is not None and self.url:
            return self.url
        self.container = await asyncio.to_thread(self._run_container)
        try:
            self.url = await self._wait_for_url()
        except Exception:
            await self.stop()
            raise
        logger.info(f"🌍 [Tunnel] Public URL: {self.url}")
        return self.url

    def _run_container(self):
        try:
            client = self.client_factory()
            return client.containers.run(
                self.cfg.image,
                entrypoint="cloudflared",
                command=["tunnel", "--url", f"http://host.docker.internal:{self.target_port}"],
                extra_hosts={"host.docker.internal": "host-gateway"},
                detach=True,
                auto_remove=True,
            )
        except DockerException as e:
            raise NetworkError(f"Failed to launch cloudflared: {e}") from e

    async def _wait_for_url(self) -> str:
        logs = ""
        for attempt in range(self.cfg.wait_attempts):
            logs = await asyncio.to_thread(self._read_logs)
            url = find_tunnel_url(logs)
            if url:
                return url
            if attempt == 0:
                logger.info("⏳ [Tunnel] Waiting for cloudflared tunnel URL...")
            await asyncio.sleep(self.cfg.poll_interval_ms / 1000.0)
        raise NetworkError(
            f"Timed out waiting for cloudflared tunnel URL. Latest logs:\n{logs[:ERROR_BODY_LIMIT]}"
        )

    def _read_logs(self) -> str:
        try:
            raw = self.container.logs(stdout=True, stderr=True)
        except DockerException as e:
            raise NetworkError(f"Failed to read cloudflared logs: {e}") from e
        return raw.decode("utf-8", errors="replace")

    async def stop(self) -> None:
        container, self.container = self.container, None
        self.url = None
        if container is None:
            return
        try:
            await asyncio.to_thread(container.stop)
        except DockerException as e:
            raise NetworkError(f"Failed to stop agent container: {e}") from e
        logger.info("🛑 [Tunnel] cloudflared stopped")


def build_tunnel(cfg: Cfg):
    """A configured URL wins; otherwise the configured provider."""
    if cfg.tunnel.url:
        return StaticTunnel(cfg.tunnel.url)
    if cfg.tunnel.provider == "cloudflared":
        return CloudflaredTunnel(cfg.tunnel, cfg.server.port)
    return StaticTunnel("")
