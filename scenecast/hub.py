"""
Registration client for the matchmaking hub.
"""
import logging

from .errors import NetworkError
from .transport import post_json
from .types import RegistrationFlags

logger = logging.getLogger(__name__)


class HubClient:
    """Registers and unregisters this companion under a screen name."""

    def __init__(self, hub_url: str):
        self.hub_url = hub_url.rstrip("/")

    async def register(self, name: str, tunnel_url: str, flags: RegistrationFlags) -> str:
        screen_name = name.strip()
        if not screen_name:
            raise NetworkError("Screen name must not be empty.")
        payload = {
            "screenName": screen_name,
            "tunnelUrl": tunnel_url,
            "requiresNanobananaKey": flags.requires_image_key,
            "hasLocalNanobananaKey": flags.has_local_image_key,
        }
        status, body = await post_json(f"{self.hub_url}/api/register-agent", payload)
        if not 200 <= status < 300:
            raise NetworkError(f"Failed to register agent: {body}", status=status, body=body)
        logger.info(f"🌐 [Hub] Registered '{screen_name}' with tunnel {tunnel_url}")
        return f"Agent registered with tunnel: {tunnel_url}"

    async def unregister(self, name: str) -> str:
        status, body = await post_json(f"{self.hub_url}/api/unregister-agent",
                                       {"screenName": name.strip()})
        if not 200 <= status < 300:
            raise NetworkError(f"Failed to unregister agent: {body}", status=status, body=body)
        logger.info(f"🌐 [Hub] Unregistered '{name}'")
        return "Agent unregistered."
