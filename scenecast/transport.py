"""
Thin aiohttp helpers shared by the outbound clients.
"""
import json
from typing import Any, Dict, Optional, Tuple

import aiohttp

from .errors import NetworkError, ParseError

ERROR_BODY_LIMIT = 512


async def post_json(url: str, payload: Dict[str, Any],
                    headers: Optional[Dict[str, str]] = None) -> Tuple[int, str]:
    """POST a JSON body. Returns (status, body text); transport failures raise NetworkError."""
    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(url, json=payload, headers=headers) as response:
                return response.status, await response.text()
    except aiohttp.ClientError as e:
        raise NetworkError(f"Request to {url} failed: {e}") from e


async def get_json(url: str) -> Any:
    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(url) as response:
                body = await response.text()
                status = response.status
    except aiohttp.ClientError as e:
        raise NetworkError(f"Request to {url} failed: {e}") from e
    if not 200 <= status < 300:
        raise NetworkError(f"GET {url} failed: HTTP {status}", status=status, body=body)
    return parse_json(body)


def parse_json(body: str) -> Any:
    try:
        return json.loads(body)
    except ValueError as e:
        raise ParseError(f"Response was not valid JSON: {e}") from e


def ensure_success(status: int, body: str, what: str) -> None:
    if not 200 <= status < 300:
        snippet = body[:ERROR_BODY_LIMIT]
        raise NetworkError(f"{what} failed: HTTP {status} {snippet}".rstrip(), status=status, body=body)
