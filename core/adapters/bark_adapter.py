"""
Bark Adapter — success push notifications

Sends a one-line notification to a phone via the Bark service once an order
has been placed, so the user can pay for it in the vendor app in time.

Endpoint: GET {BARK_BASE_URL}/{device_key}/{text}
Override the base URL with BARK_BASE_URL for self-hosted Bark servers.
"""

import os
import logging
from typing import Optional
from urllib.parse import quote

import aiohttp

from core.vendor import ErrorKind, VendorError

logger = logging.getLogger("slotgrab.adapter.bark")

_DEFAULT_BARK_BASE = "https://api.day.app"


def build_push_url(base_url: str, device_key: str, text: str) -> str:
    return f"{base_url.rstrip('/')}/{quote(device_key, safe='')}/{quote(text, safe='')}"


class BarkNotifier:
    """Single-attempt notifier. Callers decide how to retry."""

    def __init__(self, base_url: Optional[str] = None):
        self._base_url = base_url or os.getenv("BARK_BASE_URL", _DEFAULT_BARK_BASE)
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = aiohttp.ClientTimeout(total=10)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def push(self, device_key: str, text: str) -> None:
        if not device_key:
            raise VendorError(ErrorKind.OTHER, "push device key not configured")

        session = await self._get_session()
        url = build_push_url(self._base_url, device_key, text)
        try:
            async with session.get(url) as resp:
                if resp.status != 200:
                    raise VendorError(ErrorKind.OTHER, f"push failed: HTTP {resp.status}")
        except aiohttp.ClientError as e:
            raise VendorError(ErrorKind.OTHER, f"push failed: {e}") from e

        logger.info("Push notification delivered")

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
