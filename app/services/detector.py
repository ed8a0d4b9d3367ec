"""HTTP client for the remote object-detection endpoint.

The endpoint receives a base64-encoded image and answers with a JSON
payload whose ``predictions`` list holds center-form boxes::

    {"predictions": [{"x": 10, "y": 20, "width": 5, "height": 8,
                      "class": "box", "confidence": 0.91}, ...]}

Authentication is an API key, an OAuth2 client-credentials bearer token,
or both.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from collections.abc import Callable

import httpx

from app.models.box import Box

logger = logging.getLogger(__name__)

# Tokens are treated as expired this long before the server says so.
TOKEN_EXPIRY_MARGIN_SECONDS = 60.0


class TokenProvider:
    """Caches an OAuth2 access token and de-duplicates refreshes.

    Concurrent callers of :meth:`acquire` that arrive while a refresh is in
    flight all await the same request instead of issuing their own.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        token_url: str,
        client_id: str,
        client_secret: str,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._clock = clock
        self._token: str | None = None
        self._expires_at = 0.0
        self._in_flight: asyncio.Task[str] | None = None

    async def acquire(self) -> str:
        """Return a valid token, fetching a new one when needed."""
        if self._token is not None and self._clock() < self._expires_at:
            return self._token

        if self._in_flight is None:
            self._in_flight = asyncio.ensure_future(self._fetch())
        task = self._in_flight
        try:
            return await asyncio.shield(task)
        finally:
            if self._in_flight is task and task.done():
                self._in_flight = None

    def invalidate(self) -> None:
        """Forget the cached token so the next :meth:`acquire` refreshes."""
        self._token = None
        self._expires_at = 0.0

    async def _fetch(self) -> str:
        logger.info("Requesting access token from %s", self._token_url)
        response = await self._client.post(
            self._token_url,
            data={
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "grant_type": "client_credentials",
            },
        )
        response.raise_for_status()
        payload = response.json()
        self._token = payload["access_token"]
        expires_in = float(payload.get("expires_in", 0))
        self._expires_at = (
            self._clock() + expires_in - TOKEN_EXPIRY_MARGIN_SECONDS
        )
        return self._token


class HttpDetector:
    """Async ``detect(image_bytes) -> list[Box]`` backed by httpx.

    A 401 response invalidates the bearer token and retries once; any
    other failure propagates to the orchestrator's retry policy.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        api_key: str | None = None,
        token_provider: TokenProvider | None = None,
    ) -> None:
        self._client = client
        self._url = url
        self._api_key = api_key
        self._tokens = token_provider

    async def detect(self, image: bytes) -> list[Box]:
        """Send one image and parse the predicted boxes."""
        body = base64.b64encode(image)
        response = await self._post(body)
        if response.status_code == 401 and self._tokens is not None:
            logger.info("Access token rejected, refreshing and retrying")
            self._tokens.invalidate()
            response = await self._post(body)
        response.raise_for_status()
        return parse_predictions(response.json())

    async def _post(self, body: bytes) -> httpx.Response:
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        params: dict[str, str] = {}
        if self._api_key:
            params["api_key"] = self._api_key
        if self._tokens is not None:
            headers["Authorization"] = f"Bearer {await self._tokens.acquire()}"
        return await self._client.post(
            self._url, content=body, headers=headers, params=params
        )


def parse_predictions(payload: dict) -> list[Box]:
    """Convert a detector response into prediction boxes.

    Accepts the predictions either at the top level or under ``data``.
    """
    if "predictions" not in payload and isinstance(payload.get("data"), dict):
        payload = payload["data"]
    return [
        Box(
            x=float(p["x"]),
            y=float(p["y"]),
            width=float(p["width"]),
            height=float(p["height"]),
            class_name=str(p["class"]),
            confidence=float(p.get("confidence", 0.0)),
        )
        for p in payload.get("predictions", [])
    ]
