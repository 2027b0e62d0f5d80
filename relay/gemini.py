from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from relay.core.errors import RemoteCallFailure


logger = logging.getLogger("relay.gemini")


class GeminiClient:
    """Thin async client for the generateContent REST endpoint."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: Optional[str],
        model: str,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 60.0,
    ):
        self._client = client
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    @property
    def model(self) -> str:
        return self._model

    @property
    def endpoint(self) -> str:
        return f"{self._base_url}/models/{self._model}:generateContent"

    async def generate(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self._api_key:
            raise RemoteCallFailure(code="MISSING_API_KEY", message="GEMINI_API_KEY not set")

        try:
            response = await asyncio.wait_for(
                self._client.post(
                    self.endpoint,
                    params={"key": self._api_key},
                    json=payload,
                    headers={"Content-Type": "application/json"},
                    timeout=self._timeout,
                ),
                self._timeout,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            raise RemoteCallFailure(code="MODEL_TIMEOUT", message="Gemini request timed out") from exc
        except httpx.HTTPError as exc:
            raise RemoteCallFailure(code="NETWORK_ERROR", message=str(exc)) from exc

        if response.status_code >= 400:
            logger.error(
                "Gemini returned %s: %s",
                response.status_code,
                " ".join(response.text.split())[:500],
            )
            raise RemoteCallFailure(
                code="API_ERROR",
                message=f"Gemini returned HTTP {response.status_code}",
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise RemoteCallFailure(code="MALFORMED_RESPONSE", message="Gemini response is not JSON") from exc
        if not isinstance(data, dict):
            raise RemoteCallFailure(code="MALFORMED_RESPONSE", message="Gemini response is not an object")
        return data
