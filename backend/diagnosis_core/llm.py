from __future__ import annotations

import json
from typing import Any, Iterator, Protocol

import httpx

from .logging_utils import get_logger

logger = get_logger(__name__)


class StreamError(Exception):
    pass


class TextStreamProvider(Protocol):
    def stream(self, messages: list[dict[str, str]]) -> Iterator[str]:
        """Yield the reply to ``messages`` as text chunks, in order."""
        ...


def _provider_error_message(response: httpx.Response) -> str:
    message = response.text.strip()
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
        msg = payload.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    return message or f"HTTP {response.status_code}"


def _delta_text(payload: dict[str, Any]) -> str:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    delta = choices[0].get("delta") or {}
    content = delta.get("content")
    return content if isinstance(content, str) else ""


class OpenRouterStreamClient:
    """Streams chat completions from an OpenAI-compatible ``/chat/completions``."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str = "https://openrouter.ai/api/v1",
        timeout_seconds: float = 60.0,
        site_url: str = "",
        app_name: str = "",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.site_url = site_url
        self.app_name = app_name
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        if self.site_url:
            headers["HTTP-Referer"] = self.site_url
        if self.app_name:
            headers["X-Title"] = self.app_name
        return headers

    def stream(self, messages: list[dict[str, str]]) -> Iterator[str]:
        payload = {"model": self.model, "messages": messages, "stream": True}
        timeout = httpx.Timeout(self.timeout_seconds, connect=8.0)
        try:
            with httpx.Client(timeout=timeout, transport=self._transport) as client:
                with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    headers=self._headers(),
                    json=payload,
                ) as response:
                    if response.status_code >= 400:
                        response.read()
                        raise StreamError(_provider_error_message(response))
                    yield from self._iter_deltas(response.iter_lines())
        except httpx.HTTPError as exc:
            raise StreamError(f"Model provider request failed: {exc}") from exc

    @staticmethod
    def _iter_deltas(lines: Iterator[str]) -> Iterator[str]:
        for raw_line in lines:
            line = raw_line.strip()
            # Blank lines end an event; ':' lines are keep-alive comments.
            if not line or line.startswith(":") or not line.startswith("data:"):
                continue
            data = line[5:].strip()
            if data == "[DONE]":
                return
            try:
                chunk = json.loads(data)
            except json.JSONDecodeError:
                logger.warning("Skipping malformed stream line from model provider")
                continue
            if not isinstance(chunk, dict):
                continue
            error = chunk.get("error")
            if error:
                message = error.get("message") if isinstance(error, dict) else str(error)
                raise StreamError(message or "Model provider reported an error mid-stream")
            if chunk.get("usage"):
                logger.debug("Model usage: %s", chunk["usage"])
            content = _delta_text(chunk)
            if content:
                yield content
