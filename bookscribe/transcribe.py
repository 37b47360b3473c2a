"""Page transcription through the OpenRouter chat completions API."""

from __future__ import annotations

import base64
import logging
from typing import Any, Optional, Protocol

import httpx

from .errors import PermanentRemoteError, TransientRemoteError

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_TIMEOUT_S = 120.0
DEFAULT_PROMPT = (
    "Transcribe this page. Output strictly formatted Markdown. "
    "Use headers, lists, and code blocks where appropriate. "
    "IMPORTANT: Transcribe ALL legible text, including page numbers, headers, "
    "footers, and captions. Do NOT wrap the entire output in a markdown block."
)

_TRANSIENT_STATUS = {408, 409, 425, 429}


class Transcriber(Protocol):
    def transcribe(self, image: bytes, model: str) -> str: ...


def is_transient_status(status_code: int) -> bool:
    return status_code in _TRANSIENT_STATUS or status_code >= 500


def strip_code_fence(text: str) -> str:
    """Remove a code fence the model wrapped around the whole answer."""
    if not text.lstrip().startswith("```"):
        return text
    stripped = text.lstrip()
    newline = stripped.find("\n")
    if newline == -1:
        return ""
    inner = stripped[newline + 1 :]
    last_fence = inner.rfind("```")
    if last_fence != -1:
        inner = inner[:last_fence]
    return inner.rstrip()


def build_request(image: bytes, model: str, prompt: str) -> dict[str, Any]:
    b64_data = base64.b64encode(image).decode("ascii")
    return {
        "model": model,
        "messages": [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:image/png;base64,{b64_data}"},
                    },
                ],
            }
        ],
    }


class OpenRouterTranscriber:
    """Sends one page image per request and returns the Markdown answer.

    Failures are mapped onto TransientRemoteError (retry) and
    PermanentRemoteError (give up) for the scheduler.
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        prompt: str = DEFAULT_PROMPT,
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.prompt = prompt
        self._client = client or httpx.Client(timeout=timeout_s)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "OpenRouterTranscriber":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def transcribe(self, image: bytes, model: str) -> str:
        payload = build_request(image, model, self.prompt)
        try:
            resp = self._client.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout_s,
            )
        except httpx.TimeoutException as exc:
            raise TransientRemoteError(f"Request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientRemoteError(f"Transport error: {exc}") from exc

        if resp.status_code != 200:
            message = f"API error {resp.status_code}: {resp.text[:500]}"
            if is_transient_status(resp.status_code):
                raise TransientRemoteError(message, status_code=resp.status_code)
            raise PermanentRemoteError(message, status_code=resp.status_code)

        try:
            data = resp.json()
        except ValueError as exc:
            raise TransientRemoteError(f"Invalid JSON in response: {exc}") from exc

        error = data.get("error") if isinstance(data, dict) else None
        if error:
            self._raise_body_error(error)

        text = _first_content(data)
        if text is None or not text.strip():
            raise TransientRemoteError("No content in response")
        return strip_code_fence(text)

    @staticmethod
    def _raise_body_error(error: Any) -> None:
        if not isinstance(error, dict):
            raise PermanentRemoteError(f"API error: {error}")
        code = error.get("code")
        kind = error.get("type") or "unknown"
        message = f"API error ({kind}): {error.get('message', '')}"
        if isinstance(code, int):
            if is_transient_status(code):
                raise TransientRemoteError(message, status_code=code)
            raise PermanentRemoteError(message, status_code=code)
        # Providers report upstream overloads without a numeric code.
        raise TransientRemoteError(message)


def _first_content(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    choices = data.get("choices") or []
    if not choices:
        return None
    message = choices[0].get("message") or {}
    content = message.get("content")
    return content if isinstance(content, str) else None
