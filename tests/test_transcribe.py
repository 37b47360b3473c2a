from __future__ import annotations

import base64
import json

import httpx
import pytest

from bookscribe import (
    OpenRouterTranscriber,
    PermanentRemoteError,
    TransientRemoteError,
    strip_code_fence,
)


def _transcriber(handler) -> OpenRouterTranscriber:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return OpenRouterTranscriber("sk-test", base_url="https://api.test/v1/", client=client)


def _answer(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class TestRequest:
    def test_sends_image_and_prompt(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=_answer("# Page"))

        with _transcriber(handler) as transcriber:
            text = transcriber.transcribe(b"\x89PNG", "google/gemini-flash-1.5")

        assert text == "# Page"
        assert seen["url"] == "https://api.test/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        body = seen["body"]
        assert body["model"] == "google/gemini-flash-1.5"
        parts = body["messages"][0]["content"]
        assert parts[0]["type"] == "text"
        expected_url = "data:image/png;base64," + base64.b64encode(b"\x89PNG").decode()
        assert parts[1] == {"type": "image_url", "image_url": {"url": expected_url}}

    def test_strips_wrapping_fence(self):
        handler = lambda request: httpx.Response(200, json=_answer("```markdown\n# Hi\n```"))
        assert _transcriber(handler).transcribe(b"img", "m") == "# Hi"


class TestErrorClassification:
    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503])
    def test_transient_statuses(self, status):
        handler = lambda request: httpx.Response(status, text="slow down")
        with pytest.raises(TransientRemoteError) as excinfo:
            _transcriber(handler).transcribe(b"img", "m")
        assert excinfo.value.status_code == status
        assert excinfo.value.retryable is True

    @pytest.mark.parametrize("status", [400, 401, 403, 404])
    def test_permanent_statuses(self, status):
        handler = lambda request: httpx.Response(status, text="nope")
        with pytest.raises(PermanentRemoteError) as excinfo:
            _transcriber(handler).transcribe(b"img", "m")
        assert excinfo.value.retryable is False

    def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(TransientRemoteError):
            _transcriber(handler).transcribe(b"img", "m")

    def test_connect_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransientRemoteError):
            _transcriber(handler).transcribe(b"img", "m")

    def test_body_error_with_client_code_is_permanent(self):
        payload = {"error": {"code": 400, "message": "bad image", "type": "invalid_request"}}
        handler = lambda request: httpx.Response(200, json=payload)
        with pytest.raises(PermanentRemoteError, match="bad image"):
            _transcriber(handler).transcribe(b"img", "m")

    def test_body_error_with_rate_limit_code_is_transient(self):
        payload = {"error": {"code": 429, "message": "rate limited"}}
        handler = lambda request: httpx.Response(200, json=payload)
        with pytest.raises(TransientRemoteError):
            _transcriber(handler).transcribe(b"img", "m")

    def test_missing_content_is_transient(self):
        handler = lambda request: httpx.Response(200, json={"choices": []})
        with pytest.raises(TransientRemoteError, match="No content"):
            _transcriber(handler).transcribe(b"img", "m")

    def test_invalid_json_is_transient(self):
        handler = lambda request: httpx.Response(200, text="<html>gateway</html>")
        with pytest.raises(TransientRemoteError):
            _transcriber(handler).transcribe(b"img", "m")


class TestStripCodeFence:
    def test_plain_text_untouched(self):
        assert strip_code_fence("# Title\n\nbody") == "# Title\n\nbody"

    def test_fence_with_language(self):
        assert strip_code_fence("```md\n# A\n\nB\n```\n") == "# A\n\nB"

    def test_unterminated_fence(self):
        assert strip_code_fence("```\n# A") == "# A"

    def test_fence_only(self):
        assert strip_code_fence("```") == ""
