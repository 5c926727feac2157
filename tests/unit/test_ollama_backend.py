"""
Unit tests for the Ollama client using httpx.MockTransport.
"""

import json

import httpx
import pytest
from tenacity import wait_none

from retrieval_eval.config import InferenceSettings
from retrieval_eval.errors import InferenceUnavailableError
from retrieval_eval.inference import OllamaBackend, TokenLogprob


def make_backend(handler, **kwargs):
    kwargs.setdefault("embedding_dimension", 3)
    return OllamaBackend(
        host="http://ollama.test",
        transport=httpx.MockTransport(handler),
        retry_wait=wait_none(),
        max_retries=3,
        **kwargs,
    )


class TestEmbed:
    def test_batch_embedding(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"embeddings": [[0.1, 0.2, 0.3], [0.4, 0.5, 0.6]]})

        vectors = make_backend(handler).embed(["first", "second"])

        assert vectors == [[0.1, 0.2, 0.3], [0.4, 0.5, 0.6]]
        assert seen["path"] == "/api/embed"
        assert seen["body"] == {"model": "nomic-embed-text", "input": ["first", "second"]}

    def test_empty_input_skips_request(self):
        def handler(request):
            raise AssertionError("no request expected")

        assert make_backend(handler).embed([]) == []

    def test_wrong_count_returns_none(self):
        backend = make_backend(lambda request: httpx.Response(200, json={"embeddings": [[0.1, 0.2, 0.3]]}))
        assert backend.embed(["a", "b"]) is None

    def test_wrong_dimension_returns_none(self):
        backend = make_backend(lambda request: httpx.Response(200, json={"embeddings": [[0.1, 0.2]]}))
        assert backend.embed(["a"]) is None

    def test_non_200_returns_none(self):
        backend = make_backend(lambda request: httpx.Response(404, text="model not found"))
        assert backend.embed(["a"]) is None

    def test_malformed_body_returns_none(self):
        backend = make_backend(lambda request: httpx.Response(200, text="<html>oops</html>"))
        assert backend.embed(["a"]) is None

    def test_non_object_body_returns_none(self):
        backend = make_backend(lambda request: httpx.Response(200, json=[1, 2, 3]))
        assert backend.embed(["a"]) is None


class TestRetries:
    def test_transient_error_retried_then_succeeds(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            if calls["n"] < 3:
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(200, json={"response": "done"})

        assert make_backend(handler).generate("prompt") == "done"
        assert calls["n"] == 3

    def test_server_error_retried(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(503, text="busy")
            return httpx.Response(200, json={"response": "ok"})

        assert make_backend(handler).generate("prompt") == "ok"
        assert calls["n"] == 2

    def test_exhausted_retries_return_none(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            raise httpx.ConnectError("connection reset", request=request)

        assert make_backend(handler).generate("prompt") is None
        assert calls["n"] == 3

    def test_client_error_not_retried(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            return httpx.Response(400, text="bad request")

        assert make_backend(handler).generate("prompt") is None
        assert calls["n"] == 1


class TestGenerate:
    def test_uses_requested_model(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"response": "text"})

        make_backend(handler).generate("write notes", model="llama3")

        assert seen == {"model": "llama3", "prompt": "write notes", "stream": False}

    def test_missing_response_field(self):
        backend = make_backend(lambda request: httpx.Response(200, json={"done": True}))
        assert backend.generate("prompt") is None


class TestTopLogprobs:
    def test_parses_first_position(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "message": {"role": "assistant", "content": "yes"},
                    "logprobs": [
                        {
                            "token": "yes",
                            "logprob": -0.1,
                            "top_logprobs": [
                                {"token": "yes", "logprob": -0.1},
                                {"token": "no", "logprob": -2.4},
                                {"token": "broken"},
                            ],
                        }
                    ],
                },
            )

        ranked = make_backend(handler, top_k=5).top_logprobs("judge this")

        assert ranked == [TokenLogprob("yes", -0.1), TokenLogprob("no", -2.4)]
        assert seen["path"] == "/api/chat"
        assert seen["body"]["top_logprobs"] == 5
        assert seen["body"]["logprobs"] is True
        assert seen["body"]["options"] == {"temperature": 0.0, "num_predict": 1}
        assert seen["body"]["messages"] == [{"role": "user", "content": "judge this"}]

    def test_missing_logprobs_returns_none(self):
        backend = make_backend(lambda request: httpx.Response(200, json={"message": {"content": "yes"}}))
        assert backend.top_logprobs("judge") is None

    def test_missing_top_logprobs_returns_none(self):
        backend = make_backend(lambda request: httpx.Response(200, json={"logprobs": [{"token": "yes"}]}))
        assert backend.top_logprobs("judge") is None


class TestPing:
    def test_reachable(self):
        backend = make_backend(
            lambda request: httpx.Response(200, json={"models": [{"name": "nomic-embed-text:latest"}]})
        )
        backend.ping()

    def test_unreachable_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(InferenceUnavailableError):
            make_backend(handler).ping()

    def test_http_error_raises(self):
        with pytest.raises(InferenceUnavailableError):
            make_backend(lambda request: httpx.Response(500)).ping()


def test_from_settings():
    inference = InferenceSettings(ollama_host="http://box:11434/", embedding_model="mxbai", top_logprobs=7)
    backend = OllamaBackend.from_settings(inference)
    try:
        assert backend.host == "http://box:11434"
        assert backend.embedding_model == "mxbai"
        assert backend.top_k == 7
    finally:
        backend.close()
