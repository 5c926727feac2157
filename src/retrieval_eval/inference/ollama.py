# Copyright 2024 Heinrich Krupp
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Ollama inference client.

Uses synchronous httpx requests against /api/embed, /api/generate and
/api/chat. Connection resets, timeouts and 5xx responses are retried with
exponential backoff; once retries are exhausted, or when the response is
not usable, the call returns None and the caller degrades gracefully.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx
from tenacity import Retrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_exponential

from ..config import InferenceSettings
from ..errors import InferenceUnavailableError, TransientInferenceError
from .base import InferenceBackend, TokenLogprob

logger = logging.getLogger(__name__)


def is_retryable_error(exception: BaseException) -> bool:
    """Transient transport failures and 5xx responses are retryable."""
    return isinstance(exception, TransientInferenceError)


class OllamaBackend(InferenceBackend):
    """Inference backend talking to a local Ollama server."""

    def __init__(
        self,
        host: str = "http://localhost:11434",
        embedding_model: str = "nomic-embed-text",
        generation_model: str = "gemma3:1b",
        rerank_model: str = "gemma3:1b",
        embedding_dimension: Optional[int] = None,
        timeout: float = 300.0,
        connect_timeout: float = 30.0,
        max_retries: int = 3,
        top_k: int = 10,
        transport: Optional[httpx.BaseTransport] = None,
        retry_wait=None,
    ):
        self.host = host.rstrip("/")
        self.embedding_model = embedding_model
        self.generation_model = generation_model
        self.rerank_model = rerank_model
        self.embedding_dimension = embedding_dimension
        self.top_k = top_k
        self.client = httpx.Client(
            base_url=self.host,
            timeout=httpx.Timeout(timeout, connect=connect_timeout),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )
        self._retrying = Retrying(
            retry=retry_if_exception(is_retryable_error),
            stop=stop_after_attempt(max_retries),
            wait=retry_wait if retry_wait is not None else wait_exponential(multiplier=1, min=1, max=5),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    @classmethod
    def from_settings(cls, inference: InferenceSettings, **kwargs) -> "OllamaBackend":
        return cls(
            host=inference.ollama_host,
            embedding_model=inference.embedding_model,
            generation_model=inference.generation_model,
            rerank_model=inference.rerank_model,
            embedding_dimension=inference.embedding_dimension,
            timeout=inference.request_timeout,
            connect_timeout=inference.connect_timeout,
            max_retries=inference.max_retries,
            top_k=inference.top_logprobs,
            **kwargs,
        )

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _send(self, path: str, payload: Dict[str, Any]) -> httpx.Response:
        try:
            response = self.client.post(path, json=payload)
        except httpx.TransportError as e:
            raise TransientInferenceError(f"{type(e).__name__} on {path}: {e}") from e
        if response.status_code >= 500:
            raise TransientInferenceError(f"HTTP {response.status_code} on {path}")
        return response

    def _post(self, path: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """POST JSON and return the decoded body, or None on any failure."""
        try:
            response = self._retrying(self._send, path, payload)
        except TransientInferenceError as e:
            logger.warning(f"Giving up on {path} after retries: {e}")
            return None

        if response.status_code != 200:
            logger.warning(f"{path} returned HTTP {response.status_code}: {response.text[:200]}")
            return None
        try:
            data = response.json()
        except ValueError:
            logger.warning(f"{path} returned a non-JSON body: {response.text[:200]}")
            return None
        if not isinstance(data, dict):
            logger.warning(f"{path} returned unexpected JSON type {type(data).__name__}")
            return None
        return data

    # -------------------------------------------------------------------------
    # InferenceBackend
    # -------------------------------------------------------------------------

    def ping(self) -> None:
        try:
            response = self.client.get("/api/tags")
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise InferenceUnavailableError(f"Ollama not reachable at {self.host}: {e}") from e

        try:
            available = {model.get("name", "") for model in response.json().get("models", [])}
        except (ValueError, AttributeError):
            logger.warning("Could not read model list from /api/tags")
            return
        for model in {self.embedding_model, self.generation_model, self.rerank_model}:
            if model not in available and f"{model}:latest" not in available:
                logger.warning(f"Model {model} not listed by Ollama; requests using it may fail")

    def embed(self, texts: Sequence[str]) -> Optional[List[List[float]]]:
        texts = list(texts)
        if not texts:
            return []
        data = self._post("/api/embed", {"model": self.embedding_model, "input": texts})
        if data is None:
            return None

        embeddings = data.get("embeddings")
        if not isinstance(embeddings, list) or len(embeddings) != len(texts):
            logger.warning(f"Malformed embedding response for {len(texts)} inputs")
            return None
        for vector in embeddings:
            if not isinstance(vector, list) or not vector:
                logger.warning("Embedding response contained an empty or non-list vector")
                return None
            if self.embedding_dimension and len(vector) != self.embedding_dimension:
                logger.warning(
                    f"Embedding has {len(vector)} dimensions, expected {self.embedding_dimension}"
                )
                return None
        return [[float(x) for x in vector] for vector in embeddings]

    def generate(self, prompt: str, model: Optional[str] = None) -> Optional[str]:
        data = self._post(
            "/api/generate",
            {"model": model or self.generation_model, "prompt": prompt, "stream": False},
        )
        if data is None:
            return None
        text = data.get("response")
        if not isinstance(text, str):
            logger.warning("Generation response has no text")
            return None
        return text

    def top_logprobs(
        self, prompt: str, model: Optional[str] = None, k: Optional[int] = None
    ) -> Optional[List[TokenLogprob]]:
        payload = {
            "model": model or self.rerank_model,
            "messages": [{"role": "user", "content": prompt}],
            "stream": False,
            "logprobs": True,
            "top_logprobs": k or self.top_k,
            "options": {"temperature": 0.0, "num_predict": 1},
        }
        data = self._post("/api/chat", payload)
        if data is None:
            return None

        positions = data.get("logprobs")
        if not isinstance(positions, list) or not positions or not isinstance(positions[0], dict):
            logger.warning("Chat response carried no logprobs")
            return None
        ranked = positions[0].get("top_logprobs")
        if not isinstance(ranked, list):
            logger.warning("Chat response carried no top_logprobs")
            return None

        tokens = []
        for item in ranked:
            try:
                tokens.append(TokenLogprob(token=str(item["token"]), logprob=float(item["logprob"])))
            except (KeyError, TypeError, ValueError):
                logger.debug(f"Skipping malformed logprob item: {item!r}")
        return tokens

    def close(self) -> None:
        self.client.close()
