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
Inference oracle interface.

The harness treats every model as a black box: texts in, vectors out, or a
prompt in and text (or a first-token probability distribution) out. Tests
inject a deterministic implementation of this interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Sequence


@dataclass(frozen=True)
class TokenLogprob:
    """One candidate token at a generation position with its log-probability."""
    token: str
    logprob: float


class InferenceBackend(ABC):
    """Abstract base class for embedding and generation services."""

    @abstractmethod
    def embed(self, texts: Sequence[str]) -> Optional[List[List[float]]]:
        """
        Embed a batch of texts.

        Returns:
            One vector per input text, or None when the request failed or the
            response was malformed.
        """
        pass

    @abstractmethod
    def generate(self, prompt: str, model: Optional[str] = None) -> Optional[str]:
        """Complete ``prompt``. Returns None on failure."""
        pass

    @abstractmethod
    def top_logprobs(
        self, prompt: str, model: Optional[str] = None, k: Optional[int] = None
    ) -> Optional[List[TokenLogprob]]:
        """
        Top-k token log-probabilities at the first generated position,
        ordered by descending probability. Returns None on failure.
        """
        pass

    def ping(self) -> None:
        """Raise InferenceUnavailableError if the service cannot be reached."""
        pass

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
