import hashlib
import math
import os
import re
import sys
from typing import Callable, List, Optional, Sequence

import pytest

# Add src directory to Python path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), "src"))

from retrieval_eval.inference import InferenceBackend, TokenLogprob  # noqa: E402
from retrieval_eval.models import Candidate, Channel, Entry  # noqa: E402
from retrieval_eval.retrieval import STOP_WORDS  # noqa: E402

STUB_DIMENSION = 32

_TOKEN = re.compile(r"[a-z0-9]+")
_RERANK_PROMPT = re.compile(r"Query: (?P<query>.*?)\n\nDocument: (?P<document>.*)", re.DOTALL)


def content_tokens(text: str) -> set:
    return {t for t in _TOKEN.findall(text.lower()) if len(t) >= 3 and t not in STOP_WORDS}


def hashed_embedding(text: str, dimension: int = STUB_DIMENSION) -> List[float]:
    """Bag-of-words vector: each token adds 1.0 to a hashed bucket, L2-normalized."""
    vector = [0.0] * dimension
    for token in content_tokens(text):
        bucket = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % (dimension - 1)
        vector[bucket] += 1.0
    # Reserved bucket keeps every vector non-zero
    vector[dimension - 1] = 0.1
    norm = math.sqrt(sum(v * v for v in vector))
    return [v / norm for v in vector]


class StubBackend(InferenceBackend):
    """
    Deterministic inference oracle.

    Embeddings are hashed bag-of-words vectors. The reranker answers "yes"
    with high probability when the query and document share a content word
    and "no" otherwise. Generation replays ``responses`` in order.
    """

    def __init__(
        self,
        dimension: int = STUB_DIMENSION,
        responses: Optional[Sequence[Optional[str]]] = None,
        judge: Optional[Callable[[str, str], bool]] = None,
    ):
        self.dimension = dimension
        self.responses = list(responses or [])
        self.judge = judge or (lambda query, document: bool(content_tokens(query) & content_tokens(document)))
        self.fail_embed = False
        self.fail_logprobs = False
        self.raise_logprobs = False
        self.embed_calls = 0
        self.generate_calls: List[str] = []
        self.logprob_calls = 0

    def embed(self, texts):
        self.embed_calls += 1
        if self.fail_embed:
            return None
        return [hashed_embedding(text, self.dimension) for text in texts]

    def generate(self, prompt, model=None):
        self.generate_calls.append(prompt)
        if not self.responses:
            return ""
        return self.responses.pop(0)

    def top_logprobs(self, prompt, model=None, k=None):
        self.logprob_calls += 1
        if self.raise_logprobs:
            raise RuntimeError("model crashed")
        if self.fail_logprobs:
            return None
        match = _RERANK_PROMPT.search(prompt)
        relevant = bool(match) and self.judge(match.group("query"), match.group("document"))
        if relevant:
            return [TokenLogprob("yes", -0.05), TokenLogprob("no", -3.0), TokenLogprob("Yes", -4.0)]
        return [TokenLogprob("no", -0.02), TokenLogprob("No", -3.9), TokenLogprob("yes", -4.5)]


def make_entry(entry_id: int, cluster_id: int = 1, content: Optional[str] = None, created_at: Optional[str] = None):
    return Entry(
        content=content or f"entry {entry_id}",
        cluster_id=cluster_id,
        id=entry_id,
        created_at=created_at or f"2024-01-01 00:00:{entry_id % 60:02d}",
    )


def make_candidates(ids: Sequence[int], channel: Channel, clusters: Optional[dict] = None) -> List[Candidate]:
    clusters = clusters or {}
    return [
        Candidate(entry=make_entry(entry_id, clusters.get(entry_id, 1)), channels=(channel,), ranks={channel: rank})
        for rank, entry_id in enumerate(ids)
    ]


@pytest.fixture
def stub_backend():
    return StubBackend()


@pytest.fixture
def entry_store():
    """Ephemeral sqlite-vec store sized for the stub embeddings."""
    from retrieval_eval.errors import StoreUnavailableError
    from retrieval_eval.storage import SQLITE_VEC_AVAILABLE, EntryStore

    if not SQLITE_VEC_AVAILABLE:
        pytest.skip("sqlite-vec not installed")
    try:
        store = EntryStore(embedding_dimension=STUB_DIMENSION)
    except StoreUnavailableError as e:
        pytest.skip(f"sqlite-vec extension cannot be loaded: {e}")
    yield store
    store.close()
