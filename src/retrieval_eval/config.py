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
Retrieval evaluation configuration using Pydantic Settings.

Values are read from environment variables (and an optional .env file) the
first time the ``settings`` proxy is touched, so command line overrides can
be exported before anything is loaded.
"""

import logging
import os
from typing import List, Optional

from platformdirs import user_cache_dir
from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_SCALES = "10,100,1000,10000"
DEFAULT_SWEEP = "0.30,0.35,0.40,0.45,0.50,0.55,0.60,0.65"


def parse_number_list(value: str, cast=float) -> list:
    """Parse a comma-separated list of numbers, ignoring blanks."""
    items = [part.strip() for part in str(value).split(",")]
    return [cast(part) for part in items if part]


def get_default_cache_path() -> str:
    """Location of the background-entry cache shared across runs."""
    return os.path.join(user_cache_dir("retrieval-eval"), "background-entries.txt")


# =============================================================================
# Settings Models
# =============================================================================

class InferenceSettings(BaseSettings):
    """Inference service (Ollama) connection and model selection."""

    model_config = SettingsConfigDict(
        env_prefix='RETRIEVAL_EVAL_',
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=False,
        extra='ignore',
        populate_by_name=True
    )

    ollama_host: str = Field(
        default="http://localhost:11434",
        validation_alias=AliasChoices('RETRIEVAL_EVAL_OLLAMA_HOST', 'OLLAMA_HOST', 'ollama_host'),
        description="Base URL of the Ollama server"
    )

    embedding_model: str = Field(default="nomic-embed-text", description="Model used for /api/embed")
    generation_model: str = Field(default="gemma3:1b", description="Model used for background notes")
    rerank_model: str = Field(default="gemma3:1b", description="Model used for yes/no relevance judgments")
    paraphrase_model: str = Field(default="gemma3:1b", description="Model used for paraphrase scaling")

    embedding_dimension: int = Field(
        default=768,
        ge=2,
        le=8192,
        description="Expected length of every embedding vector"
    )

    request_timeout: float = Field(default=300.0, ge=1.0, description="Read timeout per request (seconds)")
    connect_timeout: float = Field(default=30.0, ge=1.0, description="Connect timeout per request (seconds)")
    max_retries: int = Field(default=3, ge=1, le=10)
    top_logprobs: int = Field(default=10, ge=2, le=20)

    @field_validator('ollama_host')
    @classmethod
    def normalize_host(cls, v: str) -> str:
        # OLLAMA_HOST may be a bare host:port
        v = v.strip().rstrip('/')
        if '://' not in v:
            v = f"http://{v}"
        return v


class ExperimentSettings(BaseSettings):
    """Experiment parameters shared by every command."""

    model_config = SettingsConfigDict(
        env_prefix='RETRIEVAL_EVAL_',
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=False,
        extra='ignore'
    )

    results_dir: str = Field(default="results", description="Directory for TSV, CSV and summary output")

    vector_threshold: Optional[float] = Field(
        default=0.5,
        gt=0.0,
        le=2.0,
        description="Cosine distance cutoff for the vector channel; unset disables filtering"
    )

    rrf_k: int = Field(default=60, ge=1, description="Reciprocal rank fusion smoothing constant")
    top_n: int = Field(default=10, ge=1, description="Size of the fused and reranked result lists")
    rerank_candidates: int = Field(default=20, ge=1, description="Fused candidates sent to the reranker")
    channel_limit: int = Field(default=20, ge=1, description="Results fetched per channel")
    embed_batch_size: int = Field(default=20, ge=1, le=512)

    background_cache: str = Field(
        default_factory=get_default_cache_path,
        description="Append-only cache of generated background notes"
    )

    scales: str = Field(default=DEFAULT_SCALES, description="Comma-separated corpus sizes for sensitivity runs")
    sweep_thresholds: str = Field(default=DEFAULT_SWEEP, description="Comma-separated distance cutoffs to sweep")

    @field_validator('vector_threshold', mode='before')
    @classmethod
    def parse_disabled_threshold(cls, v):
        if isinstance(v, str) and v.strip().lower() in ('', 'none', 'off'):
            return None
        return v

    @field_validator('scales')
    @classmethod
    def validate_scales(cls, v: str) -> str:
        values = parse_number_list(v, int)
        if not values or any(s <= 0 for s in values):
            raise ValueError(f"scales must be positive integers, got {v!r}")
        return v

    @field_validator('sweep_thresholds')
    @classmethod
    def validate_sweep(cls, v: str) -> str:
        values = parse_number_list(v)
        if not values or any(t <= 0 or t > 2 for t in values):
            raise ValueError(f"sweep thresholds must lie in (0, 2], got {v!r}")
        return v

    @model_validator(mode='after')
    def validate_candidate_pool(self) -> 'ExperimentSettings':
        if self.top_n > self.rerank_candidates:
            raise ValueError(
                f"top_n ({self.top_n}) cannot exceed rerank_candidates ({self.rerank_candidates})"
            )
        return self

    @property
    def scale_list(self) -> List[int]:
        return parse_number_list(self.scales, int)

    @property
    def sweep_list(self) -> List[float]:
        return sorted(parse_number_list(self.sweep_thresholds))


# =============================================================================
# Main Settings Class
# =============================================================================

class Settings(BaseSettings):
    """
    Retrieval evaluation settings.

    Combines the inference and experiment sections into one validated object.
    """

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=False,
        extra='ignore',
        validate_default=True
    )

    inference: InferenceSettings = Field(default_factory=InferenceSettings)
    experiment: ExperimentSettings = Field(default_factory=ExperimentSettings)

    def log_configuration(self):
        """Log current configuration."""
        logger.info("=" * 80)
        logger.info("Retrieval Evaluation Configuration")
        logger.info("=" * 80)
        logger.info(f"Ollama: {self.inference.ollama_host}")
        logger.info(
            f"Models: embed={self.inference.embedding_model} "
            f"rerank={self.inference.rerank_model} generate={self.inference.generation_model}"
        )
        logger.info(f"Embedding dimension: {self.inference.embedding_dimension}")
        logger.info(f"Vector threshold: {self.experiment.vector_threshold}")
        logger.info(
            f"RRF k={self.experiment.rrf_k}, candidates={self.experiment.rerank_candidates} "
            f"-> top {self.experiment.top_n}"
        )
        logger.info(f"Results: {self.experiment.results_dir}")
        logger.info(f"Background cache: {self.experiment.background_cache}")
        logger.info("=" * 80)


# =============================================================================
# Global Settings Instance
# =============================================================================

class _SettingsProxy:
    """
    Lazy settings proxy that defers Settings instantiation until first access.

    Command line flags are exported to the environment before the first
    attribute access, so they take effect without re-reading the module.
    """
    _instance: Optional[Settings] = None

    def __getattr__(self, name: str):
        if self._instance is None:
            self._instance = Settings()
            self._instance.log_configuration()
        return getattr(self._instance, name)

    def reset(self) -> None:
        """Drop the cached instance so the next access re-reads the environment."""
        self._instance = None


settings = _SettingsProxy()
