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

from .channels import KeywordChannel, StructuredChannel, VectorChannel
from .fusion import count_multi_channel, fuse_rrf, overlap, rrf_score, rrf_scores, union_merge
from .keywords import STOP_WORDS, extract_query_keywords
from .rerank import CrossEncoderReranker, extract_relevance_score, sort_by_rerank

__all__ = [
    "STOP_WORDS",
    "CrossEncoderReranker",
    "KeywordChannel",
    "StructuredChannel",
    "VectorChannel",
    "count_multi_channel",
    "extract_query_keywords",
    "extract_relevance_score",
    "fuse_rrf",
    "overlap",
    "rrf_score",
    "rrf_scores",
    "sort_by_rerank",
    "union_merge",
]
