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
Keyword extraction for the full-text channel.

Pure function turning a natural-language query into the de-duplicated term
list that the keyword channel OR-joins into a full-text match.
"""

from __future__ import annotations

import re

# English stop words discarded before full-text matching
STOP_WORDS: frozenset[str] = frozenset(
    """
    a an the is are was were be been being have has had do does did
    will would shall should may might can could of in to for on with
    at by from as into about between through during before after
    and or but not no nor so yet both either neither each every all
    any few more most other some such this that these those
    i me my we our you your he him his she her it its they them their
    what which who whom how when where why if then else
    just also very too quite rather really
    """.split()
)

MIN_KEYWORD_LENGTH = 3

# Punctuation is deleted, not treated as a separator: "on-write" -> "onwrite"
_PUNCTUATION_PATTERN = re.compile(r"[^\w\s]")


def extract_query_keywords(query: str) -> list[str]:
    """
    Extract full-text keywords from a search query.

    Algorithm:
        1. Lowercase and delete punctuation
        2. Split on whitespace
        3. Drop tokens shorter than 3 characters and stop words
        4. Return unique keywords in first-seen order

    Args:
        query: User's search query

    Returns:
        List of normalized keywords (possibly empty)
    """
    tokens = _PUNCTUATION_PATTERN.sub("", query.lower()).split()

    keywords = [token for token in tokens if len(token) >= MIN_KEYWORD_LENGTH and token not in STOP_WORDS]

    # Deduplicate while preserving order
    seen: set[str] = set()
    unique_keywords: list[str] = []
    for kw in keywords:
        if kw not in seen:
            seen.add(kw)
            unique_keywords.append(kw)

    return unique_keywords


def build_match_query(keywords: list[str]) -> str:
    """Disjunctive match expression, e.g. ``sqlite OR database``."""
    return " OR ".join(keywords)
