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
Subject-predicate-object extraction for the structured channel.
"""

import logging
from typing import List, Optional, Tuple

from ..inference import InferenceBackend
from ..models import Entry, Relation
from ..storage import SearchStore

logger = logging.getLogger(__name__)

MAX_TRIPLES_PER_ENTRY = 8

EXTRACTION_PROMPT = (
    "Extract the factual relations stated in the text below. Write one relation per line "
    "in the form: subject | predicate | object. Use short noun phrases for subject and object "
    "and a short verb phrase for the predicate. No numbering. No other text.\n\nText: {text}"
)


def parse_triples(text: str) -> List[Tuple[str, str, str]]:
    """Parse ``subject | predicate | object`` lines, dropping anything else."""
    triples = []
    for line in text.splitlines():
        line = line.strip().lstrip("-*").strip()
        parts = [part.strip() for part in line.split("|")]
        if len(parts) != 3 or not all(parts):
            continue
        triples.append((parts[0], parts[1], parts[2]))
    return triples[:MAX_TRIPLES_PER_ENTRY]


class RelationExtractor:
    """Asks the generation model for triples and stores them."""

    def __init__(self, backend: InferenceBackend, model: Optional[str] = None):
        self.backend = backend
        self.model = model

    def extract(self, entry: Entry) -> List[Tuple[str, str, str]]:
        text = self.backend.generate(EXTRACTION_PROMPT.format(text=entry.content), model=self.model)
        if text is None:
            logger.warning(f"Triple extraction failed for entry {entry.id}")
            return []
        return parse_triples(text)

    def extract_into(self, store: SearchStore, entry: Entry) -> List[Relation]:
        relations = [
            store.add_relation(subject, predicate, obj, source_entry_id=entry.id)
            for subject, predicate, obj in self.extract(entry)
        ]
        logger.debug(f"Entry {entry.id}: {len(relations)} triples")
        return relations
