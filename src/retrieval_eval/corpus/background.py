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
Append-only cache of generated background notes.

Background notes are expensive to generate, so they are kept in a plain
text file (one note per line) that is shared across runs and only ever
grows. Each generated batch is flushed as soon as it arrives, so an
interrupted run loses at most the batch in flight.
"""

import logging
import os
from pathlib import Path
from typing import List, Optional, Sequence

from ..inference import InferenceBackend
from .seeds import load_background_topics

logger = logging.getLogger(__name__)

NOTES_PER_TOPIC = 20
TOPIC_GROWTH = 5
MIN_NOTE_LENGTH = 10

GENERATION_PROMPT = (
    "Generate exactly {count} short factual notes (1-2 sentences each) about "
    "different aspects of {topic}. One note per line. No numbering. No blank lines. "
    "No introductory text. Start immediately with the first note."
)


def parse_notes(text: str) -> List[str]:
    """Split a generation into notes, dropping blank and too-short lines."""
    notes = []
    for line in text.splitlines():
        line = line.strip()
        if len(line) >= MIN_NOTE_LENGTH:
            notes.append(line)
    return notes


class BackgroundEntryCache:
    """File-backed background note cache with ``ensure(n)`` and ``read(n)``."""

    def __init__(
        self,
        path: str,
        backend: InferenceBackend,
        topics: Optional[Sequence[str]] = None,
        model: Optional[str] = None,
    ):
        self.path = Path(path)
        self.backend = backend
        self.topics = list(topics) if topics is not None else load_background_topics()
        self.model = model
        if not self.topics:
            raise ValueError("Background cache needs at least one topic")

    def size(self) -> int:
        if not self.path.exists():
            return 0
        with self.path.open(encoding="utf-8") as fh:
            return sum(1 for line in fh if line.strip())

    def read(self, n: int) -> List[str]:
        """First ``n`` cached notes (fewer if the cache is smaller)."""
        if n <= 0 or not self.path.exists():
            return []
        notes = []
        with self.path.open(encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if not line:
                    continue
                notes.append(line)
                if len(notes) >= n:
                    break
        return notes

    def ensure(self, n: int) -> int:
        """
        Grow the cache to at least ``n`` notes.

        Topic rotation resumes where the previous growth stopped. Once every
        topic has been used, each topic is asked for more notes per request.
        Returns the cache size afterwards, which can be short of ``n`` when
        the model stops producing usable notes.
        """
        have = self.size()
        if have >= n:
            return have

        to_generate = n - have
        logger.info(f"Background cache has {have} notes, generating {to_generate} more")
        self.path.parent.mkdir(parents=True, exist_ok=True)

        generated = 0
        topic_idx = have // NOTES_PER_TOPIC
        per_topic = NOTES_PER_TOPIC
        barren_topics = 0

        while generated < to_generate:
            topic = self.topics[topic_idx % len(self.topics)]
            topic_idx += 1

            request = min(per_topic, to_generate - generated)
            text = self.backend.generate(GENERATION_PROMPT.format(count=request, topic=topic), model=self.model)
            batch = parse_notes(text or "")[:request]
            if text is None:
                logger.warning(f"Background generation failed for topic {topic!r}")

            if batch:
                self._append(batch)
                generated += len(batch)
                barren_topics = 0
                logger.info(f"Generated {generated}/{to_generate} background notes")
            else:
                barren_topics += 1
                if barren_topics >= len(self.topics):
                    logger.warning(
                        f"No usable notes from a full pass over {len(self.topics)} topics; "
                        f"stopping with {have + generated} cached"
                    )
                    break

            if generated < to_generate and topic_idx % len(self.topics) == 0:
                per_topic += TOPIC_GROWTH

        total = have + generated
        logger.info(f"Background cache complete: {total} notes")
        return total

    def _append(self, notes: Sequence[str]) -> None:
        with self.path.open("a", encoding="utf-8") as fh:
            for note in notes:
                fh.write(note.replace("\n", " ") + "\n")
            fh.flush()
            os.fsync(fh.fileno())
