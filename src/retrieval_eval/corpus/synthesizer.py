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
Corpus synthesizer.

Builds the labeled test corpus in an entry store and records entry-to-cluster
ground truth in a ClusterMap. The corpus can be scaled two ways: paraphrasing
every seed entry (same cluster, new vocabulary) or filling up to a target
size with background notes from the shared cache.

A failed embedding request skips its batch instead of failing the run; the
SynthesisReport carries the skip counts so a short corpus is never mistaken
for a complete one.
"""

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Sequence

from ..inference import InferenceBackend
from ..models import BACKGROUND_CLUSTER, NOISE_CLUSTER, ClusterMap, Entry
from ..storage import SearchStore
from .background import BackgroundEntryCache

logger = logging.getLogger(__name__)

PARAPHRASE_PROMPT = (
    "Rewrite the following text in different words while preserving its exact meaning. "
    "Use different vocabulary and sentence structure. Do not add new information or remove "
    "existing information. Return only the rewritten text, nothing else. This is variant "
    "{variant}, so make it distinct from other rewrites.\n\nText: {text}"
)

_WHITESPACE = re.compile(r"\s+")


def batched(items: Sequence, size: int) -> Iterator[Sequence]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def select_base_entries(seeds: Sequence[Entry], scale: int) -> List[Entry]:
    """
    Base entries used for a sensitivity run at ``scale`` entries.

    Tiny scales take one entry per labeled cluster, mid scales every labeled
    entry without noise, and larger scales the whole seed corpus. Every
    labeled cluster is always kept, so the corpus can exceed ``scale``.
    """
    if scale <= 10:
        seen = set()
        selected = []
        for entry in seeds:
            if entry.cluster_id > NOISE_CLUSTER and entry.cluster_id not in seen:
                seen.add(entry.cluster_id)
                selected.append(entry)
        return selected
    if scale <= 100:
        return [entry for entry in seeds if entry.cluster_id > NOISE_CLUSTER]
    return list(seeds)


@dataclass
class SynthesisReport:
    """Final counts of one synthesis run."""
    target: Optional[int] = None
    base_inserted: int = 0
    paraphrases_inserted: int = 0
    background_inserted: int = 0
    skipped_batches: int = 0
    skipped_entries: int = 0
    skipped_paraphrases: int = 0
    background_shortfall: int = 0

    @property
    def total(self) -> int:
        return self.base_inserted + self.paraphrases_inserted + self.background_inserted

    @property
    def complete(self) -> bool:
        return not (self.skipped_entries or self.skipped_paraphrases or self.background_shortfall)

    def log_summary(self) -> None:
        logger.info(
            f"Corpus: {self.total} entries (base {self.base_inserted}, "
            f"paraphrased {self.paraphrases_inserted}, background {self.background_inserted})"
        )
        if not self.complete:
            logger.warning(
                f"Corpus is partial: {self.skipped_batches} embedding batches skipped "
                f"({self.skipped_entries} entries), {self.skipped_paraphrases} paraphrases skipped, "
                f"background short by {self.background_shortfall}"
            )


class CorpusSynthesizer:
    """Seeds an entry store and records cluster ground truth."""

    def __init__(
        self,
        store: SearchStore,
        backend: InferenceBackend,
        batch_size: int = 20,
        paraphrase_model: Optional[str] = None,
    ):
        self.store = store
        self.backend = backend
        self.batch_size = batch_size
        self.paraphrase_model = paraphrase_model
        self.cluster_map = ClusterMap()

    def insert(self, entries: Sequence[Entry], report: SynthesisReport) -> List[Entry]:
        """Embed and insert ``entries`` in batches, skipping failed batches."""
        stored: List[Entry] = []
        for batch in batched(list(entries), self.batch_size):
            embeddings = self.backend.embed([entry.content for entry in batch])
            if embeddings is None:
                logger.warning(f"Embedding failed for a batch of {len(batch)} entries, skipping it")
                report.skipped_batches += 1
                report.skipped_entries += len(batch)
                continue
            try:
                inserted = self.store.insert_batch(batch, embeddings)
            except ValueError as e:
                logger.warning(f"Rejected embeddings for a batch of {len(batch)} entries, skipping it: {e}")
                report.skipped_batches += 1
                report.skipped_entries += len(batch)
                continue
            for entry in inserted:
                self.cluster_map.assign(entry.id, entry.cluster_id)
                stored.append(entry)
        return stored

    def seed_base(self, seeds: Sequence[Entry], report: SynthesisReport) -> List[Entry]:
        logger.info(f"Seeding {len(seeds)} base entries")
        stored = self.insert(seeds, report)
        report.base_inserted += len(stored)
        return stored

    def paraphrase(self, entry: Entry, variant: int) -> Optional[Entry]:
        """One paraphrase of ``entry`` keeping its cluster and type."""
        prompt = PARAPHRASE_PROMPT.format(variant=variant, text=entry.content)
        text = self.backend.generate(prompt, model=self.paraphrase_model)
        text = _WHITESPACE.sub(" ", text or "").strip()
        if not text:
            return None
        return Entry(content=text, cluster_id=entry.cluster_id, entry_type=entry.entry_type)

    def seed_paraphrases(self, seeds: Sequence[Entry], multiplier: int, report: SynthesisReport) -> List[Entry]:
        """Insert ``multiplier - 1`` paraphrases of every seed entry."""
        variants = multiplier - 1
        if variants <= 0:
            return []
        logger.info(f"Generating {variants} paraphrases for each of {len(seeds)} entries")

        stored: List[Entry] = []
        pending: List[Entry] = []
        for index, entry in enumerate(seeds, start=1):
            for variant in range(1, variants + 1):
                rewritten = self.paraphrase(entry, variant)
                if rewritten is None:
                    logger.warning(f"Empty paraphrase {variant} for seed {index}, skipping")
                    report.skipped_paraphrases += 1
                    continue
                pending.append(rewritten)
                if len(pending) >= self.batch_size:
                    stored.extend(self.insert(pending, report))
                    pending = []
            logger.debug(f"Paraphrased {index}/{len(seeds)} seeds")
        if pending:
            stored.extend(self.insert(pending, report))

        report.paraphrases_inserted += len(stored)
        return stored

    def seed_background(self, cache: BackgroundEntryCache, count: int, report: SynthesisReport) -> List[Entry]:
        """Insert ``count`` background notes, growing the cache first if needed."""
        if count <= 0:
            return []
        cache.ensure(count)
        notes = cache.read(count)
        if len(notes) < count:
            logger.warning(f"Background cache holds {len(notes)} of {count} requested notes")
            report.background_shortfall += count - len(notes)

        logger.info(f"Seeding {len(notes)} background entries")
        entries = [Entry(content=note, cluster_id=BACKGROUND_CLUSTER) for note in notes]
        stored = self.insert(entries, report)
        report.background_inserted += len(stored)
        return stored

    def build(
        self,
        seeds: Iterable[Entry],
        target_size: Optional[int] = None,
        multiplier: int = 1,
        cache: Optional[BackgroundEntryCache] = None,
    ) -> SynthesisReport:
        """
        Seed the base corpus, optionally paraphrase it, then fill up to
        ``target_size`` with background notes when a cache is given.
        """
        seeds = list(seeds)
        report = SynthesisReport(target=target_size)
        self.seed_base(seeds, report)
        if multiplier > 1:
            self.seed_paraphrases(seeds, multiplier, report)
        if target_size is not None and report.total < target_size:
            if cache is None:
                logger.warning(f"Corpus has {report.total} entries, no background cache to reach {target_size}")
                report.background_shortfall += target_size - report.total
            else:
                self.seed_background(cache, target_size - report.total, report)
        report.log_summary()
        return report

    def build_for_scale(
        self, seeds: Sequence[Entry], scale: int, cache: Optional[BackgroundEntryCache]
    ) -> SynthesisReport:
        """Corpus of ``scale`` entries for the sensitivity analyzer."""
        return self.build(select_base_entries(seeds, scale), target_size=scale, cache=cache)
