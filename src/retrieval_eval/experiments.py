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
Experiment runners behind the command line.

Every run checks the query set against the seed corpus labels, creates its
own ephemeral store, seeds it and then evaluates queries one at a time.
Degraded items (failed batches, queries whose relevant clusters were lost,
failed rerank calls) are counted and reported; only setup errors abort a run.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .analysis import (
    ScaleAnalysis,
    StabilityResult,
    analyze_scale,
    collect_distances,
    cross_scale_stability,
    largest_change,
    score_distribution,
    score_ranking,
)
from .config import Settings
from .corpus import (
    BackgroundEntryCache,
    CorpusSynthesizer,
    RelationExtractor,
    SynthesisReport,
    load_channel_isolation_set,
    load_seed_corpus,
)
from .inference import InferenceBackend
from .models import Candidate, ClusterMap, Query, QueryType
from .queries import QuerySet
from .reporting import (
    ComparisonRow,
    exclusive_hits,
    metadata_block,
    markdown_table,
    render_channel_table,
    render_comparison,
    render_example,
    render_scale_section,
    render_skips,
    render_stability,
    render_tsv,
    ranked_rows,
    write_distance_csv,
    write_ranked_tsv,
    write_relations_tsv,
    write_summary,
)
from .retrieval import (
    CrossEncoderReranker,
    KeywordChannel,
    StructuredChannel,
    VectorChannel,
    count_multi_channel,
    fuse_rrf,
    overlap,
    union_merge,
)
from .storage import EntryStore, SearchStore

logger = logging.getLogger(__name__)


@dataclass
class QueryRun:
    """Every ranking produced for one query."""
    query: Query
    keyword: List[Candidate]
    vector: List[Candidate]
    fused: List[Candidate]
    union: List[Candidate]
    scored: List[Candidate] = field(default_factory=list)
    reranked: List[Candidate] = field(default_factory=list)
    embedding_failed: bool = False


@dataclass
class RunOutcome:
    """What a command produced, for the CLI to report."""
    results_dir: Path
    summary_path: Path
    reports: Dict[str, SynthesisReport] = field(default_factory=dict)
    skipped: Dict[str, int] = field(default_factory=dict)
    stability: Optional[StabilityResult] = None

    @property
    def total_skipped(self) -> int:
        return sum(self.skipped.values())


def _merge_counts(target: Dict[str, int], extra: Dict[str, int]) -> None:
    for key, value in extra.items():
        target[key] = target.get(key, 0) + value


def _report_skips(report: SynthesisReport) -> Dict[str, int]:
    return {
        "skipped embedding batches": report.skipped_batches,
        "skipped entries": report.skipped_entries,
        "skipped paraphrases": report.skipped_paraphrases,
        "background shortfall": report.background_shortfall,
    }


class ExperimentRunner:
    """
    Runs the seeding, channel, fusion, rerank and sensitivity experiments.

    Args:
        settings: Validated settings (inference and experiment sections)
        backend: Inference oracle used for embeddings and generation
        query_set: Queries with relevant clusters; the packaged set when None
        store_factory: Creates a fresh empty store per run
        results_dir: Overrides ``settings.experiment.results_dir``
    """

    def __init__(
        self,
        settings: Settings,
        backend: InferenceBackend,
        query_set: Optional[QuerySet] = None,
        store_factory: Optional[Callable[[], SearchStore]] = None,
        results_dir: Optional[str] = None,
    ):
        self.settings = settings
        self.inference = settings.inference
        self.experiment = settings.experiment
        self.backend = backend
        self.query_set = query_set if query_set is not None else QuerySet.load()
        self.store_factory = store_factory or self._default_store
        self.results_dir = Path(results_dir or self.experiment.results_dir)

    def _default_store(self) -> SearchStore:
        return EntryStore(embedding_dimension=self.inference.embedding_dimension)

    # =========================================================================
    # Shared Steps
    # =========================================================================

    def open_store(self) -> SearchStore:
        return self.store_factory()

    def background_cache(self) -> BackgroundEntryCache:
        return BackgroundEntryCache(
            self.experiment.background_cache, self.backend, model=self.inference.generation_model
        )

    def check_ground_truth(self) -> None:
        """Fail before any seeding when queries name clusters the seed corpus lacks."""
        self.query_set.validate_against(entry.cluster_id for entry in load_seed_corpus())

    def corpus_skips(self, report: SynthesisReport, cluster_map: ClusterMap) -> Dict[str, int]:
        """Skip counts of one synthesis, including queries left without relevant entries."""
        skips = _report_skips(report)
        unanswerable = self.query_set.unanswerable(cluster_map)
        if unanswerable:
            logger.warning(
                f"{len(unanswerable)} queries lost every relevant entry to skipped batches: "
                f"{', '.join(unanswerable)}"
            )
        skips["queries without relevant entries"] = len(unanswerable)
        return skips

    def build_corpus(
        self, store: SearchStore, multiplier: int = 1, size: Optional[int] = None
    ) -> Tuple[SynthesisReport, ClusterMap]:
        """Seed ``store`` and return the synthesis report with its cluster map."""
        synthesizer = CorpusSynthesizer(
            store,
            self.backend,
            batch_size=self.experiment.embed_batch_size,
            paraphrase_model=self.inference.paraphrase_model,
        )
        cache = self.background_cache() if size is not None else None
        report = synthesizer.build(load_seed_corpus(), target_size=size, multiplier=multiplier, cache=cache)
        return report, synthesizer.cluster_map

    def channels(self, store: SearchStore) -> Tuple[KeywordChannel, VectorChannel]:
        limit = self.experiment.channel_limit
        return (
            KeywordChannel(store, limit=limit),
            VectorChannel(store, self.backend, threshold=self.experiment.vector_threshold, limit=limit),
        )

    def reranker(self) -> CrossEncoderReranker:
        return CrossEncoderReranker(
            self.backend,
            model=self.inference.rerank_model,
            candidates=self.experiment.rerank_candidates,
            top_n=self.experiment.top_n,
        )

    def evaluate_query(
        self,
        query: Query,
        keyword_channel: KeywordChannel,
        vector_channel: VectorChannel,
        reranker: Optional[CrossEncoderReranker] = None,
    ) -> QueryRun:
        """Run one query through both channels, fusion and (optionally) the reranker."""
        keyword = keyword_channel.search(query.text)
        embedding = vector_channel.embed_query(query.text)
        vector = [] if embedding is None else vector_channel.search(query.text, embedding=embedding)

        fused = fuse_rrf([keyword, vector], k=self.experiment.rrf_k, limit=self.experiment.rerank_candidates)
        run = QueryRun(
            query=query,
            keyword=keyword,
            vector=vector,
            fused=fused,
            union=union_merge(keyword, vector, limit=self.experiment.top_n),
            embedding_failed=embedding is None,
        )
        if reranker is not None:
            run.scored = reranker.score_all(query.text, fused)
            run.reranked = reranker.rerank_scored(run.scored)
        return run

    def evaluate_all(
        self, store: SearchStore, reranker: Optional[CrossEncoderReranker] = None
    ) -> List[QueryRun]:
        keyword_channel, vector_channel = self.channels(store)
        runs = []
        for index, query in enumerate(self.query_set, start=1):
            logger.info(f"[{index}/{len(self.query_set)}] {query.id} ({query.query_type.value}): {query.text}")
            runs.append(self.evaluate_query(query, keyword_channel, vector_channel, reranker))
        return runs

    def _meta(self, **extra) -> Dict[str, object]:
        meta: Dict[str, object] = {
            "Embedding model": self.inference.embedding_model,
            "Vector threshold": self.experiment.vector_threshold or "none",
            "RRF k": self.experiment.rrf_k,
            "Top N": self.experiment.top_n,
        }
        meta.update(extra)
        return meta

    @staticmethod
    def _scale_labels(multiplier: int, sizes: Optional[Sequence[int]]) -> List[Tuple[str, int, Optional[int]]]:
        if sizes:
            return [(f"size-{size}", 1, size) for size in sizes]
        return [(f"scale-{multiplier}", multiplier, None)]

    # =========================================================================
    # Seed
    # =========================================================================

    def run_seed(self, multiplier: int = 1, size: Optional[int] = None) -> RunOutcome:
        """Build a corpus once and record its cluster map and counts."""
        out_dir = self.results_dir / "seed"
        self.check_ground_truth()
        with self.open_store() as store:
            report, cluster_map = self.build_corpus(store, multiplier=multiplier, size=size)
            cluster_map.save(out_dir / "cluster-map.tsv")
            counts = cluster_map.counts()

        lines = [metadata_block("Corpus seeding", self._meta(**{"Paraphrase scale": multiplier, "Target size": size or "-"}))]
        lines.append("## Entries\n\n" + markdown_table(
            ["Source", "Inserted"],
            [
                ["Base", report.base_inserted],
                ["Paraphrases", report.paraphrases_inserted],
                ["Background", report.background_inserted],
                ["Total", report.total],
            ],
        ))
        lines.append("## Clusters\n\n" + markdown_table(
            ["Cluster", "Entries"], [[cluster, count] for cluster, count in sorted(counts.items())]
        ))
        skips = self.corpus_skips(report, cluster_map)
        lines.append(render_skips(skips))

        summary_path = out_dir / "summary.md"
        write_summary(summary_path, "\n".join(lines))
        return RunOutcome(out_dir, summary_path, reports={"seed": report}, skipped=skips)

    # =========================================================================
    # Channel Isolation
    # =========================================================================

    def run_channels(self, extract_relations: bool = False) -> RunOutcome:
        """
        Exercise the structured, keyword and vector channels in isolation.

        Uses the small isolation corpus: every entry is its own cluster so a hit
        means an expected entry appeared in a channel's results.
        """
        isolation_set = load_channel_isolation_set()
        out_dir = self.results_dir / "channels"
        skips = {"skipped embedding batches": 0, "failed query embeddings": 0}
        hits: Dict[str, Dict[str, bool]] = {}
        names = ["structured", "keyword", "vector", "union"]

        with self.open_store() as store:
            report = SynthesisReport()
            synthesizer = CorpusSynthesizer(store, self.backend, batch_size=self.experiment.embed_batch_size)
            stored = synthesizer.insert(isolation_set.entries, report)
            skips["skipped embedding batches"] = report.skipped_batches
            by_cluster = {entry.cluster_id: entry for entry in stored}

            relation_total = 0
            if extract_relations:
                extractor = RelationExtractor(self.backend, model=self.inference.generation_model)
                for entry in stored:
                    relation_total += len(extractor.extract_into(store, entry))
            else:
                for index, subject, predicate, obj in isolation_set.relations:
                    source = by_cluster.get(index + 1)
                    store.add_relation(subject, predicate, obj, source_entry_id=source.id if source else None)
                    relation_total += 1

            keyword_channel = KeywordChannel(store, limit=self.experiment.top_n)
            vector_channel = VectorChannel(
                store, self.backend, threshold=self.experiment.vector_threshold, limit=self.experiment.top_n
            )
            structured_channel = StructuredChannel(store, limit=self.experiment.top_n)

            for isolation_query in isolation_set.queries:
                expected = {by_cluster[i + 1].id for i in isolation_query.expected if i + 1 in by_cluster}
                relations = structured_channel.search(isolation_query.text)
                keyword = keyword_channel.search(isolation_query.text)
                embedding = vector_channel.embed_query(isolation_query.text)
                if embedding is None:
                    skips["failed query embeddings"] += 1
                vector = [] if embedding is None else vector_channel.search(isolation_query.text, embedding=embedding)
                union = union_merge(keyword, vector, limit=self.experiment.top_n)

                found = {
                    "structured": {r.source_entry_id for r in relations},
                    "keyword": {c.entry_id for c in keyword},
                    "vector": {c.entry_id for c in vector},
                    "union": {c.entry_id for c in union},
                }
                hits[isolation_query.id] = {name: bool(expected & ids) for name, ids in found.items()}
                logger.info(
                    f"{isolation_query.id}: "
                    + " ".join(f"{name}={'HIT' if hit else '-'}" for name, hit in hits[isolation_query.id].items())
                )

                write_relations_tsv(out_dir / f"{isolation_query.id}-structured.tsv", relations)
                write_ranked_tsv(out_dir / f"{isolation_query.id}-keyword.tsv", "keyword", keyword, synthesizer.cluster_map)
                write_ranked_tsv(out_dir / f"{isolation_query.id}-vector.tsv", "vector", vector, synthesizer.cluster_map)
                write_ranked_tsv(out_dir / f"{isolation_query.id}-union.tsv", "union", union, synthesizer.cluster_map)

        texts = {q.id: q.text for q in isolation_set.queries}
        exclusive = exclusive_hits(hits, names[:3])
        meta = self._meta(**{
            "Entries": len(isolation_set.entries),
            "Relations": relation_total,
            "Relation source": "model extraction" if extract_relations else "hand-authored",
        })
        lines = [metadata_block("Channel isolation", meta)]
        lines.append("## Hits\n\n" + render_channel_table(hits, texts, names))
        lines.append(
            "Channel-exclusive hits: "
            + " ".join(f"{name}={count}" for name, count in exclusive.items())
            + "\n"
        )
        lines.append(render_skips(skips))

        summary_path = out_dir / "summary.md"
        write_summary(summary_path, "\n".join(lines))
        return RunOutcome(out_dir, summary_path, skipped=skips)

    # =========================================================================
    # RRF Comparison
    # =========================================================================

    def _rrf_rows(self, runs: Sequence[QueryRun], cluster_map: ClusterMap) -> List[ComparisonRow]:
        k = self.experiment.top_n
        rows = []
        for run in runs:
            top = run.fused[:k]
            rows.append(
                ComparisonRow(
                    query_id=run.query.id,
                    query_type=run.query.query_type,
                    before=score_ranking(run.query, run.union, cluster_map, k),
                    after=score_ranking(run.query, top, cluster_map, k),
                    keyword_count=len(run.keyword),
                    vector_count=len(run.vector),
                    both_channels=overlap(run.keyword, run.vector),
                    both_fused=count_multi_channel(top),
                )
            )
        return rows

    def run_rrf(self, multiplier: int = 1, sizes: Optional[Sequence[int]] = None) -> RunOutcome:
        """Union-merge baseline versus reciprocal rank fusion, per corpus."""
        base_dir = self.results_dir / "rrf"
        self.check_ground_truth()
        k = self.experiment.top_n
        outcome = RunOutcome(base_dir, base_dir / "summary.md")
        sections = []
        per_scale = []

        for label, scale_multiplier, size in self._scale_labels(multiplier, sizes):
            out_dir = base_dir / label
            with self.open_store() as store:
                report, cluster_map = self.build_corpus(store, multiplier=scale_multiplier, size=size)
                runs = self.evaluate_all(store)
                corpus_size = store.count()
            outcome.reports[label] = report
            _merge_counts(outcome.skipped, self.corpus_skips(report, cluster_map))
            _merge_counts(outcome.skipped, {"failed query embeddings": sum(r.embedding_failed for r in runs)})

            for run in runs:
                qid = run.query.id
                write_ranked_tsv(out_dir / f"{qid}-keyword.tsv", "keyword", run.keyword, cluster_map)
                write_ranked_tsv(out_dir / f"{qid}-vector.tsv", "vector", run.vector, cluster_map)
                write_ranked_tsv(out_dir / f"{qid}-union.tsv", "union", run.union, cluster_map)
                write_ranked_tsv(out_dir / f"{qid}-rrf.tsv", "rrf", run.fused[:k], cluster_map)

            rows = self._rrf_rows(runs, cluster_map)
            sections.append(
                f"# {label} ({corpus_size} entries)\n\n"
                + render_comparison(rows, "Union", "RRF", k, show_channels=True)
            )
            direct = [row for row in rows if row.query_type is QueryType.DIRECT]
            if direct:
                n = len(direct)
                per_scale.append([
                    label,
                    f"{sum(r.before.relevant for r in direct) / n:.2f}/{k}",
                    f"{sum(r.after.relevant for r in direct) / n:.2f}/{k}",
                    f"{sum(r.delta for r in direct) / n:+.2f}",
                    f"{sum(r.both_channels for r in direct) / n:.1f}",
                    f"{sum(r.both_fused for r in direct) / n:.1f}",
                ])

        lines = [metadata_block("RRF comparison", self._meta(**{"Channel limit": self.experiment.channel_limit}))]
        if len(per_scale) > 1:
            lines.append("## By scale\n\n" + markdown_table(
                ["Scale", f"Direct Union P@{k}", f"Direct RRF P@{k}", "Delta",
                 f"Mean Both (top{self.experiment.channel_limit})", f"Mean Both (RRF top{k})"],
                per_scale,
            ))
        lines.extend(sections)
        lines.append(render_skips(outcome.skipped))
        write_summary(outcome.summary_path, "\n".join(lines))
        return outcome

    # =========================================================================
    # Rerank Comparison
    # =========================================================================

    def _rerank_rows(self, runs: Sequence[QueryRun], cluster_map: ClusterMap) -> List[ComparisonRow]:
        k = self.experiment.top_n
        rows = []
        for run in runs:
            row = ComparisonRow(
                query_id=run.query.id,
                query_type=run.query.query_type,
                before=score_ranking(run.query, run.fused[:k], cluster_map, k),
                after=score_ranking(run.query, run.reranked, cluster_map, k),
                keyword_count=len(run.keyword),
                vector_count=len(run.vector),
            )
            if run.query.is_negative:
                row.distribution = score_distribution([c.rerank_score or 0.0 for c in run.scored])
            rows.append(row)
        return rows

    def _examples(self, runs: Sequence[QueryRun], rows: Sequence[ComparisonRow], cluster_map: ClusterMap) -> List[str]:
        k = self.experiment.top_n
        by_id = {run.query.id: run for run in runs}
        positive = [row for row in rows if row.query_type is not QueryType.NEGATIVE]
        best, worst = largest_change([r.before for r in positive], [r.after for r in positive])
        examples = []
        for title, change in (("Hero example", best), ("Regression example", worst)):
            if change is None:
                examples.append(f"## {title}\n\nNone.\n")
                continue
            query_id, delta = change
            run = by_id[query_id]
            examples.append(render_example(
                title,
                f"{query_id} ({run.query.query_type.value}, delta {delta:+d}): {run.query.text}",
                {
                    f"RRF top {k}": render_tsv(ranked_rows("rrf", run.fused[:k], cluster_map)),
                    f"Reranked top {k}": render_tsv(ranked_rows("rerank", run.reranked, cluster_map)),
                },
            ))
        return examples

    def run_rerank(self, multiplier: int = 1, sizes: Optional[Sequence[int]] = None) -> RunOutcome:
        """Fused top-N versus cross-encoder reranked top-N, per corpus."""
        base_dir = self.results_dir / "rerank"
        self.check_ground_truth()
        k = self.experiment.top_n
        outcome = RunOutcome(base_dir, base_dir / "summary.md")
        sections = []

        for label, scale_multiplier, size in self._scale_labels(multiplier, sizes):
            out_dir = base_dir / label
            reranker = self.reranker()
            with self.open_store() as store:
                report, cluster_map = self.build_corpus(store, multiplier=scale_multiplier, size=size)
                runs = self.evaluate_all(store, reranker=reranker)
                corpus_size = store.count()
            outcome.reports[label] = report
            _merge_counts(outcome.skipped, self.corpus_skips(report, cluster_map))
            _merge_counts(outcome.skipped, {
                "failed query embeddings": sum(r.embedding_failed for r in runs),
                "failed rerank calls": reranker.failed_calls,
            })
            if reranker.failed_calls:
                logger.warning(f"{label}: {reranker.failed_calls} rerank calls failed and scored 0.0")

            for run in runs:
                qid = run.query.id
                write_ranked_tsv(out_dir / f"{qid}-rrf.tsv", "rrf", run.fused[:k], cluster_map)
                write_ranked_tsv(out_dir / f"{qid}-rerank.tsv", "rerank", run.reranked, cluster_map)
                write_ranked_tsv(out_dir / f"{qid}-scores.tsv", "scores", run.scored, cluster_map)

            rows = self._rerank_rows(runs, cluster_map)
            sections.append(
                f"# {label} ({corpus_size} entries, {self.experiment.rerank_candidates} candidates -> top {k})\n\n"
                + render_comparison(rows, "RRF", "Reranked", k)
                + "\n"
                + "\n".join(self._examples(runs, rows, cluster_map))
            )

        meta = self._meta(**{
            "Rerank model": self.inference.rerank_model,
            "Candidates": self.experiment.rerank_candidates,
        })
        lines = [metadata_block("Rerank comparison", meta)]
        lines.extend(sections)
        lines.append(render_skips(outcome.skipped))
        write_summary(outcome.summary_path, "\n".join(lines))
        return outcome

    # =========================================================================
    # Threshold Sensitivity
    # =========================================================================

    def run_sensitivity(self, scales: Optional[Sequence[int]] = None) -> RunOutcome:
        """
        Distance distributions per corpus scale, then the cross-scale verdict.

        Each scale gets a fresh store seeded by ``select_base_entries`` plus
        background notes. Small scales keep every labeled cluster, so their
        corpus can be larger than requested. The distance CSV for each scale
        is written as soon as that scale finishes.
        """
        scales = list(scales or self.experiment.scale_list)
        self.check_ground_truth()
        out_dir = self.results_dir / "sensitivity"
        outcome = RunOutcome(out_dir, out_dir / "summary.md")
        fixed = self.experiment.vector_threshold if self.experiment.vector_threshold is not None else 0.5
        analyses: List[ScaleAnalysis] = []

        for scale in scales:
            logger.info(f"=== Scale {scale} ===")
            with self.open_store() as store:
                synthesizer = CorpusSynthesizer(
                    store,
                    self.backend,
                    batch_size=self.experiment.embed_batch_size,
                    paraphrase_model=self.inference.paraphrase_model,
                )
                report = synthesizer.build_for_scale(load_seed_corpus(), scale, self.background_cache())
                cluster_map = synthesizer.cluster_map
                records, skipped_queries = collect_distances(self.query_set, store, self.backend, cluster_map)
                corpus_size = store.count()

            rows = write_distance_csv(out_dir / f"distances-{scale}.csv", records)
            cluster_map.save(out_dir / f"cluster-map-{scale}.tsv")
            logger.info(f"Scale {scale}: {rows} distance rows written")

            outcome.reports[f"scale-{scale}"] = report
            _merge_counts(outcome.skipped, self.corpus_skips(report, cluster_map))
            _merge_counts(outcome.skipped, {"skipped queries": len(skipped_queries)})
            analyses.append(analyze_scale(
                scale,
                corpus_size,
                records,
                self.query_set,
                self.experiment.sweep_list,
                fixed_threshold=fixed,
                skipped_queries=skipped_queries,
            ))

        meta = self._meta(**{"Scales": ", ".join(str(s) for s in scales)})
        lines = [metadata_block("Threshold sensitivity", meta)]
        lines.extend(render_scale_section(analysis) for analysis in analyses)
        if len(analyses) > 1:
            outcome.stability = cross_scale_stability(analyses)
            lines.append(render_stability(analyses, outcome.stability))
        lines.append(render_skips(outcome.skipped))
        write_summary(outcome.summary_path, "\n".join(lines))
        return outcome
