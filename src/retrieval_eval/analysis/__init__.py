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

from .metrics import (
    QueryScore,
    ScoreDistribution,
    TypeAggregate,
    aggregate_by_type,
    largest_change,
    precision_at_k,
    score_distribution,
    score_ranking,
)
from .sensitivity import (
    ScaleAnalysis,
    StabilityResult,
    SweepPoint,
    analyze_scale,
    collect_distances,
    cross_scale_stability,
    threshold_sweep,
)

__all__ = [
    "QueryScore",
    "ScoreDistribution",
    "ScaleAnalysis",
    "StabilityResult",
    "SweepPoint",
    "TypeAggregate",
    "aggregate_by_type",
    "analyze_scale",
    "collect_distances",
    "cross_scale_stability",
    "largest_change",
    "precision_at_k",
    "score_distribution",
    "score_ranking",
    "threshold_sweep",
]
