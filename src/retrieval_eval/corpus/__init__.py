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

from .background import BackgroundEntryCache
from .relations import RelationExtractor
from .seeds import ChannelIsolationSet, IsolationQuery, load_background_topics, load_channel_isolation_set, load_seed_corpus
from .synthesizer import CorpusSynthesizer, SynthesisReport, select_base_entries

__all__ = [
    "BackgroundEntryCache",
    "ChannelIsolationSet",
    "CorpusSynthesizer",
    "IsolationQuery",
    "RelationExtractor",
    "SynthesisReport",
    "load_background_topics",
    "load_channel_isolation_set",
    "load_seed_corpus",
    "select_base_entries",
]
