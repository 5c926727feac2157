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
Packaged seed material: the labeled base corpus, the background topic pool
and the channel-isolation corpus.
"""

import json
import re
from dataclasses import dataclass
from importlib import resources
from typing import List, Tuple

from ..models import Entry

_TYPE_PREFIX = re.compile(r"^type=([a-z]+)\s+(.*)$", re.DOTALL)


def _read_data(name: str) -> str:
    return resources.files("retrieval_eval.corpus").joinpath("data", name).read_text(encoding="utf-8")


def split_type_prefix(text: str) -> Tuple[str, str]:
    """Split ``type=<kind> <body>`` into ``(kind, body)``; untyped text is a note."""
    match = _TYPE_PREFIX.match(text.strip())
    if match:
        return match.group(1), match.group(2).strip()
    return "note", text.strip()


def parse_seed_line(line: str) -> Entry:
    """Parse a ``cluster|type=<kind> <content>`` line."""
    cluster, sep, text = line.partition("|")
    if not sep or not cluster.strip().lstrip("-").isdigit():
        raise ValueError(f"Malformed seed line: {line!r}")
    entry_type, content = split_type_prefix(text)
    return Entry(content=content, cluster_id=int(cluster), entry_type=entry_type)


def load_seed_corpus() -> List[Entry]:
    """The 120-entry base corpus: 10 topical clusters of 10 plus 20 noise entries."""
    return [parse_seed_line(line) for line in _read_data("seed_corpus.txt").splitlines() if line.strip()]


def load_background_topics() -> List[str]:
    return [line.strip() for line in _read_data("background_topics.txt").splitlines() if line.strip()]


@dataclass(frozen=True)
class IsolationQuery:
    id: str
    text: str
    expected: Tuple[int, ...]  # indexes into ChannelIsolationSet.entries

    @property
    def group(self) -> str:
        return self.id[0]


@dataclass(frozen=True)
class ChannelIsolationSet:
    """Small corpus with hand-authored relations for channel isolation."""
    entries: Tuple[Entry, ...]
    relations: Tuple[Tuple[int, str, str, str], ...]
    queries: Tuple[IsolationQuery, ...]


def load_channel_isolation_set() -> ChannelIsolationSet:
    raw = json.loads(_read_data("channel_isolation.json"))
    entries = []
    for index, text in enumerate(raw["entries"]):
        entry_type, content = split_type_prefix(text)
        # Each isolation entry is its own cluster so hits can be attributed.
        entries.append(Entry(content=content, cluster_id=index + 1, entry_type=entry_type))
    relations = tuple((int(r[0]), r[1], r[2], r[3]) for r in raw["relations"])
    queries = tuple(IsolationQuery(id=q[0], text=q[1], expected=tuple(q[2])) for q in raw["queries"])
    return ChannelIsolationSet(entries=tuple(entries), relations=relations, queries=queries)
