"""Train index statistics over a CSV column, for operators eyeballing a file."""

from __future__ import annotations

import csv
import io
from collections import Counter
from dataclasses import dataclass, field

from railyard.indexing.train_index import try_parse

INDEX_HEADERS = frozenset({"trainindex", "index", "traincode"})


@dataclass
class IndexStatistics:
    total_records: int = 0
    valid_records: int = 0
    invalid_records: int = 0
    empty_records: int = 0
    formation_stations: Counter = field(default_factory=Counter)
    destination_stations: Counter = field(default_factory=Counter)
    # raw -> normalized, first occurrence of each raw spelling, in file order
    normalization_examples: dict[str, str] = field(default_factory=dict)
    invalid_indexes: list[str] = field(default_factory=list)

    def add(self, raw: str) -> None:
        self.total_records += 1
        raw = raw.strip()
        if not raw:
            self.empty_records += 1
            return

        index = try_parse(raw)
        if index is None:
            self.invalid_records += 1
            self.invalid_indexes.append(raw)
            return

        self.valid_records += 1
        self.formation_stations[index.formation_station_code] += 1
        self.destination_stations[index.destination_station_code] += 1
        self.normalization_examples.setdefault(raw, index.normalized)

    def top_formation_stations(self, count: int = 5) -> list[tuple[str, int]]:
        return self.formation_stations.most_common(count)

    def top_destination_stations(self, count: int = 5) -> list[tuple[str, int]]:
        return self.destination_stations.most_common(count)

    def examples(self, count: int = 5) -> list[tuple[str, str]]:
        return list(self.normalization_examples.items())[:count]


def collect_statistics(text: str) -> IndexStatistics:
    """
    Gather statistics from CSV text.

    The first line is a header. The index column is the one named like a
    train index (TrainIndex/Index/TrainCode), else the first column. Blank
    lines count as empty records.
    """
    stats = IndexStatistics()
    reader = csv.reader(io.StringIO(text, newline=""))
    header = next(reader, None)
    if header is None:
        return stats

    column = 0
    for position, name in enumerate(header):
        if name.strip().lower() in INDEX_HEADERS:
            column = position
            break

    for values in reader:
        stats.add(values[column] if column < len(values) else "")
    return stats
