"""Data structures for label sets, samples and time series."""
from bisect import bisect_left, bisect_right
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union
import hashlib
import threading

METRIC_NAME_LABEL = "__name__"


class LabelSet(Mapping):
    """Immutable, order-independent set of label name/value pairs.

    Equality and hashing are defined over content, so two label sets built
    from the same pairs in a different order are interchangeable as keys.
    """

    __slots__ = ("_pairs", "_index", "_hash", "_fingerprint")

    def __init__(self, labels: Union[Mapping, Iterable[Tuple[str, str]], None] = None, **kwargs: str):
        if isinstance(labels, Mapping):
            pairs = list(labels.items())
        else:
            pairs = list(labels or [])
        pairs.extend(kwargs.items())

        index: Dict[str, str] = {}
        for name, value in pairs:
            if not isinstance(name, str) or not isinstance(value, str):
                raise TypeError(f"Label names and values must be strings, got {name!r}={value!r}")
            if not name:
                raise ValueError("Label name must not be empty")
            if name in index:
                raise ValueError(f"Duplicate label name: {name!r}")
            index[name] = value

        self._pairs: Tuple[Tuple[str, str], ...] = tuple(sorted(index.items()))
        self._index = index
        self._hash = hash(self._pairs)
        self._fingerprint: Optional[str] = None

    def __getitem__(self, name: str) -> str:
        return self._index[name]

    def __iter__(self) -> Iterator[str]:
        return (name for name, _ in self._pairs)

    def __len__(self) -> int:
        return len(self._pairs)

    def __hash__(self) -> int:
        return self._hash

    def __eq__(self, other) -> bool:
        if isinstance(other, LabelSet):
            return self._pairs == other._pairs
        if isinstance(other, Mapping):
            return self._index == dict(other)
        return NotImplemented

    def __repr__(self) -> str:
        inner = ", ".join(f'{k}="{v}"' for k, v in self._pairs)
        return f"LabelSet{{{inner}}}"

    @property
    def pairs(self) -> Tuple[Tuple[str, str], ...]:
        """Label pairs sorted by name."""
        return self._pairs

    @property
    def metric_name(self) -> Optional[str]:
        return self._index.get(METRIC_NAME_LABEL)

    def value(self, name: str) -> str:
        """Value of a label, with absent labels reading as the empty string."""
        return self._index.get(name, "")

    def label_key(self) -> str:
        """Generate a stable key from sorted labels."""
        return ",".join(f"{k}={v}" for k, v in self._pairs)

    def fingerprint(self) -> str:
        """Content-derived identifier used to index the series."""
        if self._fingerprint is None:
            digest = hashlib.md5()
            for name, value in self._pairs:
                digest.update(name.encode("utf-8"))
                digest.update(b"\xff")
                digest.update(value.encode("utf-8"))
                digest.update(b"\xff")
            self._fingerprint = digest.hexdigest()
        return self._fingerprint

    def to_dict(self) -> Dict[str, str]:
        return dict(self._pairs)


@dataclass(frozen=True)
class Sample:
    """A single timestamped value. Timestamps are milliseconds since the epoch."""
    timestamp: int
    value: float


class Series:
    """Time-ordered sample history for one label set.

    Samples are kept sorted by timestamp. Writing a timestamp that already
    exists replaces its value; an older timestamp is inserted in order.
    All reads and writes go through the series lock so a reader never sees
    a half-applied insert.
    """

    def __init__(self, labels: LabelSet):
        self.labels = labels
        self._timestamps: List[int] = []
        self._values: List[float] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._timestamps)

    def add(self, sample: Sample):
        """Insert or upsert a sample, keeping timestamp order."""
        with self._lock:
            ts = self._timestamps
            # Fast path for in-order appends
            if not ts or sample.timestamp > ts[-1]:
                ts.append(sample.timestamp)
                self._values.append(sample.value)
                return

            pos = bisect_left(ts, sample.timestamp)
            if pos < len(ts) and ts[pos] == sample.timestamp:
                self._values[pos] = sample.value
            else:
                ts.insert(pos, sample.timestamp)
                self._values.insert(pos, sample.value)

    def samples(self) -> List[Sample]:
        """Snapshot of every sample."""
        with self._lock:
            return [Sample(t, v) for t, v in zip(self._timestamps, self._values)]

    def samples_between(self, start: int, end: int) -> List[Sample]:
        """Samples with start <= timestamp <= end."""
        with self._lock:
            lo = bisect_left(self._timestamps, start)
            hi = bisect_right(self._timestamps, end)
            return [
                Sample(self._timestamps[i], self._values[i])
                for i in range(lo, hi)
            ]

    def latest_at(self, at: int, lookback: Optional[int] = None) -> Optional[Sample]:
        """Most recent sample at or before ``at``.

        With ``lookback`` set, samples older than ``at - lookback`` are ignored.
        """
        with self._lock:
            pos = bisect_right(self._timestamps, at)
            if pos == 0:
                return None
            timestamp = self._timestamps[pos - 1]
            if lookback is not None and timestamp <= at - lookback:
                return None
            return Sample(timestamp, self._values[pos - 1])
