"""Time series storage abstraction and the in-memory implementation."""
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Set, Tuple
import math
import threading

from prommock.errors import IngestError
from prommock.matchers import Matcher, MatchType, matches_all
from prommock.series import LabelSet, Sample, Series

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

SelectResult = List[Tuple[LabelSet, List[Sample]]]


class Storage(ABC):
    """Capability interface for a time series store."""

    @abstractmethod
    def ingest(self, labels: LabelSet, sample: Sample):
        """Insert or upsert one sample. Raises IngestError on malformed input."""

    def ingest_many(self, pairs: Iterable[Tuple[LabelSet, Sample]]) -> int:
        """Validate every pair first, then ingest them all.

        Either the whole batch is rejected with an IngestError or every
        sample is written.
        """
        batch = list(pairs)
        for labels, sample in batch:
            validate_sample(labels, sample)
        for labels, sample in batch:
            self.ingest(labels, sample)
        return len(batch)

    @abstractmethod
    def select(
        self,
        matchers: List[Matcher],
        time_range: Optional[Tuple[int, int]] = None,
        at: Optional[int] = None,
        lookback: Optional[int] = None,
    ) -> SelectResult:
        """Return matching series with their samples.

        Args:
            matchers: All must match (conjunction)
            time_range: Inclusive (start, end) in ms; selects every sample in range
            at: Evaluation instant in ms when no range is given
            lookback: Ignore instant samples older than at - lookback
        """

    @abstractmethod
    def label_names(self) -> Set[str]:
        """All label names across stored series."""

    @abstractmethod
    def label_values(self, name: str) -> Set[str]:
        """All values seen for a label name."""

    @abstractmethod
    def series(self, matchers: List[Matcher]) -> List[LabelSet]:
        """Identities of matching series, without samples."""


def validate_sample(labels: LabelSet, sample: Sample):
    """Reject input the store refuses to keep."""
    if not isinstance(labels, LabelSet):
        raise IngestError(f"Expected LabelSet, got {type(labels).__name__}", labels, sample)
    if len(labels) == 0:
        raise IngestError("Label set must not be empty", labels, sample)
    if isinstance(sample.timestamp, bool) or not isinstance(sample.timestamp, int):
        raise IngestError(f"Timestamp must be an integer, got {sample.timestamp!r}", labels, sample)
    if not INT64_MIN <= sample.timestamp <= INT64_MAX:
        raise IngestError(f"Timestamp out of int64 range: {sample.timestamp}", labels, sample)
    if not isinstance(sample.value, (int, float)) or isinstance(sample.value, bool):
        raise IngestError(f"Value must be a float, got {sample.value!r}", labels, sample)
    # NaN is a valid staleness marker; infinities are not accepted
    if math.isinf(sample.value):
        raise IngestError(f"Value must be finite or NaN, got {sample.value!r}", labels, sample)


class MemoryStorage(Storage):
    """In-memory storage with a label index.

    Series are keyed by label-set fingerprint. The map and the index share one
    lock that is only held to look up or register a series; samples are
    appended under the per-series lock, so writes to different series do not
    wait on each other.
    """

    def __init__(self):
        self._series: Dict[str, Series] = {}
        # label name -> label value -> fingerprints
        self._postings: Dict[str, Dict[str, Set[str]]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._series)

    def ingest(self, labels: LabelSet, sample: Sample):
        validate_sample(labels, sample)
        fp = labels.fingerprint()

        with self._lock:
            existing = self._series.get(fp)

        if existing is not None:
            existing.add(sample)
            return

        # Fill the new series before publishing it so readers never see it empty
        fresh = Series(labels)
        fresh.add(sample)
        with self._lock:
            existing = self._series.get(fp)
            if existing is None:
                self._series[fp] = fresh
                self._index(labels, fp)
                return
        # Lost a race with another writer creating the same series
        existing.add(sample)

    def _index(self, labels: LabelSet, fp: str):
        for name, value in labels.pairs:
            self._postings.setdefault(name, {}).setdefault(value, set()).add(fp)

    def _candidates(self, matchers: List[Matcher]) -> List[Series]:
        """Narrow the scan using equality matchers on non-empty values."""
        with self._lock:
            fps: Optional[Set[str]] = None
            for matcher in matchers:
                if matcher.type is not MatchType.EQUAL or matcher.value == "":
                    continue
                hits = self._postings.get(matcher.name, {}).get(matcher.value, set())
                fps = set(hits) if fps is None else fps & hits
                if not fps:
                    return []
            if fps is None:
                return list(self._series.values())
            return [self._series[fp] for fp in fps]

    def _matching(self, matchers: List[Matcher]) -> List[Series]:
        found = [s for s in self._candidates(matchers) if matches_all(matchers, s.labels)]
        found.sort(key=lambda s: s.labels.pairs)
        return found

    def select(
        self,
        matchers: List[Matcher],
        time_range: Optional[Tuple[int, int]] = None,
        at: Optional[int] = None,
        lookback: Optional[int] = None,
    ) -> SelectResult:
        result: SelectResult = []
        for series in self._matching(matchers):
            if time_range is not None:
                start, end = time_range
                samples = series.samples_between(start, end)
            else:
                instant = at if at is not None else INT64_MAX
                latest = series.latest_at(instant, lookback)
                samples = [latest] if latest is not None else []
            if samples:
                result.append((series.labels, samples))
        return result

    def label_names(self) -> Set[str]:
        with self._lock:
            return set(self._postings.keys())

    def label_values(self, name: str) -> Set[str]:
        with self._lock:
            return set(self._postings.get(name, {}).keys())

    def series(self, matchers: List[Matcher]) -> List[LabelSet]:
        return [s.labels for s in self._matching(matchers)]
