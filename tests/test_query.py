"""Tests for the selector parser and query engine."""
import pytest

from prommock.errors import InvalidMatcherError, InvalidParameterError, QuerySyntaxError
from prommock.matchers import Matcher, MatchType
from prommock.query import (
    Empty,
    Matrix,
    NumberLiteral,
    QueryEngine,
    Scalar,
    Selector,
    Vector,
    format_value,
    parse,
    parse_selector,
)
from prommock.series import LabelSet, Sample
from prommock.storage import MemoryStorage

NOW = 1_704_067_200_000


def make_engine(**kwargs):
    storage = MemoryStorage()
    engine = QueryEngine(storage, clock=lambda: NOW, **kwargs)
    return storage, engine


def test_parse_bare_metric():
    """A bare metric name becomes an instant selector."""
    selector = parse("up")
    assert selector == Selector("up")
    assert not selector.is_range
    assert selector.all_matchers == [Matcher.metric_name("up")]


def test_parse_matchers_and_range():
    """Every operator is recognised and the range is in milliseconds."""
    selector = parse('http_requests_total{job="api", code!="500", path=~"/v1/.*", env!~\'dev|test\'}[5m]')
    assert selector.metric_name == "http_requests_total"
    assert [(m.name, m.type) for m in selector.matchers] == [
        ("job", MatchType.EQUAL),
        ("code", MatchType.NOT_EQUAL),
        ("path", MatchType.REGEX),
        ("env", MatchType.NOT_REGEX),
    ]
    assert selector.range_ms == 5 * 60 * 1000


def test_parse_name_inside_braces():
    """The metric name may be given as an explicit __name__ matcher."""
    selector = parse_selector('{__name__="up", job="api",}')
    assert selector.metric_name is None
    assert Matcher.metric_name("up") in selector.all_matchers


def test_parse_modifiers():
    """offset and @ modifiers."""
    selector = parse("up offset 1h30m @ 1700000000")
    assert selector.offset_ms == 90 * 60 * 1000
    assert selector.at_ms == 1_700_000_000_000
    assert parse("up[5m] offset -5m").offset_ms == -5 * 60 * 1000


def test_parse_escapes():
    """Quoted values support backslash escapes."""
    selector = parse(r'up{path="a\"b\\c"}')
    assert selector.matchers[0].value == 'a"b\\c'


def test_parse_number_literal():
    """Numeric queries are scalars."""
    assert parse("42.5") == NumberLiteral(42.5)
    assert parse(" -1e3 ") == NumberLiteral(-1000.0)


@pytest.mark.parametrize("query,position,fragment", [
    ('up{job="api"', 2, '{job="api"'),
    ('up{job=="api"}', 6, "=="),
    ("up[5x]", 3, "5x"),
    ('up{job="api}', 7, '"api}'),
])
def test_parse_errors_carry_position(query, position, fragment):
    """Syntax errors point at the offending fragment."""
    with pytest.raises(QuerySyntaxError) as excinfo:
        parse(query)
    assert excinfo.value.position == position
    assert excinfo.value.fragment == fragment
    assert excinfo.value.query == query


@pytest.mark.parametrize("query", [
    "",
    "up}",
    "sum(up)",
    "rate(up[5m])",
    "up offset",
    "{}",
    '{job=""}',
    'up{__name__="up"}',
    "up offset 5m offset 1m",
])
def test_parse_rejects(query):
    """Unsupported or malformed queries are syntax errors."""
    with pytest.raises(QuerySyntaxError):
        parse(query)


@pytest.mark.parametrize("query", ["up @ 1e400", "up @ -1e400", "up[5m] @ 1e308"])
def test_parse_rejects_unrepresentable_timestamp(query):
    """An @ timestamp that overflows milliseconds is a syntax error."""
    with pytest.raises(QuerySyntaxError) as excinfo:
        parse(query)
    assert excinfo.value.position == query.index("@") + 2
    assert "invalid unix timestamp" in excinfo.value.message


def test_invalid_regex_is_a_matcher_error():
    """Bad regexes are reported separately from syntax errors."""
    with pytest.raises(InvalidMatcherError) as excinfo:
        parse('up{job=~"("}')
    assert excinfo.value.position == 3
    assert excinfo.value.fragment == 'job=~"("'
    assert not isinstance(excinfo.value, QuerySyntaxError)


def test_instant_query_round_trip():
    """A sample is returned at its own timestamp."""
    storage, engine = make_engine()
    labels = LabelSet({"__name__": "up", "job": "api"})
    storage.ingest(labels, Sample(1000, 3.0))

    result = engine.instant_query("up", at=1000)
    assert isinstance(result, Vector)
    assert result.samples == ((labels, Sample(1000, 3.0)),)
    assert result.to_data() == {
        "resultType": "vector",
        "result": [{"metric": {"__name__": "up", "job": "api"}, "value": [1.0, "3"]}],
    }


def test_instant_query_defaults_to_clock():
    """Without a time the engine evaluates at the clock's now."""
    storage, engine = make_engine()
    storage.ingest(LabelSet({"__name__": "up"}), Sample(NOW - 60_000, 1.0))

    result = engine.instant_query("up")
    assert isinstance(result, Vector)
    assert result.timestamp == NOW


def test_instant_query_lookback():
    """Samples older than the lookback window are not returned."""
    storage, engine = make_engine(lookback_ms=10_000)
    storage.ingest(LabelSet({"__name__": "up"}), Sample(1000, 1.0))

    assert isinstance(engine.instant_query("up", at=10_999), Vector)
    assert engine.instant_query("up", at=11_000) == Empty("vector")


def test_instant_query_no_match_is_empty():
    """No matching series is an empty result, not an error."""
    _, engine = make_engine()
    result = engine.instant_query('up{job="none"}')
    assert result == Empty("vector")
    assert result.to_data() == {"resultType": "vector", "result": []}


def test_offset_and_at_modifiers():
    """offset shifts the lookup, @ pins the instant."""
    storage, engine = make_engine()
    labels = LabelSet({"__name__": "up"})
    storage.ingest(labels, Sample(1000, 1.0))
    storage.ingest(labels, Sample(2000, 2.0))

    shifted = engine.instant_query("up offset 1s", at=2500)
    assert shifted.samples[0][1].value == 1.0
    assert shifted.timestamp == 2500

    pinned = engine.instant_query("up @ 1.5", at=NOW)
    assert pinned.samples[0][1] == Sample(1000, 1.0)
    assert pinned.timestamp == NOW
    assert pinned.to_data()["result"][0]["value"] == [NOW / 1000, "1"]


def test_range_selector_in_instant_query():
    """A range selector returns a matrix over its window."""
    storage, engine = make_engine()
    labels = LabelSet({"__name__": "up"})
    for ts in (1000, 2000, 3000):
        storage.ingest(labels, Sample(ts, float(ts)))

    result = engine.instant_query("up[1s]", at=3000)
    assert isinstance(result, Matrix)
    assert result.window == (2000, 3000)
    assert [s.timestamp for s in result.series[0][1]] == [2000, 3000]
    assert engine.instant_query("up[1s]", at=10_000) == Empty("matrix", (9000, 10_000))


def test_range_query_returns_ordered_samples():
    """Range queries return stored samples in the window, in order."""
    storage, engine = make_engine()
    labels = LabelSet({"__name__": "up", "job": "api"})
    for ts in (3000, 1000, 2000, 9000):
        storage.ingest(labels, Sample(ts, float(ts)))

    result = engine.range_query("up", 1000, 3000, 1000)
    assert isinstance(result, Matrix)
    assert result.window == (1000, 3000)
    assert result.to_data()["result"] == [{
        "metric": {"__name__": "up", "job": "api"},
        "values": [[1.0, "1000"], [2.0, "2000"], [3.0, "3000"]],
    }]


def test_range_query_of_scalar():
    """A number literal yields one point per step."""
    _, engine = make_engine()
    result = engine.range_query("2", 0, 2000, 1000)
    assert isinstance(result, Matrix)
    assert result.to_data()["result"] == [{"metric": {}, "values": [[0.0, "2"], [1.0, "2"], [2.0, "2"]]}]


def test_range_query_parameter_errors():
    """Bad windows and steps are rejected."""
    _, engine = make_engine(max_points=10)
    with pytest.raises(InvalidParameterError):
        engine.range_query("up", 2000, 1000, 1000)
    with pytest.raises(InvalidParameterError):
        engine.range_query("up", 0, 1000, 0)
    with pytest.raises(InvalidParameterError):
        engine.range_query("up", 0, 100_000, 1000)
    with pytest.raises(QuerySyntaxError):
        engine.range_query("up[5m]", 0, 1000, 1000)


def test_scalar_instant_query():
    """Numeric instant queries return a scalar at the evaluation time."""
    _, engine = make_engine()
    result = engine.instant_query("1.5", at=2000)
    assert result == Scalar(2000, 1.5)
    assert result.to_data() == {"resultType": "scalar", "result": [2.0, "1.5"]}


def test_format_value():
    """Values are rendered the way Prometheus renders them."""
    assert format_value(float("nan")) == "NaN"
    assert format_value(float("inf")) == "+Inf"
    assert format_value(float("-inf")) == "-Inf"
    assert format_value(1.0) == "1"
    assert format_value(0.25) == "0.25"
