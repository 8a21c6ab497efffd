"""Tests for label matchers."""
import pytest

from prommock.errors import InvalidMatcherError
from prommock.matchers import Matcher, MatchType, matches_all
from prommock.series import LabelSet


def test_regex_match():
    """job=~"api.*" matches api-1 and not worker-1."""
    matcher = Matcher.regex("job", "api.*")
    assert matcher.matches(LabelSet(job="api-1"))
    assert not matcher.matches(LabelSet(job="worker-1"))


def test_regex_is_anchored():
    """Regexes must match the whole value."""
    matcher = Matcher.regex("job", "api")
    assert matcher.matches(LabelSet(job="api"))
    assert not matcher.matches(LabelSet(job="api-1"))
    assert not matcher.matches(LabelSet(job="my-api"))


def test_negative_matchers():
    """!= and !~ invert their positive counterparts."""
    labels = LabelSet(job="api", env="prod")
    assert Matcher.not_equal("job", "worker").matches(labels)
    assert not Matcher.not_equal("job", "api").matches(labels)
    assert Matcher.not_regex("env", "dev|test").matches(labels)
    assert not Matcher.not_regex("env", "prod|staging").matches(labels)


def test_absent_label_reads_as_empty():
    """A missing label behaves like the empty string."""
    labels = LabelSet(job="api")
    assert Matcher.equal("env", "").matches(labels)
    assert not Matcher.equal("env", "prod").matches(labels)
    assert Matcher.not_equal("env", "prod").matches(labels)
    assert Matcher.regex("env", ".*").matches(labels)


def test_invalid_regex_fails_on_construction():
    """Bad patterns are rejected when the matcher is built."""
    with pytest.raises(InvalidMatcherError) as excinfo:
        Matcher.regex("job", "(")
    assert excinfo.value.fragment == "("


def test_matches_empty():
    """Matchers that accept the empty value are flagged."""
    assert Matcher.equal("job", "").matches_empty()
    assert Matcher.regex("job", ".*").matches_empty()
    assert not Matcher.equal("job", "api").matches_empty()
    assert not Matcher.regex("job", ".+").matches_empty()


def test_conjunction():
    """All matchers must hold; an empty list matches everything."""
    labels = LabelSet({"__name__": "up", "job": "api"})
    assert matches_all([Matcher.metric_name("up"), Matcher.equal("job", "api")], labels)
    assert not matches_all([Matcher.metric_name("up"), Matcher.equal("job", "worker")], labels)
    assert matches_all([], labels)


def test_matcher_str_and_type():
    """Matchers render back to selector syntax."""
    matcher = Matcher(MatchType("=~"), "job", 'a"b')
    assert matcher.type is MatchType.REGEX
    assert matcher.type.is_regex and not matcher.type.is_negative
    assert str(matcher) == 'job=~"a\\"b"'
