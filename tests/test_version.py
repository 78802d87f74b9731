"""Tests for the version and constraint model."""

import pytest

from lbuild.modules.version import (
    ANY, Version, VersionError, intersect, parse_constraint, parse_version, satisfies,
)


class TestParseVersion:
    """Test version parsing and ordering."""

    def test_short_forms_are_padded(self):
        assert parse_version("1.2") == Version(1, 2, 0)
        assert parse_version("3") == Version(3, 0, 0)
        assert parse_version("v1.2.3") == Version(1, 2, 3)

    def test_revision_and_qualifiers(self):
        v = parse_version("1.2.3-2")
        assert v.revision == 2
        assert not v.is_prerelease
        q = parse_version("1.2.3.4")
        assert q.qualifiers == (4,)
        assert q.is_prerelease

    def test_str_round_trip(self):
        for text in ("1.2.3", "1.2.3-1", "0.9.0.2"):
            assert str(parse_version(text)) == text

    def test_ordering(self):
        ordered = ["0.9.0", "1.0.0.1", "1.0.0", "1.0.0-1", "1.0.1", "1.10.0", "2.0.0"]
        versions = [parse_version(t) for t in ordered]
        assert sorted(reversed(versions)) == versions

    def test_invalid_version_raises(self):
        with pytest.raises(VersionError):
            parse_version("not-a-version")
        with pytest.raises(VersionError):
            parse_version("1.x")


class TestConstraints:
    """Test constraint parsing, satisfaction and intersection."""

    def test_any(self):
        assert parse_constraint("*") is ANY
        assert parse_constraint(None) is ANY
        assert satisfies("0.0.1", "*")

    def test_bounds(self):
        c = parse_constraint(">=1.0,<2.0")
        assert c.satisfies(parse_version("1.0.0"))
        assert c.satisfies(parse_version("1.9.9-3"))
        assert not c.satisfies(parse_version("2.0.0"))
        assert not c.satisfies(parse_version("0.9"))
        assert c.kind == "bound"

    def test_exclusive_upper_bound_excludes_its_prereleases(self):
        assert not satisfies("2.0.0.1", ">=1.0,<2.0")
        assert satisfies("2.0.0.1", "<=2.0")

    def test_exact_ignores_revision_unless_written(self):
        assert satisfies("1.2.3-2", "==1.2.3")
        assert satisfies("1.2.3", "1.2.3")
        assert not satisfies("1.2.3-2", "==1.2.3-1")
        assert satisfies("1.2.3-1", "==1.2.3-1")

    def test_compatible(self):
        assert satisfies("1.2.9", "~> 1.2")
        assert not satisfies("1.3.0", "~> 1.2")
        assert satisfies("1.9.0", "~> 1")
        assert not satisfies("2.0.0", "~> 1")
        assert parse_constraint("~> 1.2").kind == "compatible"

    def test_wildcard(self):
        c = parse_constraint("1.2.*")
        assert c.kind == "wildcard"
        assert c.satisfies(parse_version("1.2.0"))
        assert c.satisfies(parse_version("1.2.7-1"))
        assert not c.satisfies(parse_version("1.3.0"))

    def test_not_equal(self):
        assert not satisfies("1.5.0", ">=1.0,!=1.5")
        assert satisfies("1.5.1", ">=1.0,!=1.5")

    def test_intersection(self):
        c = intersect(">=1.0", "<1.5")
        assert c.satisfies(parse_version("1.4"))
        assert not c.satisfies(parse_version("1.5"))
        assert not c.is_empty()

    def test_disjoint_intersection_is_empty(self):
        c = intersect(">=2.0", "<1.0")
        assert c.is_empty()
        assert not c.satisfies(parse_version("1.5"))
        assert parse_constraint(">2.0,<=2.0").is_empty()

    def test_exact_intersection_with_exclusion_is_empty(self):
        assert intersect("==1.5.0", "!=1.5.0").is_empty()

    def test_constraint_text_is_kept(self):
        assert str(parse_constraint(">=1.0, <2.0")) == ">=1.0,<2.0"

    def test_invalid_constraint_raises(self):
        with pytest.raises(VersionError):
            parse_constraint(">=abc")
