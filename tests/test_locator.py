"""Tests for package locators."""

import pytest

from clusterpack.errors import InvalidArgumentError, MalformedVersionError
from clusterpack.loc import LATEST, ZERO_VERSION, Locator, parse_locator


class TestParseLocator:
    """Tests for the repository/name:version form."""

    def test_parse_simple(self):
        assert parse_locator("app/web:1.2.0") == Locator("app", "web", "1.2.0")

    def test_repository_may_contain_slashes(self):
        parsed = parse_locator("example.com/apps/web:1.0.0")
        assert parsed.repository == "example.com/apps"
        assert parsed.name == "web"

    def test_latest_sentinel(self):
        parsed = parse_locator("app/web:latest")
        assert parsed.version == LATEST
        assert parsed.is_latest()

    def test_str_round_trip(self):
        text = "app/web:1.2.0-rc.1+build.5"
        assert str(parse_locator(text)) == text

    @pytest.mark.parametrize("text", ["web:1.0.0", "app/web", "app/web:", "/web:1.0.0", "app/:1.0.0"])
    def test_invalid_form(self, text):
        with pytest.raises(InvalidArgumentError):
            parse_locator(text)

    def test_malformed_version(self):
        with pytest.raises(MalformedVersionError):
            parse_locator("app/web:not-a-version")


class TestLocator:
    """Tests for Locator helpers."""

    def test_sem_ver(self):
        version = Locator("app", "web", "1.2.3").sem_ver()
        assert (version.major, version.minor, version.patch) == (1, 2, 3)

    def test_sem_ver_malformed(self):
        with pytest.raises(MalformedVersionError) as exc_info:
            Locator("app", "web", "1.2").sem_ver()
        assert "app/web:1.2" in str(exc_info.value)

    def test_latest_build_metadata(self):
        assert Locator("app", "web", "0.0.0+latest").is_latest()
        assert not Locator("app", "web", "1.0.0+build").is_latest()
        assert not Locator("app", "web", "garbage").is_latest()

    def test_zero_version(self):
        zero = Locator("app", "web", "2.0.0").zero_version()
        assert zero == Locator("app", "web", ZERO_VERSION)
        assert str(zero) == "app/web:0.0.1"

    def test_same_line(self):
        a = Locator("app", "web", "1.0.0")
        assert a.same_line(Locator("app", "web", "2.0.0"))
        assert not a.same_line(Locator("app", "db", "1.0.0"))
        assert not a.same_line(Locator("other", "web", "1.0.0"))

    def test_dict_round_trip(self):
        a = Locator("app", "web", "1.0.0")
        assert Locator.from_dict(a.to_dict()) == a
