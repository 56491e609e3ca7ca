"""
Unit tests for recipe models.
"""
import pytest
from pydantic import ValidationError

from envrecipe.MODELS.recipe import EnvironmentConfig, PackageSet, Recipe, SearchPath


class TestSearchPath:
    def test_drops_empty_segments(self):
        path = SearchPath.parse("/usr/bin::/bin:")
        assert path.directories == ("/usr/bin", "/bin")
        assert str(path) == "/usr/bin:/bin"

    def test_order_and_duplicates_are_kept(self):
        path = SearchPath.parse("/opt/bin:/usr/bin:/opt/bin")
        assert list(path) == ["/opt/bin", "/usr/bin", "/opt/bin"]
        assert path.duplicates == ["/opt/bin"]

    def test_equality(self):
        assert SearchPath.parse("/a:/b") == SearchPath(["/a", "", "/b"])
        assert SearchPath.parse("/a:/b") != SearchPath.parse("/b:/a")


class TestEnvironmentConfig:
    def test_last_write_wins_and_keeps_first_position(self):
        env = EnvironmentConfig(variables=(("A", "1"), ("B", "2"), ("A", "3")))
        assert env.variables == (("A", "3"), ("B", "2"))

    def test_with_updates_returns_new_record(self):
        env = EnvironmentConfig.from_mapping({"A": "1"})
        updated = env.with_updates({"B": "2"})
        assert "B" not in env
        assert updated.as_dict() == {"A": "1", "B": "2"}

    def test_frozen(self):
        env = EnvironmentConfig.from_mapping({"A": "1"})
        with pytest.raises(ValidationError):
            env.variables = ()

    def test_invalid_name(self):
        with pytest.raises(ValidationError):
            EnvironmentConfig.from_mapping({"BAD-NAME": "x"})

    def test_env_list_conversion(self):
        env = EnvironmentConfig.from_env_list(["PATH=/usr/bin:/bin", "EMPTY=", "EQ=a=b"])
        assert env.get("EMPTY") == ""
        assert env.get("EQ") == "a=b"
        assert env.to_env_list() == ["PATH=/usr/bin:/bin", "EMPTY=", "EQ=a=b"]

    def test_non_interactive(self):
        assert EnvironmentConfig.from_mapping({"DEBIAN_FRONTEND": "noninteractive"}).non_interactive
        assert not EnvironmentConfig.from_mapping({"DEBIAN_FRONTEND": "dialog"}).non_interactive
        assert not EnvironmentConfig().non_interactive

    def test_search_path_without_path(self):
        assert len(EnvironmentConfig().search_path) == 0


class TestPackageSet:
    def test_set_semantics(self):
        packages = PackageSet.of("curl", "git", "curl")
        assert len(packages) == 2
        assert packages.sorted() == ["curl", "git"]
        assert "curl" in packages

    def test_bare_names(self):
        packages = PackageSet.of("libc6:amd64", "curl=8.5.0-2ubuntu10", "ca-certificates")
        assert packages.bare_names == frozenset({"libc6", "curl", "ca-certificates"})

    @pytest.mark.parametrize("name", ["", "Curl", "-rf", "curl; rm -rf /", "a"])
    def test_invalid_names(self, name):
        with pytest.raises(ValidationError):
            PackageSet.of(name)


class TestRecipe:
    def test_base_image(self):
        recipe = Recipe(base="docker.io/ubuntu:noble")
        assert recipe.base_image.full_name == "docker.io/library/ubuntu:noble"
        assert recipe.user is None
        assert len(recipe.packages) == 0

    def test_invalid_base(self):
        with pytest.raises(ValidationError):
            Recipe(base="ubuntu:")
