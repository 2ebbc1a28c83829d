"""Tests for the cache dependency graph."""

import os

from convopulse.cache import DependencyGraph, normalize_path


class TestNormalizePath:
    """Tests for path normalization."""

    def test_collapses_redundant_segments(self) -> None:
        """Equivalent spellings of a path normalize to the same key."""
        assert normalize_path("a/./b/../b/c.jsonl") == normalize_path("a/b/c.jsonl")

    def test_accepts_pathlike(self, tmp_path) -> None:
        """PathLike objects are accepted."""
        assert normalize_path(tmp_path / "x.jsonl") == os.path.normpath(str(tmp_path / "x.jsonl"))


class TestDependencyGraph:
    """Tests for DependencyGraph."""

    def test_dependents_of_shared_path(self) -> None:
        """Every key that depends on a path is returned for it."""
        graph = DependencyGraph()
        graph.add(("parsed", "/a"), ["/a"])
        graph.add(("computations", "summary"), ["/a", "/b"])

        assert graph.dependents("/a") == {("parsed", "/a"), ("computations", "summary")}
        assert graph.dependents("/b") == {("computations", "summary")}
        assert graph.dependents("/c") == set()

    def test_add_replaces_previous_paths(self) -> None:
        """Re-adding a key replaces its dependency set."""
        graph = DependencyGraph()
        graph.add("summary", ["/a", "/b"])
        graph.add("summary", ["/c"])

        assert graph.paths_for("summary") == frozenset({os.path.normpath("/c")})
        assert graph.dependents("/a") == set()
        assert graph.dependents("/c") == {"summary"}

    def test_remove_cleans_reverse_index(self) -> None:
        """Removing a key forgets it from every path."""
        graph = DependencyGraph()
        graph.add("k", ["/a"])
        graph.remove("k")

        assert "k" not in graph
        assert len(graph) == 0
        assert graph.dependents("/a") == set()

    def test_remove_unknown_key_is_noop(self) -> None:
        """Removing a key that was never added does nothing."""
        graph = DependencyGraph()
        graph.remove("missing")
        assert len(graph) == 0

    def test_lookup_normalizes_path(self) -> None:
        """Lookups match regardless of how the path is spelled."""
        graph = DependencyGraph()
        graph.add("k", ["/x/y/../z.jsonl"])
        assert graph.dependents("/x/z.jsonl") == {"k"}

    def test_clear(self) -> None:
        """clear() empties the graph."""
        graph = DependencyGraph()
        graph.add("a", ["/1"])
        graph.add("b", ["/2"])
        graph.clear()
        assert len(graph) == 0
        assert graph.dependents("/1") == set()
