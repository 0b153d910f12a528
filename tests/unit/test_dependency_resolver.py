import pytest

from stackward.errors import DependencyCycle
from stackward.RUNNERS.dependency_resolver import DependencyResolver


def test_dependencies_come_first():
    resolver = DependencyResolver({"app": ["db"], "db": []})
    assert resolver.resolve_order() == ["db", "app"]


def test_ties_keep_declaration_order():
    resolver = DependencyResolver({
        "web": ["db"],
        "cache": [],
        "db": [],
        "worker": ["db", "cache"],
    })
    assert resolver.resolve_order() == ["cache", "db", "web", "worker"]


def test_order_is_deterministic():
    deps = {"c": [], "b": [], "a": ["b", "c"]}
    orders = {tuple(DependencyResolver(deps).resolve_order()) for _ in range(10)}
    assert orders == {("c", "b", "a")}


def test_cycle_reports_full_path():
    resolver = DependencyResolver({"a": ["b"], "b": ["c"], "c": ["a"]})
    assert resolver.find_cycle() == ["a", "b", "c", "a"]
    with pytest.raises(DependencyCycle) as exc:
        resolver.resolve_order()
    assert exc.value.cycle == ["a", "b", "c", "a"]
    assert "a -> b -> c -> a" in str(exc.value)


def test_no_cycle():
    assert DependencyResolver({"a": [], "b": ["a"]}).find_cycle() is None


def test_ancestors_and_dependents():
    resolver = DependencyResolver({"db": [], "api": ["db"], "web": ["api"], "cron": []})
    assert resolver.ancestors("web") == {"api", "db"}
    assert resolver.dependents("db") == {"api", "web"}
    assert resolver.dependents("cron") == set()
