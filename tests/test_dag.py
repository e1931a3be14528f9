import pytest

from flowci.dag import build_dag, check_acyclic, topo_levels
from flowci.errors import DefinitionError


def test_stages_keep_declaration_order():
    needs = {"lint": [], "unit": ["lint"], "docs": [], "e2e": ["unit", "docs"]}
    assert check_acyclic(needs) == [["lint", "docs"], ["unit"], ["e2e"]]


def test_build_dag_counts_distinct_needs():
    adj, indeg = build_dag({"a": [], "b": ["a", "a"]})
    assert adj == {"a": {"b"}, "b": set()}
    assert indeg == {"a": 0, "b": 1}


def test_topo_levels_reports_cycle_members():
    adj = {"a": {"b"}, "b": {"a"}, "c": set()}
    indeg = {"a": 1, "b": 1, "c": 0}
    with pytest.raises(DefinitionError) as exc:
        topo_levels(adj, indeg)
    assert exc.value.details == {"stuck_jobs": ["a", "b"]}


def test_missing_need_lists_known_jobs():
    with pytest.raises(DefinitionError) as exc:
        build_dag({"a": ["ghost"]})
    assert exc.value.job == "a"
    assert exc.value.details["known_jobs"] == ["a"]
