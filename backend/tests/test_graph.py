import pytest

from models import LineageNode, SoundParameters
from soundlineage.errors import NotFoundError, StoreInconsistency
from soundlineage.graph import (
    ancestor_ids,
    build_tree,
    descendant_ids,
    find_root,
    lineage_stats,
    parameter_shifts,
    sibling_ids,
)


def node(sound_id, parent_id=None, generation=0, variation_type=None):
    return LineageNode(
        sound_id=sound_id,
        lineage_id="lineage_test",
        parent_id=parent_id,
        generation=generation,
        variation_type=variation_type or ("root" if parent_id is None else "evolve"),
    )


@pytest.fixture
def family():
    #        root
    #       /    \
    #      a      b
    #     / \      \
    #    c   d      e
    return [
        node("root"),
        node("a", "root", 1),
        node("b", "root", 1, "mutate"),
        node("c", "a", 2),
        node("d", "a", 2, "combine"),
        node("e", "b", 2),
    ]


def test_ancestors_nearest_first(family):
    assert ancestor_ids("d", family) == ["a", "root"]
    assert ancestor_ids("root", family) == []


def test_ancestors_of_unknown_sound(family):
    with pytest.raises(NotFoundError):
        ancestor_ids("zzz", family)


def test_ancestors_detect_dangling_parent():
    nodes = [node("root"), node("a", "ghost", 2)]
    with pytest.raises(StoreInconsistency):
        ancestor_ids("a", nodes)


def test_ancestors_detect_cycle():
    nodes = [node("x", "y", 1), node("y", "x", 1)]
    with pytest.raises(StoreInconsistency):
        ancestor_ids("x", nodes)


def test_descendants_are_breadth_first(family):
    assert descendant_ids("root", family) == ["a", "b", "c", "d", "e"]
    assert descendant_ids("a", family) == ["c", "d"]
    assert descendant_ids("e", family) == []


def test_descendants_detect_cycle():
    nodes = [node("root"), node("x", "y", 1), node("y", "x", 2), node("z", "root", 1)]
    nodes.append(node("x2", "x", 2))
    with pytest.raises(StoreInconsistency):
        descendant_ids("x", nodes)


def test_siblings(family):
    assert sibling_ids("c", family) == ["d"]
    assert sibling_ids("a", family) == ["b"]
    assert sibling_ids("root", family) == []
    assert sibling_ids("zzz", family) == []


def test_find_root_rejects_two_roots():
    with pytest.raises(StoreInconsistency):
        find_root([node("r1"), node("r2")])
    assert find_root([]) is None


def test_build_tree_nests_children(family):
    tree = build_tree(family)
    assert tree.node.sound_id == "root"
    assert [c.node.sound_id for c in tree.children] == ["a", "b"]
    a = tree.children[0]
    assert [c.node.sound_id for c in a.children] == ["c", "d"]
    assert tree.children[1].children[0].node.sound_id == "e"
    assert build_tree([]) is None


def test_parameter_shifts_only_reports_changed_fields():
    before = SoundParameters(type="FX", intensity=40, texture=60, bpm=120)
    after = SoundParameters(type="FX", intensity=55, texture=60, bpm=126)
    shifts = {s.parameter: s for s in parameter_shifts(before, after)}
    assert set(shifts) == {"intensity", "bpm"}
    assert shifts["intensity"].shift_amount == 15
    assert shifts["bpm"].original_value == 120
    assert shifts["bpm"].new_value == 126


def test_lineage_stats_shape(family):
    stats = lineage_stats(family)
    assert stats.total_sounds == 6
    assert stats.max_depth == 2
    # root has 2 children, a has 2, b has 1
    assert stats.avg_branching_factor == pytest.approx(5 / 3)
    assert stats.variation_type_distribution["root"] == 1
    assert stats.variation_type_distribution["evolve"] == 3
    assert stats.variation_type_distribution["mutate"] == 1
    assert stats.variation_type_distribution["combine"] == 1
    assert stats.variation_type_distribution["parameter_shift"] == 0
    assert stats.parameter_drift.intensity == 0


def test_lineage_stats_drift_averages_leaves():
    nodes = [node("root"), node("a", "root", 1), node("b", "root", 1)]
    params = {
        "root": SoundParameters(type="FX", intensity=50, texture=50),
        "a": SoundParameters(type="FX", intensity=70, texture=40),
        "b": SoundParameters(type="FX", intensity=40, texture=50),
    }
    stats = lineage_stats(nodes, params)
    assert stats.parameter_drift.intensity == pytest.approx(15)
    assert stats.parameter_drift.texture == pytest.approx(5)
    assert stats.parameter_drift.brightness == 0


def test_lineage_stats_of_lone_root():
    stats = lineage_stats([node("root")])
    assert stats.total_sounds == 1
    assert stats.max_depth == 0
    assert stats.avg_branching_factor == 0
