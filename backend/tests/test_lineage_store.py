import pytest

from models import LineageNode, ParameterShift
from soundlineage.database import LineageDB, LineageStore
from soundlineage.errors import LineageExistsError

from fakes import make_sound


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        yield LineageStore()
        return
    with LineageDB(str(tmp_path / "lineage.db")) as db:
        yield db


def test_create_lineage_writes_root_node(store):
    root = make_sound("root", name="Thunder")
    lineage = store.create_lineage(root)

    assert lineage.root_sound_id == "root"
    assert lineage.name == 'Lineage of "Thunder"'
    assert lineage.total_variations == 1
    assert lineage.total_generations == 1

    node = store.get_node_for_sound("root")
    assert node.lineage_id == lineage.id
    assert node.parent_id is None
    assert node.generation == 0
    assert node.variation_type == "root"
    assert store.get_lineage_by_root_sound("root").id == lineage.id


def test_create_lineage_twice_for_same_root_fails(store):
    root = make_sound("root")
    store.create_lineage(root)
    with pytest.raises(LineageExistsError):
        store.create_lineage(root)
    assert len(store.get_all_lineages()) == 1


def test_save_node_refreshes_counts_and_keeps_insertion_order(store):
    lineage = store.create_lineage(make_sound("root"))
    store.save_node(LineageNode(sound_id="b", lineage_id=lineage.id, parent_id="root",
                                generation=1, variation_type="evolve"))
    store.save_node(LineageNode(sound_id="a", lineage_id=lineage.id, parent_id="root",
                                generation=1, variation_type="evolve"))
    store.save_node(LineageNode(sound_id="c", lineage_id=lineage.id, parent_id="a",
                                generation=2, variation_type="mutate"))

    assert [n.sound_id for n in store.get_nodes_for_lineage(lineage.id)] == ["root", "b", "a", "c"]
    refreshed = store.get_lineage(lineage.id)
    assert refreshed.total_variations == 4
    assert refreshed.total_generations == 3
    assert refreshed.updated_at >= lineage.updated_at


def test_save_node_overwrites_by_sound_id(store):
    lineage = store.create_lineage(make_sound("root"))
    store.save_node(LineageNode(sound_id="a", lineage_id=lineage.id, parent_id="root",
                                generation=1, variation_type="evolve"))
    store.save_node(LineageNode(
        sound_id="a", lineage_id=lineage.id, parent_id="root", generation=1,
        variation_type="combine", secondary_parent_id="other",
        parameter_shifts=[ParameterShift(parameter="intensity", original_value=10,
                                         new_value=30, shift_amount=20)],
    ))

    nodes = store.get_nodes_for_lineage(lineage.id)
    assert [n.sound_id for n in nodes] == ["root", "a"]
    node = store.get_node_for_sound("a")
    assert node.variation_type == "combine"
    assert node.secondary_parent_id == "other"
    assert node.parameter_shifts[0].shift_amount == 20


def test_lookups_for_unknown_ids_return_none(store):
    assert store.get_lineage("missing") is None
    assert store.get_lineage_by_root_sound("missing") is None
    assert store.get_node_for_sound("missing") is None
    assert store.get_nodes_for_lineage("missing") == []
    assert store.get_all_lineages() == []


def test_sqlite_store_survives_reconnect(tmp_path):
    path = str(tmp_path / "lineage.db")
    with LineageDB(path) as db:
        lineage = db.create_lineage(make_sound("root"))
        db.save_node(LineageNode(sound_id="a", lineage_id=lineage.id, parent_id="root",
                                 generation=1, variation_type="parameter_shift"))

    with LineageDB(path) as db:
        assert db.get_lineage(lineage.id).total_variations == 2
        assert db.get_node_for_sound("a").parent_id == "root"


def test_sqlite_requires_connection(tmp_path):
    db = LineageDB(str(tmp_path / "lineage.db"))
    with pytest.raises(RuntimeError):
        db.get_all_lineages()
