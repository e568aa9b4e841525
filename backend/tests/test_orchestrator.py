import asyncio
import random

import pytest

from models import VariationRequest
from soundlineage.database import LineageStore
from soundlineage.errors import BatchExhaustedError, NotFoundError, ValidationError
from soundlineage.orchestrator import DerivationOrchestrator
from soundlineage.strategies import CombineConfig, EvolveConfig, MutateConfig

from fakes import FakeLibrary, FakeSynthesizer, make_sound


def build(*sounds, fail_calls=(), fail_saves=0, max_concurrency=1, synth=None, store=None):
    store = store or LineageStore()
    library = FakeLibrary(*sounds, fail_saves=fail_saves)
    synth = synth or FakeSynthesizer(fail_calls=set(fail_calls))
    orch = DerivationOrchestrator(
        store, library, synth, max_concurrency=max_concurrency, rng=random.Random(0)
    )
    return orch, store, library, synth


def test_first_batch_creates_lineage_rooted_at_parent():
    orch, store, library, synth = build(make_sound("root", seed=7))

    result = asyncio.run(orch.derive_variations("root", "evolve", 3))

    assert result.requested == 3
    assert result.produced == 3
    assert result.generation == 1

    lineages = store.get_all_lineages()
    assert len(lineages) == 1
    assert lineages[0].id == result.lineage_id
    assert lineages[0].root_sound_id == "root"
    assert lineages[0].total_variations == 4
    assert lineages[0].total_generations == 2

    root = store.get_node_for_sound("root")
    assert root.generation == 0 and root.parent_id is None
    for sound in result.sounds:
        node = store.get_node_for_sound(sound.id)
        assert node.parent_id == "root"
        assert node.generation == 1
        assert node.variation_type == "evolve"
        assert sound.variant_of_id == "root"

    assert [s.name for s in result.sounds] == [
        "Root - Variation 1",
        "Root - Variation 2",
        "Root - Variation 3",
    ]
    assert [s.parameters.seed for s in result.sounds] == [8, 9, 10]
    assert synth.calls[0][0] == "elevenlabs"
    assert synth.calls[0][1] == "root prompt (variation 1 of 3) - subtle evolution, early stage"


def test_library_gets_lineage_context_for_each_variation():
    orch, store, library, _ = build(make_sound("root"))
    result = asyncio.run(orch.derive_variations("root", "mutate", 2))

    for sound in result.sounds:
        assert library.updates[sound.id] == {
            "parent_id": "root",
            "lineage_id": result.lineage_id,
            "generation": 1,
        }
        assert library.sounds[sound.id].lineage_id == result.lineage_id


def test_deriving_from_a_child_extends_the_same_lineage():
    orch, store, _, _ = build(make_sound("root"))
    first = asyncio.run(orch.derive_variations("root", "evolve", 2))
    child = first.sounds[0].id

    second = asyncio.run(orch.derive_variations(child, "mutate", 2))

    assert second.lineage_id == first.lineage_id
    assert second.generation == 2
    assert len(store.get_all_lineages()) == 1
    lineage = store.get_lineage(first.lineage_id)
    assert lineage.total_variations == 5
    assert lineage.total_generations == 3
    assert orch.ancestors(second.sounds[0].id) == [child, "root"]


def test_partial_failure_returns_survivors_in_order():
    orch, store, _, _ = build(make_sound("root"), fail_calls={1})

    result = asyncio.run(orch.derive_variations("root", "evolve", 3))

    assert result.requested == 3
    assert result.produced == 2
    assert [s.name for s in result.sounds] == ["Root - Variation 1", "Root - Variation 3"]
    assert len(store.get_nodes_for_lineage(result.lineage_id)) == 3


def test_library_write_failure_skips_that_variation():
    orch, store, _, _ = build(make_sound("root"), fail_saves=1)

    result = asyncio.run(orch.derive_variations("root", "evolve", 2))

    assert result.produced == 1
    assert len(store.get_nodes_for_lineage(result.lineage_id)) == 2


def test_every_variation_failing_raises():
    orch, store, _, _ = build(make_sound("root"), fail_calls={0, 1})

    with pytest.raises(BatchExhaustedError) as exc:
        asyncio.run(orch.derive_variations("root", "evolve", 2))

    assert exc.value.requested == 2
    assert set(exc.value.failures) == {0, 1}
    # the root's lineage stays, with no children
    nodes = store.get_nodes_for_lineage(store.get_all_lineages()[0].id)
    assert [n.sound_id for n in nodes] == ["root"]


@pytest.mark.parametrize("count", [0, 11, True, 2.5])
def test_count_out_of_range_is_rejected(count):
    orch, store, _, synth = build(make_sound("root"))
    with pytest.raises(ValidationError):
        asyncio.run(orch.derive_variations("root", "evolve", count))
    assert synth.calls == []
    assert store.get_all_lineages() == []


@pytest.mark.parametrize("variation_type", ["root", "remix", ""])
def test_unknown_variation_type_is_rejected(variation_type):
    orch, store, _, _ = build(make_sound("root"))
    with pytest.raises(ValidationError):
        asyncio.run(orch.derive_variations("root", variation_type, 2))
    assert store.get_all_lineages() == []


def test_config_must_match_variation_type():
    orch, _, _, _ = build(make_sound("root"))
    with pytest.raises(ValidationError):
        asyncio.run(orch.derive_variations("root", "mutate", 2, EvolveConfig(0.3)))


def test_missing_parent_is_not_found():
    orch, store, _, synth = build()
    with pytest.raises(NotFoundError):
        asyncio.run(orch.derive_variations("ghost", "evolve", 2))
    assert synth.calls == []
    assert store.get_all_lineages() == []


def test_missing_combine_target_is_not_found_and_creates_nothing():
    orch, store, _, synth = build(make_sound("root"))
    with pytest.raises(NotFoundError):
        asyncio.run(orch.derive_variations("root", "combine", 2, CombineConfig(with_sound_id="ghost")))
    assert synth.calls == []
    assert store.get_all_lineages() == []


def test_combine_records_secondary_parent_without_joining_lineages():
    orch, store, _, _ = build(make_sound("root", intensity=20), make_sound("other", intensity=80))

    result = asyncio.run(orch.derive_variations("root", "combine", 2, CombineConfig(with_sound_id="other")))

    assert [s.parameters.intensity for s in result.sounds] == [20, 80]
    for sound in result.sounds:
        node = store.get_node_for_sound(sound.id)
        assert node.parent_id == "root"
        assert node.secondary_parent_id == "other"
    # the secondary sound is not pulled into any lineage
    assert store.get_node_for_sound("other") is None
    assert orch.ancestors(result.sounds[0].id) == ["root"]


def test_derive_accepts_request_model():
    orch, store, _, synth = build(make_sound("root", texture=40))
    request = VariationRequest(
        parent_sound_id="root",
        variation_type="parameter_shift",
        count=1,
        parameter_shifts={"texture": 25},
        engine="stability",
    )

    result = asyncio.run(orch.derive(request))

    assert result.sounds[0].parameters.texture == 65
    assert synth.calls[0][0] == "stability"
    shifts = store.get_node_for_sound(result.sounds[0].id).parameter_shifts
    assert [(s.parameter, s.shift_amount) for s in shifts] == [("texture", 25)]


def test_derive_rejects_combine_request_without_target():
    orch, _, _, _ = build(make_sound("root"))
    with pytest.raises(ValidationError):
        asyncio.run(orch.derive(VariationRequest(parent_sound_id="root", variation_type="combine")))


def test_concurrent_batch_keeps_index_order():
    orch, _, _, synth = build(make_sound("root"), max_concurrency=3)

    result = asyncio.run(orch.derive_variations("root", "mutate", 6, MutateConfig(rate=0.3)))

    assert [s.name for s in result.sounds] == [f"Root - Variation {i}" for i in range(1, 7)]
    assert len(synth.calls) == 6


def test_describe_and_queries():
    orch, _, _, _ = build(make_sound("root"))
    result = asyncio.run(orch.derive_variations("root", "evolve", 3))
    first, second, third = [s.id for s in result.sounds]

    info = orch.describe(second)
    assert info.node.generation == 1
    assert info.total_nodes == 4
    assert info.ancestors == ["root"]
    assert info.descendants == []
    assert info.siblings == [first, third]
    assert orch.descendants("root") == [first, second, third]
    assert orch.siblings(first) == [second, third]

    with pytest.raises(NotFoundError):
        orch.describe("ghost")


def test_lineage_detail_and_stats():
    orch, _, _, _ = build(make_sound("root"))
    result = asyncio.run(orch.derive_variations("root", "evolve", 2))

    detail = orch.lineage_detail(result.lineage_id)
    assert detail.tree.node.sound_id == "root"
    assert len(detail.tree.children) == 2

    stats = asyncio.run(orch.lineage_stats(result.lineage_id))
    assert stats.total_sounds == 3
    assert stats.max_depth == 1
    assert stats.avg_branching_factor == 2
    assert stats.variation_type_distribution["evolve"] == 2

    with pytest.raises(NotFoundError):
        orch.lineage_detail("lineage_missing")
    with pytest.raises(NotFoundError):
        asyncio.run(orch.lineage_stats("lineage_missing"))


def test_out_of_order_completions_keep_index_order_and_generation():
    # call 0 finishes last and call 2 fails
    synth = FakeSynthesizer(fail_calls={2}, delays={0: 0.05, 1: 0.01})
    orch, store, _, _ = build(make_sound("root"), synth=synth, max_concurrency=4)

    result = asyncio.run(orch.derive_variations("root", "evolve", 4))

    assert synth.finished[-1] == 0
    assert result.produced == 3
    assert [s.name for s in result.sounds] == [
        "Root - Variation 1",
        "Root - Variation 2",
        "Root - Variation 4",
    ]
    assert result.generation == 1
    assert {store.get_node_for_sound(s.id).generation for s in result.sounds} == {1}


def test_parameter_shift_without_bpm_shift_keeps_edge_tempo():
    orch, store, _, _ = build(make_sound("root", bpm=300, texture=60))
    request = VariationRequest(
        parent_sound_id="root",
        variation_type="parameter_shift",
        count=1,
        parameter_shifts={"texture": 10},
    )

    result = asyncio.run(orch.derive(request))

    assert result.sounds[0].parameters.bpm == 300
    shifts = store.get_node_for_sound(result.sounds[0].id).parameter_shifts
    assert [(s.parameter, s.original_value, s.new_value) for s in shifts] == [("texture", 60, 70)]


class NodeWriteFailsOnce(LineageStore):
    def __init__(self):
        super().__init__()
        self.failed = None

    def _write_node(self, node):
        if node.parent_id is not None and self.failed is None:
            self.failed = node.sound_id
            raise RuntimeError("node write failed")
        super()._write_node(node)


def test_failed_node_write_leaves_no_lineage_claim_in_library():
    store = NodeWriteFailsOnce()
    orch, _, library, _ = build(make_sound("root"), store=store)

    result = asyncio.run(orch.derive_variations("root", "evolve", 2))

    assert result.produced == 1
    orphan = store.failed
    assert orphan not in {s.id for s in result.sounds}
    assert orphan not in library.updates
    assert library.sounds[orphan].lineage_id is None
    assert store.get_node_for_sound(orphan) is None
