"""
Derivation Orchestrator
=======================
Turns "generate N variations of sound S using strategy T" into N new sounds
plus lineage-graph updates.

Collaborators are injected:
- store: a lineage store (see database.py)
- library: async get(id) / save(sound) / update(id, patch)
- synthesizer: async generate(engine_id, prompt, parameters) -> result with
  audio_url and provenance_id

Per-item failures are logged and skipped; the batch only fails when nothing
was produced.
"""

import asyncio
import dataclasses
import logging
import random
from typing import Any, Dict, List, Optional, Protocol

from models import (
    LineageDetail,
    LineageInfo,
    LineageNode,
    LineageStats,
    SoundGeneration,
    SoundParameters,
    VariationRequest,
    VariationResult,
)
from .database import BaseLineageStore
from .errors import BatchExhaustedError, NotFoundError, StoreInconsistency, ValidationError
from .graph import ancestor_ids, build_tree, descendant_ids, lineage_stats, parameter_shifts, sibling_ids
from .strategies import (
    CONFIG_TYPES,
    CombineConfig,
    StrategyConfig,
    StrategyOutput,
    apply_delta,
    apply_strategy,
    config_from_request,
    default_config,
    variation_prompt,
)

logger = logging.getLogger(__name__)

MIN_VARIATIONS = 1
MAX_VARIATIONS = 10
DERIVABLE_TYPES = ("parameter_shift", "style_transfer", "combine", "evolve", "mutate")


class SoundLibrary(Protocol):
    async def get(self, sound_id: str) -> Optional[SoundGeneration]: ...

    async def save(self, sound: SoundGeneration) -> SoundGeneration: ...

    async def update(self, sound_id: str, patch: Dict[str, Any]) -> Optional[SoundGeneration]: ...


class Synthesizer(Protocol):
    async def generate(self, engine_id: str, prompt: str, parameters: SoundParameters) -> Any: ...


class DerivationOrchestrator:
    def __init__(
        self,
        store: BaseLineageStore,
        library: SoundLibrary,
        synthesizer: Synthesizer,
        default_engine: str = "elevenlabs",
        max_concurrency: int = 3,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.library = library
        self.synthesizer = synthesizer
        self.default_engine = default_engine
        self.max_concurrency = max(1, max_concurrency)
        self.rng = rng or random.Random()

    async def derive(self, request: VariationRequest) -> VariationResult:
        """Entry point for the caller-facing request shape."""
        self._check_type(request.variation_type)
        return await self.derive_variations(
            request.parent_sound_id,
            request.variation_type,
            request.count,
            config_from_request(request),
            engine=request.engine,
        )

    async def derive_variations(
        self,
        parent_sound_id: str,
        variation_type: str,
        count: int,
        config: Optional[StrategyConfig] = None,
        engine: Optional[str] = None,
    ) -> VariationResult:
        if not parent_sound_id:
            raise ValidationError("parent_sound_id is required")
        self._check_type(variation_type)
        if isinstance(count, bool) or not isinstance(count, int) or not MIN_VARIATIONS <= count <= MAX_VARIATIONS:
            raise ValidationError(f"count must be between {MIN_VARIATIONS} and {MAX_VARIATIONS}")
        if config is None:
            config = default_config(variation_type)
        if not isinstance(config, CONFIG_TYPES[variation_type]):
            raise ValidationError(
                f"{type(config).__name__} does not configure {variation_type} variations"
            )

        parent = await self.library.get(parent_sound_id)
        if parent is None:
            raise NotFoundError(f"Parent sound {parent_sound_id} not found in library")

        if isinstance(config, CombineConfig):
            secondary = await self.library.get(config.with_sound_id)
            if secondary is None:
                raise NotFoundError(f"Combine sound {config.with_sound_id} not found in library")
            config = dataclasses.replace(config, secondary=secondary)

        parent_node = self._resolve_parent_node(parent)
        generation = parent_node.generation + 1
        engine_id = engine or self.default_engine

        # Strategy outputs are fixed up front so sibling order never depends on completion order
        outputs = [apply_strategy(parent, config, i, count, self.rng) for i in range(count)]

        semaphore = asyncio.Semaphore(self.max_concurrency)
        failures: Dict[int, str] = {}

        async def run(index: int) -> Optional[SoundGeneration]:
            async with semaphore:
                try:
                    return await self._derive_one(
                        parent, parent_node, variation_type, config, outputs[index], index, count, engine_id
                    )
                except Exception as e:
                    failures[index] = str(e)
                    logger.error(f"Failed to generate variation {index + 1} of {parent.id}: {e}")
                    return None

        results = await asyncio.gather(*(run(i) for i in range(count)))
        sounds = [s for s in results if s is not None]

        if not sounds:
            raise BatchExhaustedError(requested=count, failures=failures)

        logger.info(
            f"Derived {len(sounds)}/{count} {variation_type} variations of {parent.id} "
            f"(lineage {parent_node.lineage_id}, generation {generation})"
        )
        return VariationResult(
            sounds=sounds,
            lineage_id=parent_node.lineage_id,
            generation=generation,
            requested=count,
            produced=len(sounds),
        )

    def _check_type(self, variation_type: str) -> None:
        if variation_type not in DERIVABLE_TYPES:
            raise ValidationError(f"Invalid variation_type: {variation_type}")

    def _resolve_parent_node(self, parent: SoundGeneration) -> LineageNode:
        node = self.store.get_node_for_sound(parent.id)
        if node is not None:
            if self.store.get_lineage(node.lineage_id) is None:
                raise StoreInconsistency(f"Node {parent.id} belongs to missing lineage {node.lineage_id}")
            return node

        lineage = self.store.create_lineage(parent)
        logger.info(f"Created lineage {lineage.id} rooted at {parent.id}")
        node = self.store.get_node_for_sound(parent.id)
        if node is None:
            raise StoreInconsistency(f"Root node for lineage {lineage.id} was not written")
        return node

    async def _derive_one(
        self,
        parent: SoundGeneration,
        parent_node: LineageNode,
        variation_type: str,
        config: StrategyConfig,
        output: StrategyOutput,
        index: int,
        total: int,
        engine_id: str,
    ) -> SoundGeneration:
        params = apply_delta(parent.parameters, output.delta)
        if parent.parameters.seed is not None:
            params = params.model_copy(update={"seed": parent.parameters.seed + index + 1})
        prompt = variation_prompt(parent, output, index, total)

        result = await self.synthesizer.generate(engine_id, prompt, params)

        sound = SoundGeneration(
            name=f"{parent.display_name} - Variation {index + 1}",
            prompt=prompt,
            parameters=params,
            audio_url=result.audio_url,
            status="ready",
            provenance_id=result.provenance_id,
            variant_of_id=parent.id,
        )
        saved = await self.library.save(sound)
        generation = parent_node.generation + 1
        # the node is stored before the library patch that points at it
        self.store.save_node(
            LineageNode(
                sound_id=saved.id,
                lineage_id=parent_node.lineage_id,
                parent_id=parent.id,
                generation=generation,
                variation_type=variation_type,
                parameter_shifts=parameter_shifts(parent.parameters, params),
                secondary_parent_id=config.with_sound_id if isinstance(config, CombineConfig) else None,
            )
        )
        await self.library.update(
            saved.id,
            {"parent_id": parent.id, "lineage_id": parent_node.lineage_id, "generation": generation},
        )
        return saved

    # ============== Queries ==============

    def _lineage_nodes(self, sound_id: str) -> List[LineageNode]:
        node = self.store.get_node_for_sound(sound_id)
        if node is None:
            raise NotFoundError(f"Sound {sound_id} not found in any lineage")
        return self.store.get_nodes_for_lineage(node.lineage_id)

    def ancestors(self, sound_id: str) -> List[str]:
        return ancestor_ids(sound_id, self._lineage_nodes(sound_id))

    def descendants(self, sound_id: str) -> List[str]:
        return descendant_ids(sound_id, self._lineage_nodes(sound_id))

    def siblings(self, sound_id: str) -> List[str]:
        return sibling_ids(sound_id, self._lineage_nodes(sound_id))

    def describe(self, sound_id: str) -> LineageInfo:
        node = self.store.get_node_for_sound(sound_id)
        if node is None:
            raise NotFoundError(f"Sound {sound_id} not found in any lineage")
        lineage = self.store.get_lineage(node.lineage_id)
        if lineage is None:
            raise StoreInconsistency(f"Node {sound_id} belongs to missing lineage {node.lineage_id}")
        nodes = self.store.get_nodes_for_lineage(node.lineage_id)
        return LineageInfo(
            lineage=lineage,
            node=node,
            total_nodes=len(nodes),
            ancestors=ancestor_ids(sound_id, nodes),
            descendants=descendant_ids(sound_id, nodes),
            siblings=sibling_ids(sound_id, nodes),
        )

    def lineage_detail(self, lineage_id: str) -> LineageDetail:
        lineage = self.store.get_lineage(lineage_id)
        if lineage is None:
            raise NotFoundError(f"Lineage {lineage_id} not found")
        nodes = self.store.get_nodes_for_lineage(lineage_id)
        return LineageDetail(lineage=lineage, nodes=nodes, tree=build_tree(nodes))

    async def lineage_stats(self, lineage_id: str) -> LineageStats:
        if self.store.get_lineage(lineage_id) is None:
            raise NotFoundError(f"Lineage {lineage_id} not found")
        nodes = self.store.get_nodes_for_lineage(lineage_id)
        parameters: Dict[str, SoundParameters] = {}
        for n in nodes:
            sound = await self.library.get(n.sound_id)
            if sound is not None:
                parameters[n.sound_id] = sound.parameters
        return lineage_stats(nodes, parameters)
