"""
Variation Strategies
====================
Pure functions mapping (parent parameters, strategy config, index, total) to
a parameter overlay and a prompt fragment.

Each strategy config is a small frozen dataclass; apply_strategy dispatches on
its type. Fields a strategy leaves out of its overlay keep the parent's value.
"""

import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from models import SoundGeneration, SoundParameters, VariationParameterShifts, VariationRequest
from .errors import ValidationError

SCALE_FIELDS = ("intensity", "texture", "brightness", "noisiness")
SCALE_RANGE = (0.0, 100.0)
BPM_RANGE = (30, 300)

EVOLUTION_STRENGTH_RANGE = (0.1, 0.5)
MUTATION_RATE_RANGE = (0.1, 0.7)

# How far each scale moves at full evolution strength and phase
EVOLVE_WEIGHTS = {"intensity": 30.0, "texture": 20.0, "brightness": 20.0, "noisiness": 15.0}

# Largest single mutation per field
MUTATION_MAX_CHANGE = {"intensity": 40.0, "texture": 30.0, "brightness": 35.0, "noisiness": 25.0, "bpm": 10.0}


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def clamp_scale(value: float) -> float:
    return clamp(value, *SCALE_RANGE)


def clamp_bpm(value: float) -> int:
    return int(round(clamp(value, *BPM_RANGE)))


def ramp(index: int, total: int) -> float:
    """Position of variation `index` in a batch of `total`, from 0.0 to 1.0."""
    return index / max(total - 1, 1)


@dataclass(frozen=True)
class StrategyOutput:
    delta: Dict[str, Any]
    prompt_fragment: str


@dataclass(frozen=True)
class ParameterShiftConfig:
    shifts: VariationParameterShifts = field(default_factory=VariationParameterShifts)


@dataclass(frozen=True)
class EvolveConfig:
    strength: float = 0.2

    def __post_init__(self):
        low, high = EVOLUTION_STRENGTH_RANGE
        if not low <= self.strength <= high:
            raise ValidationError(f"evolution_strength must be between {low} and {high}")


@dataclass(frozen=True)
class MutateConfig:
    rate: float = 0.3
    preserve_core: bool = True

    def __post_init__(self):
        low, high = MUTATION_RATE_RANGE
        if not low <= self.rate <= high:
            raise ValidationError(f"mutation_rate must be between {low} and {high}")


@dataclass(frozen=True)
class CombineConfig:
    with_sound_id: str
    # resolved by the orchestrator before any strategy runs
    secondary: Optional[SoundGeneration] = None


@dataclass(frozen=True)
class StyleTransferConfig:
    pass


StrategyConfig = Union[ParameterShiftConfig, EvolveConfig, MutateConfig, CombineConfig, StyleTransferConfig]

CONFIG_TYPES = {
    "parameter_shift": ParameterShiftConfig,
    "evolve": EvolveConfig,
    "mutate": MutateConfig,
    "combine": CombineConfig,
    "style_transfer": StyleTransferConfig,
}


def config_from_request(request: VariationRequest) -> StrategyConfig:
    """Build the strategy config matching request.variation_type."""
    vtype = request.variation_type
    if vtype == "parameter_shift":
        return ParameterShiftConfig(shifts=request.parameter_shifts or VariationParameterShifts())
    if vtype == "evolve":
        return EvolveConfig(strength=request.evolution_strength)
    if vtype == "mutate":
        return MutateConfig(rate=request.mutation_rate, preserve_core=request.preserve_core)
    if vtype == "combine":
        if not request.combine_with_sound_id:
            raise ValidationError("combine_with_sound_id is required for combine variations")
        return CombineConfig(with_sound_id=request.combine_with_sound_id)
    if vtype == "style_transfer":
        return StyleTransferConfig()
    raise ValidationError(f"Invalid variation_type: {vtype}")


def default_config(variation_type: str) -> StrategyConfig:
    if variation_type == "combine":
        raise ValidationError("combine variations need a second sound")
    config_type = CONFIG_TYPES.get(variation_type)
    if config_type is None:
        raise ValidationError(f"Invalid variation_type: {variation_type}")
    return config_type()


# ============== Strategies ==============

def parameter_shift(parent: SoundParameters, config: ParameterShiftConfig, index: int, total: int) -> StrategyOutput:
    # A single variation gets the full shift rather than none
    factor = 1.0 if total <= 1 else ramp(index, total)
    shifts = config.shifts
    delta: Dict[str, Any] = {
        name: clamp_scale(getattr(parent, name) + getattr(shifts, name) * factor)
        for name in SCALE_FIELDS
    }
    if parent.bpm is not None:
        delta["bpm"] = clamp_bpm(parent.bpm + shifts.bpm * factor)
    return StrategyOutput(delta=delta, prompt_fragment="with adjusted parameters")


def evolve(parent: SoundParameters, config: EvolveConfig, index: int, total: int) -> StrategyOutput:
    phase = ramp(index, total)
    delta: Dict[str, Any] = {}
    for name, weight in EVOLVE_WEIGHTS.items():
        value = getattr(parent, name)
        direction = 1.0 if value < 50 else -1.0
        delta[name] = clamp_scale(value + direction * config.strength * phase * weight)

    if phase < 0.3:
        fragment = "subtle evolution, early stage"
    elif phase < 0.7:
        fragment = "mid evolution, developing"
    else:
        fragment = "evolved form, refined"
    return StrategyOutput(delta=delta, prompt_fragment=fragment)


def mutate(parent: SoundParameters, config: MutateConfig, rng: random.Random) -> StrategyOutput:
    def perturb(value: float, max_change: float) -> float:
        if rng.random() > config.rate:
            return value
        return value + rng.uniform(-max_change, max_change)

    delta: Dict[str, Any] = {}
    for name in SCALE_FIELDS:
        value = getattr(parent, name)
        if config.preserve_core and name == "intensity":
            delta[name] = value
        else:
            delta[name] = clamp_scale(perturb(value, MUTATION_MAX_CHANGE[name]))

    if parent.bpm is not None:
        if config.preserve_core:
            delta["bpm"] = parent.bpm
        else:
            delta["bpm"] = clamp_bpm(perturb(parent.bpm, MUTATION_MAX_CHANGE["bpm"]))
    return StrategyOutput(delta=delta, prompt_fragment="experimental mutation, unexpected elements")


def blend_ratio(index: int, total: int) -> float:
    return 0.5 if total <= 1 else ramp(index, total)


def describe_blend(ratio: float, primary: str, secondary: str) -> str:
    if ratio < 0.35:
        return f'mostly "{primary}"'
    if ratio > 0.65:
        return f'mostly "{secondary}"'
    return "balanced blend"


def _merge_tags(first: List[str], second: List[str]) -> List[str]:
    merged: List[str] = []
    for tag in list(first) + list(second):
        if tag not in merged:
            merged.append(tag)
    return merged


def combine(parent: SoundGeneration, config: CombineConfig, index: int, total: int) -> StrategyOutput:
    other = config.secondary
    if other is None:
        raise ValidationError("combine strategy needs the secondary sound resolved")

    ratio = blend_ratio(index, total)
    a, b = parent.parameters, other.parameters
    delta: Dict[str, Any] = {
        name: clamp_scale(getattr(a, name) * (1 - ratio) + getattr(b, name) * ratio)
        for name in SCALE_FIELDS
    }
    if a.bpm is not None and b.bpm is not None:
        delta["bpm"] = clamp_bpm(a.bpm * (1 - ratio) + b.bpm * ratio)
    else:
        delta["bpm"] = a.bpm if a.bpm is not None else b.bpm
    delta["mood_tags"] = _merge_tags(a.mood_tags, b.mood_tags)

    primary, secondary = parent.display_name, other.display_name
    fragment = (
        f'hybrid of "{primary}" and "{secondary}", {describe_blend(ratio, primary, secondary)} '
        f"({round(ratio * 100)}% {b.type.lower()} influence from \"{other.prompt[:50]}\")"
    )
    return StrategyOutput(delta=delta, prompt_fragment=fragment)


def style_transfer(parent: SoundParameters) -> StrategyOutput:
    return StrategyOutput(delta={}, prompt_fragment="style variation")


def apply_strategy(
    parent: SoundGeneration,
    config: StrategyConfig,
    index: int,
    total: int,
    rng: Optional[random.Random] = None,
) -> StrategyOutput:
    """Dispatch to the strategy for config's type."""
    params = parent.parameters
    if isinstance(config, ParameterShiftConfig):
        return parameter_shift(params, config, index, total)
    if isinstance(config, EvolveConfig):
        return evolve(params, config, index, total)
    if isinstance(config, MutateConfig):
        return mutate(params, config, rng or random.Random())
    if isinstance(config, CombineConfig):
        return combine(parent, config, index, total)
    if isinstance(config, StyleTransferConfig):
        return style_transfer(params)
    raise ValidationError(f"Unsupported strategy config: {type(config).__name__}")


def apply_delta(parent: SoundParameters, delta: Dict[str, Any]) -> SoundParameters:
    """Overlay a strategy delta on the parent's parameters, re-clamping every bounded field."""
    update = dict(delta)
    for name in SCALE_FIELDS:
        if name in update:
            update[name] = clamp_scale(update[name])
    if update.get("bpm") is not None:
        update["bpm"] = clamp_bpm(update["bpm"])
    return SoundParameters(**{**parent.model_dump(), **update})


def variation_prompt(parent: SoundGeneration, output: StrategyOutput, index: int, total: int) -> str:
    position = f" (variation {index + 1} of {total})" if total > 1 else ""
    return f"{parent.prompt}{position} - {output.prompt_fragment}"
