from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Dict, Literal
from datetime import datetime, timezone
import uuid


def _now() -> datetime:
    return datetime.now(timezone.utc)


SoundCategory = Literal["FX", "Ambience", "UI", "Foley", "Melody", "Bass", "Percussion"]
SoundStatus = Literal["pending", "ready", "error"]
VariationType = Literal["root", "parameter_shift", "style_transfer", "combine", "evolve", "mutate"]

VARIATION_TYPES = ("root", "parameter_shift", "style_transfer", "combine", "evolve", "mutate")

# Sound Models
class SoundParameters(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")
    type: SoundCategory = "FX"
    intensity: float = Field(default=50, ge=0, le=100)
    texture: float = Field(default=50, ge=0, le=100)
    brightness: float = Field(default=50, ge=0, le=100)
    noisiness: float = Field(default=50, ge=0, le=100)
    mood_tags: List[str] = Field(default_factory=list)
    length_seconds: float = Field(default=10.0, gt=0)
    bpm: Optional[int] = Field(default=None, ge=30, le=300)
    key: Optional[str] = None
    seed: Optional[int] = None

class SoundGeneration(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    prompt: str
    created_at: datetime = Field(default_factory=_now)
    parameters: SoundParameters = Field(default_factory=SoundParameters)
    audio_url: Optional[str] = None
    status: SoundStatus = "pending"
    error_message: Optional[str] = None
    provenance_id: Optional[str] = None
    variant_of_id: Optional[str] = None

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        return self.prompt[:40].strip() or self.id

class LibrarySound(SoundGeneration):
    liked: bool = False
    tags: List[str] = Field(default_factory=list)
    group: Optional[str] = None
    downloaded_at: datetime = Field(default_factory=_now)
    # lineage context, attached after the initial save
    parent_id: Optional[str] = None
    lineage_id: Optional[str] = None
    generation: Optional[int] = None

class SoundUpdate(BaseModel):
    name: Optional[str] = None
    group: Optional[str] = None
    liked: Optional[bool] = None
    tags: Optional[List[str]] = None

class GenerateSoundRequest(BaseModel):
    prompt: str
    name: Optional[str] = None
    parameters: SoundParameters = Field(default_factory=SoundParameters)
    engine: Optional[str] = None
    has_reference_audio: bool = False

class LibraryStats(BaseModel):
    total_sounds: int
    total_liked: int
    total_groups: int
    sounds_by_category: Dict[str, int]
    sounds_by_group: Dict[str, int]

# Lineage Models
class ParameterShift(BaseModel):
    parameter: str
    original_value: float
    new_value: float
    shift_amount: float

class Lineage(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: f"lineage_{uuid.uuid4().hex[:16]}")
    root_sound_id: str
    name: str = ""
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    total_generations: int = 1
    total_variations: int = 1

class LineageNode(BaseModel):
    model_config = ConfigDict(extra="ignore")
    sound_id: str
    lineage_id: str
    parent_id: Optional[str] = None
    generation: int = Field(default=0, ge=0)
    variation_type: VariationType = "root"
    parameter_shifts: List[ParameterShift] = Field(default_factory=list)
    # combine only: provenance pointer, never walked as an edge
    secondary_parent_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)

class LineageTreeNode(BaseModel):
    node: LineageNode
    children: List["LineageTreeNode"] = Field(default_factory=list)

class ParameterDrift(BaseModel):
    intensity: float = 0.0
    texture: float = 0.0
    brightness: float = 0.0
    noisiness: float = 0.0

class LineageStats(BaseModel):
    total_sounds: int
    max_depth: int
    avg_branching_factor: float
    variation_type_distribution: Dict[str, int]
    parameter_drift: ParameterDrift = Field(default_factory=ParameterDrift)

# Variation Request / Response
class VariationParameterShifts(BaseModel):
    intensity: float = 0
    texture: float = 0
    brightness: float = 0
    noisiness: float = 0
    bpm: float = 0

class VariationRequest(BaseModel):
    parent_sound_id: str
    variation_type: str
    count: int = 3
    parameter_shifts: Optional[VariationParameterShifts] = None
    combine_with_sound_id: Optional[str] = None
    evolution_strength: float = 0.2
    mutation_rate: float = 0.3
    preserve_core: bool = True
    engine: Optional[str] = None

class VariationResult(BaseModel):
    sounds: List[SoundGeneration]
    lineage_id: str
    generation: int
    requested: int
    produced: int

class LineageInfo(BaseModel):
    lineage: Lineage
    node: LineageNode
    total_nodes: int
    ancestors: List[str]
    descendants: List[str]
    siblings: List[str] = Field(default_factory=list)

class LineageDetail(BaseModel):
    lineage: Lineage
    nodes: List[LineageNode]
    tree: Optional[LineageTreeNode] = None

class LineageListResponse(BaseModel):
    lineages: List[Lineage]

# Engine Models
class EngineInfo(BaseModel):
    id: str
    name: str
    description: str
    strengths: List[str]
    available: bool

class EngineRecommendationRequest(BaseModel):
    prompt: str = ""
    has_reference_audio: bool = False
    duration_seconds: Optional[float] = None

class EngineRecommendation(BaseModel):
    engine: Optional[str] = None
    name: Optional[str] = None
