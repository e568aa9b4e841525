import re
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, Set, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Engine:
    id: str
    name: str
    description: str
    strengths: Tuple[str, ...]


# Static ranking, also the last-resort fallback order
ENGINES: Tuple[Engine, ...] = (
    Engine("replicate", "BeatSmith", "High-quality instrumental music generator",
           ("Beats", "Bass", "Drums", "Melodies", "Instrumental")),
    Engine("elevenlabs", "SonicCraft", "Sound effects and environmental audio",
           ("SFX", "Ambience", "Foley", "Nature Sounds")),
    Engine("stability", "HarmonyEngine", "Balanced music and sound generation",
           ("Music", "Soundscapes", "Textures")),
    Engine("fal", "AudioSmith", "Enterprise-grade audio synthesis",
           ("High-Fidelity", "Long-Form", "Studio Quality")),
    Engine("openai", "VoiceWeaver", "AI narration and speech synthesis",
           ("Narration", "Speech", "Voice", "Talking")),
    Engine("suno", "VocalForge", "Professional vocal and choir synthesis",
           ("Vocals", "Choir", "Harmonies", "Full Songs")),
)
ENGINE_IDS = tuple(e.id for e in ENGINES)

VOCAL_KEYWORDS = ["vocal", "vocals", "sing", "singer", "sung", "choir", "lyrics", "lyric", "vox", "harmonies"]
SPEECH_KEYWORDS = ["speech", "narration", "voiceover", "voice over", "spoken", "talking"]
SFX_KEYWORDS = ["sfx", "ui", "interface", "click", "hit", "impact", "glitch", "whoosh", "button"]
AMBIENT_KEYWORDS = ["ambience", "ambient", "drones", "texture", "atmosphere", "soundscape"]
PERCUSSION_KEYWORDS = ["drum", "drums", "percussion", "beat", "kick", "snare", "hi-hat", "hihat",
                       "cymbal", "tom", "clap", "rim", "loop"]
RHYTHMIC_KEYWORDS = ["bpm", "tempo", "groove", "rhythm", "rhythmic", "metronome", "quantized"]

BPM_PATTERN = re.compile(r"(\d{2,3})\s*bpm")

SHORT_MAX_SECONDS = 22  # SonicCraft upper limit
MEDIUM_MAX_SECONDS = 30  # BeatSmith upper limit
DEFAULT_DURATION = 10.0


def get_engine(engine_id: str) -> Optional[Engine]:
    return next((e for e in ENGINES if e.id == engine_id), None)


def _mentions(text: str, keywords: Iterable[str]) -> bool:
    # keywords match at the start of a word: "sing" hits "singing" but "ui" misses "guitar"
    return any(re.search(r"\b" + re.escape(k), text) for k in keywords)


def _pick(chain: Sequence[str], available: Set[str]) -> Optional[str]:
    return next((engine_id for engine_id in chain if engine_id in available), None)


def recommend_engine(
    prompt: str,
    has_reference_audio: bool = False,
    duration_seconds: Optional[float] = None,
    available: Optional[Iterable[str]] = None,
) -> Optional[str]:
    """
    Recommend a synthesis engine for a prompt.

    Rules are checked in priority order. A matching rule whose whole fallback
    chain is unavailable falls through to the next rule. Returns None only when
    no engine at all is available.
    """
    text = (prompt or "").strip().lower()
    pool = set(ENGINE_IDS if available is None else available)

    mentions_vocals = _mentions(text, VOCAL_KEYWORDS) or _mentions(text, SPEECH_KEYWORDS)
    mentions_sfx = _mentions(text, SFX_KEYWORDS)
    mentions_ambience = _mentions(text, AMBIENT_KEYWORDS)
    mentions_percussion = _mentions(text, PERCUSSION_KEYWORDS)
    has_bpm = BPM_PATTERN.search(text) is not None or _mentions(text, RHYTHMIC_KEYWORDS)

    duration = DEFAULT_DURATION if duration_seconds is None else duration_seconds
    is_short = duration <= SHORT_MAX_SECONDS
    is_long = duration > MEDIUM_MAX_SECONDS

    if is_short:
        percussion_chain = ["elevenlabs", "fal", "replicate"]
    elif is_long:
        percussion_chain = ["fal", "stability", "replicate"]
    else:
        percussion_chain = ["replicate", "fal", "elevenlabs"]

    rules: List[Tuple[str, Callable[[], bool], List[str]]] = [
        ("vocals", lambda: mentions_vocals, ["openai", "suno", "elevenlabs", "replicate"]),
        ("percussion_bpm", lambda: mentions_percussion and has_bpm, percussion_chain),
        ("reference_audio", lambda: has_reference_audio, ["fal", "stability", "replicate"]),
        ("sfx", lambda: mentions_sfx or mentions_percussion,
         ["elevenlabs", "stability", "replicate"] if is_short else ["fal", "stability", "replicate"]),
        ("ambience", lambda: mentions_ambience, ["stability", "fal", "replicate"]),
        ("long_form", lambda: is_long, ["fal", "stability", "replicate"]),
        ("default", lambda: True, ["replicate", "fal"]),
    ]

    for name, matches, chain in rules:
        if not matches():
            continue
        choice = _pick(chain, pool)
        if choice is not None:
            logger.debug(f"Engine rule '{name}' picked {choice}")
            return choice

    return _pick(ENGINE_IDS, pool)
