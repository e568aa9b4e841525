import pytest

from services.engine_selection import ENGINE_IDS, get_engine, recommend_engine


@pytest.mark.parametrize(
    "prompt, duration, expected",
    [
        ("angelic choir singing", None, "openai"),
        ("calm narration for a documentary", None, "openai"),
        ("128 bpm kick drum loop", 15, "elevenlabs"),
        ("128 bpm kick drum loop", 25, "replicate"),
        ("128 bpm kick drum loop", 45, "fal"),
        ("snare roll", 5, "elevenlabs"),
        ("UI button click", 2, "elevenlabs"),
        ("glitch impact", 40, "fal"),
        ("ambient drone texture", None, "stability"),
        ("orchestral score", 60, "fal"),
        ("guitar riff", None, "replicate"),
        ("", None, "replicate"),
    ],
)
def test_recommend_engine_rules(prompt, duration, expected):
    assert recommend_engine(prompt, duration_seconds=duration) == expected


def test_vocals_outrank_percussion():
    assert recommend_engine("choir over a 90 bpm drum groove") == "openai"


def test_reference_audio_prefers_fal():
    assert recommend_engine("warm pad", has_reference_audio=True) == "fal"


def test_rhythm_words_count_as_tempo():
    assert recommend_engine("tight drum groove", duration_seconds=25) == "replicate"


def test_keywords_match_word_starts_only():
    # "ui" inside "guitar" and "hit" inside "white" are not keywords
    assert recommend_engine("white noise guitar", duration_seconds=5) == "replicate"


def test_unavailable_chain_falls_through_to_later_rules():
    assert recommend_engine("angelic choir", available={"fal"}) == "fal"
    assert recommend_engine("ambient drone", available={"replicate"}) == "replicate"


def test_last_resort_is_first_available_ranked_engine():
    assert recommend_engine("angelic choir", available={"stability"}) == "stability"


def test_nothing_available_returns_none():
    assert recommend_engine("anything", available=set()) is None


def test_engine_catalogue():
    assert ENGINE_IDS[0] == "replicate"
    assert set(ENGINE_IDS) == {"replicate", "elevenlabs", "stability", "fal", "openai", "suno"}
    assert get_engine("elevenlabs").name == "SonicCraft"
    assert get_engine("nope") is None
