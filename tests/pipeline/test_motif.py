"""Tests for stage 1: motif selection."""

import json

import pytest

from mystery_walk.llm import LLMError
from mystery_walk.models import PUZZLE_TYPES
from mystery_walk.pipeline.motif import (
    coerce_scene_role,
    default_scene_role,
    fallback_motifs,
    parse_motifs,
    pin_story_ends,
    resolve_facts,
    select_motifs,
)
from tests.helpers import ASAKUSA_NAMES, MOTIFS_RESPONSE, StubLLM, asakusa_spots, make_spot


def _spots(n: int):
    base = asakusa_spots()
    return [base[i % len(base)].model_copy(update={"spot_name": f"地点{i + 1}"}) for i in range(n)]


# ── select_motifs ─────────────────────────────────────────


class TestSelectMotifs:
    async def test_generated(self) -> None:
        llm = StubLLM({"motif": [MOTIFS_RESPONSE]})
        result = await select_motifs(llm, asakusa_spots(), "浅草の謎")
        assert not result.is_fallback
        motifs = result.value
        assert [m.spot_id for m in motifs] == ["S1", "S2", "S3"]
        assert [m.spot_name for m in motifs] == ASAKUSA_NAMES
        assert motifs[1].plot_key_type == "number"
        assert motifs[2].suggested_puzzle_type == "wordplay"

    async def test_prompt_lists_facts_by_label(self) -> None:
        llm = StubLLM({"motif": [MOTIFS_RESPONSE]})
        await select_motifs(llm, asakusa_spots(), "浅草の謎", "ジャンル: ホラー")
        prompt = llm.calls[0][1]
        assert '"fact_1": "大提灯の重さは約700kg"' in prompt
        assert "ジャンル: ホラー" in prompt

    async def test_wrong_length_falls_back(self) -> None:
        two = json.dumps(json.loads(MOTIFS_RESPONSE)[:2], ensure_ascii=False)
        result = await select_motifs(StubLLM({"motif": [two]}), asakusa_spots(), "謎")
        assert result.is_fallback
        assert len(result.value) == 3
        assert "expected 3" in result.reason

    async def test_invalid_json_falls_back(self) -> None:
        result = await select_motifs(StubLLM({"motif": ["これはJSONではありません"]}), asakusa_spots(), "謎")
        assert result.is_fallback
        assert result.value == fallback_motifs(asakusa_spots())

    async def test_llm_error_falls_back(self) -> None:
        result = await select_motifs(StubLLM({"motif": [LLMError("timeout")]}), asakusa_spots(), "謎")
        assert result.is_fallback
        assert result.reason == "timeout"

    async def test_story_ends_are_pinned(self) -> None:
        data = json.loads(MOTIFS_RESPONSE)
        data[0]["scene_role"] = "rising"
        data[2]["scene_role"] = "climax_approach"
        llm = StubLLM({"motif": [json.dumps(data, ensure_ascii=False)]})
        motifs = (await select_motifs(llm, asakusa_spots(), "謎")).value
        assert motifs[0].scene_role == "intro"
        assert motifs[-1].scene_role == "finale"


# ── parse_motifs ──────────────────────────────────────────


class TestParseMotifs:
    def test_mismatched_id_rejected(self) -> None:
        data = json.loads(MOTIFS_RESPONSE)
        data[0]["spot_id"] = "S2"
        with pytest.raises(ValueError, match="unexpected spot id"):
            parse_motifs(json.dumps(data), asakusa_spots())

    def test_not_an_array(self) -> None:
        with pytest.raises(ValueError, match="not an array"):
            parse_motifs('{"result": 1}', asakusa_spots())

    def test_wrapped_in_motifs_key(self) -> None:
        text = json.dumps({"motifs": json.loads(MOTIFS_RESPONSE)}, ensure_ascii=False)
        assert len(parse_motifs(text, asakusa_spots())) == 3

    def test_unknown_choices_are_coerced(self) -> None:
        data = json.loads(MOTIFS_RESPONSE)
        data[1].update(scene_role="展開", plot_key_type="emoji", suggested_puzzle_type="MATH")
        motifs = parse_motifs(json.dumps(data, ensure_ascii=False), asakusa_spots())
        assert motifs[1].scene_role == "rising"
        assert motifs[1].plot_key_type == "keyword"
        assert motifs[1].suggested_puzzle_type == "math"

    def test_names_come_from_stops(self) -> None:
        data = json.loads(MOTIFS_RESPONSE)
        data[0]["spot_name"] = "別の場所"
        assert parse_motifs(json.dumps(data, ensure_ascii=False), asakusa_spots())[0].spot_name == "雷門"


@pytest.mark.parametrize("value, expected", [
    ("intro", "intro"),
    ("Turning Point", "turning_point"),
    ("climax-approach", "climax_approach"),
    ("結末", "finale"),
    ("導入", "intro"),
    ("epilogue", "rising"),
    (None, "rising"),
])
def test_coerce_scene_role(value, expected):
    assert coerce_scene_role(value) == expected


# ── fallback ──────────────────────────────────────────────


class TestFallbackMotifs:
    @pytest.mark.parametrize("n", [1, 2, 3, 5, 8, 12])
    def test_one_per_stop(self, n: int) -> None:
        motifs = fallback_motifs(_spots(n))
        assert len(motifs) == n
        assert [m.spot_id for m in motifs] == [f"S{i + 1}" for i in range(n)]

    @pytest.mark.parametrize("n", [2, 3, 5, 8])
    def test_intro_and_finale(self, n: int) -> None:
        motifs = fallback_motifs(_spots(n))
        assert motifs[0].scene_role == "intro"
        assert motifs[-1].scene_role == "finale"

    def test_single_stop_is_intro(self) -> None:
        assert fallback_motifs(_spots(1))[0].scene_role == "intro"

    def test_round_robin_puzzle_types(self) -> None:
        motifs = fallback_motifs(_spots(8))
        assert [m.suggested_puzzle_type for m in motifs] == [
            PUZZLE_TYPES[i % len(PUZZLE_TYPES)] for i in range(8)
        ]

    def test_first_two_facts(self) -> None:
        assert fallback_motifs(asakusa_spots())[0].selected_facts == ["fact_1", "fact_2"]

    def test_fact_labels_limited_by_available_facts(self) -> None:
        spots = [make_spot(0, spot_facts=["一つだけ"]), make_spot(1, spot_facts=[])]
        motifs = fallback_motifs(spots)
        assert motifs[0].selected_facts == ["fact_1"]
        assert motifs[1].selected_facts == []


def test_default_scene_role_for_ten_stops():
    roles = [default_scene_role(i, 10) for i in range(10)]
    assert roles == [
        "intro", "rising", "rising", "rising", "rising",
        "turning_point", "rising", "rising", "climax_approach", "finale",
    ]


def test_pin_story_ends_leaves_single_stop_alone():
    motifs = fallback_motifs(_spots(1))
    assert pin_story_ends(motifs) == motifs


def test_resolve_facts():
    spot = make_spot(0)
    assert resolve_facts(spot, ["fact_2", "fact_9", "fact_2", "自由記述"]) == [
        "門の左右に風神と雷神が立つ",
        "自由記述",
    ]
