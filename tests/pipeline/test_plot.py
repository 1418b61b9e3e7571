"""Tests for stage 2: main plot and story context."""

import json
from unittest.mock import AsyncMock, patch

import httpx

from mystery_walk.llm import GeminiLLM, LLMError
from mystery_walk.pipeline.motif import fallback_motifs, parse_motifs
from mystery_walk.pipeline.plot import (
    DEFAULT_ANTAGONIST,
    DEFAULT_FINAL_REVEAL,
    build_story_context,
    create_main_plot,
    fallback_plot,
)
from tests.helpers import ASAKUSA_NAMES, MOTIFS_RESPONSE, PLOT_RESPONSE, StubLLM, asakusa_spots, make_plot


def _motifs():
    return parse_motifs(MOTIFS_RESPONSE, asakusa_spots())


class TestCreateMainPlot:
    async def test_generated(self) -> None:
        llm = StubLLM({"plot": [PLOT_RESPONSE]})
        result = await create_main_plot(llm, asakusa_spots(), _motifs(), "浅草の謎")
        assert not result.is_fallback
        assert result.value == make_plot()

    async def test_prompt_carries_motifs_and_summaries(self) -> None:
        llm = StubLLM({"plot": [PLOT_RESPONSE]})
        await create_main_plot(llm, asakusa_spots(), _motifs(), "浅草の謎", "トーン: 静か")
        prompt = llm.calls[0][1]
        assert "浅草の謎" in prompt
        assert "トーン: 静か" in prompt
        assert "東京最古の寺" in prompt
        assert '"scene_role": "turning_point"' in prompt

    async def test_invalid_json_uses_template(self) -> None:
        result = await create_main_plot(StubLLM({"plot": ["{premise: 壊れた"]}), asakusa_spots(), _motifs(), "浅草の謎")
        assert result.is_fallback
        plot = result.value
        for name in ASAKUSA_NAMES:
            assert name in plot.goal
        assert "浅草の謎" in plot.premise
        assert plot.antagonist_or_mystery == DEFAULT_ANTAGONIST
        assert plot.final_reveal_outline == DEFAULT_FINAL_REVEAL

    async def test_missing_field_uses_template(self) -> None:
        data = json.loads(PLOT_RESPONSE)
        del data["final_reveal_outline"]
        llm = StubLLM({"plot": [json.dumps(data, ensure_ascii=False)]})
        result = await create_main_plot(llm, asakusa_spots(), _motifs(), "浅草の謎")
        assert result.is_fallback

    async def test_blank_field_uses_template(self) -> None:
        data = json.loads(PLOT_RESPONSE)
        data["goal"] = "   "
        llm = StubLLM({"plot": [json.dumps(data, ensure_ascii=False)]})
        result = await create_main_plot(llm, asakusa_spots(), _motifs(), "浅草の謎")
        assert result.is_fallback
        assert "empty" in result.reason

    async def test_llm_error_uses_template(self) -> None:
        llm = StubLLM({"plot": [LLMError("HTTP 503")]})
        result = await create_main_plot(llm, asakusa_spots(), _motifs(), "浅草の謎")
        assert result.is_fallback
        assert result.value == fallback_plot("浅草の謎", _motifs())

    async def test_connection_reset_uses_template(self) -> None:
        llm = GeminiLLM(api_key="k", base_url="http://localhost:9000")
        with patch("httpx.AsyncClient.post", AsyncMock(side_effect=httpx.ReadError("connection reset"))):
            result = await create_main_plot(llm, asakusa_spots(), _motifs(), "浅草の謎")
        assert result.is_fallback
        assert result.value == fallback_plot("浅草の謎", _motifs())


def test_fallback_plot_fields_are_non_empty():
    plot = fallback_plot("テーマ", fallback_motifs(asakusa_spots()))
    assert all(v for v in plot.model_dump().values())
    assert plot.goal.startswith("雷門、浅草寺、浅草神社")


class TestStoryContext:
    def test_middle_stop(self) -> None:
        text = build_story_context(make_plot(), _motifs(), 1)
        assert "【現在のスポット】浅草寺" in text
        assert "【位置】2 / 3" in text
        assert "turning_point（新しい事実が判明し、状況が変わる）" in text
        before, after = text.split("【この後のスポット】")
        assert "- 雷門（intro）" in before
        assert "- 浅草神社（finale）" in after

    def test_first_stop_has_no_previous(self) -> None:
        text = build_story_context(make_plot(), _motifs(), 0)
        assert "【これまでのスポット】" not in text
        assert "【この後のスポット】" in text

    def test_last_stop_has_no_upcoming(self) -> None:
        text = build_story_context(make_plot(), _motifs(), 2)
        assert "【これまでのスポット】" in text
        assert "【この後のスポット】" not in text

    def test_includes_plot(self) -> None:
        plot = make_plot()
        text = build_story_context(plot, _motifs(), 0)
        assert plot.premise in text
        assert plot.antagonist_or_mystery in text
