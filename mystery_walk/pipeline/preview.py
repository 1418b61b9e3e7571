"""Quest title and the spoiler-free player preview."""

from __future__ import annotations

import logging
import re

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from mystery_walk.json_utils import JSONRecoveryError, parse_llm_json
from mystery_walk.llm import LLM, LLMError
from mystery_walk.models import (
    CtaCopy,
    HighlightSpot,
    MainPlot,
    PlayerPreview,
    QuestGenerationRequest,
    QuestOutput,
    RouteMeta,
)
from mystery_walk.pipeline.results import Fallback, Generated, StageResult
from mystery_walk.prompts import PREVIEW_TEMPLATE, TITLE_TEMPLATE, render_prompt

logger = logging.getLogger(__name__)

UNTITLED = "未設定の謎"
KM_PER_SPOT = 0.3
MINUTES_PER_SPOT = 15

DIFFICULTY_LABELS = {"easy": "初級", "medium": "中級", "hard": "上級"}

PREP_AND_SAFETY = ["スマートフォン（充電済み）", "歩きやすい靴", "飲み物（推奨）"]
DEFAULT_CTA = CtaCopy(
    primary="プレイヤーとして挑戦する",
    secondary="クリエイターとして編集する（ネタバレ）",
    note="クリエイター画面には謎の答えが含まれます",
)

_QUOTES = "「」『』\"'“”"


# ---------------------------------------------------------------------------
# Title
# ---------------------------------------------------------------------------

def clean_title(text: str) -> str:
    """First non-empty line, whitespace collapsed, surrounding quotes removed."""
    for line in text.splitlines():
        line = re.sub(r"\s+", " ", line).strip().strip(_QUOTES).strip()
        if line:
            return line
    return ""


def fallback_title(prompt: str) -> str:
    prompt = prompt.strip()
    return f"{prompt}の謎" if prompt else UNTITLED


async def generate_quest_title(
    llm: LLM,
    request: QuestGenerationRequest,
    plot: MainPlot,
    quest_context: str = "",
) -> StageResult[str]:
    prompt = render_prompt(TITLE_TEMPLATE, {
        "plot": plot.model_dump(),
        "prompt": request.prompt,
        "context": quest_context,
    })
    try:
        title = clean_title(await llm("title", prompt))
    except LLMError as e:
        logger.warning("title: using prompt-derived title: %s", e)
        return Fallback(value=fallback_title(request.prompt), reason=str(e))
    if not title:
        return Fallback(value=fallback_title(request.prompt), reason="empty title")
    return Generated(value=title)


# ---------------------------------------------------------------------------
# Player preview
# ---------------------------------------------------------------------------

class PreviewDraft(BaseModel):
    model_config = ConfigDict(extra="ignore")

    one_liner: str = Field(min_length=1)
    trailer: str = Field(min_length=1)
    mission: str = ""
    teasers: list[str] = Field(default_factory=list)
    summary_actions: list[str] = Field(default_factory=list)
    difficulty_reason: str = ""
    weather_note: str = ""
    highlight_spots: list[HighlightSpot] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)


def difficulty_label(difficulty: str) -> str:
    return DIFFICULTY_LABELS.get(difficulty, "中級")


def build_route_meta(request: QuestGenerationRequest, output: QuestOutput) -> RouteMeta:
    spots = output.spots
    count = len(spots)
    return RouteMeta(
        area_start=spots[0].spot_name if spots else "",
        area_end=spots[-1].spot_name if spots else "",
        distance_km=f"{count * KM_PER_SPOT:.1f}",
        estimated_time_min=str(count * MINUTES_PER_SPOT),
        spots_count=count,
        difficulty_label=difficulty_label(request.difficulty),
    )


def fallback_player_preview(
    title: str,
    request: QuestGenerationRequest,
    output: QuestOutput,
) -> PlayerPreview:
    plot = output.main_plot
    highlights = [
        HighlightSpot(name=s.spot_name, teaser_experience=f"{s.spot_name}で物語の鍵を見つける")
        for s in output.spots[:3]
    ]
    return PlayerPreview(
        title=title,
        one_liner="街を歩いて謎を解き明かす冒険",
        trailer=plot.premise[:140],
        mission=plot.goal,
        teasers=[f"{s.spot_name}に隠された手がかりを探す" for s in output.spots[:3]],
        summary_actions=["歩く", "探す", "解く"],
        route_meta=build_route_meta(request, output),
        highlight_spots=highlights,
        tags=list(request.theme_tags) or ["謎解き", "街歩き"],
        prep_and_safety=list(PREP_AND_SAFETY),
        cta_copy=DEFAULT_CTA,
    )


async def generate_player_preview(
    llm: LLM,
    title: str,
    request: QuestGenerationRequest,
    output: QuestOutput,
    quest_context: str = "",
) -> StageResult[PlayerPreview]:
    route_meta = build_route_meta(request, output)
    prompt = render_prompt(PREVIEW_TEMPLATE, {
        "title": title,
        "plot": output.main_plot.model_dump(),
        "spot_count": len(output.spots),
        "spot_names": [s.spot_name for s in output.spots],
        "difficulty_label": route_meta.difficulty_label,
        "context": quest_context,
    })
    try:
        draft = PreviewDraft.model_validate(parse_llm_json(await llm("preview", prompt)))
    except (LLMError, JSONRecoveryError, ValidationError, ValueError) as e:
        logger.warning("preview: using templated preview: %s", e)
        return Fallback(value=fallback_player_preview(title, request, output), reason=str(e))

    route_meta = route_meta.model_copy(update={
        "difficulty_reason": draft.difficulty_reason,
        "weather_note": draft.weather_note,
    })
    return Generated(value=PlayerPreview(
        title=title,
        one_liner=draft.one_liner,
        trailer=draft.trailer,
        mission=draft.mission or output.main_plot.goal,
        teasers=draft.teasers,
        summary_actions=draft.summary_actions or ["歩く", "探す", "解く"],
        route_meta=route_meta,
        highlight_spots=draft.highlight_spots,
        tags=draft.tags or list(request.theme_tags),
        prep_and_safety=list(PREP_AND_SAFETY),
        cta_copy=DEFAULT_CTA,
    ))
