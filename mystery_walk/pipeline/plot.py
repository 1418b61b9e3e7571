"""Stage 2 — main plot, plus the per-stop story context used by stage 3."""

from __future__ import annotations

import logging

from pydantic import BaseModel, ConfigDict, ValidationError

from mystery_walk.json_utils import JSONRecoveryError, parse_llm_json
from mystery_walk.llm import LLM, LLMError
from mystery_walk.models import MainPlot, SpotInput, SpotMotif
from mystery_walk.pipeline.results import Fallback, Generated, StageResult
from mystery_walk.prompts import PLOT_TEMPLATE, READABILITY_RULES, render_prompt

logger = logging.getLogger(__name__)

DEFAULT_ANTAGONIST = "時の流れに埋もれた秘密と、それを守る謎の数々。"
DEFAULT_FINAL_REVEAL = "全てのスポットで集めた鍵を組み合わせることで、最終的な真相が明らかになる。"

SCENE_ROLE_DESCRIPTIONS: dict[str, str] = {
    "intro": "物語の始まり。世界観と最初の違和感を提示する",
    "rising": "情報を集め、謎が深まっていく",
    "turning_point": "新しい事実が判明し、状況が変わる",
    "climax_approach": "真相の核心に迫る",
    "red_herring_resolution": "それまでの誤解が解ける",
    "finale": "全ての手がかりがつながり、物語が締めくくられる",
}


class PlotDraft(BaseModel):
    """Strict shape of the model's plot answer."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    premise: str
    goal: str
    antagonist_or_mystery: str
    final_reveal_outline: str

    def is_complete(self) -> bool:
        return all((self.premise, self.goal, self.antagonist_or_mystery, self.final_reveal_outline))


def fallback_plot(quest_theme: str, motifs: list[SpotMotif]) -> MainPlot:
    spot_names = "、".join(m.spot_name for m in motifs)
    return MainPlot(
        premise=f"{quest_theme}にまつわる古い謎が、あなたを待っている。",
        goal=f"{spot_names}を巡り、隠された真実を解き明かすこと。",
        antagonist_or_mystery=DEFAULT_ANTAGONIST,
        final_reveal_outline=DEFAULT_FINAL_REVEAL,
    )


async def create_main_plot(
    llm: LLM,
    spots: list[SpotInput],
    motifs: list[SpotMotif],
    quest_theme: str,
    quest_context: str = "",
) -> StageResult[MainPlot]:
    summaries = {m.spot_id: s.spot_summary for s, m in zip(spots, motifs)}
    prompt = render_prompt(PLOT_TEMPLATE, {
        "theme": quest_theme,
        "context": quest_context,
        "readability": READABILITY_RULES,
        "motifs": [
            {**m.model_dump(), "spot_summary": summaries.get(m.spot_id, "")}
            for m in motifs
        ],
    })
    try:
        draft = PlotDraft.model_validate(parse_llm_json(await llm("plot", prompt)))
        if not draft.is_complete():
            raise ValueError("plot answer has empty fields")
    except (LLMError, JSONRecoveryError, ValidationError, ValueError) as e:
        logger.warning("plot: using templated plot: %s", e)
        return Fallback(value=fallback_plot(quest_theme, motifs), reason=str(e))
    return Generated(value=MainPlot(**draft.model_dump()))


def build_story_context(plot: MainPlot, motifs: list[SpotMotif], index: int) -> str:
    """Narrative context for one stop, built from roles and positions only."""
    current = motifs[index]
    lines = [
        f"【物語の発端】{plot.premise}",
        f"【目的】{plot.goal}",
        f"【謎】{plot.antagonist_or_mystery}",
        "",
        f"【現在のスポット】{current.spot_name}",
        f"【役割】{current.scene_role}（{SCENE_ROLE_DESCRIPTIONS[current.scene_role]}）",
        f"【位置】{index + 1} / {len(motifs)}",
    ]
    previous = motifs[:index]
    if previous:
        lines.append("【これまでのスポット】")
        lines.extend(f"- {m.spot_name}（{m.scene_role}）" for m in previous)
    upcoming = motifs[index + 1:]
    if upcoming:
        lines.append("【この後のスポット】")
        lines.extend(f"- {m.spot_name}（{m.scene_role}）" for m in upcoming)
    return "\n".join(lines)
