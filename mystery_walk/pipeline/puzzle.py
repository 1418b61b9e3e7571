"""Stage 3 — per-stop puzzles and the closing meta puzzle.

Stops are generated one at a time, in order. Each call sees the plot and
the roles/positions of every stop, never another stop's generated puzzle.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from mystery_walk.json_utils import JSONRecoveryError, parse_llm_json
from mystery_walk.llm import LLM, LLMError
from mystery_walk.models import (
    PUZZLE_TYPES,
    LaytonPuzzle,
    LoreCard,
    MainPlot,
    MetaPuzzle,
    Reward,
    SpotInput,
    SpotMotif,
    SpotScene,
)
from mystery_walk.pipeline.motif import resolve_facts
from mystery_walk.pipeline.plot import build_story_context
from mystery_walk.pipeline.results import Fallback, Generated, StageResult
from mystery_walk.prompts import (
    META_PUZZLE_TEMPLATE,
    PUZZLE_TEMPLATE,
    PUZZLE_TYPE_GUIDES,
    READABILITY_RULES,
    render_prompt,
)

logger = logging.getLogger(__name__)

DEFAULT_NEXT_HOOK = "次の地点へ進みましょう。"
DEFAULT_HINTS = ["ヒント1", "ヒント2", "答えに近いヒント"]

FALLBACK_PROMPT = "この場所に隠された謎を解き明かしてください。"
FALLBACK_STEPS = ["手がかりを探す", "情報を整理する", "答えを導き出す"]
FALLBACK_HINTS = ["周囲をよく観察してください", "資料を読み返してみましょう", "ヒントはすでに目の前にあります"]

META_FALLBACK_EXPLANATION = "全ての鍵が一つの答えを指し示していた。"
META_DEFAULT_EXPLANATION = "物語の真相がここに。"


def _as_text(value: object) -> object:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


def _as_list(value: object) -> object:
    if isinstance(value, str):
        return [value] if value.strip() else []
    return value


# ---------------------------------------------------------------------------
# Model response schema
# ---------------------------------------------------------------------------

class LoreCardDraft(BaseModel):
    model_config = ConfigDict(extra="ignore")

    short_story_text: str = ""
    facts_used: list[str] = Field(default_factory=list)
    player_handout: str = ""

    @field_validator("facts_used", mode="before")
    @classmethod
    def _lists(cls, value: object) -> object:
        return _as_list(value)


class PuzzleDraft(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    type: str = ""
    prompt: str = Field(min_length=1)
    rules: str | None = None
    answer: str = Field(min_length=1)
    solution_steps: list[str] = Field(default_factory=list)
    hints: list[str] = Field(default_factory=list)
    difficulty: int = 2

    @field_validator("answer", mode="before")
    @classmethod
    def _answer_text(cls, value: object) -> object:
        return _as_text(value)

    @field_validator("solution_steps", "hints", mode="before")
    @classmethod
    def _lists(cls, value: object) -> object:
        return _as_list(value)


class RewardDraft(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    lore_reveal: str = ""
    plot_key: str = ""
    next_hook: str = ""

    @field_validator("plot_key", mode="before")
    @classmethod
    def _key_text(cls, value: object) -> object:
        return _as_text(value)


class SceneDraft(BaseModel):
    model_config = ConfigDict(extra="ignore")

    lore_card: LoreCardDraft = Field(default_factory=LoreCardDraft)
    puzzle: PuzzleDraft
    reward: RewardDraft = Field(default_factory=RewardDraft)
    linking_rationale: str = ""


class MetaPuzzleDraft(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    prompt: str = Field(min_length=1)
    answer: str = Field(min_length=1)
    explanation: str = META_DEFAULT_EXPLANATION

    @field_validator("answer", mode="before")
    @classmethod
    def _answer_text(cls, value: object) -> object:
        return _as_text(value)


# ---------------------------------------------------------------------------
# Deterministic fallbacks
# ---------------------------------------------------------------------------

def fallback_plot_key(spot: SpotInput) -> str:
    return spot.spot_name[:2]


def fallback_spot_scene(spot: SpotInput, motif: SpotMotif) -> SpotScene:
    """Minimal scene from the spot's own summary and facts. Every field is filled."""
    plot_key = fallback_plot_key(spot)
    handout = "\n\n".join(part for part in (spot.spot_summary, "\n".join(spot.spot_facts)) if part)
    return SpotScene(
        spot_id=motif.spot_id,
        spot_name=spot.spot_name,
        lat=spot.lat,
        lng=spot.lng,
        scene_role=motif.scene_role,
        lore_card=LoreCard(
            short_story_text=f"{spot.spot_name}には、まだ解き明かされていない謎がある。",
            facts_used=resolve_facts(spot, motif.selected_facts),
            player_handout=handout,
        ),
        puzzle=LaytonPuzzle(
            type=motif.suggested_puzzle_type,
            prompt=FALLBACK_PROMPT,
            answer=plot_key,
            solution_steps=list(FALLBACK_STEPS),
            hints=list(FALLBACK_HINTS),
            difficulty=2,
        ),
        reward=Reward(
            lore_reveal=f"{spot.spot_name}の秘密が明らかになった。",
            plot_key=plot_key,
            next_hook=DEFAULT_NEXT_HOOK,
        ),
        linking_rationale=f"{spot.spot_name}の特徴を活かした謎。",
    )


def fallback_meta_puzzle(scenes: list[SpotScene]) -> MetaPuzzleDraft:
    keys = [s.reward.plot_key for s in scenes]
    return MetaPuzzleDraft(
        prompt=f"これまで集めた鍵（{'・'.join(keys)}）を全て並べてみよう。そこに隠されたメッセージは？",
        answer="".join(keys) or "鍵",
        explanation=META_FALLBACK_EXPLANATION,
    )


# ---------------------------------------------------------------------------
# Spot puzzle
# ---------------------------------------------------------------------------

def scene_from_draft(draft: SceneDraft, spot: SpotInput, motif: SpotMotif) -> SpotScene:
    puzzle_type = draft.puzzle.type.lower()
    if puzzle_type not in PUZZLE_TYPES:
        puzzle_type = motif.suggested_puzzle_type
    return SpotScene(
        spot_id=motif.spot_id,
        spot_name=spot.spot_name,
        lat=spot.lat,
        lng=spot.lng,
        scene_role=motif.scene_role,
        lore_card=LoreCard(
            short_story_text=draft.lore_card.short_story_text,
            facts_used=draft.lore_card.facts_used or resolve_facts(spot, motif.selected_facts),
            player_handout=draft.lore_card.player_handout,
        ),
        puzzle=LaytonPuzzle(
            type=puzzle_type,
            prompt=draft.puzzle.prompt,
            rules=draft.puzzle.rules or None,
            answer=draft.puzzle.answer,
            solution_steps=draft.puzzle.solution_steps,
            hints=draft.puzzle.hints or list(DEFAULT_HINTS),
            difficulty=min(max(draft.puzzle.difficulty, 1), 5),
        ),
        reward=Reward(
            lore_reveal=draft.reward.lore_reveal,
            plot_key=draft.reward.plot_key or fallback_plot_key(spot),
            next_hook=draft.reward.next_hook or DEFAULT_NEXT_HOOK,
        ),
        linking_rationale=draft.linking_rationale,
    )


async def generate_spot_puzzle(
    llm: LLM,
    spot: SpotInput,
    motif: SpotMotif,
    main_plot: MainPlot,
    all_motifs: list[SpotMotif],
    spot_index: int,
) -> StageResult[SpotScene]:
    prompt = render_prompt(PUZZLE_TEMPLATE, {
        "readability": READABILITY_RULES,
        "type_guide": PUZZLE_TYPE_GUIDES[motif.suggested_puzzle_type],
        "story_context": build_story_context(main_plot, all_motifs, spot_index),
        "spot": spot.model_dump(),
        "facts": resolve_facts(spot, motif.selected_facts) or spot.spot_facts,
        "puzzle_type": motif.suggested_puzzle_type,
    })
    try:
        draft = SceneDraft.model_validate(parse_llm_json(await llm("puzzle", prompt)))
    except (LLMError, JSONRecoveryError, ValidationError, ValueError) as e:
        logger.warning("puzzle: templated scene for %s (%s): %s", motif.spot_id, spot.spot_name, e)
        return Fallback(value=fallback_spot_scene(spot, motif), reason=str(e))
    return Generated(value=scene_from_draft(draft, spot, motif))


# ---------------------------------------------------------------------------
# Meta puzzle
# ---------------------------------------------------------------------------

async def generate_meta_puzzle(
    llm: LLM,
    scenes: list[SpotScene],
    main_plot: MainPlot,
) -> StageResult[MetaPuzzleDraft]:
    prompt = render_prompt(META_PUZZLE_TEMPLATE, {
        "final_reveal": main_plot.final_reveal_outline,
        "plot_keys": [
            {"spot_id": s.spot_id, "spot_name": s.spot_name, "plot_key": s.reward.plot_key}
            for s in scenes
        ],
    })
    try:
        draft = MetaPuzzleDraft.model_validate(parse_llm_json(await llm("meta_puzzle", prompt)))
    except (LLMError, JSONRecoveryError, ValidationError, ValueError) as e:
        logger.warning("meta puzzle: concatenating plot keys: %s", e)
        return Fallback(value=fallback_meta_puzzle(scenes), reason=str(e))
    return Generated(value=draft)


def build_meta_puzzle(draft: MetaPuzzleDraft, scenes: list[SpotScene]) -> MetaPuzzle:
    return MetaPuzzle(
        inputs=[f"{s.spot_id}.plot_key" for s in scenes],
        prompt=draft.prompt,
        answer=draft.answer,
        explanation=draft.explanation or META_DEFAULT_EXPLANATION,
    )
