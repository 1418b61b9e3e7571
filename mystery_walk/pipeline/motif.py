"""Stage 1 — motif selection.

Assigns every stop a scene role, one or two of its facts, a plot-key type
and a puzzle archetype. Output is one SpotMotif per stop, same order.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from mystery_walk.json_utils import JSONRecoveryError, parse_llm_json
from mystery_walk.llm import LLM, LLMError
from mystery_walk.models import (
    PLOT_KEY_TYPES,
    PUZZLE_TYPES,
    SCENE_ROLE_LABELS,
    SCENE_ROLES,
    SceneRole,
    SpotInput,
    SpotMotif,
)
from mystery_walk.pipeline.results import Fallback, Generated, StageResult
from mystery_walk.prompts import MOTIF_TEMPLATE, render_prompt

logger = logging.getLogger(__name__)


def spot_id_for(index: int) -> str:
    return f"S{index + 1}"


# ---------------------------------------------------------------------------
# Coercion of loosely-typed model answers
# ---------------------------------------------------------------------------

def coerce_scene_role(value: object) -> SceneRole:
    text = str(value or "").strip()
    text = SCENE_ROLE_LABELS.get(text, text).lower().replace("-", "_").replace(" ", "_")
    return text if text in SCENE_ROLES else "rising"  # type: ignore[return-value]


def _coerce_choice(value: object, choices: tuple[str, ...], default: str) -> str:
    text = str(value or "").strip().lower()
    return text if text in choices else default


class MotifDraft(BaseModel):
    model_config = ConfigDict(extra="ignore")

    spot_id: str | None = None
    spot_name: str = ""
    selected_facts: list[str] = Field(default_factory=list)
    scene_role: str = "rising"
    plot_key_type: str = "keyword"
    suggested_puzzle_type: str = "logic"

    @field_validator("selected_facts", mode="before")
    @classmethod
    def _wrap_single(cls, value: object) -> object:
        if isinstance(value, str):
            return [value]
        return value


def parse_motifs(text: str, spots: list[SpotInput]) -> list[SpotMotif]:
    """Validate the model's answer against the stop list.

    Raises ValueError (or a subclass) when the answer cannot be trusted:
    not an array, wrong length, or ids that do not match S1..Sn in order.
    """
    data = parse_llm_json(text)
    if isinstance(data, dict):
        data = data.get("motifs")
    if not isinstance(data, list):
        raise ValueError("motif answer is not an array")
    if len(data) != len(spots):
        raise ValueError(f"expected {len(spots)} motifs, got {len(data)}")

    motifs: list[SpotMotif] = []
    for i, (item, spot) in enumerate(zip(data, spots)):
        draft = MotifDraft.model_validate(item)
        expected_id = spot_id_for(i)
        if draft.spot_id and draft.spot_id.strip() != expected_id:
            raise ValueError(f"unexpected spot id {draft.spot_id!r} at position {i}")
        motifs.append(SpotMotif(
            spot_id=expected_id,
            spot_name=spot.spot_name,
            selected_facts=draft.selected_facts,
            scene_role=coerce_scene_role(draft.scene_role),
            plot_key_type=_coerce_choice(draft.plot_key_type, PLOT_KEY_TYPES, "keyword"),
            suggested_puzzle_type=_coerce_choice(draft.suggested_puzzle_type, PUZZLE_TYPES, "logic"),
        ))
    return motifs


# ---------------------------------------------------------------------------
# Deterministic fallback
# ---------------------------------------------------------------------------

def default_scene_role(index: int, total: int) -> SceneRole:
    if index == 0:
        return "intro"
    if index == total - 1:
        return "finale"
    if index == total // 2:
        return "turning_point"
    if index > total * 0.7:
        return "climax_approach"
    return "rising"


def fallback_motifs(spots: list[SpotInput]) -> list[SpotMotif]:
    """Role by position, first two facts, round-robin puzzle types. Never raises."""
    total = len(spots)
    return [
        SpotMotif(
            spot_id=spot_id_for(i),
            spot_name=spot.spot_name,
            selected_facts=[f"fact_{j + 1}" for j in range(min(2, len(spot.spot_facts)))],
            scene_role=default_scene_role(i, total),
            plot_key_type="keyword",
            suggested_puzzle_type=PUZZLE_TYPES[i % len(PUZZLE_TYPES)],
        )
        for i, spot in enumerate(spots)
    ]


def pin_story_ends(motifs: list[SpotMotif]) -> list[SpotMotif]:
    """First stop opens the story, last one closes it (two or more stops)."""
    if len(motifs) < 2:
        return motifs
    pinned = list(motifs)
    if pinned[0].scene_role != "intro":
        logger.info("motif: pinning %s to intro (was %s)", pinned[0].spot_id, pinned[0].scene_role)
        pinned[0] = pinned[0].model_copy(update={"scene_role": "intro"})
    if pinned[-1].scene_role != "finale":
        logger.info("motif: pinning %s to finale (was %s)", pinned[-1].spot_id, pinned[-1].scene_role)
        pinned[-1] = pinned[-1].model_copy(update={"scene_role": "finale"})
    return pinned


def resolve_facts(spot: SpotInput, selected: list[str]) -> list[str]:
    """Map "fact_N" labels to the spot's fact texts. Other entries pass through."""
    resolved: list[str] = []
    for label in selected:
        text = label
        if label.startswith("fact_") and label[5:].isdigit():
            idx = int(label[5:]) - 1
            if not 0 <= idx < len(spot.spot_facts):
                continue
            text = spot.spot_facts[idx]
        if text and text not in resolved:
            resolved.append(text)
    return resolved


# ---------------------------------------------------------------------------
# Stage entry point
# ---------------------------------------------------------------------------

def _spots_for_prompt(spots: list[SpotInput]) -> list[dict]:
    return [
        {
            "spot_id": spot_id_for(i),
            "spot_name": s.spot_name,
            "spot_summary": s.spot_summary,
            "facts": {f"fact_{j + 1}": fact for j, fact in enumerate(s.spot_facts)},
            "theme_tags": s.spot_theme_tags,
        }
        for i, s in enumerate(spots)
    ]


async def select_motifs(
    llm: LLM,
    spots: list[SpotInput],
    quest_theme: str,
    quest_context: str = "",
) -> StageResult[list[SpotMotif]]:
    prompt = render_prompt(MOTIF_TEMPLATE, {
        "theme": quest_theme,
        "context": quest_context,
        "spots": _spots_for_prompt(spots),
    })
    try:
        motifs = parse_motifs(await llm("motif", prompt), spots)
    except (LLMError, JSONRecoveryError, ValidationError, ValueError) as e:
        logger.warning("motif: falling back to positional motifs: %s", e)
        return Fallback(value=fallback_motifs(spots), reason=str(e))
    return Generated(value=pin_story_ends(motifs))
