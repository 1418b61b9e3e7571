"""Evidence-grounded single puzzles.

A side path next to the quest pipeline: one spot, one puzzle, built only
from what the EvidencePack says can be seen on site.

    1. Retrieve the EvidencePack for the spot
    2. Generate: the grounded prompt when the pack has evidence, the
       general-knowledge prompt when it has none. The strict grounding
       rules apply only when the pack is sufficient.
    3. Build a draft GroundedPuzzle (None when the model asks for more evidence)
    4. Validate, gate against the publish mode, stamp the status

A model answer that cannot be used is replaced by a placeholder puzzle with
no evidence, which validation then marks `needs_more_evidence`.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from mystery_walk.json_utils import JSONRecoveryError, parse_llm_json
from mystery_walk.llm import LLM, LLMError
from mystery_walk.models import (
    Difficulty,
    EvidencePack,
    EvidenceUsage,
    FinalRescue,
    GroundedPuzzle,
    PublishMode,
    QualityGateResult,
)
from mystery_walk.pipeline.quality import check_quality_gate, update_puzzle_status
from mystery_walk.pipeline.results import Fallback, Generated, StageResult
from mystery_walk.prompts import (
    GENERAL_KNOWLEDGE_DIFFICULTY_GUIDES,
    GENERAL_KNOWLEDGE_PUZZLE_TEMPLATE,
    GENERAL_KNOWLEDGE_RULES,
    GROUNDED_DIFFICULTY_GUIDES,
    GROUNDED_PUZZLE_TEMPLATE,
    GROUNDED_RULES,
    render_prompt,
)
from mystery_walk.retriever import Retriever

logger = logging.getLogger(__name__)

# Below this the pack cannot carry the strict grounding rules
SUFFICIENT_EVIDENCE_SCORE = 0.3

PLACEHOLDER_ANSWER = "【現地で確認】"


class GroundedStoryContext(BaseModel):
    quest_title: str
    quest_theme: str
    spot_number: int = Field(default=1, ge=1)
    total_spots: int = Field(default=1, ge=1)
    previous_puzzle_context: str = ""
    difficulty: Difficulty = "medium"


# ---------------------------------------------------------------------------
# Model response schema
# ---------------------------------------------------------------------------

def _as_list(value: object) -> object:
    if isinstance(value, str):
        return [value] if value.strip() else []
    return value


class GroundedPuzzleDraft(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    puzzle_statement: str = Field(min_length=1)
    on_site_instruction: str = ""
    evidence_used: list[EvidenceUsage] = Field(default_factory=list)
    solution_steps: list[str] = Field(default_factory=list)
    answer: str = ""
    acceptable_answers: list[str] = Field(default_factory=list)
    hints: list[str] = Field(default_factory=list)
    final_rescue: FinalRescue = "show_answer"
    success_message: str = ""
    narrative_link: str = ""

    @field_validator("answer", mode="before")
    @classmethod
    def _answer_text(cls, value: object) -> object:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("solution_steps", "acceptable_answers", "hints", mode="before")
    @classmethod
    def _lists(cls, value: object) -> object:
        return _as_list(value)


class PuzzleReady(BaseModel):
    status: Literal["success"] = "success"
    puzzle: GroundedPuzzleDraft


class EvidenceShortfall(BaseModel):
    status: Literal["needs_more_evidence"] = "needs_more_evidence"
    missing_evidence: list[str] = Field(default_factory=list)
    suggestion: str = ""


GroundedOutcome = Annotated[Union[PuzzleReady, EvidenceShortfall], Field(discriminator="status")]

_outcome_adapter: TypeAdapter = TypeAdapter(GroundedOutcome)


def parse_grounded_outcome(raw: str) -> PuzzleReady | EvidenceShortfall:
    data = parse_llm_json(raw)
    # A bare {"puzzle": {...}} answer is a success
    if isinstance(data, dict) and "status" not in data and "puzzle" in data:
        data = {**data, "status": "success"}
    return _outcome_adapter.validate_python(data)


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

def has_sufficient_evidence(pack: EvidencePack) -> bool:
    return bool(pack.evidences) and pack.sufficiency_score >= SUFFICIENT_EVIDENCE_SCORE


def build_grounded_prompt(pack: EvidencePack, context: GroundedStoryContext) -> str:
    rules = GROUNDED_RULES if has_sufficient_evidence(pack) else GENERAL_KNOWLEDGE_RULES
    if not pack.evidences:
        return render_prompt(GENERAL_KNOWLEDGE_PUZZLE_TEMPLATE, {
            "rules": rules,
            "context": context.model_dump(),
            "pack": pack.model_dump(),
            "description": pack.official_description or "情報なし",
            "difficulty_guide": GENERAL_KNOWLEDGE_DIFFICULTY_GUIDES[context.difficulty],
        })

    evidence = {
        "spot_name": pack.spot_name,
        "official_description": pack.official_description,
        "available_evidences": [
            e.model_dump(include={
                "id", "type", "content", "location_description", "is_permanent", "confidence",
            })
            for e in pack.evidences
        ],
    }
    return render_prompt(GROUNDED_PUZZLE_TEMPLATE, {
        "rules": rules,
        "context": context.model_dump(),
        "pack": pack.model_dump(),
        "previous_context": context.previous_puzzle_context,
        "evidence": evidence,
        "difficulty_guide": GROUNDED_DIFFICULTY_GUIDES[context.difficulty],
    })


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

def placeholder_outcome(pack: EvidencePack) -> PuzzleReady:
    return PuzzleReady(puzzle=GroundedPuzzleDraft(
        puzzle_statement=f"{pack.spot_name}に関する謎を解いてみましょう。",
        on_site_instruction="現地の案内板や看板を確認してください。",
        solution_steps=["現地で情報を確認する", "答えを見つける"],
        answer=PLACEHOLDER_ANSWER,
        hints=["周囲をよく観察してみましょう", "案内板に答えがあるかもしれません"],
        success_message="正解です！次のスポットへ進みましょう。",
        narrative_link=f"{pack.spot_name}での謎解き",
    ))


async def generate_grounded_puzzle(
    llm: LLM,
    pack: EvidencePack,
    context: GroundedStoryContext,
) -> StageResult[PuzzleReady | EvidenceShortfall]:
    prompt = build_grounded_prompt(pack, context)
    try:
        outcome = parse_grounded_outcome(await llm("grounded_puzzle", prompt))
    except (LLMError, JSONRecoveryError, ValidationError, ValueError) as e:
        logger.warning("grounded puzzle %s: using placeholder: %s", pack.spot_id, e)
        return Fallback(value=placeholder_outcome(pack), reason=str(e))
    if isinstance(outcome, EvidenceShortfall):
        logger.info(
            "grounded puzzle %s: model asked for more evidence: %s",
            pack.spot_id, ", ".join(outcome.missing_evidence) or "-",
        )
    return Generated(value=outcome)


def build_puzzle_from_result(
    spot_id: str,
    outcome: PuzzleReady | EvidenceShortfall,
) -> GroundedPuzzle | None:
    """Draft puzzle with zeroed scores, or None when evidence was missing."""
    if not isinstance(outcome, PuzzleReady):
        return None
    return GroundedPuzzle(
        id=f"puzzle-{spot_id}-{int(time.time() * 1000)}",
        spot_id=spot_id,
        generated_at=datetime.now(timezone.utc).isoformat(),
        **outcome.puzzle.model_dump(),
    )


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------

class GroundedPuzzleReport(BaseModel):
    evidence_pack: EvidencePack
    used_fallback: bool = False
    puzzle: GroundedPuzzle | None = None
    missing_evidence: list[str] = Field(default_factory=list)
    suggestion: str = ""
    gate: QualityGateResult | None = None


async def design_grounded_puzzle(
    llm: LLM,
    retriever: Retriever,
    spot_id: str,
    spot_name: str,
    lat: float,
    lng: float,
    context: GroundedStoryContext,
    mode: PublishMode = "private",
) -> GroundedPuzzleReport:
    """Retrieve, generate, validate and gate one puzzle."""
    pack = await retriever(spot_id, spot_name, lat, lng)
    result = await generate_grounded_puzzle(llm, pack, context)
    outcome = result.value

    if isinstance(outcome, EvidenceShortfall):
        return GroundedPuzzleReport(
            evidence_pack=pack,
            missing_evidence=outcome.missing_evidence,
            suggestion=outcome.suggestion,
        )

    puzzle = build_puzzle_from_result(spot_id, outcome)
    gate = check_quality_gate(puzzle, mode, pack)
    puzzle = update_puzzle_status(puzzle, gate.validation)
    logger.info(
        "grounded puzzle %s: status=%s mode=%s publishable=%s",
        spot_id, puzzle.status, mode, gate.can_publish,
    )
    return GroundedPuzzleReport(
        evidence_pack=pack,
        used_fallback=result.is_fallback,
        puzzle=puzzle,
        gate=gate,
    )
