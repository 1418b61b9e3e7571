"""Checks, scores and publish gates for evidence-grounded puzzles.

Pure functions. Errors block a puzzle, warnings only lower confidence:

    NO_EVIDENCE          error    no evidence reference at all
    MISSING_SOURCE_URL   warning  an evidence reference without a source URL
    EMPTY_ANSWER         error
    AMBIGUOUS_ANSWER     warning  a single digit is too easy to hit by chance
    MISSING_INSTRUCTION  error    nothing tells the player where to look
    VAGUE_INSTRUCTION    warning  "look around", "maybe", ...
    INSUFFICIENT_HINTS   error    fewer than two hints
    HINT_REVEALS_ANSWER  error
    NO_FINAL_RESCUE      warning
    MISSING_NARRATIVE    warning
    WEAK_NARRATIVE       warning  narrative link under 20 characters
"""

from __future__ import annotations

import re
from datetime import datetime, timezone

from mystery_walk.models import (
    QUALITY_REQUIREMENTS,
    EvidencePack,
    GroundedPuzzle,
    PublishMode,
    PuzzleCheck,
    PuzzleStatus,
    PuzzleValidationResult,
    QualityGateResult,
)

VAGUE_INSTRUCTION_PATTERNS = [
    re.compile(p) for p in (r"周辺を?探して", r"どこかに", r"たぶん", r"かもしれません", r"おそらく", r"見つけて")
]

NARRATIVE_KEYWORDS = (
    "物語", "ストーリー", "伏線", "謎", "秘密", "歴史", "伝説",
    "人物", "キャラクター", "目的", "理由", "なぜ", "ここで",
)

MIN_NARRATIVE_LINK_CHARS = 20


def _error(code: str, message: str) -> PuzzleCheck:
    return PuzzleCheck(code=code, message=message, severity="error")


def _warning(code: str, message: str) -> PuzzleCheck:
    return PuzzleCheck(code=code, message=message, severity="warning")


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------

def _check_evidence_reference(puzzle: GroundedPuzzle) -> list[PuzzleCheck]:
    checks = []
    if not puzzle.evidence_used:
        checks.append(_error(
            "NO_EVIDENCE",
            "謎に根拠データへの参照がありません。現地で確認できる手掛かりを使用してください。",
        ))
    for usage in puzzle.evidence_used:
        if not usage.source_url:
            checks.append(_warning("MISSING_SOURCE_URL", f"根拠「{usage.evidence_id}」に出典URLがありません。"))
    return checks


def _check_answer(puzzle: GroundedPuzzle) -> list[PuzzleCheck]:
    answer = puzzle.answer.strip()
    if not answer:
        return [_error("EMPTY_ANSWER", "答えが設定されていません。")]
    if len(answer) == 1 and answer.isdigit():
        return [_warning("AMBIGUOUS_ANSWER", "答えが単一の数字だけでは偶然の正解が起きやすいです。")]
    return []


def _check_on_site_instruction(puzzle: GroundedPuzzle) -> list[PuzzleCheck]:
    instruction = puzzle.on_site_instruction.strip()
    if not instruction:
        return [_error(
            "MISSING_INSTRUCTION",
            "現地での指示が設定されていません。プレイヤーが何を見ればいいか明記してください。",
        )]
    if any(p.search(instruction) for p in VAGUE_INSTRUCTION_PATTERNS):
        return [_warning(
            "VAGUE_INSTRUCTION",
            f"現地指示が曖昧です: 「{instruction[:50]}...」具体的な位置や対象物を指定してください。",
        )]
    return []


def _check_hints(puzzle: GroundedPuzzle) -> list[PuzzleCheck]:
    if len(puzzle.hints) < 2:
        return [_error("INSUFFICIENT_HINTS", "段階ヒントが不足しています（2つ必要）。")]
    checks = []
    answer = puzzle.answer.strip()
    for i, hint in enumerate(puzzle.hints, start=1):
        if answer and answer in hint:
            checks.append(_error("HINT_REVEALS_ANSWER", f"ヒント{i}が答えをそのまま含んでいます。"))
    if not puzzle.final_rescue:
        checks.append(_warning("NO_FINAL_RESCUE", "最終救済（答え表示またはスキップ）が設定されていません。"))
    return checks


def _check_narrative_link(puzzle: GroundedPuzzle) -> list[PuzzleCheck]:
    link = puzzle.narrative_link.strip()
    if not link:
        return [_warning(
            "MISSING_NARRATIVE",
            "物語との接続が設定されていません。なぜこの場所でこの謎なのか説明してください。",
        )]
    if len(link) < MIN_NARRATIVE_LINK_CHARS:
        return [_warning("WEAK_NARRATIVE", "物語との接続が短すぎます。もう少し詳しく説明してください。")]
    return []


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------

def grounding_confidence(puzzle: GroundedPuzzle, pack: EvidencePack | None = None) -> float:
    """Mean confidence of the referenced evidences that exist in the pack.

    Without a pack, the number of references stands in (three or more → 0.7).
    """
    if not puzzle.evidence_used:
        return 0.0
    if pack is None:
        return min(len(puzzle.evidence_used) / 3, 1) * 0.7
    by_id = {e.id: e for e in pack.evidences}
    found = [by_id[u.evidence_id].confidence for u in puzzle.evidence_used if u.evidence_id in by_id]
    return sum(found) / len(found) if found else 0.0


def narrative_fit_score(puzzle: GroundedPuzzle) -> float:
    link = puzzle.narrative_link
    if not link:
        return 0.0
    length_score = min(len(link) / 100, 1)
    keywords = sum(1 for kw in NARRATIVE_KEYWORDS if kw in link)
    return min(length_score * 0.7 + min(keywords / 3, 0.3), 1.0)


def solvability_score(puzzle: GroundedPuzzle) -> float:
    if not puzzle.answer:
        return 0.0
    score = 1.0
    if not puzzle.solution_steps:
        score -= 0.3
    if len(puzzle.hints) < 2:
        score -= 0.2
    if not puzzle.on_site_instruction:
        score -= 0.3
    if not puzzle.final_rescue:
        score -= 0.1
    return max(score, 0.0)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def validate_grounded_puzzle(puzzle: GroundedPuzzle, pack: EvidencePack | None = None) -> PuzzleValidationResult:
    checks = [
        *_check_evidence_reference(puzzle),
        *_check_answer(puzzle),
        *_check_on_site_instruction(puzzle),
        *_check_hints(puzzle),
        *_check_narrative_link(puzzle),
    ]
    errors = [c for c in checks if c.severity == "error"]
    warnings = [c for c in checks if c.severity == "warning"]

    if any(e.code == "NO_EVIDENCE" for e in errors):
        action = "add_evidence"
    elif errors:
        action = "regenerate"
    elif len(warnings) > 2:
        action = "manual_review"
    else:
        action = None

    return PuzzleValidationResult(
        passed=not errors,
        grounding_confidence=grounding_confidence(puzzle, pack),
        narrative_fit_score=narrative_fit_score(puzzle),
        solvability_score=solvability_score(puzzle),
        errors=errors,
        warnings=warnings,
        recommended_action=action,
    )


def _percent(value: float) -> str:
    return f"{value * 100:.0f}%"


def check_quality_gate(
    puzzle: GroundedPuzzle,
    mode: PublishMode,
    pack: EvidencePack | None = None,
) -> QualityGateResult:
    """Whether the puzzle meets the score floors of a publish mode."""
    requirements = QUALITY_REQUIREMENTS[mode]
    validation = validate_grounded_puzzle(puzzle, pack)
    reasons = []

    if requirements.requires_validation and not validation.passed:
        reasons.append("検証に失敗しました")
    if validation.grounding_confidence < requirements.min_grounding_confidence:
        reasons.append(
            f"現地裏付けスコアが不足: {_percent(validation.grounding_confidence)}"
            f" / 必要: {_percent(requirements.min_grounding_confidence)}"
        )
    if validation.narrative_fit_score < requirements.min_narrative_fit_score:
        reasons.append(
            f"物語結びつきスコアが不足: {_percent(validation.narrative_fit_score)}"
            f" / 必要: {_percent(requirements.min_narrative_fit_score)}"
        )
    if validation.solvability_score < requirements.min_solvability_score:
        reasons.append(
            f"解決可能性スコアが不足: {_percent(validation.solvability_score)}"
            f" / 必要: {_percent(requirements.min_solvability_score)}"
        )

    return QualityGateResult(
        can_publish=not reasons,
        needs_manual_review=requirements.requires_manual_review,
        validation=validation,
        failure_reasons=reasons,
    )


def update_puzzle_status(puzzle: GroundedPuzzle, result: PuzzleValidationResult) -> GroundedPuzzle:
    """Copy of the puzzle carrying the result's scores and the matching status."""
    status: PuzzleStatus
    if any(e.code == "NO_EVIDENCE" for e in result.errors):
        status = "needs_more_evidence"
    elif not result.passed:
        status = "needs_regeneration"
    else:
        status = "validated"

    return puzzle.model_copy(update={
        "status": status,
        "grounding_confidence": result.grounding_confidence,
        "narrative_fit_score": result.narrative_fit_score,
        "solvability_score": result.solvability_score,
        "validation_errors": [*result.errors, *result.warnings],
        "validated_at": datetime.now(timezone.utc).isoformat(),
    })
