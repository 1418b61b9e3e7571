"""Stage 4 — quality validation.

Pure functions over the generated scenes: no I/O, no model calls, same
input → same result. Failing checks are returned as data, never raised.

Per stop, four 0–1 scores are computed from weighted presence checks:

    self_contained   handout > 50 chars (.3), ≥2 steps (.3), answer set (.2), ≥2 hints (.2)
    facts_connection facts_used (.4), lore_reveal > 20 chars (.3), rationale > 10 chars (.3)
    narrative_fit    rationale > 20 (.3), > 50 (.2), names the spot (.2), no vague words (.3)
    puzzle_quality   prompt > 50, ≥2 steps, ≥3 hints, difficulty 2–3, type set (.2 each)

Hard errors: self_contained < 0.5, facts_connection < 0.3, narrative_fit < 0.3,
or a prompt that reads like a trivia question.
"""

from __future__ import annotations

import re

from mystery_walk.models import (
    LaytonValidationResult,
    MainPlot,
    MetaPuzzle,
    SpotScene,
    SpotScore,
    ValidationIssue,
    ValidationWarning,
)

SELF_CONTAINED_MIN = 0.5
FACTS_CONNECTION_MIN = 0.3
NARRATIVE_FIT_MIN = 0.3
PUZZLE_QUALITY_WARN = 0.6

PLACEHOLDER_ANSWER = "【要設定】"

VAGUE_WORDS = ("雰囲気", "何となく", "適当", "とりあえず")

TRIVIA_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"誰[がは].*有名"),
    re.compile(r"何年[にで]"),
    re.compile(r"いつ.*建てられ"),
    re.compile(r"誰[のが].*設計"),
    re.compile(r"何という名前"),
    re.compile(r"知っている.*人物"),
    re.compile(r"who is famous for"),
    re.compile(r"what year was .*built"),
    re.compile(r"when was .*built"),
    re.compile(r"who designed"),
)

REGENERATION_CODES = frozenset({"NOT_SELF_CONTAINED", "TRIVIA_QUESTION", "UNRELATED_PUZZLE"})

_SPOT_ID = re.compile(r"S\d+")


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------

def self_contained_score(scene: SpotScene) -> float:
    score = 0.0
    if len(scene.lore_card.player_handout) > 50:
        score += 0.3
    if len(scene.puzzle.solution_steps) >= 2:
        score += 0.3
    if scene.puzzle.answer and PLACEHOLDER_ANSWER not in scene.puzzle.answer:
        score += 0.2
    if len(scene.puzzle.hints) >= 2:
        score += 0.2
    return round(score, 2)


def facts_connection_score(scene: SpotScene) -> float:
    score = 0.0
    if scene.lore_card.facts_used:
        score += 0.4
    if len(scene.reward.lore_reveal) > 20:
        score += 0.3
    if len(scene.linking_rationale) > 10:
        score += 0.3
    return round(score, 2)


def narrative_fit_score(scene: SpotScene) -> float:
    rationale = scene.linking_rationale
    score = 0.0
    if len(rationale) > 20:
        score += 0.3
    if len(rationale) > 50:
        score += 0.2
    if scene.spot_name and scene.spot_name in rationale:
        score += 0.2
    if not any(word in rationale for word in VAGUE_WORDS):
        score += 0.3
    return round(score, 2)


def puzzle_quality_score(scene: SpotScene) -> float:
    puzzle = scene.puzzle
    checks = (
        len(puzzle.prompt) > 50,
        len(puzzle.solution_steps) >= 2,
        len(puzzle.hints) >= 3,
        2 <= puzzle.difficulty <= 3,
        bool(puzzle.type),
    )
    return round(0.2 * sum(checks), 2)


def is_trivia_question(prompt: str) -> bool:
    text = prompt.lower()
    return any(p.search(text) for p in TRIVIA_PATTERNS)


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------

def validate_spot(scene: SpotScene) -> tuple[SpotScore, list[ValidationIssue], list[ValidationWarning]]:
    score = SpotScore(
        spot_id=scene.spot_id,
        self_contained_score=self_contained_score(scene),
        facts_connection_score=facts_connection_score(scene),
        narrative_fit_score=narrative_fit_score(scene),
        puzzle_quality_score=puzzle_quality_score(scene),
    )
    errors: list[ValidationIssue] = []
    warnings: list[ValidationWarning] = []

    def _error(code: str, message: str) -> None:
        errors.append(ValidationIssue(spot_id=scene.spot_id, code=code, message=message))

    if score.self_contained_score < SELF_CONTAINED_MIN:
        _error("NOT_SELF_CONTAINED", "資料だけでは謎を解けない可能性があります")
    if score.facts_connection_score < FACTS_CONNECTION_MIN:
        _error("FACTS_NOT_CONNECTED", "謎とスポットの事実の結びつきが弱いです")
    if score.narrative_fit_score < NARRATIVE_FIT_MIN:
        _error("WEAK_RATIONALE", "この場所である必然性の説明が不足しています")
    if is_trivia_question(scene.puzzle.prompt):
        _error("TRIVIA_QUESTION", "暗記・知識を問う問題になっています")

    if score.puzzle_quality_score < PUZZLE_QUALITY_WARN:
        warnings.append(ValidationWarning(spot_id=scene.spot_id, message="パズルの完成度が低めです"))
    if len(scene.puzzle.hints) < 3:
        warnings.append(ValidationWarning(spot_id=scene.spot_id, message="ヒントが3段階に満たません"))

    return score, errors, warnings


def referenced_spot_ids(meta_puzzle: MetaPuzzle) -> set[str]:
    return {m.group(0) for ref in meta_puzzle.inputs for m in _SPOT_ID.finditer(ref)}


def check_plot_key_usage(spots: list[SpotScene], meta_puzzle: MetaPuzzle, strict: bool = False) -> bool:
    """Whether the meta puzzle uses every stop's plot key.

    Permissive by default: always True unless `strict` is set, in which case
    every stop must be referenced by an input and carry a non-empty key.
    """
    if not strict:
        return True
    referenced = referenced_spot_ids(meta_puzzle)
    return all(s.spot_id in referenced and s.reward.plot_key for s in spots)


def validate_meta_puzzle(
    spots: list[SpotScene],
    meta_puzzle: MetaPuzzle,
    strict_plot_key_usage: bool = False,
) -> tuple[list[ValidationIssue], list[ValidationWarning]]:
    errors: list[ValidationIssue] = []
    warnings: list[ValidationWarning] = []
    referenced = referenced_spot_ids(meta_puzzle)
    missing = [s.spot_id for s in spots if s.spot_id not in referenced]
    if len(missing) > len(spots) / 2:
        errors.append(ValidationIssue(
            spot_id="meta",
            code="PLOT_KEY_UNUSED",
            message=f"最終謎で使われていない鍵が多すぎます: {', '.join(missing)}",
        ))
    if not check_plot_key_usage(spots, meta_puzzle, strict_plot_key_usage):
        warnings.append(ValidationWarning(spot_id="meta", message="一部の鍵が最終謎で使われていません"))
    return errors, warnings


def validate_quest(
    spots: list[SpotScene],
    main_plot: MainPlot,
    meta_puzzle: MetaPuzzle,
    strict_plot_key_usage: bool = False,
) -> LaytonValidationResult:
    errors: list[ValidationIssue] = []
    warnings: list[ValidationWarning] = []
    scores: list[SpotScore] = []

    for scene in spots:
        score, spot_errors, spot_warnings = validate_spot(scene)
        scores.append(score)
        errors.extend(spot_errors)
        warnings.extend(spot_warnings)

    meta_errors, meta_warnings = validate_meta_puzzle(spots, meta_puzzle, strict_plot_key_usage)
    errors.extend(meta_errors)
    warnings.extend(meta_warnings)

    if not main_plot.final_reveal_outline.strip():
        warnings.append(ValidationWarning(spot_id="plot", message="真相の概要が空です"))

    return LaytonValidationResult(
        passed=not errors,
        errors=errors,
        warnings=warnings,
        spot_scores=scores,
    )


def get_regeneration_targets(result: LaytonValidationResult) -> list[str]:
    """Distinct spot ids with a critical error, in first-seen order."""
    targets: list[str] = []
    for issue in result.errors:
        if issue.code in REGENERATION_CODES and issue.spot_id not in targets:
            targets.append(issue.spot_id)
    return targets
