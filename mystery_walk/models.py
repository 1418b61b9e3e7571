"""Core domain models.

All pipeline stages, backends and the quest store operate on these types.
Pydantic is used for validation and serialisation at every data boundary.

Flow of data through one generation run:

    QuestGenerationRequest
      → SpotInput[]            (stop selection, fixed order S1..Sn)
      → SpotMotif[]            (stage 1)
      → MainPlot               (stage 2)
      → SpotScene[] + MetaPuzzle (stage 3)
      → LaytonValidationResult (stage 4, derived, never stored on its own)
      → QuestOutput / QuestDualOutput

Single evidence-grounded puzzles take a side path:

    EvidencePack → GroundedPuzzle → PuzzleValidationResult → QualityGateResult
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------------

SceneRole = Literal[
    "intro",
    "rising",
    "turning_point",
    "climax_approach",
    "red_herring_resolution",
    "finale",
]

PlotKeyType = Literal["keyword", "cipher_piece", "coordinate", "name", "number", "symbol"]

PuzzleType = Literal["logic", "pattern", "cipher", "wordplay", "lateral", "math"]

Difficulty = Literal["easy", "medium", "hard"]

EvidenceType = Literal[
    "signboard",
    "monument",
    "inscription",
    "exhibit",
    "architecture",
    "official_name",
    "plaque",
    "statue",
    "gate",
    "other",
]

SourceType = Literal["survey", "partner", "official", "wikipedia", "openstreetmap", "google_places"]

ValidationErrorCode = Literal[
    "NOT_SELF_CONTAINED",
    "FACTS_NOT_CONNECTED",
    "PLOT_KEY_UNUSED",
    "WEAK_RATIONALE",
    "TRIVIA_QUESTION",
    "UNRELATED_PUZZLE",
]

StepName = Literal["motif_selection", "plot_creation", "puzzle_design", "validation"]

PuzzleStatus = Literal["draft", "validated", "needs_more_evidence", "needs_regeneration"]

PublishMode = Literal["private", "share", "publish"]

FinalRescue = Literal["show_answer", "skip"]

SCENE_ROLES: tuple[str, ...] = (
    "intro", "rising", "turning_point", "climax_approach", "red_herring_resolution", "finale",
)
PLOT_KEY_TYPES: tuple[str, ...] = ("keyword", "cipher_piece", "coordinate", "name", "number", "symbol")
PUZZLE_TYPES: tuple[str, ...] = ("logic", "pattern", "cipher", "wordplay", "lateral", "math")

# Labels the model tends to answer with when prompted in Japanese
SCENE_ROLE_LABELS: dict[str, str] = {
    "導入": "intro",
    "展開": "rising",
    "転換": "turning_point",
    "真相接近": "climax_approach",
    "ミスリード解除": "red_herring_resolution",
    "結末": "finale",
}

# Base confidence per evidence source
SOURCE_CONFIDENCE: dict[str, float] = {
    "survey": 1.0,
    "partner": 0.95,
    "official": 0.9,
    "wikipedia": 0.8,
    "google_places": 0.75,
    "openstreetmap": 0.7,
}


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------

class LatLng(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class PromptSupport(BaseModel):
    """Optional answers to the creator's helper questions."""

    model_config = ConfigDict(populate_by_name=True)

    protagonist: str | None = None
    objective: str | None = None
    ending: str | None = None
    when: str | None = None
    where: str | None = None
    purpose: str | None = None
    with_whom: str | None = Field(default=None, alias="withWhom")


class QuestGenerationRequest(BaseModel):
    prompt: str = Field(min_length=1)
    difficulty: Difficulty
    spot_count: int = Field(ge=1, le=12)
    theme_tags: list[str] = Field(default_factory=list)
    genre_support: str | None = None
    tone_support: str | None = None
    prompt_support: PromptSupport | None = None
    center_location: LatLng | None = None
    radius_km: float | None = Field(default=None, gt=0)

    @field_validator("difficulty", mode="before")
    @classmethod
    def _normal_is_medium(cls, value: object) -> object:
        if isinstance(value, str) and value.strip().lower() == "normal":
            return "medium"
        return value

    @field_validator("prompt")
    @classmethod
    def _prompt_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("prompt must not be blank")
        return value


# ---------------------------------------------------------------------------
# Stop selection + evidence
# ---------------------------------------------------------------------------

class SpotInput(BaseModel):
    """A candidate real-world stop. Immutable once stop selection is done."""

    model_config = ConfigDict(frozen=True)

    spot_name: str
    spot_summary: str = ""
    spot_facts: list[str] = Field(default_factory=list)
    spot_theme_tags: list[str] = Field(default_factory=list)
    lat: float
    lng: float
    place_id: str | None = None
    address: str = ""


class GeoPoint(BaseModel):
    lat: float
    lng: float
    place_id: str | None = None
    formatted_address: str | None = None


class Evidence(BaseModel):
    id: str
    type: EvidenceType
    content: str
    source_url: str = ""
    source_type: SourceType
    is_permanent: bool = True
    confidence: float = Field(ge=0, le=1)
    location_description: str = ""
    retrieved_at: str


class EvidencePack(BaseModel):
    spot_id: str
    spot_name: str
    lat: float
    lng: float
    official_description: str = ""
    evidences: list[Evidence] = Field(default_factory=list)
    retrieved_at: str
    sufficiency_score: float = 0.0


# ---------------------------------------------------------------------------
# Stage outputs
# ---------------------------------------------------------------------------

class SpotMotif(BaseModel):
    spot_id: str
    spot_name: str
    selected_facts: list[str] = Field(default_factory=list)  # "fact_1", "fact_3", ...
    scene_role: SceneRole
    plot_key_type: PlotKeyType = "keyword"
    suggested_puzzle_type: PuzzleType = "logic"


class MainPlot(BaseModel):
    premise: str
    goal: str
    antagonist_or_mystery: str
    final_reveal_outline: str


class LoreCard(BaseModel):
    short_story_text: str = ""
    facts_used: list[str] = Field(default_factory=list)
    player_handout: str = ""


class LaytonPuzzle(BaseModel):
    type: PuzzleType
    prompt: str
    rules: str | None = None
    answer: str
    solution_steps: list[str] = Field(default_factory=list)
    hints: list[str] = Field(default_factory=list)  # abstract → concrete → rescue
    difficulty: int = Field(default=2, ge=1, le=5)


class Reward(BaseModel):
    lore_reveal: str = ""
    plot_key: str = ""
    next_hook: str = ""


class SpotScene(BaseModel):
    spot_id: str
    spot_name: str
    lat: float
    lng: float
    scene_role: SceneRole
    lore_card: LoreCard
    puzzle: LaytonPuzzle
    reward: Reward
    linking_rationale: str = ""


class MetaPuzzle(BaseModel):
    inputs: list[str] = Field(default_factory=list)  # ["S1.plot_key", ...]
    prompt: str
    answer: str
    explanation: str


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ValidationIssue(BaseModel):
    spot_id: str
    code: ValidationErrorCode
    message: str


class ValidationWarning(BaseModel):
    spot_id: str
    message: str


class SpotScore(BaseModel):
    spot_id: str
    self_contained_score: float
    facts_connection_score: float
    narrative_fit_score: float
    puzzle_quality_score: float


class LaytonValidationResult(BaseModel):
    passed: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationWarning] = Field(default_factory=list)
    spot_scores: list[SpotScore] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Final artefacts
# ---------------------------------------------------------------------------

class GenerationMetadata(BaseModel):
    generated_at: str
    pipeline_version: str
    validation_passed: bool
    validation_warnings: list[str] = Field(default_factory=list)


class QuestOutput(BaseModel):
    quest_id: str
    quest_title: str
    main_plot: MainPlot
    spots: list[SpotScene]
    meta_puzzle: MetaPuzzle
    generation_metadata: GenerationMetadata


class RouteMeta(BaseModel):
    area_start: str = ""
    area_end: str = ""
    distance_km: str = ""
    estimated_time_min: str = ""
    spots_count: int = 0
    outdoor_ratio_percent: str = "70"
    recommended_people: str = "1〜4人"
    difficulty_label: str = ""
    difficulty_reason: str = ""
    weather_note: str = ""


class HighlightSpot(BaseModel):
    name: str
    teaser_experience: str


class CtaCopy(BaseModel):
    primary: str
    secondary: str
    note: str


class PlayerPreview(BaseModel):
    """Spoiler-free quest introduction shown to players before they start."""

    title: str
    one_liner: str = ""
    trailer: str = ""
    mission: str = ""
    teasers: list[str] = Field(default_factory=list)
    summary_actions: list[str] = Field(default_factory=list)
    route_meta: RouteMeta = Field(default_factory=RouteMeta)
    highlight_spots: list[HighlightSpot] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    prep_and_safety: list[str] = Field(default_factory=list)
    cta_copy: CtaCopy | None = None


class QuestDualOutput(BaseModel):
    """Two-layer result: player_preview (no spoilers) + creator_payload (everything)."""

    player_preview: PlayerPreview
    creator_payload: QuestOutput


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------

class PipelineState(BaseModel):
    current_step: int = Field(ge=1, le=4)
    step_name: StepName
    progress: int = Field(ge=0, le=100)
    current_spot_index: int | None = None
    total_spots: int | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Evidence-grounded single puzzles
# ---------------------------------------------------------------------------

class EvidenceUsage(BaseModel):
    evidence_id: str
    source_url: str = ""
    usage: str = ""


class PuzzleCheck(BaseModel):
    code: str
    message: str
    severity: Literal["error", "warning"]


class GroundedPuzzle(BaseModel):
    """One on-site puzzle built from an EvidencePack, plus its quality scores."""

    id: str
    spot_id: str
    puzzle_statement: str
    on_site_instruction: str = ""
    hints: list[str] = Field(default_factory=list)
    final_rescue: FinalRescue | None = "show_answer"
    answer: str = ""
    acceptable_answers: list[str] = Field(default_factory=list)
    success_message: str = ""
    evidence_used: list[EvidenceUsage] = Field(default_factory=list)
    solution_steps: list[str] = Field(default_factory=list)
    narrative_link: str = ""
    grounding_confidence: float = 0.0
    narrative_fit_score: float = 0.0
    solvability_score: float = 0.0
    status: PuzzleStatus = "draft"
    validation_errors: list[PuzzleCheck] = Field(default_factory=list)
    generated_at: str
    validated_at: str | None = None


class PuzzleValidationResult(BaseModel):
    passed: bool
    grounding_confidence: float
    narrative_fit_score: float
    solvability_score: float
    errors: list[PuzzleCheck] = Field(default_factory=list)
    warnings: list[PuzzleCheck] = Field(default_factory=list)
    recommended_action: Literal["regenerate", "add_evidence", "manual_review"] | None = None


class QualityRequirements(BaseModel):
    min_grounding_confidence: float
    min_narrative_fit_score: float
    min_solvability_score: float
    requires_validation: bool
    requires_manual_review: bool


# private: playable as a draft, warnings only
QUALITY_REQUIREMENTS: dict[str, QualityRequirements] = {
    "private": QualityRequirements(
        min_grounding_confidence=0,
        min_narrative_fit_score=0,
        min_solvability_score=0,
        requires_validation=False,
        requires_manual_review=False,
    ),
    "share": QualityRequirements(
        min_grounding_confidence=0.6,
        min_narrative_fit_score=0.5,
        min_solvability_score=0.7,
        requires_validation=True,
        requires_manual_review=False,
    ),
    "publish": QualityRequirements(
        min_grounding_confidence=0.8,
        min_narrative_fit_score=0.7,
        min_solvability_score=0.9,
        requires_validation=True,
        requires_manual_review=True,
    ),
}


class QualityGateResult(BaseModel):
    can_publish: bool
    needs_manual_review: bool = False
    validation: PuzzleValidationResult
    failure_reasons: list[str] = Field(default_factory=list)
