"""Pipeline orchestrator — one quest, end to end.

Flow:
  1. Stop selection + geofilter        (progress 5 → 20, step 1)
  2. Motif selection                    (step 1)
  3. Main plot                          (progress 35, step 2)
  4. Per-stop puzzles, in order         (progress 40..80, step 3)
  5. Meta puzzle                        (progress 85, step 3)
  6. Validation, one regeneration pass  (progress 90, step 4)
  7. Title, assembly                    (progress 100, or 95 → 100 with preview)

Stages 2–5 and the title absorb generation failures with their own
fallbacks. Anything else aborts the run: an ErrorEvent carrying the last
known state is emitted and the exception propagates.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from mystery_walk.llm import LLM
from mystery_walk.models import (
    GenerationMetadata,
    LaytonValidationResult,
    PipelineState,
    QuestDualOutput,
    QuestGenerationRequest,
    QuestOutput,
    SpotScene,
)
from mystery_walk.pipeline.events import (
    CompleteEvent,
    ErrorEvent,
    EventSink,
    PlotCompleteEvent,
    ProgressEvent,
    SpotCompleteEvent,
    ignore_events,
)
from mystery_walk.pipeline.motif import select_motifs
from mystery_walk.pipeline.plot import create_main_plot
from mystery_walk.pipeline.preview import generate_player_preview, generate_quest_title
from mystery_walk.pipeline.puzzle import (
    build_meta_puzzle,
    fallback_meta_puzzle,
    generate_meta_puzzle,
    generate_spot_puzzle,
)
from mystery_walk.pipeline.stops import StopSelectionError, quest_context_lines, select_candidate_stops
from mystery_walk.pipeline.validate import get_regeneration_targets, validate_quest
from mystery_walk.retriever import Geocoder, Retriever
from mystery_walk.storage import new_quest_id

logger = logging.getLogger(__name__)

PIPELINE_VERSION = "2.0.0-layton"

# Regeneration runs only when 1..N stops carry a critical error
MAX_REGENERATION_TARGETS = 3


class PipelineError(RuntimeError):
    """Raised when a run cannot produce a quest."""


class PipelineDeps:
    """Collaborators for one run.

    Args:
        llm:                      stage-aware LLM callable.
        geocoder:                 name → coordinate lookup, optional.
        retriever:                evidence lookup, optional.
        max_regeneration_targets: upper bound for the regeneration pass.
        strict_plot_key_usage:    make the validator's plot-key check real.
    """

    def __init__(
        self,
        llm: LLM,
        geocoder: Geocoder | None = None,
        retriever: Retriever | None = None,
        max_regeneration_targets: int = MAX_REGENERATION_TARGETS,
        strict_plot_key_usage: bool = False,
    ) -> None:
        self.llm = llm
        self.geocoder = geocoder
        self.retriever = retriever
        self.max_regeneration_targets = max_regeneration_targets
        self.strict_plot_key_usage = strict_plot_key_usage


class _Progress:
    """Emits ProgressEvents and remembers the last state. Never goes backwards."""

    def __init__(self, on_event: EventSink) -> None:
        self._on_event = on_event
        self.state: PipelineState | None = None

    def emit(
        self,
        step: int,
        step_name: str,
        progress: int,
        current_spot_index: int | None = None,
        total_spots: int | None = None,
    ) -> None:
        if self.state is not None:
            progress = max(progress, self.state.progress)
        self.state = PipelineState(
            current_step=step,
            step_name=step_name,
            progress=min(progress, 100),
            current_spot_index=current_spot_index,
            total_spots=total_spots,
        )
        logger.debug("progress step=%d %s %d%%", step, step_name, self.state.progress)
        self._on_event(ProgressEvent(state=self.state))

    def fail(self, message: str) -> ErrorEvent:
        state = self.state.model_copy(update={"error": message}) if self.state else None
        return ErrorEvent(message=message, state=state)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _metadata_warnings(validation: LaytonValidationResult) -> list[str]:
    return [
        *(f"[{e.code}] {e.spot_id}: {e.message}" for e in validation.errors),
        *(f"{w.spot_id}: {w.message}" for w in validation.warnings),
    ]


async def _build_quest(
    request: QuestGenerationRequest,
    deps: PipelineDeps,
    progress: _Progress,
    on_event: EventSink,
) -> QuestOutput:
    llm = deps.llm
    theme = request.prompt
    context = "\n".join(quest_context_lines(request))
    fallbacks: list[str] = []

    # 1. Stops + motifs
    progress.emit(1, "motif_selection", 5)
    spots = await select_candidate_stops(llm, request, deps.geocoder, deps.retriever)
    if not spots:
        raise StopSelectionError("No stops available for this request")
    total = len(spots)
    progress.emit(1, "motif_selection", 20, total_spots=total)

    motif_result = await select_motifs(llm, spots, theme, context)
    if motif_result.is_fallback:
        fallbacks.append("motif")
    motifs = motif_result.value
    if len(motifs) != total:
        raise PipelineError(f"Expected {total} motifs, got {len(motifs)}")

    # 2. Plot
    progress.emit(2, "plot_creation", 35, total_spots=total)
    plot_result = await create_main_plot(llm, spots, motifs, theme, context)
    if plot_result.is_fallback:
        fallbacks.append("plot")
    plot = plot_result.value
    on_event(PlotCompleteEvent(plot=plot))

    # 3. Puzzles, strictly in order
    scenes: list[SpotScene] = []
    for i, (spot, motif) in enumerate(zip(spots, motifs)):
        progress.emit(3, "puzzle_design", 40 + (i * 40) // total, current_spot_index=i, total_spots=total)
        scene_result = await generate_spot_puzzle(llm, spot, motif, plot, motifs, i)
        if scene_result.is_fallback:
            fallbacks.append(motif.spot_id)
        scenes.append(scene_result.value)
        on_event(SpotCompleteEvent(index=i, spot=scene_result.value))

    progress.emit(3, "puzzle_design", 85, total_spots=total)
    meta_result = await generate_meta_puzzle(llm, scenes, plot)
    if meta_result.is_fallback:
        fallbacks.append("meta_puzzle")
    meta_puzzle = build_meta_puzzle(meta_result.value, scenes)

    # 4. Validation + at most one regeneration per critical stop
    progress.emit(4, "validation", 90, total_spots=total)
    validation = validate_quest(scenes, plot, meta_puzzle, deps.strict_plot_key_usage)
    targets = get_regeneration_targets(validation)
    if 1 <= len(targets) <= deps.max_regeneration_targets:
        logger.info("Regenerating %d stop(s): %s", len(targets), ", ".join(targets))
        index_by_id = {m.spot_id: i for i, m in enumerate(motifs)}
        for spot_id in targets:
            i = index_by_id[spot_id]
            progress.emit(4, "validation", 90, current_spot_index=i, total_spots=total)
            regenerated = await generate_spot_puzzle(llm, spots[i], motifs[i], plot, motifs, i)
            scenes[i] = regenerated.value
            on_event(SpotCompleteEvent(index=i, spot=scenes[i]))
        # a concatenated fallback answer must track the regenerated plot keys
        meta_draft = fallback_meta_puzzle(scenes) if meta_result.is_fallback else meta_result.value
        meta_puzzle = build_meta_puzzle(meta_draft, scenes)
        validation = validate_quest(scenes, plot, meta_puzzle, deps.strict_plot_key_usage)
    elif targets:
        logger.warning(
            "Skipping regeneration: %d stops need it (limit %d)",
            len(targets), deps.max_regeneration_targets,
        )

    if not validation.passed:
        logger.warning("Quest finished with %d validation error(s)", len(validation.errors))

    title_result = await generate_quest_title(llm, request, plot, context)
    if title_result.is_fallback:
        fallbacks.append("title")

    if fallbacks:
        logger.info("Stages that used fallbacks: %s", ", ".join(fallbacks))

    return QuestOutput(
        quest_id=new_quest_id(),
        quest_title=title_result.value,
        main_plot=plot,
        spots=scenes,
        meta_puzzle=meta_puzzle,
        generation_metadata=GenerationMetadata(
            generated_at=_now(),
            pipeline_version=PIPELINE_VERSION,
            validation_passed=validation.passed,
            validation_warnings=_metadata_warnings(validation),
        ),
    )


async def run_layton_pipeline(
    request: QuestGenerationRequest,
    deps: PipelineDeps,
    on_event: EventSink | None = None,
) -> QuestOutput:
    """Generate the creator-facing quest."""
    sink = on_event or ignore_events
    progress = _Progress(sink)
    try:
        output = await _build_quest(request, deps, progress, sink)
    except Exception as e:
        logger.error("Quest generation failed: %s", e)
        sink(progress.fail(str(e)))
        raise
    progress.emit(4, "validation", 100, total_spots=len(output.spots))
    return output


async def generate_layton_quest(
    request: QuestGenerationRequest,
    deps: PipelineDeps,
    on_event: EventSink | None = None,
) -> QuestDualOutput:
    """Generate the quest plus its spoiler-free player preview."""
    sink = on_event or ignore_events
    progress = _Progress(sink)
    try:
        output = await _build_quest(request, deps, progress, sink)
        total = len(output.spots)
        progress.emit(4, "validation", 95, total_spots=total)
        context = "\n".join(quest_context_lines(request))
        preview_result = await generate_player_preview(deps.llm, output.quest_title, request, output, context)
        result = QuestDualOutput(player_preview=preview_result.value, creator_payload=output)
    except Exception as e:
        logger.error("Quest generation failed: %s", e)
        sink(progress.fail(str(e)))
        raise
    progress.emit(4, "validation", 100, total_spots=total)
    sink(CompleteEvent(result=result))
    return result
