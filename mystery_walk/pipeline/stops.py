"""Stop selection and geofilter.

The model proposes candidate stops for the request. Each candidate is then
pinned to a real coordinate, filtered to the quest origin, ordered into a
walkable chain and finally enriched with retrieved evidence. The resulting
order is fixed for the rest of the run (S1..Sn).

Unlike the later stages there is no fallback here: without candidate stops
there is nothing to build a quest from, so failures raise StopSelectionError.
"""

from __future__ import annotations

import asyncio
import logging

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from mystery_walk.geo import MAX_INTER_STOP_METERS, chain_nearest, filter_by_origin
from mystery_walk.json_utils import JSONRecoveryError, parse_llm_json
from mystery_walk.llm import LLM, LLMError
from mystery_walk.models import EvidencePack, LatLng, QuestGenerationRequest, SpotInput
from mystery_walk.prompts import READABILITY_RULES, SPOTS_TEMPLATE, render_prompt
from mystery_walk.retriever import Geocoder, Retriever, retrieve_evidences_for_spots

logger = logging.getLogger(__name__)

# Tokyo Station
DEFAULT_COORDINATE = LatLng(lat=35.681236, lng=139.767125)
DEFAULT_RADIUS_KM = 1.0
MAX_SPOT_FACTS = 7
EVIDENCE_FACTS_PER_SPOT = 3


class StopSelectionError(RuntimeError):
    """Raised when no usable candidate stops could be produced."""


# ---------------------------------------------------------------------------
# Request context shared by the narrative stages
# ---------------------------------------------------------------------------

_SUPPORT_LABELS: tuple[tuple[str, str], ...] = (
    ("protagonist", "主人公"),
    ("objective", "目的"),
    ("ending", "結末"),
    ("when", "いつ"),
    ("where", "どこで"),
    ("purpose", "旅の目的"),
    ("with_whom", "誰と"),
)


def quest_context_lines(request: QuestGenerationRequest) -> list[str]:
    """Optional request fields as 'ラベル: 値' lines, empty ones omitted."""
    lines: list[str] = []
    if request.genre_support:
        lines.append(f"ジャンル: {request.genre_support}")
    if request.tone_support:
        lines.append(f"トーン: {request.tone_support}")
    if request.theme_tags:
        lines.append(f"テーマタグ: {', '.join(request.theme_tags)}")
    support = request.prompt_support
    if support is not None:
        for field, label in _SUPPORT_LABELS:
            value = getattr(support, field)
            if value and value.strip():
                lines.append(f"{label}: {value.strip()}")
    return lines


# ---------------------------------------------------------------------------
# Model response schema
# ---------------------------------------------------------------------------

class StopDraft(BaseModel):
    """One candidate as proposed by the model, before geocoding."""

    model_config = ConfigDict(extra="ignore")

    spot_name: str = Field(min_length=1)
    spot_summary: str = ""
    spot_facts: list[str] = Field(default_factory=list)
    spot_theme_tags: list[str] = Field(default_factory=list)
    lat: float | None = None
    lng: float | None = None

    @field_validator("spot_facts", "spot_theme_tags", mode="before")
    @classmethod
    def _wrap_single(cls, value: object) -> object:
        if isinstance(value, str):
            return [value] if value.strip() else []
        return value

    def model_coordinate(self) -> LatLng | None:
        if self.lat is None or self.lng is None:
            return None
        if not (-90 <= self.lat <= 90 and -180 <= self.lng <= 180):
            return None
        return LatLng(lat=self.lat, lng=self.lng)


def parse_stop_drafts(text: str) -> list[StopDraft]:
    """Parse the model's stop list. Invalid items are dropped.

    Raises StopSelectionError when nothing usable remains.
    """
    try:
        data = parse_llm_json(text)
    except JSONRecoveryError as e:
        raise StopSelectionError("Stop list from the model could not be parsed") from e

    if isinstance(data, dict):
        data = data.get("spots")
    if not isinstance(data, list):
        raise StopSelectionError("Stop list from the model is not an array")

    drafts: list[StopDraft] = []
    for i, item in enumerate(data):
        try:
            drafts.append(StopDraft.model_validate(item))
        except ValidationError as e:
            logger.warning("Dropping candidate stop %d: %s", i, e.errors()[0]["msg"])
    if not drafts:
        raise StopSelectionError("Model returned no usable stops")
    return drafts


# ---------------------------------------------------------------------------
# Coordinates + evidence
# ---------------------------------------------------------------------------

async def _locate(
    draft: StopDraft,
    geocoder: Geocoder | None,
    center: LatLng | None,
    radius_km: float,
) -> SpotInput:
    point = None
    if geocoder is not None:
        point = await geocoder(
            draft.spot_name,
            center.lat if center else None,
            center.lng if center else None,
            radius_km,
        )

    if point is not None:
        lat, lng = point.lat, point.lng
        place_id, address = point.place_id, point.formatted_address or ""
    else:
        coord = draft.model_coordinate()
        if coord is None:
            logger.warning("No coordinate for %r; using default", draft.spot_name)
            coord = DEFAULT_COORDINATE
        lat, lng = coord.lat, coord.lng
        place_id, address = None, ""

    return SpotInput(
        spot_name=draft.spot_name,
        spot_summary=draft.spot_summary,
        spot_facts=draft.spot_facts,
        spot_theme_tags=draft.spot_theme_tags,
        lat=lat,
        lng=lng,
        place_id=place_id,
        address=address,
    )


def enrich_with_evidence(spot: SpotInput, pack: EvidencePack) -> SpotInput:
    """Append up to three evidence contents to the facts (max seven facts)."""
    facts = list(spot.spot_facts)
    for evidence in pack.evidences[:EVIDENCE_FACTS_PER_SPOT]:
        if evidence.content not in facts:
            facts.append(evidence.content)
    summary = spot.spot_summary or pack.official_description[:200]
    return spot.model_copy(update={"spot_facts": facts[:MAX_SPOT_FACTS], "spot_summary": summary})


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

async def select_candidate_stops(
    llm: LLM,
    request: QuestGenerationRequest,
    geocoder: Geocoder | None = None,
    retriever: Retriever | None = None,
    max_step_m: float = MAX_INTER_STOP_METERS,
) -> list[SpotInput]:
    """Return the ordered stops for a request, at most request.spot_count."""
    center = request.center_location
    radius_km = request.radius_km or DEFAULT_RADIUS_KM

    prompt = render_prompt(SPOTS_TEMPLATE, {
        "prompt": request.prompt,
        "spot_count": request.spot_count,
        "difficulty": request.difficulty,
        "center": center.model_dump() if center else None,
        "radius_km": radius_km,
        "support": quest_context_lines(request),
        "readability": READABILITY_RULES,
    })
    try:
        text = await llm("spots", prompt)
    except LLMError as e:
        raise StopSelectionError(f"Stop generation failed: {e}") from e

    drafts = parse_stop_drafts(text)
    logger.info("stops: model proposed %d candidates", len(drafts))

    spots = list(await asyncio.gather(*(_locate(d, geocoder, center, radius_km) for d in drafts)))

    if center is not None:
        spots = filter_by_origin(spots, center, radius_km * 1000)
    spots = chain_nearest(spots, max_step_m)[:request.spot_count]

    if retriever is not None:
        packs = await retrieve_evidences_for_spots(
            retriever,
            [(f"S{i + 1}", s.spot_name, s.lat, s.lng) for i, s in enumerate(spots)],
        )
        spots = [enrich_with_evidence(s, p) for s, p in zip(spots, packs)]

    if len(spots) < request.spot_count:
        logger.warning("stops: only %d of %d requested stops are walkable", len(spots), request.spot_count)
    return spots
