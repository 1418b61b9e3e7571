"""Single evidence-grounded puzzle endpoint."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from mystery_walk.backends import build_direct_deps
from mystery_walk.config import ConfigError
from mystery_walk.pipeline import GroundedPuzzleReport, design_grounded_puzzle
from mystery_walk.retriever import EvidenceRetriever

from .models import GroundedPuzzleBody

router = APIRouter()


@router.post("/puzzles/grounded")
async def grounded_puzzle(body: GroundedPuzzleBody, request: Request) -> GroundedPuzzleReport:
    """Retrieve evidence for one spot and design a puzzle gated by the publish mode."""
    state = request.app.state
    try:
        deps = state.pipeline_deps or build_direct_deps(state.config)
    except ConfigError as e:
        raise HTTPException(400, str(e))
    retriever = deps.retriever or EvidenceRetriever(state.config.maps_api_key)

    return await design_grounded_puzzle(
        deps.llm,
        retriever,
        body.spot_id,
        body.spot_name,
        body.lat,
        body.lng,
        body.context,
        body.publish_mode,
    )
