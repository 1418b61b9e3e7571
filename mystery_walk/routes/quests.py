"""Quest generation + stored quest endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from mystery_walk.backends import generate_quest
from mystery_walk.config import ConfigError
from mystery_walk.models import QuestGenerationRequest
from mystery_walk.pipeline import PipelineError, StopSelectionError, stream_events, validate_quest

logger = logging.getLogger(__name__)

router = APIRouter()


def _generate_kwargs(request: Request) -> dict:
    state = request.app.state
    return {
        "config": state.config,
        "deps": state.pipeline_deps,
        "workflow_client": state.workflow_client,
    }


@router.post("/quests/generate")
async def generate(body: QuestGenerationRequest, request: Request):
    """Generate a quest, store it and return player preview + creator payload."""
    try:
        result = await generate_quest(body, **_generate_kwargs(request))
    except ConfigError as e:
        raise HTTPException(400, str(e))
    except (PipelineError, StopSelectionError) as e:
        raise HTTPException(502, str(e))
    request.app.state.store.save_quest(result)
    return result


@router.post("/quests/generate/stream")
async def generate_stream(body: QuestGenerationRequest, request: Request):
    """Generate a quest, streaming progress as server-sent events.

    One `data: {json}` line per event; the last one is `complete` or `error`.
    """
    kwargs = _generate_kwargs(request)
    store = request.app.state.store

    async def _run(on_event) -> None:
        result = await generate_quest(body, on_event=on_event, **kwargs)
        store.save_quest(result)

    async def event_stream():
        async for event in stream_events(_run):
            yield f"data: {event.model_dump_json()}\n\n"

    return StreamingResponse(event_stream(), media_type="text/event-stream")


@router.get("/quests")
async def list_quests(request: Request):
    """List stored quests, newest first."""
    return request.app.state.store.list_quests()


@router.get("/quests/{quest_id}")
async def get_quest(quest_id: str, request: Request):
    quest = request.app.state.store.get_quest(quest_id)
    if not quest:
        raise HTTPException(404, "Quest not found")
    return quest


@router.delete("/quests/{quest_id}")
async def delete_quest(quest_id: str, request: Request):
    if not request.app.state.store.delete_quest(quest_id):
        raise HTTPException(404, "Quest not found")
    return {"ok": True}


@router.post("/quests/{quest_id}/validate")
async def revalidate_quest(quest_id: str, request: Request):
    """Recompute the validation result of a stored quest."""
    quest = request.app.state.store.get_quest(quest_id)
    if not quest:
        raise HTTPException(404, "Quest not found")
    payload = quest.creator_payload
    return validate_quest(payload.spots, payload.main_plot, payload.meta_puzzle)
