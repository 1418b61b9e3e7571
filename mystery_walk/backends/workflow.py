"""External workflow engine backend (Dify-compatible workflow run API).

The whole pipeline runs remotely. Two response modes:

    blocking   POST → {workflow_run_id, task_id, data: {status, outputs, error, ...}}
    streaming  POST → text/event-stream, one `data: {...}` JSON line per event:
               workflow_started | node_started | node_finished |
               workflow_finished | error

Node titles are mapped onto the same progress vocabulary as the local
orchestrator so callers cannot tell the backends apart from the events.
Outputs are schema-checked before they are trusted.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Literal

import httpx
from pydantic import ValidationError

from mystery_walk.config import DEFAULT_WORKFLOW_ENDPOINT
from mystery_walk.models import (
    MainPlot,
    PipelineState,
    PromptSupport,
    QuestDualOutput,
    QuestGenerationRequest,
    SpotScene,
)
from mystery_walk.pipeline.events import (
    CompleteEvent,
    EventSink,
    PlotCompleteEvent,
    ProgressEvent,
    SpotCompleteEvent,
    ignore_events,
)
from mystery_walk.storage import is_valid_quest_id, new_quest_id

logger = logging.getLogger(__name__)

WORKFLOW_USER = "quest-creator"


class WorkflowError(RuntimeError):
    """Raised when the workflow run fails, times out or returns unusable output."""


# ---------------------------------------------------------------------------
# Request / response shaping
# ---------------------------------------------------------------------------

def request_to_workflow_inputs(request: QuestGenerationRequest) -> dict[str, Any]:
    """Flatten a request into the workflow's input variables."""
    support = request.prompt_support or PromptSupport()
    center = request.center_location
    return {
        "prompt": request.prompt,
        "difficulty": request.difficulty,
        "spot_count": request.spot_count,
        "theme_tags": ",".join(request.theme_tags),
        "genre_support": request.genre_support or "",
        "tone_support": request.tone_support or "",
        "protagonist": support.protagonist or "",
        "objective": support.objective or "",
        "ending": support.ending or "",
        "when": support.when or "",
        "where": support.where or "",
        "purpose": support.purpose or "",
        "with_whom": support.with_whom or "",
        "center_lat": str(center.lat) if center else "",
        "center_lng": str(center.lng) if center else "",
        "radius_km": str(request.radius_km) if request.radius_km else "1",
    }


def _maybe_json(value: Any) -> Any:
    """Workflow outputs sometimes arrive as JSON-encoded strings."""
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


def validate_workflow_output(outputs: Any) -> QuestDualOutput:
    """Check required fields and parse the outputs into a QuestDualOutput."""
    outputs = _maybe_json(outputs)
    if isinstance(outputs, dict) and "result" in outputs and "creator_payload" not in outputs:
        outputs = _maybe_json(outputs["result"])
    if not isinstance(outputs, dict):
        raise WorkflowError("Workflow output is not an object")

    preview = _maybe_json(outputs.get("player_preview"))
    payload = _maybe_json(outputs.get("creator_payload"))
    if not isinstance(preview, dict):
        raise WorkflowError("Workflow output is missing player_preview")
    if not isinstance(payload, dict):
        raise WorkflowError("Workflow output is missing creator_payload")
    if not payload.get("spots"):
        raise WorkflowError("Workflow output has no spots")
    if not payload.get("quest_title"):
        raise WorkflowError("Workflow output has no quest_title")

    quest_id = payload.get("quest_id")
    if not isinstance(quest_id, str) or not is_valid_quest_id(quest_id):
        replacement = new_quest_id()
        logger.warning("Replacing unusable workflow quest id %r with %s", quest_id, replacement)
        payload = {**payload, "quest_id": replacement}

    try:
        return QuestDualOutput.model_validate({"player_preview": preview, "creator_payload": payload})
    except ValidationError as e:
        raise WorkflowError(f"Workflow output failed validation: {e.error_count()} error(s)") from e


def map_node_to_state(
    node_title: str,
    spot_index: int | None = None,
    total_spots: int | None = None,
) -> PipelineState:
    """Translate a workflow node name into a pipeline progress state."""
    title = node_title.lower()
    if "spot" in title or "generate" in title:
        return PipelineState(current_step=1, step_name="motif_selection", progress=10, total_spots=total_spots)
    if "plot" in title or "story" in title:
        return PipelineState(current_step=2, step_name="plot_creation", progress=30, total_spots=total_spots)
    if "puzzle" in title:
        index = spot_index or 0
        return PipelineState(
            current_step=3,
            step_name="puzzle_design",
            progress=min(50 + index * 5, 100),
            current_spot_index=index,
            total_spots=total_spots,
        )
    if "validate" in title:
        return PipelineState(current_step=4, step_name="validation", progress=90, total_spots=total_spots)
    return PipelineState(current_step=1, step_name="motif_selection", progress=0, total_spots=total_spots)


# ---------------------------------------------------------------------------
# Stream event handling
# ---------------------------------------------------------------------------

class _StreamState:
    """Per-run bookkeeping for SSE events."""

    def __init__(self, on_event: EventSink, total_spots: int) -> None:
        self.on_event = on_event
        self.total_spots = total_spots
        self.puzzle_nodes = 0
        self.spots_done = 0
        self.last_progress = 0

    def node_started(self, data: dict) -> None:
        title = str(data.get("title") or data.get("node_id") or "")
        spot_index = None
        if "puzzle" in title.lower():
            spot_index = self.puzzle_nodes
            self.puzzle_nodes += 1
        state = map_node_to_state(title, spot_index, self.total_spots)
        if state.progress < self.last_progress:
            state = state.model_copy(update={"progress": self.last_progress})
        self.last_progress = state.progress
        self.on_event(ProgressEvent(state=state))

    def node_finished(self, data: dict) -> None:
        title = str(data.get("title") or data.get("node_id") or "").lower()
        outputs = _maybe_json(data.get("outputs")) or {}
        if not isinstance(outputs, dict):
            return
        try:
            if "plot" in title and outputs.get("main_plot"):
                plot = MainPlot.model_validate(_maybe_json(outputs["main_plot"]))
                self.on_event(PlotCompleteEvent(plot=plot))
            elif "spot" in title and outputs.get("spot"):
                scene = SpotScene.model_validate(_maybe_json(outputs["spot"]))
                self.on_event(SpotCompleteEvent(index=self.spots_done, spot=scene))
                self.spots_done += 1
        except ValidationError as e:
            logger.warning("Ignoring malformed output of workflow node %r: %s", title, e.error_count())


# ---------------------------------------------------------------------------
# WorkflowClient
# ---------------------------------------------------------------------------

class WorkflowClient:
    """Async client for a hosted workflow run endpoint.

    Args:
        api_key:   Bearer token for the workflow app.
        endpoint:  Run URL, defaults to the public Dify endpoint.
        timeout:   Overall timeout in seconds for one run.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        api_key: str,
        endpoint: str = DEFAULT_WORKFLOW_ENDPOINT,
        timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._endpoint = endpoint
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def _body(self, request: QuestGenerationRequest, mode: Literal["blocking", "streaming"]) -> dict:
        return {
            "inputs": request_to_workflow_inputs(request),
            "response_mode": mode,
            "user": WORKFLOW_USER,
        }

    async def run_blocking(
        self,
        request: QuestGenerationRequest,
        on_event: EventSink | None = None,
    ) -> QuestDualOutput:
        sink = on_event or ignore_events
        logger.debug("workflow blocking run endpoint=%s", self._endpoint)
        try:
            async with self._client() as client:
                resp = await client.post(
                    self._endpoint, json=self._body(request, "blocking"), headers=self._headers(),
                )
                resp.raise_for_status()
                payload = resp.json()
        except httpx.TimeoutException as e:
            raise WorkflowError(f"Workflow timed out after {self._timeout}s") from e
        except httpx.HTTPStatusError as e:
            raise WorkflowError(f"Workflow returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise WorkflowError(f"Cannot reach workflow endpoint {self._endpoint}") from e
        except ValueError as e:
            raise WorkflowError("Workflow response is not JSON") from e

        data = payload.get("data") or {}
        if data.get("status") == "failed":
            raise WorkflowError(data.get("error") or "Workflow run failed")

        result = validate_workflow_output(data.get("outputs"))
        logger.info(
            "workflow run %s finished in %ss",
            payload.get("workflow_run_id"), data.get("elapsed_time"),
        )
        self._finish(result, sink)
        return result

    async def run_streaming(
        self,
        request: QuestGenerationRequest,
        on_event: EventSink | None = None,
    ) -> QuestDualOutput:
        sink = on_event or ignore_events
        logger.debug("workflow streaming run endpoint=%s", self._endpoint)
        try:
            result = await asyncio.wait_for(self._stream(request, sink), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise WorkflowError(f"Workflow stream timed out after {self._timeout}s") from e
        except httpx.TimeoutException as e:
            raise WorkflowError(f"Workflow timed out after {self._timeout}s") from e
        except httpx.HTTPStatusError as e:
            raise WorkflowError(f"Workflow returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise WorkflowError(f"Cannot reach workflow endpoint {self._endpoint}") from e
        self._finish(result, sink)
        return result

    async def _stream(self, request: QuestGenerationRequest, sink: EventSink) -> QuestDualOutput:
        state = _StreamState(sink, request.spot_count)
        async with self._client() as client:
            async with client.stream(
                "POST", self._endpoint, json=self._body(request, "streaming"), headers=self._headers(),
            ) as resp:
                resp.raise_for_status()
                async for line in resp.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    raw = line[5:].strip()
                    if not raw:
                        continue
                    try:
                        event = json.loads(raw)
                    except json.JSONDecodeError:
                        logger.debug("workflow: skipping non-JSON event line")
                        continue

                    kind = event.get("event")
                    data = event.get("data") or {}
                    if kind == "node_started":
                        state.node_started(data)
                    elif kind == "node_finished":
                        state.node_finished(data)
                    elif kind == "workflow_finished":
                        if data.get("status") == "failed":
                            raise WorkflowError(data.get("error") or "Workflow run failed")
                        if data.get("outputs"):
                            return validate_workflow_output(data["outputs"])
                    elif kind == "error":
                        raise WorkflowError(event.get("message") or data.get("error") or "Workflow error")
        raise WorkflowError("Workflow stream ended without outputs")

    def _finish(self, result: QuestDualOutput, sink: EventSink) -> None:
        sink(ProgressEvent(state=PipelineState(
            current_step=4,
            step_name="validation",
            progress=100,
            total_spots=len(result.creator_payload.spots),
        )))
        sink(CompleteEvent(result=result))
