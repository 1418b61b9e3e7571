"""Tests for the hosted workflow backend."""

import json

import httpx
import pytest

from mystery_walk.backends.workflow import (
    WORKFLOW_USER,
    WorkflowClient,
    WorkflowError,
    map_node_to_state,
    request_to_workflow_inputs,
    validate_workflow_output,
)
from mystery_walk.models import LatLng, PromptSupport, QuestGenerationRequest
from mystery_walk.pipeline import CompleteEvent, PlotCompleteEvent, ProgressEvent, SpotCompleteEvent
from mystery_walk.storage import is_valid_quest_id
from tests.helpers import StalledStream, make_plot, make_quest, make_scene

ENDPOINT = "https://workflow.test/v1/workflows/run"


def _request(**overrides) -> QuestGenerationRequest:
    data = {"prompt": "浅草の謎", "difficulty": "easy", "spot_count": 3}
    data.update(overrides)
    return QuestGenerationRequest(**data)


def _outputs() -> dict:
    return make_quest("quest-wf").model_dump(mode="json")


def _client(handler) -> WorkflowClient:
    return WorkflowClient("wf-key", endpoint=ENDPOINT, timeout=5.0, transport=httpx.MockTransport(handler))


def _sse(*events: dict) -> bytes:
    lines = ["event: ping", ""]
    for event in events:
        lines.append("data: " + json.dumps(event, ensure_ascii=False))
        lines.append("")
    return "\n".join(lines).encode()


# ── request / response shaping ────────────────────────────


def test_request_to_workflow_inputs():
    request = _request(
        theme_tags=["歴史", "寺院"],
        genre_support="ミステリー",
        prompt_support=PromptSupport(protagonist="探偵", withWhom="友人"),
        center_location=LatLng(lat=35.71, lng=139.79),
        radius_km=0.5,
    )
    inputs = request_to_workflow_inputs(request)
    assert inputs["prompt"] == "浅草の謎"
    assert inputs["spot_count"] == 3
    assert inputs["theme_tags"] == "歴史,寺院"
    assert inputs["genre_support"] == "ミステリー"
    assert inputs["tone_support"] == ""
    assert inputs["protagonist"] == "探偵"
    assert inputs["with_whom"] == "友人"
    assert inputs["center_lat"] == "35.71"
    assert inputs["radius_km"] == "0.5"


def test_request_to_workflow_inputs_defaults():
    inputs = request_to_workflow_inputs(_request())
    assert inputs["center_lat"] == ""
    assert inputs["radius_km"] == "1"
    assert inputs["objective"] == ""


class TestValidateWorkflowOutput:
    def test_plain_object(self) -> None:
        result = validate_workflow_output(_outputs())
        assert result.creator_payload.quest_id == "quest-wf"

    def test_json_encoded_fields(self) -> None:
        outputs = {k: json.dumps(v, ensure_ascii=False) for k, v in _outputs().items()}
        assert validate_workflow_output(outputs).player_preview.title == "浅草・消えた鐘の暗号"

    def test_wrapped_in_result(self) -> None:
        result = validate_workflow_output({"result": json.dumps(_outputs(), ensure_ascii=False)})
        assert len(result.creator_payload.spots) == 3

    @pytest.mark.parametrize("mutate, message", [
        (lambda o: o.pop("player_preview"), "player_preview"),
        (lambda o: o.pop("creator_payload"), "creator_payload"),
        (lambda o: o["creator_payload"].update(spots=[]), "no spots"),
        (lambda o: o["creator_payload"].update(quest_title=""), "quest_title"),
        (lambda o: o["creator_payload"].pop("meta_puzzle"), "failed validation"),
    ])
    def test_rejects_incomplete_output(self, mutate, message) -> None:
        outputs = _outputs()
        mutate(outputs)
        with pytest.raises(WorkflowError, match=message):
            validate_workflow_output(outputs)

    def test_rejects_non_object(self) -> None:
        with pytest.raises(WorkflowError):
            validate_workflow_output("not json")

    @pytest.mark.parametrize("quest_id", ["wf.run:42", "../escape", "", None])
    def test_unusable_quest_id_is_replaced(self, quest_id) -> None:
        outputs = _outputs()
        outputs["creator_payload"]["quest_id"] = quest_id
        result = validate_workflow_output(outputs)
        assert is_valid_quest_id(result.creator_payload.quest_id)
        assert result.creator_payload.quest_id.startswith("quest-")
        assert result.creator_payload.quest_title == "浅草・消えた鐘の暗号"


@pytest.mark.parametrize("title, index, step, progress", [
    ("Spot Selection", None, 1, 10),
    ("Create Plot", None, 2, 30),
    ("Story Writer", None, 2, 30),
    ("Puzzle Design", 2, 3, 60),
    ("Validate Quest", None, 4, 90),
    ("Start", None, 1, 0),
])
def test_map_node_to_state(title, index, step, progress):
    state = map_node_to_state(title, index, 3)
    assert state.current_step == step
    assert state.progress == progress
    assert state.total_spots == 3


# ── blocking mode ─────────────────────────────────────────


class TestRunBlocking:
    async def test_success(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "workflow_run_id": "run-1",
                "data": {"status": "succeeded", "outputs": _outputs(), "elapsed_time": 12.5},
            })

        events = []
        result = await _client(handler).run_blocking(_request(), events.append)

        assert result.creator_payload.quest_id == "quest-wf"
        assert seen["auth"] == "Bearer wf-key"
        assert seen["body"]["response_mode"] == "blocking"
        assert seen["body"]["user"] == WORKFLOW_USER
        assert seen["body"]["inputs"]["prompt"] == "浅草の謎"
        assert events[-2].state.progress == 100
        assert isinstance(events[-1], CompleteEvent)

    async def test_failed_run(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": {"status": "failed", "error": "node crashed"}})

        with pytest.raises(WorkflowError, match="node crashed"):
            await _client(handler).run_blocking(_request())

    async def test_http_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="internal")

        with pytest.raises(WorkflowError, match="HTTP 500"):
            await _client(handler).run_blocking(_request())

    async def test_unreachable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(WorkflowError, match="Cannot reach"):
            await _client(handler).run_blocking(_request())

    async def test_invalid_outputs(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": {"status": "succeeded", "outputs": {"player_preview": {}}}})

        with pytest.raises(WorkflowError, match="creator_payload"):
            await _client(handler).run_blocking(_request())


# ── streaming mode ────────────────────────────────────────


class TestRunStreaming:
    async def test_events_are_translated(self) -> None:
        body = _sse(
            {"event": "workflow_started", "data": {}},
            {"event": "node_started", "data": {"title": "Spot Selection"}},
            {"event": "node_started", "data": {"title": "Plot Creation"}},
            {"event": "node_finished", "data": {
                "title": "Plot Creation",
                "outputs": {"main_plot": make_plot().model_dump_json()},
            }},
            {"event": "node_started", "data": {"title": "Puzzle"}},
            {"event": "node_finished", "data": {
                "title": "Spot Output",
                "outputs": {"spot": make_scene().model_dump(mode="json")},
            }},
            {"event": "node_started", "data": {"title": "Puzzle"}},
            {"event": "node_started", "data": {"title": "Spot Lookup"}},
            {"event": "workflow_finished", "data": {"status": "succeeded", "outputs": _outputs()}},
        )
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        events = []
        result = await _client(handler).run_streaming(_request(), events.append)

        assert result.creator_payload.quest_id == "quest-wf"
        assert seen["body"]["response_mode"] == "streaming"
        progress = [e.state.progress for e in events if isinstance(e, ProgressEvent)]
        assert progress == [10, 30, 50, 55, 55, 100]
        assert [type(e) for e in events if not isinstance(e, ProgressEvent)] == [
            PlotCompleteEvent, SpotCompleteEvent, CompleteEvent,
        ]
        assert next(e for e in events if isinstance(e, SpotCompleteEvent)).index == 0

    async def test_malformed_node_output_is_ignored(self) -> None:
        body = _sse(
            {"event": "node_finished", "data": {"title": "Plot", "outputs": {"main_plot": {"premise": "x"}}}},
            {"event": "workflow_finished", "data": {"status": "succeeded", "outputs": _outputs()}},
        )
        events = []
        await _client(lambda r: httpx.Response(200, content=body)).run_streaming(_request(), events.append)
        assert not any(isinstance(e, PlotCompleteEvent) for e in events)

    async def test_error_event(self) -> None:
        body = _sse({"event": "error", "message": "quota exceeded"})
        with pytest.raises(WorkflowError, match="quota exceeded"):
            await _client(lambda r: httpx.Response(200, content=body)).run_streaming(_request())

    async def test_failed_run(self) -> None:
        body = _sse({"event": "workflow_finished", "data": {"status": "failed", "error": "LLM node failed"}})
        with pytest.raises(WorkflowError, match="LLM node failed"):
            await _client(lambda r: httpx.Response(200, content=body)).run_streaming(_request())

    async def test_stream_without_outputs(self) -> None:
        body = _sse({"event": "node_started", "data": {"title": "Spot Selection"}})
        with pytest.raises(WorkflowError, match="without outputs"):
            await _client(lambda r: httpx.Response(200, content=body)).run_streaming(_request())

    async def test_http_error(self) -> None:
        with pytest.raises(WorkflowError, match="HTTP 401"):
            await _client(lambda r: httpx.Response(401)).run_streaming(_request())

    async def test_stream_that_never_finishes_times_out(self) -> None:
        stream = StalledStream(_sse({"event": "node_started", "data": {"title": "Spot Selection"}}))
        client = WorkflowClient(
            "wf-key", endpoint=ENDPOINT, timeout=0.2,
            transport=httpx.MockTransport(lambda r: httpx.Response(200, stream=stream)),
        )
        events = []
        with pytest.raises(WorkflowError, match="timed out"):
            await client.run_streaming(_request(), events.append)
        assert [e.state.progress for e in events if isinstance(e, ProgressEvent)] == [10]
