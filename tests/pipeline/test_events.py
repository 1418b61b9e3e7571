"""Tests for pipeline events, the callback adapter and the event stream."""

import logging

from pydantic import TypeAdapter

from mystery_walk.models import PipelineState
from mystery_walk.pipeline.events import (
    ErrorEvent,
    PipelineCallbacks,
    PipelineEvent,
    PlotCompleteEvent,
    ProgressEvent,
    SpotCompleteEvent,
    stream_events,
)
from tests.helpers import make_plot, make_scene


def _state(progress: int) -> PipelineState:
    return PipelineState(current_step=1, step_name="motif_selection", progress=progress)


class TestPipelineCallbacks:
    def test_dispatches_by_kind(self) -> None:
        seen = []
        callbacks = PipelineCallbacks(
            on_progress=lambda s: seen.append(("progress", s.progress)),
            on_plot_complete=lambda p: seen.append(("plot", p.goal[:2])),
            on_spot_complete=lambda s, i: seen.append(("spot", s.spot_id, i)),
            on_error=lambda m, s: seen.append(("error", m, s)),
        )
        callbacks(ProgressEvent(state=_state(5)))
        callbacks(PlotCompleteEvent(plot=make_plot()))
        callbacks(SpotCompleteEvent(index=0, spot=make_scene()))
        callbacks(ErrorEvent(message="boom"))
        assert seen == [("progress", 5), ("plot", "三つ"), ("spot", "S1", 0), ("error", "boom", None)]

    def test_missing_callbacks_are_skipped(self) -> None:
        PipelineCallbacks()(ProgressEvent(state=_state(5)))

    def test_unknown_event_is_logged(self, caplog) -> None:
        with caplog.at_level(logging.WARNING, logger="mystery_walk.pipeline.events"):
            PipelineCallbacks()("not an event")
        assert "Unknown pipeline event" in caplog.text


def test_events_parse_by_type():
    adapter = TypeAdapter(PipelineEvent)
    event = adapter.validate_json(ProgressEvent(state=_state(20)).model_dump_json())
    assert isinstance(event, ProgressEvent)
    assert event.state.progress == 20
    assert isinstance(adapter.validate_python({"type": "error", "message": "x"}), ErrorEvent)


class TestStreamEvents:
    async def test_yields_events_in_order(self) -> None:
        async def run(on_event):
            for p in (5, 20, 35):
                on_event(ProgressEvent(state=_state(p)))
            return "done"

        events = [e async for e in stream_events(run)]
        assert [e.state.progress for e in events] == [5, 20, 35]

    async def test_failure_without_error_event(self) -> None:
        async def run(on_event):
            on_event(ProgressEvent(state=_state(5)))
            raise RuntimeError("backend down")

        events = [e async for e in stream_events(run)]
        assert isinstance(events[-1], ErrorEvent)
        assert events[-1].message == "backend down"
        assert len(events) == 2

    async def test_failure_with_own_error_event_is_not_duplicated(self) -> None:
        async def run(on_event):
            on_event(ErrorEvent(message="stops failed", state=_state(5)))
            raise RuntimeError("stops failed")

        events = [e async for e in stream_events(run)]
        assert len(events) == 1
        assert events[0].state.progress == 5

