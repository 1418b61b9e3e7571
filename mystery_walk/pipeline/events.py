"""Progress events emitted while a quest is generated.

Pipeline stages never touch UI state. The orchestrator and the workflow
backend push events into a sink (`on_event`), and the caller decides what
to do with them:

    ProgressEvent       a new PipelineState (monotonic progress)
    PlotCompleteEvent   the main plot exists
    SpotCompleteEvent   one stop's scene exists (also after regeneration)
    CompleteEvent       the final QuestDualOutput
    ErrorEvent          unrecoverable failure, with the last known state

PipelineCallbacks turns the stream back into named callbacks, and
stream_events() exposes a run as an async iterator (used for SSE).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from mystery_walk.models import MainPlot, PipelineState, QuestDualOutput, SpotScene

logger = logging.getLogger(__name__)


class ProgressEvent(BaseModel):
    type: Literal["progress"] = "progress"
    state: PipelineState


class PlotCompleteEvent(BaseModel):
    type: Literal["plot_complete"] = "plot_complete"
    plot: MainPlot


class SpotCompleteEvent(BaseModel):
    type: Literal["spot_complete"] = "spot_complete"
    index: int
    spot: SpotScene


class CompleteEvent(BaseModel):
    type: Literal["complete"] = "complete"
    result: QuestDualOutput


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str
    state: PipelineState | None = None


PipelineEvent = Annotated[
    Union[ProgressEvent, PlotCompleteEvent, SpotCompleteEvent, CompleteEvent, ErrorEvent],
    Field(discriminator="type"),
]

EventSink = Callable[[Any], None]


def ignore_events(event: Any) -> None:
    """Default sink."""


class PipelineCallbacks:
    """Adapts the event stream to per-kind callbacks.

    Usable directly as an `on_event` sink. Callbacks run synchronously on the
    pipeline's stack and must not block.
    """

    def __init__(
        self,
        on_progress: Callable[[PipelineState], None] | None = None,
        on_plot_complete: Callable[[MainPlot], None] | None = None,
        on_spot_complete: Callable[[SpotScene, int], None] | None = None,
        on_complete: Callable[[QuestDualOutput], None] | None = None,
        on_error: Callable[[str, PipelineState | None], None] | None = None,
    ) -> None:
        self.on_progress = on_progress
        self.on_plot_complete = on_plot_complete
        self.on_spot_complete = on_spot_complete
        self.on_complete = on_complete
        self.on_error = on_error

    def __call__(self, event: Any) -> None:
        if isinstance(event, ProgressEvent):
            if self.on_progress:
                self.on_progress(event.state)
        elif isinstance(event, PlotCompleteEvent):
            if self.on_plot_complete:
                self.on_plot_complete(event.plot)
        elif isinstance(event, SpotCompleteEvent):
            if self.on_spot_complete:
                self.on_spot_complete(event.spot, event.index)
        elif isinstance(event, CompleteEvent):
            if self.on_complete:
                self.on_complete(event.result)
        elif isinstance(event, ErrorEvent):
            if self.on_error:
                self.on_error(event.message, event.state)
        else:
            logger.warning("Unknown pipeline event %r", event)


_DONE = object()


async def stream_events(
    run: Callable[[EventSink], Awaitable[Any]],
) -> AsyncIterator[Any]:
    """Run `run(on_event)` in a task and yield its events as they arrive.

    A failed run always ends the stream with an ErrorEvent: the one the run
    emitted itself, or one built from the exception.
    """
    queue: asyncio.Queue = asyncio.Queue()
    saw_error = False

    async def _runner() -> None:
        try:
            await run(queue.put_nowait)
        finally:
            queue.put_nowait(_DONE)

    task = asyncio.create_task(_runner())
    try:
        while True:
            event = await queue.get()
            if event is _DONE:
                break
            if isinstance(event, ErrorEvent):
                saw_error = True
            yield event
    finally:
        if not task.done():
            task.cancel()

    await asyncio.wait({task})
    exc = task.exception()
    if exc is not None:
        logger.warning("Streamed generation failed: %s", exc)
        if not saw_error:
            yield ErrorEvent(message=str(exc))
