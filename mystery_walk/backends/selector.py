"""Execution backend selection.

    direct    run the pipeline in-process against the Gemini API
    workflow  delegate the whole run to the hosted workflow engine
    auto      workflow when a workflow key is configured, else direct

A workflow run that fails for any reason is retried from scratch on the
direct backend. Missing Gemini credentials on the direct path are a
configuration error and abort the request.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from mystery_walk.backends.workflow import WorkflowClient, WorkflowError
from mystery_walk.config import ConfigError, GeneratorConfig
from mystery_walk.llm import LLM, MODEL_MAP, GeminiLLM
from mystery_walk.models import QuestDualOutput, QuestGenerationRequest
from mystery_walk.pipeline.events import EventSink, ProgressEvent, ignore_events
from mystery_walk.pipeline.orchestrator import PipelineDeps, generate_layton_quest
from mystery_walk.retriever import EvidenceRetriever, GoogleGeocoder

logger = logging.getLogger(__name__)


def determine_mode(config: GeneratorConfig) -> Literal["direct", "workflow"]:
    if config.mode == "auto":
        return "workflow" if config.workflow_api_key else "direct"
    return config.mode


def build_direct_deps(config: GeneratorConfig, llm: LLM | None = None) -> PipelineDeps:
    """Wire the in-process pipeline from config. Raises ConfigError without a Gemini key."""
    if llm is None:
        if not config.gemini_api_key:
            raise ConfigError("GEMINI_API_KEY is not set")
        model_map = {task: config.gemini_model for task in MODEL_MAP} if config.gemini_model else None
        llm = GeminiLLM(
            api_key=config.gemini_api_key,
            base_url=config.gemini_base_url,
            model_map=model_map,
            timeout=config.timeout_s,
        )
    return PipelineDeps(
        llm=llm,
        geocoder=GoogleGeocoder(config.maps_api_key),
        retriever=EvidenceRetriever(config.maps_api_key),
        max_regeneration_targets=config.max_regeneration_targets,
    )


class _MonotonicSink:
    """Keeps progress from moving backwards when a run restarts on another backend."""

    def __init__(self, sink: EventSink) -> None:
        self._sink = sink
        self._high = 0

    def __call__(self, event: Any) -> None:
        if isinstance(event, ProgressEvent):
            if event.state.progress < self._high:
                event = ProgressEvent(state=event.state.model_copy(update={"progress": self._high}))
            self._high = event.state.progress
        self._sink(event)


async def generate_quest(
    request: QuestGenerationRequest,
    config: GeneratorConfig,
    on_event: EventSink | None = None,
    deps: PipelineDeps | None = None,
    workflow_client: WorkflowClient | None = None,
) -> QuestDualOutput:
    """Generate a quest on the configured backend.

    `deps` and `workflow_client` replace the config-built collaborators.
    """
    sink = _MonotonicSink(on_event or ignore_events)
    mode = determine_mode(config)
    logger.info("Generating quest mode=%s spots=%d", mode, request.spot_count)

    if mode == "workflow":
        try:
            if workflow_client is None:
                if not config.workflow_api_key:
                    raise WorkflowError("WORKFLOW_API_KEY is not set")
                workflow_client = WorkflowClient(
                    api_key=config.workflow_api_key,
                    endpoint=config.workflow_endpoint,
                    timeout=config.timeout_s,
                )
            if config.workflow_streaming:
                return await workflow_client.run_streaming(request, sink)
            return await workflow_client.run_blocking(request, sink)
        except Exception as e:
            logger.warning("Workflow backend failed, retrying on direct backend: %s", e)

    return await generate_layton_quest(request, deps or build_direct_deps(config), sink)
