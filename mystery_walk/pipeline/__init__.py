"""Quest generation pipeline: stops → motifs → plot → puzzles → validation.

Also the single evidence-grounded puzzle path (grounded + quality).
"""

from .events import (  # noqa: F401
    CompleteEvent,
    ErrorEvent,
    PipelineCallbacks,
    PipelineEvent,
    PlotCompleteEvent,
    ProgressEvent,
    SpotCompleteEvent,
    stream_events,
)
from .grounded import (  # noqa: F401
    GroundedPuzzleReport,
    GroundedStoryContext,
    design_grounded_puzzle,
    generate_grounded_puzzle,
)
from .orchestrator import (  # noqa: F401
    MAX_REGENERATION_TARGETS,
    PIPELINE_VERSION,
    PipelineDeps,
    PipelineError,
    generate_layton_quest,
    run_layton_pipeline,
)
from .quality import check_quality_gate, update_puzzle_status, validate_grounded_puzzle  # noqa: F401
from .results import Fallback, Generated, StageResult  # noqa: F401
from .stops import StopSelectionError  # noqa: F401
from .validate import get_regeneration_targets, validate_quest  # noqa: F401
