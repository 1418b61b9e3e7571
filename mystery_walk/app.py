import logging
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from mystery_walk.backends import WorkflowClient
from mystery_walk.config import GeneratorConfig, config_from_env
from mystery_walk.pipeline import PipelineDeps
from mystery_walk.routes import router
from mystery_walk.storage import QuestStore

load_dotenv(Path(__file__).parent.parent / ".env")

logger = logging.getLogger(__name__)


def create_app(
    data_dir: Path | None = None,
    config: GeneratorConfig | None = None,
    pipeline_deps: PipelineDeps | None = None,
    workflow_client: WorkflowClient | None = None,
) -> FastAPI:
    """Build the API app.

    `pipeline_deps` and `workflow_client` override the collaborators the
    selector would otherwise build from config.
    """
    resolved_config = config or config_from_env()
    resolved_dir = data_dir or resolved_config.data_dir

    app = FastAPI(title="Mystery Walk")
    app.state.config = resolved_config
    app.state.store = QuestStore(resolved_dir)
    app.state.pipeline_deps = pipeline_deps
    app.state.workflow_client = workflow_client
    app.include_router(router, prefix="/api")

    logger.info("Quest store at %s", resolved_dir)
    return app
