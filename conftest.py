import pytest

from mystery_walk.storage import QuestStore

# Variables read by config_from_env(); cleared so a developer's .env or shell
# never leaks into a test run.
CONFIG_ENV_VARS = (
    "GENERATION_MODE",
    "GEMINI_API_KEY",
    "GEMINI_BASE_URL",
    "GEMINI_MODEL",
    "WORKFLOW_API_KEY",
    "WORKFLOW_ENDPOINT",
    "WORKFLOW_STREAMING",
    "GENERATION_TIMEOUT_MS",
    "GOOGLE_MAPS_API_KEY",
    "MAX_REGENERATION_TARGETS",
    "DATA_DIR",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in CONFIG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def quest_store(tmp_path) -> QuestStore:
    return QuestStore(tmp_path)
