"""Execution backends: in-process pipeline or hosted workflow engine."""

from .selector import build_direct_deps, determine_mode, generate_quest  # noqa: F401
from .workflow import WorkflowClient, WorkflowError  # noqa: F401
