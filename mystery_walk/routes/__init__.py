"""FastAPI API endpoints under /api.

Endpoint groups: quest generation (plain + SSE stream), stored quests
(list, get, delete, re-validate) and single evidence-grounded puzzles.
"""

from fastapi import APIRouter

from .puzzles import router as puzzles_router
from .quests import router as quests_router

router = APIRouter()
router.include_router(quests_router)
router.include_router(puzzles_router)
