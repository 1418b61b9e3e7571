"""JSON file quest store.

Generated quests are kept as flat JSON files under a configurable base
directory. No database: each quest is one QuestDualOutput document.

Directory layout:

    {base}/
      quests/
        {quest_id}.json       ← player_preview + creator_payload
"""

from __future__ import annotations

import logging
import re
import time
from pathlib import Path

from pydantic import BaseModel

from mystery_walk.models import QuestDualOutput

logger = logging.getLogger(__name__)

_QUEST_ID = re.compile(r"^[A-Za-z0-9_-]+$")


def new_quest_id() -> str:
    return f"quest-{int(time.time() * 1000)}"


def is_valid_quest_id(quest_id: str) -> bool:
    """True for ids usable as a file name in the quest store."""
    return bool(_QUEST_ID.fullmatch(quest_id))


class QuestSummary(BaseModel):
    quest_id: str
    quest_title: str
    generated_at: str
    spots_count: int
    validation_passed: bool


class QuestStore:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._quest_root = base_path / "quests"
        self._quest_root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _quest_file(self, quest_id: str) -> Path | None:
        """Path for a quest id, or None for ids that are not safe file names."""
        if not is_valid_quest_id(quest_id):
            return None
        return self._quest_root / f"{quest_id}.json"

    # ------------------------------------------------------------------
    # Quests
    # ------------------------------------------------------------------

    def save_quest(self, quest: QuestDualOutput) -> None:
        """Write a quest, replacing any earlier version with the same id."""
        quest_id = quest.creator_payload.quest_id
        path = self._quest_file(quest_id)
        if path is None:
            raise ValueError(f"Invalid quest id: {quest_id!r}")
        path.write_text(quest.model_dump_json(indent=2), encoding="utf-8")
        logger.debug("saved quest %s", quest_id)

    def get_quest(self, quest_id: str) -> QuestDualOutput | None:
        path = self._quest_file(quest_id)
        if path is None or not path.exists():
            return None
        return QuestDualOutput.model_validate_json(path.read_text(encoding="utf-8"))

    def list_quests(self) -> list[QuestSummary]:
        """All stored quests, newest first."""
        summaries: list[QuestSummary] = []
        for path in self._quest_root.glob("*.json"):
            quest = QuestDualOutput.model_validate_json(path.read_text(encoding="utf-8"))
            payload = quest.creator_payload
            summaries.append(QuestSummary(
                quest_id=payload.quest_id,
                quest_title=payload.quest_title,
                generated_at=payload.generation_metadata.generated_at,
                spots_count=len(payload.spots),
                validation_passed=payload.generation_metadata.validation_passed,
            ))
        summaries.sort(key=lambda s: s.generated_at, reverse=True)
        return summaries

    def delete_quest(self, quest_id: str) -> bool:
        path = self._quest_file(quest_id)
        if path is None or not path.exists():
            return False
        path.unlink()
        return True
