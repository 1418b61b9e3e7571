from pydantic import BaseModel, Field

from mystery_walk.models import PublishMode
from mystery_walk.pipeline import GroundedStoryContext


class GroundedPuzzleBody(BaseModel):
    spot_id: str = "S1"
    spot_name: str = Field(min_length=1)
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    context: GroundedStoryContext
    publish_mode: PublishMode = "private"
