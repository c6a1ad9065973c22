"""Pydantic schema for a renderClip request.

Field names follow the caller's camelCase wire format; Python code uses the
snake_case attribute names.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ClipRequest(BaseModel):
    """Input for one pipeline run. Not persisted by the pipeline.

    ``start_time + duration`` is not checked against the source length
    here. The transcoding provider is the source of truth for that and
    rejects out-of-range clips itself.
    """

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    clip_id: str = Field(alias="clipId", min_length=1)
    source_video_url: str = Field(alias="sourceVideoUrl", min_length=1)
    start_time: float = Field(alias="startTime", ge=0, description="Seconds from source start")
    duration: float = Field(gt=0, description="Clip length in seconds")
    title: Optional[str] = None
    transcript: Optional[str] = None
    hook: Optional[str] = None

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration

    def display_title(self, default: str) -> str:
        """Title shown on a derivative: explicit title, then hook, then ``default``."""
        return self.title or self.hook or default
