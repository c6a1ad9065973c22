"""Pydantic schemas for caption model structured output.

Models answer with either a bare JSON array of segments or an object with a
``captions`` key. Both shapes validate into CaptionTrack.
"""

from typing import Annotated, Any

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    RootModel,
    model_validator,
)


def _coerce_highlights(v: Any) -> list[str]:
    """Accept a single highlight word or a comma-separated string as a list."""
    if v is None:
        return []
    if isinstance(v, str):
        return [w.strip() for w in v.split(",") if w.strip()]
    return v


class CaptionSegment(BaseModel):
    """One timed caption line, clip-relative seconds."""

    model_config = ConfigDict(populate_by_name=True)

    text: str = Field(min_length=1, description="3-5 words of caption text")
    start_time: float = Field(
        ge=0,
        validation_alias=AliasChoices("startTime", "start_time", "start"),
        serialization_alias="startTime",
    )
    end_time: float = Field(
        ge=0,
        validation_alias=AliasChoices("endTime", "end_time", "end"),
        serialization_alias="endTime",
    )
    highlight_words: Annotated[list[str], BeforeValidator(_coerce_highlights)] = Field(
        default_factory=list,
        validation_alias=AliasChoices("highlight", "highlightWords", "highlight_words"),
        serialization_alias="highlightWords",
    )

    @model_validator(mode="after")
    def check_order(self) -> "CaptionSegment":
        if self.end_time < self.start_time:
            raise ValueError(
                f"endTime {self.end_time} precedes startTime {self.start_time}"
            )
        return self


class CaptionTrack(RootModel[list[CaptionSegment]]):
    """Ordered caption segments for one clip."""

    @model_validator(mode="before")
    @classmethod
    def unwrap_object(cls, data: Any) -> Any:
        if isinstance(data, dict) and "captions" in data:
            return data["captions"]
        return data
