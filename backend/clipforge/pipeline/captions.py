"""Timed caption generation for a clip's transcript excerpt.

Captioning is the only best-effort stage of the pipeline. The generator
asks a language model for short caption lines with highlight words and,
when the model is unavailable or answers with something unusable, degrades
to slicing the transcript into fixed-length windows. It never raises for
provider or parsing failures.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Optional

from clipforge.config import Settings
from clipforge.schemas.captions import CaptionSegment, CaptionTrack
from clipforge.services.llm import LLMAdapter, get_adapter

logger = logging.getLogger(__name__)

SOURCE_MODEL = "model"
SOURCE_FALLBACK = "fallback"
SOURCE_DISABLED = "disabled"
SOURCE_EMPTY = "empty"

CAPTION_SYSTEM_PROMPT = """You are a caption generator for short-form social media clips. Generate captions with:
- 3-5 words per line maximum
- Natural speech breaks
- Highlight key words that should be emphasized in yellow
- Times in seconds relative to the start of the clip
- Return as JSON array: [{ "text": "caption text", "startTime": 0, "endTime": 2, "highlight": ["key", "words"] }]"""


@dataclass
class CaptionResult:
    """Caption segments plus where they came from.

    ``source`` is one of "model", "fallback", "disabled" or "empty".
    """

    segments: list[CaptionSegment] = field(default_factory=list)
    source: str = SOURCE_EMPTY

    @property
    def used_fallback(self) -> bool:
        return self.source == SOURCE_FALLBACK

    def __len__(self) -> int:
        return len(self.segments)


def split_transcript(
    transcript: str,
    duration: float,
    segment_seconds: float = 2.0,
) -> list[CaptionSegment]:
    """Evenly distribute transcript words over consecutive fixed windows.

    Windows start at 0 and are ``segment_seconds`` long. The word count per
    window is chosen so the whole transcript fits in ``duration``.
    """
    words = transcript.split()
    if not words:
        return []
    windows = max(duration / segment_seconds, 1e-9)
    per_segment = max(1, math.ceil(len(words) / windows))

    segments = []
    current = 0.0
    for i in range(0, len(words), per_segment):
        segments.append(
            CaptionSegment(
                text=" ".join(words[i:i + per_segment]),
                start_time=current,
                end_time=current + segment_seconds,
            )
        )
        current += segment_seconds
    return segments


class CaptionGenerator:
    """Generates caption segments with an optional LLM adapter.

    With ``adapter=None`` captioning is disabled and every non-empty
    transcript yields zero segments.
    """

    def __init__(
        self,
        adapter: Optional[LLMAdapter],
        *,
        segment_seconds: float = 2.0,
        temperature: float = 0.3,
        max_retries: int = 1,
    ):
        self.adapter = adapter
        self.segment_seconds = segment_seconds
        self.temperature = temperature
        self.max_retries = max_retries

    async def generate(
        self,
        transcript: Optional[str],
        start_time: float,
        duration: float,
    ) -> CaptionResult:
        if not transcript or not transcript.strip():
            return CaptionResult([], SOURCE_EMPTY)

        if self.adapter is None:
            logger.info("No caption model credentials; skipping AI captions")
            return CaptionResult([], SOURCE_DISABLED)

        prompt = (
            f"Generate captions for this {duration:g}s clip "
            f"(starting at {start_time:g}s of the source) transcript:\n\n"
            f"{transcript}\n\nReturn ONLY valid JSON array."
        )
        try:
            track = await self.adapter.generate_text(
                prompt,
                CaptionTrack,
                temperature=self.temperature,
                system_prompt=CAPTION_SYSTEM_PROMPT,
                max_retries=self.max_retries,
            )
        except Exception as e:
            logger.warning(
                "Caption model failed (%s: %s); using %gs transcript windows",
                type(e).__name__, e, self.segment_seconds,
            )
            segments = split_transcript(transcript, duration, self.segment_seconds)
            return CaptionResult(segments, SOURCE_FALLBACK)

        segments = sorted(track.root, key=lambda s: s.start_time)
        logger.info("Generated %d caption segments", len(segments))
        return CaptionResult(segments, SOURCE_MODEL)

    async def close(self) -> None:
        if self.adapter is not None:
            await self.adapter.close()


def build_caption_generator(settings: Settings) -> CaptionGenerator:
    """CaptionGenerator wired to the configured caption model."""
    adapter = get_adapter(settings.captions.model, settings.captions, settings.google_cloud)
    return CaptionGenerator(
        adapter,
        segment_seconds=settings.captions.segment_seconds,
        temperature=settings.captions.temperature,
        max_retries=settings.captions.max_retries,
    )
