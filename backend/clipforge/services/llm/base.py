"""Abstract base class for LLM provider adapters.

Defines the consistent async interface that all adapters must implement for
text generation with structured output.
"""

from abc import ABC, abstractmethod
from typing import Optional, Type

from pydantic import BaseModel


def strip_code_fences(raw: str) -> str:
    """Remove a surrounding markdown code fence (```json ... ```), if any.

    Some models wrap JSON output in fences even when asked not to.
    """
    stripped = raw.strip()
    if stripped.startswith("```"):
        first_newline = stripped.find("\n")
        stripped = stripped[first_newline + 1:] if first_newline != -1 else stripped[3:]
        if stripped.rstrip().endswith("```"):
            stripped = stripped.rstrip()[:-3].rstrip()
    return stripped


class LLMAdapter(ABC):
    """Abstract base class for LLM provider adapters.

    All adapters implement generate_text() with the same async signature and
    return a validated Pydantic model instance of the caller-supplied schema.
    Invalid or unparseable output raises pydantic.ValidationError.
    """

    @abstractmethod
    async def generate_text(
        self,
        prompt: str,
        schema: Type[BaseModel],
        *,
        temperature: float = 0.7,
        system_prompt: Optional[str] = None,
        max_retries: int = 3,
    ) -> BaseModel:
        """Generate structured text output from a prompt.

        Args:
            prompt: The user prompt to send to the model.
            schema: Pydantic model class defining the expected output structure.
            temperature: Sampling temperature (0.0-1.0). Lower = more deterministic.
            system_prompt: Optional system/instruction prompt.
            max_retries: Maximum number of attempts on failure.

        Returns:
            Validated instance of the supplied schema class.
        """
        ...

    async def close(self) -> None:
        """Release provider connections. Adapters without any keep the default."""
        return None
