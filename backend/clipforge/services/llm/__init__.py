"""LLM provider abstraction layer.

Provides a unified async interface for structured text generation across
multiple LLM providers (OpenAI-compatible gateways, Vertex AI, Ollama).

Usage:
    from clipforge.services.llm import get_adapter, LLMAdapter

    adapter = get_adapter("google/gemini-2.5-flash", settings.captions)
    if adapter is not None:
        result = await adapter.generate_text(prompt, MySchema)
"""

from clipforge.services.llm.base import LLMAdapter, strip_code_fences
from clipforge.services.llm.registry import get_adapter

__all__ = ["LLMAdapter", "get_adapter", "strip_code_fences"]
