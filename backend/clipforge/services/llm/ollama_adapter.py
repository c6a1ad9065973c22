"""Ollama adapter for the LLM abstraction layer.

Connects via ollama.AsyncClient with optional auth headers and structured
JSON output via format='json' with schema instructions.

Note: We use format='json' instead of format=schema_dict because Ollama Cloud
does not reliably enforce JSON schema constraints. Instead, we append a
concise schema description to the system prompt and rely on format='json'
to guarantee valid JSON output.
"""

import json
import logging
from typing import Optional, Type

from ollama import AsyncClient
from pydantic import BaseModel
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from clipforge.services.llm.base import LLMAdapter, strip_code_fences

logger = logging.getLogger(__name__)


def _schema_instruction(schema: Type[BaseModel]) -> str:
    """Build a concise JSON schema instruction to append to the system prompt."""
    schema_json = json.dumps(schema.model_json_schema(), indent=2)
    return (
        "\n\nIMPORTANT: You MUST respond with JSON only (no markdown, "
        "no commentary, no code fences). The JSON must conform to this schema:\n"
        f"```json\n{schema_json}\n```\n"
        "Return ONLY the JSON."
    )


class OllamaAdapter(LLMAdapter):
    """LLM adapter backed by a local or cloud Ollama instance.

    Strips the "ollama/" prefix from model IDs before passing to the ollama
    library. Always passes stream=False to avoid async generator responses.
    """

    def __init__(
        self,
        model_id: str,
        base_url: str = "http://localhost:11434",
        api_key: Optional[str] = None,
    ) -> None:
        """Initialize adapter for the given Ollama model.

        Args:
            model_id: Model identifier, optionally prefixed with "ollama/"
                      (e.g., "ollama/llama3.1" or "llama3.1").
            base_url: Base URL of the Ollama server.
            api_key: Optional API key for authentication (cloud deployments).
        """
        self._ollama_model = model_id.removeprefix("ollama/")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = AsyncClient(host=base_url, headers=headers)

    async def generate_text(
        self,
        prompt: str,
        schema: Type[BaseModel],
        *,
        temperature: float = 0.7,
        system_prompt: Optional[str] = None,
        max_retries: int = 3,
    ) -> BaseModel:
        schema_suffix = _schema_instruction(schema)

        @retry(
            stop=stop_after_attempt(max_retries),
            wait=wait_exponential(multiplier=1, min=2, max=30),
            retry=retry_if_exception_type(Exception),
            reraise=True,
        )
        async def _call() -> BaseModel:
            if system_prompt:
                system = system_prompt + schema_suffix
            else:
                system = schema_suffix.lstrip()
            response = await self._client.chat(
                model=self._ollama_model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                format="json",
                options={"temperature": temperature},
                stream=False,
            )
            return schema.model_validate_json(strip_code_fences(response.message.content))

        return await _call()
