"""OpenAI-compatible chat-completions adapter for the LLM abstraction layer.

Talks to any gateway that implements ``POST /v1/chat/completions`` with
bearer auth (the default caption model is served this way). Structured
output is requested through the system prompt; the reply content is
stripped of code fences and validated against the caller's schema.
"""

import json
import logging
from typing import Optional, Type

import httpx
from pydantic import BaseModel
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from clipforge.services.llm.base import LLMAdapter, strip_code_fences

logger = logging.getLogger(__name__)


class GatewayAdapter(LLMAdapter):
    """LLM adapter for an OpenAI-compatible chat-completions endpoint.

    The model id is passed through unchanged (e.g. "google/gemini-2.5-flash").
    """

    def __init__(
        self,
        model_id: str,
        url: str,
        api_key: str,
        *,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._model_id = model_id
        self._url = url
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=httpx.Timeout(self._timeout, connect=15.0),
                transport=self._transport,
            )
        return self._client

    async def generate_text(
        self,
        prompt: str,
        schema: Type[BaseModel],
        *,
        temperature: float = 0.7,
        system_prompt: Optional[str] = None,
        max_retries: int = 3,
    ) -> BaseModel:
        """Generate structured text through the gateway.

        Args:
            prompt: User prompt to send.
            schema: Pydantic model class the reply content must validate as.
            temperature: Sampling temperature.
            system_prompt: Optional system instruction.
            max_retries: Attempts before the last error is raised.

        Returns:
            Validated Pydantic model instance.
        """
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        body = {
            "model": self._model_id,
            "messages": messages,
            "temperature": temperature,
        }

        @retry(
            stop=stop_after_attempt(max_retries),
            wait=wait_exponential(multiplier=1, min=2, max=30),
            retry=retry_if_exception_type(Exception),
            reraise=True,
        )
        async def _call() -> BaseModel:
            response = await self.client.post(self._url, json=body)
            logger.debug("POST %s -> HTTP %d", self._url, response.status_code)
            response.raise_for_status()
            data = response.json()
            try:
                raw = data["choices"][0]["message"]["content"]
            except (KeyError, IndexError, TypeError) as exc:
                raise ValueError(
                    f"Unexpected chat-completions response: {json.dumps(data)[:300]}"
                ) from exc
            return schema.model_validate_json(strip_code_fences(raw or ""))

        return await _call()

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
