"""Provider registry for LLM adapters.

Routes model IDs to the correct adapter implementation based on the model
ID prefix. Supports Ollama (ollama/ prefix), Vertex AI (gemini- prefix) and
OpenAI-compatible gateways (anything else, e.g. google/gemini-2.5-flash).
"""

import logging
from typing import Optional

from clipforge.config import CaptionConfig, GoogleCloudConfig
from clipforge.services.llm.base import LLMAdapter

logger = logging.getLogger(__name__)


def _is_ollama_model(model_id: str) -> bool:
    """Return True if the model ID uses the ollama/ prefix."""
    return model_id.startswith("ollama/")


def _is_gemini_model(model_id: str) -> bool:
    """Return True if the model ID uses the gemini- prefix."""
    return model_id.startswith("gemini-")


def get_adapter(
    model_id: str,
    config: CaptionConfig,
    google_cloud: Optional[GoogleCloudConfig] = None,
) -> Optional[LLMAdapter]:
    """Return the LLM adapter for ``model_id``, or None if it has no credentials.

    Routing logic:
    - "ollama/*"    -> OllamaAdapter (config.ollama_endpoint or localhost:11434)
    - "gemini-*"    -> VertexAIAdapter (needs google_cloud.project_id)
    - anything else -> GatewayAdapter (needs config.api_key)

    Args:
        model_id: Model identifier string.
        config: Caption model configuration (endpoints, keys).
        google_cloud: Google Cloud configuration for Vertex AI models.

    Returns:
        Configured LLMAdapter, or None when the provider is not configured.
    """
    if _is_ollama_model(model_id):
        from clipforge.services.llm.ollama_adapter import OllamaAdapter

        base_url = config.ollama_endpoint or "http://localhost:11434"
        logger.debug(
            "Routing %s to OllamaAdapter (base_url=%s, has_key=%s)",
            model_id,
            base_url,
            bool(config.ollama_api_key),
        )
        return OllamaAdapter(
            model_id=model_id, base_url=base_url, api_key=config.ollama_api_key,
        )

    if _is_gemini_model(model_id):
        project_id = google_cloud.project_id if google_cloud else None
        if not project_id:
            logger.info("No Google Cloud project configured; %s unavailable", model_id)
            return None
        from clipforge.services.llm.vertex_adapter import VertexAIAdapter

        logger.debug("Routing %s to VertexAIAdapter", model_id)
        return VertexAIAdapter(model_id=model_id, project_id=project_id)

    if not config.api_key:
        logger.info("No caption gateway API key configured; %s unavailable", model_id)
        return None
    from clipforge.services.llm.gateway_adapter import GatewayAdapter

    logger.debug("Routing %s to GatewayAdapter (%s)", model_id, config.gateway_url)
    return GatewayAdapter(model_id=model_id, url=config.gateway_url, api_key=config.api_key)
