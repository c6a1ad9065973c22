"""Clipforge - export-ready clip derivatives from a source video.

This module provides a startup check that reports which external providers
are configured before any render is attempted. Missing credentials are not
fatal at startup: they surface as step-tagged errors (or degraded captions)
on the first run that needs them.
"""

import logging

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


def check_credentials(settings=None) -> dict[str, bool]:
    """Report provider configuration, warning about anything missing.

    Args:
        settings: Settings instance; defaults to clipforge.config.settings.

    Returns:
        {"stream": bool, "captions": bool} configuration flags.
    """
    if settings is None:
        from clipforge.config import settings

    model = settings.captions.model
    if model.startswith("ollama/"):
        captions_ready = True
    elif model.startswith("gemini-"):
        captions_ready = bool(settings.google_cloud.project_id)
    else:
        captions_ready = bool(settings.captions.api_key)

    status = {
        "stream": settings.stream.is_configured,
        "captions": captions_ready,
    }
    if not status["stream"]:
        logger.warning(
            "Cloudflare Stream credentials missing (CLIPFORGE_STREAM__ACCOUNT_ID, "
            "CLIPFORGE_STREAM__API_TOKEN); renders will fail at cloudflare_upload"
        )
    if not status["captions"]:
        logger.warning(f"No credentials for caption model {model}; captions disabled")
    else:
        logger.info(f"Caption model: {model}")
    return status
