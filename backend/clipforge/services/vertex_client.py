"""Vertex AI client wrapper using google-genai SDK.

This module provides location-aware clients for Google Generative AI using Vertex AI mode.
Authentication is handled automatically via Application Default Credentials (ADC).

Usage:
    from clipforge.services.vertex_client import get_vertex_client

    client = get_vertex_client("my-project")                     # default location
    client = get_vertex_client("my-project", location="global")  # global endpoint
"""

import os
from pathlib import Path

from dotenv import load_dotenv
from google import genai

from clipforge.config import settings

# Load .env for GOOGLE_APPLICATION_CREDENTIALS (ADC)
load_dotenv(Path(__file__).resolve().parent.parent.parent.parent / ".env")

# Per-(project, location) client cache
_clients: dict[tuple[str, str], genai.Client] = {}

# Models that must use the global endpoint
GLOBAL_REGION_MODELS = {
    "gemini-3-flash-preview",
    "gemini-3-pro-preview",
}


def location_for_model(model_id: str) -> str:
    """Return the Vertex AI location needed for a given model ID."""
    if model_id in GLOBAL_REGION_MODELS:
        return "global"
    return settings.google_cloud.location


def get_vertex_client(project_id: str, location: str | None = None) -> genai.Client:
    """Get or create a Vertex AI client for the given project and location.

    Args:
        project_id: GCP project that owns the Vertex AI quota.
        location: GCP region (e.g., "us-central1", "global").
                  Defaults to settings.google_cloud.location.

    Returns:
        genai.Client: Configured client instance for Vertex AI
    """
    loc = location or settings.google_cloud.location
    key = (project_id, loc)

    if key not in _clients:
        os.environ["GOOGLE_GENAI_USE_VERTEXAI"] = "true"
        os.environ.setdefault("GOOGLE_CLOUD_PROJECT", project_id)

        _clients[key] = genai.Client(
            vertexai=True,
            project=project_id,
            location=loc,
        )

    return _clients[key]
