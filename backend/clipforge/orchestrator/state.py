"""Clip state machine, pipeline step identifiers and error tagging.

The Clip row is the single mutable rollup of a render run:

    pending -> processing (on entry) -> ready | failed (on exit)

Every error persisted to ``clips.error_message`` starts with a bracketed
step tag drawn from PIPELINE_STEPS.
"""

from typing import Optional

# Clip states
CLIP_STATES = {
    "pending": "Clip registered, no render attempted yet",
    "processing": "Render pipeline running",
    "ready": "Both derivatives rendered and URLs stored",
    "failed": "Render pipeline stopped at a tagged step",
}

CLIP_TRANSITIONS = {
    "pending": {"processing"},
    "processing": {"ready", "failed"},
    # Re-rendering a terminal clip starts a new run
    "ready": {"processing"},
    "failed": {"processing"},
}

TERMINAL_STATES = {"ready", "failed"}

# RenderJob states
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

# Pipeline steps, in execution order
STEP_AUTH_CHECK = "auth_check"
STEP_PARSE_REQUEST = "parse_request"
STEP_FETCH_CLIP_RECORD = "fetch_clip_record"
STEP_GENERATE_CAPTIONS = "generate_captions"
STEP_CLOUDFLARE_UPLOAD = "cloudflare_upload"
STEP_PROCESS_VERTICAL = "process_vertical"
STEP_PROCESS_THUMBNAIL = "process_thumbnail"
STEP_UPDATE_CLIP_RECORD = "update_clip_record"

PIPELINE_STEPS = (
    STEP_AUTH_CHECK,
    STEP_PARSE_REQUEST,
    STEP_FETCH_CLIP_RECORD,
    STEP_GENERATE_CAPTIONS,
    STEP_CLOUDFLARE_UPLOAD,
    STEP_PROCESS_VERTICAL,
    STEP_PROCESS_THUMBNAIL,
    STEP_UPDATE_CLIP_RECORD,
)

# Summary string in every failure response body
FAILED_ERROR_SUMMARY = "Phase 3 failed"


def can_transition(current: str, target: str) -> bool:
    """Check whether a Clip may move from ``current`` to ``target``.

    Args:
        current: Current clip status
        target: Requested clip status

    Returns:
        True if the transition is part of the state machine
    """
    return target in CLIP_TRANSITIONS.get(current, set())


def truncate_message(message: str, limit: Optional[int]) -> str:
    """Cut ``message`` to ``limit`` characters, marking the cut with '...'."""
    if limit is not None and len(message) > limit:
        return message[:limit] + "..."
    return message


def tag_error(step: str, message: str, limit: Optional[int] = None) -> str:
    """Prefix an error message with its step tag.

    Examples:
        >>> tag_error("cloudflare_upload", "Cloudflare credentials not configured")
        '[cloudflare_upload] Cloudflare credentials not configured'
    """
    if step not in PIPELINE_STEPS:
        raise ValueError(f"Unknown pipeline step: {step}")
    return f"[{step}] {truncate_message(message, limit)}"
