"""Background render tasks for clips submitted with ``background=true``.

This module runs the orchestrator outside the request/response cycle with
in-memory progress tracking and a per-clip cancel signal. The Clip row
remains the durable source of truth; TASK_STATUS only reflects this
process.
"""

import asyncio
import logging
from typing import Optional

from clipforge.orchestrator.pipeline import PipelineOrchestrator
from clipforge.schemas.clip_request import ClipRequest

logger = logging.getLogger(__name__)

# Module-level dict for in-memory progress tracking
TASK_STATUS: dict[str, dict] = {}

# Finished entries beyond this many are evicted, oldest first
MAX_TASK_STATUS = 1000

# Cancel signals for runs still in flight, keyed by clip id
CANCEL_EVENTS: dict[str, asyncio.Event] = {}


def task_id_for(clip_id: str) -> str:
    return f"render_{clip_id}"


def _remember(task_id: str, status: dict) -> None:
    """Record task status, most recent last, and evict old finished entries."""
    TASK_STATUS.pop(task_id, None)
    TASK_STATUS[task_id] = status
    excess = len(TASK_STATUS) - MAX_TASK_STATUS
    if excess <= 0:
        return
    finished = [
        key for key, value in TASK_STATUS.items()
        if value.get("status") in ("complete", "error") and key != task_id
    ]
    for key in finished[:excess]:
        del TASK_STATUS[key]


def is_running(clip_id: str) -> bool:
    return clip_id in CANCEL_EVENTS


def reserve_run(clip_id: str) -> asyncio.Event:
    """Mark a background render for the clip as in flight in this process.

    Called by the route before the task is queued, so a second request
    arriving before the task starts sees the clip as running.
    """
    if clip_id in CANCEL_EVENTS:
        raise RuntimeError(f"Clip {clip_id} already has a background render")
    cancel_event = asyncio.Event()
    CANCEL_EVENTS[clip_id] = cancel_event
    _remember(task_id_for(clip_id), {"status": "queued", "clip_id": clip_id})
    return cancel_event


def request_cancel(clip_id: str) -> bool:
    """Signal a running background render to stop at its next step.

    Returns False if no background render is running for the clip.
    """
    event = CANCEL_EVENTS.get(clip_id)
    if event is None:
        return False
    event.set()
    TASK_STATUS.setdefault(task_id_for(clip_id), {})["cancel_requested"] = True
    logger.info(f"Cancel requested for clip {clip_id}")
    return True


async def render_clip_task(
    orchestrator: PipelineOrchestrator,
    request: ClipRequest,
    user_id: str,
    cancel_event: Optional[asyncio.Event] = None,
) -> None:
    """Run the render pipeline for one clip in background.

    Args:
        orchestrator: Configured pipeline orchestrator
        request: Validated render request
        user_id: Authenticated user the render jobs are attributed to
        cancel_event: Signal from reserve_run(); reserved here when omitted
    """
    clip_id = request.clip_id
    task_id = task_id_for(clip_id)
    if cancel_event is None:
        cancel_event = reserve_run(clip_id)
    cancel_requested = TASK_STATUS.get(task_id, {}).get("cancel_requested", False)
    _remember(task_id, {
        "status": "processing",
        "clip_id": clip_id,
        "cancel_requested": cancel_requested,
    })

    try:
        outcome = await orchestrator.render_clip(request, user_id, cancel_event=cancel_event)
        if outcome.success:
            _remember(task_id, {
                "status": "complete",
                "clip_id": clip_id,
                "result": outcome.to_response(),
            })
        else:
            _remember(task_id, {
                "status": "error",
                "clip_id": clip_id,
                "step": outcome.error.step,
                "error": outcome.error.message,
            })
    except Exception as e:
        logger.error(f"Background render failed for clip {clip_id}: {e}", exc_info=True)
        _remember(task_id, {
            "status": "error",
            "clip_id": clip_id,
            "error": str(e),
        })
    finally:
        CANCEL_EVENTS.pop(clip_id, None)
