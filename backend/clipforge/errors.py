"""Error taxonomy for the clip export pipeline.

Two families live here:

- ``UpstreamError`` and subclasses are raised by provider clients and
  describe *what* went wrong with an external call.
- ``PipelineError`` is the step-tagged error the orchestrator persists to
  the Clip row and returns to the caller. It always names the pipeline
  step that failed so operators can triage by stage.
"""

from typing import Optional

from clipforge.orchestrator.state import (
    FAILED_ERROR_SUMMARY,
    STEP_FETCH_CLIP_RECORD,
    tag_error,
)


class UpstreamError(Exception):
    """Base class for failures talking to an external provider."""

    #: Whether a retry could plausibly succeed.
    transient: bool = False

    def __init__(self, message: str, payload: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.payload = payload


class UpstreamUnavailable(UpstreamError):
    """Provider credentials are missing. Configuration error, never retried."""


class UpstreamRejected(UpstreamError):
    """Provider answered with a non-success envelope or a non-2xx status.

    ``payload`` holds the provider's error body verbatim for diagnostics.
    """

    def __init__(
        self,
        message: str,
        payload: Optional[str] = None,
        status_code: Optional[int] = None,
        code: Optional[int] = None,
    ):
        super().__init__(message, payload)
        self.status_code = status_code
        self.code = code

    @property
    def transient(self) -> bool:  # type: ignore[override]
        return self.status_code is not None and (
            self.status_code == 429 or self.status_code >= 500
        )


class UpstreamTransportError(UpstreamError):
    """Network-level failure (connect, read timeout, reset)."""

    transient = True


def is_transient(exc: BaseException) -> bool:
    """Retry predicate for tenacity: only transient upstream failures."""
    return isinstance(exc, UpstreamError) and exc.transient


class PipelineError(Exception):
    """Step-tagged pipeline failure.

    Attributes:
        step: Pipeline step identifier (see orchestrator.state.PIPELINE_STEPS)
        message: Human-readable error message, untruncated
        upstream_payload: Raw provider error body, if any
        code: Provider error code, if any
    """

    def __init__(
        self,
        step: str,
        message: str,
        upstream_payload: Optional[str] = None,
        code: Optional[int] = None,
    ):
        super().__init__(message)
        self.step = step
        self.message = message
        self.upstream_payload = upstream_payload
        self.code = code

    @classmethod
    def from_exception(cls, step: str, exc: BaseException) -> "PipelineError":
        """Tag an arbitrary exception with the step it escaped from."""
        if isinstance(exc, PipelineError):
            return exc
        message = str(exc) or type(exc).__name__
        if isinstance(exc, UpstreamError):
            return cls(
                step,
                message,
                upstream_payload=exc.payload,
                code=getattr(exc, "code", None),
            )
        return cls(step, message)

    def tagged(self, limit: Optional[int] = None) -> str:
        """Render as ``[step] message``, truncating the message to ``limit``."""
        return tag_error(self.step, self.message, limit)

    def to_response(self) -> dict:
        """Failure body returned to renderClip callers."""
        return {
            "error": FAILED_ERROR_SUMMARY,
            "step": self.step,
            "message": self.message,
            "code": self.code,
            "details": {
                "name": type(self).__name__,
                "upstreamPayload": self.upstream_payload,
            },
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(step={self.step!r}, message={self.message!r})"


class ClipNotFound(PipelineError):
    """The requested clip id has no Clip row."""

    def __init__(self, clip_id: str):
        super().__init__(STEP_FETCH_CLIP_RECORD, f"Clip not found: {clip_id}")
        self.clip_id = clip_id


class PipelineCancelled(PipelineError):
    """A caller asked the pipeline to stop before the named step."""


class ClipAlreadyRendering(PipelineError):
    """Another run holds the clip in ``processing``."""

    def __init__(self, clip_id: str):
        super().__init__(STEP_FETCH_CLIP_RECORD, f"Clip {clip_id} is already rendering")
        self.clip_id = clip_id
