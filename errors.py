"""Exception types shared by the pipeline, credentials and entry points."""

from __future__ import annotations

from typing import Any, Dict, Optional


class AdPipelineError(RuntimeError):
    """Base class for everything the ad pipeline raises on purpose."""


class ValidationError(AdPipelineError, ValueError):
    """Bad or missing input. Raised before any network call is made."""


class ProviderError(AdPipelineError):
    """The AI provider (or the transport to it) failed.

    ``stage`` names the pipeline stage that made the call. When the image
    stage fails, ``partial`` carries whatever the earlier stages produced so
    callers can still show the analysis.
    """

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        partial: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.partial: Dict[str, Any] = partial or {}
