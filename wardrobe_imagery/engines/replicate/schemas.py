"""
Replicate Prediction Schemas

Pydantic models for the prediction payloads returned by the Replicate API
and the terminal-state interpretation shared by both clients.
"""

from typing import Any, Optional, Type

from pydantic import BaseModel, ConfigDict

from wardrobe_imagery.core.exceptions import ExternalAPIError


SUCCEEDED = "succeeded"
FAILED = "failed"
CANCELED = "canceled"
TERMINAL_STATUSES = frozenset({SUCCEEDED, FAILED, CANCELED})


class PredictionUrls(BaseModel):
    """Links attached to a prediction."""
    model_config = ConfigDict(extra="allow")

    get: Optional[str] = None
    cancel: Optional[str] = None


class Prediction(BaseModel):
    """A Replicate prediction (job)."""
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    status: str
    output: Any = None
    error: Any = None
    urls: Optional[PredictionUrls] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def poll_url(self) -> Optional[str]:
        return self.urls.get if self.urls else None

    def output_url(self) -> Optional[str]:
        """The API returns either a single URL or a list of them."""
        output = self.output
        if isinstance(output, list):
            output = output[0] if output else None
        if isinstance(output, str) and output:
            return output
        return None


def resolve_output_url(
    prediction: Prediction,
    error_cls: Type[ExternalAPIError],
    label: str
) -> str:
    """
    Turn a terminal prediction into an output URL or a classified error.

    Args:
        prediction: Prediction after submission/polling
        error_cls: GenerationError or BackgroundRemovalError
        label: Human readable operation name for messages
    """
    if prediction.status == SUCCEEDED:
        url = prediction.output_url()
        if not url:
            raise error_cls(f"{label} succeeded but output URL is null")
        return url

    if prediction.status in (FAILED, CANCELED):
        raise error_cls(f"{label} {prediction.status}: {prediction.error or 'Unknown error'}")

    raise error_cls(f"Unexpected {label} status: {prediction.status}")
