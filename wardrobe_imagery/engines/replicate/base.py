"""
Ports and shared HTTP plumbing for the Replicate clients.

The pipeline only depends on `IImageGenerator` and `IBackgroundRemover`;
any provider (or a local model) can stand behind the same contract.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple, Type

import httpx
from pydantic import ValidationError as PydanticValidationError

from wardrobe_imagery.core.exceptions import ExternalAPIError
from wardrobe_imagery.engines.replicate.schemas import Prediction


@dataclass(frozen=True)
class GenerationResult:
    """Output of a text-to-image run."""
    image_url: str
    duration_ms: int
    prediction_id: Optional[str] = None


class IImageGenerator(ABC):
    """Text prompt -> generated image."""

    @abstractmethod
    async def generate(self, prompt: str, deadline: Optional[float] = None) -> GenerationResult:
        """Generate an image and return its URL and elapsed time."""

    @abstractmethod
    async def generate_bytes(self, prompt: str, deadline: Optional[float] = None) -> Tuple[bytes, int]:
        """Generate an image and return its bytes and elapsed time in ms."""


class IBackgroundRemover(ABC):
    """Public image URL -> URL of the background-removed image."""

    @abstractmethod
    async def remove_background(self, image_url: str) -> str:
        """Remove the background and return the result URL."""


class ReplicateClientBase:
    """Connection details shared by the Replicate clients."""

    def __init__(
        self,
        api_token: Optional[str],
        api_url: str = "https://api.replicate.com/v1",
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_token = api_token
        self.api_url = api_url.rstrip("/")
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        # New client per call; nothing is shared between pipeline runs
        return httpx.AsyncClient(
            base_url=self.api_url,
            headers={
                "Authorization": f"Token {self.api_token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=self._transport,
        )

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)

    @staticmethod
    def _parse_prediction(
        response: httpx.Response,
        error_cls: Type[ExternalAPIError]
    ) -> Prediction:
        try:
            return Prediction.model_validate(response.json())
        except (ValueError, PydanticValidationError) as e:
            raise error_cls(
                f"Invalid prediction payload from Replicate: {e}",
                http_status=response.status_code
            )
