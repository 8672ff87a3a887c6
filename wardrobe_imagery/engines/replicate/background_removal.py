"""
Background-Removal Client - Replicate

Resolves the model version (per call, never cached), submits one blocking
prediction with `Prefer: wait`, and wraps the whole operation in a bounded
retry with a linearly increasing delay.
"""

import asyncio
from typing import Awaitable, Callable, Optional, Tuple

import httpx

from wardrobe_imagery.core.config import Settings, settings
from wardrobe_imagery.core.exceptions import BackgroundRemovalError
from wardrobe_imagery.core.logging import get_logger
from wardrobe_imagery.core.metrics import record_replicate_call, track_stage_latency
from wardrobe_imagery.engines.replicate.base import IBackgroundRemover, ReplicateClientBase
from wardrobe_imagery.engines.replicate.schemas import resolve_output_url

logger = get_logger(__name__)

SERVICE = "replicate_background_removal"


def parse_model_and_version(raw_model: str, raw_version: str = "") -> Tuple[str, Optional[str]]:
    """
    Split `owner/name:version` into model and version.

    A version embedded in the slug wins over the separately configured one.
    """
    model_part, _, version_part = raw_model.strip().partition(":")
    version = version_part.strip() or (raw_version or "").strip()
    return model_part.strip(), version or None


class ReplicateBackgroundRemovalClient(ReplicateClientBase, IBackgroundRemover):
    """Replicate implementation of the background-removal port."""

    def __init__(
        self,
        api_token: Optional[str],
        api_url: str = "https://api.replicate.com/v1",
        model: str = "851-labs/background-remover",
        version: str = "",
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        lookup_timeout: float = 20.0,
        submit_timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        super().__init__(api_token, api_url, transport)
        self.model, self.version = parse_model_and_version(model, version)
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.lookup_timeout = lookup_timeout
        self.submit_timeout = submit_timeout
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        s: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "ReplicateBackgroundRemovalClient":
        s = s or settings
        return cls(
            api_token=s.REPLICATE_API_TOKEN,
            api_url=s.REPLICATE_API_URL,
            model=s.REPLICATE_BG_MODEL,
            version=s.REPLICATE_BG_VERSION,
            max_attempts=s.BG_REMOVAL_MAX_ATTEMPTS,
            lookup_timeout=s.MODEL_LOOKUP_TIMEOUT,
            submit_timeout=s.SUBMIT_TIMEOUT,
            transport=transport,
        )

    async def resolve_version(self, client: httpx.AsyncClient) -> str:
        """Pinned version, or the model's latest version from the registry."""
        if self.version:
            return self.version

        owner, _, name = self.model.partition("/")
        if not owner or not name:
            raise BackgroundRemovalError(
                f"Invalid REPLICATE_BG_MODEL \"{self.model}\". Expected owner/name or owner/name:version"
            )

        try:
            response = await client.get(f"/models/{owner}/{name}", timeout=self.lookup_timeout)
        except httpx.HTTPError as e:
            raise BackgroundRemovalError(f"Failed to resolve bg-removal model version: {e}")

        if not response.is_success:
            record_replicate_call(SERVICE, "lookup_error", response.status_code)
            raise BackgroundRemovalError(
                f"Failed to resolve bg-removal model version ({response.status_code}): {response.text}",
                http_status=response.status_code
            )

        try:
            body = response.json()
        except ValueError:
            record_replicate_call(SERVICE, "lookup_error", response.status_code)
            raise BackgroundRemovalError(
                f"Model lookup returned a non-JSON body: {response.text[:200]}",
                http_status=response.status_code
            )

        latest = body.get("latest_version") if isinstance(body, dict) else None
        version_id = latest.get("id") if isinstance(latest, dict) else None
        if not version_id:
            raise BackgroundRemovalError(f"No latest version found for model \"{self.model}\"")
        return version_id

    async def remove_background_once(self, image_url: str) -> str:
        """Single blocking attempt."""
        if not self.api_token:
            raise BackgroundRemovalError("REPLICATE_API_TOKEN not configured")

        async with self._client(self.submit_timeout) as client:
            version = await self.resolve_version(client)
            try:
                response = await client.post(
                    "/predictions",
                    json={"version": version, "input": {"image": image_url}},
                    headers={"Prefer": "wait"},
                )
            except httpx.HTTPError as e:
                record_replicate_call(SERVICE, "transport_error", 0)
                raise BackgroundRemovalError(f"Background removal request failed: {e}")

        if not response.is_success:
            record_replicate_call(SERVICE, "error", response.status_code)
            raise BackgroundRemovalError(
                f"Background removal API error ({response.status_code}): {response.text}",
                http_status=response.status_code
            )

        prediction = self._parse_prediction(response, BackgroundRemovalError)
        record_replicate_call(SERVICE, prediction.status, response.status_code)
        return resolve_output_url(prediction, BackgroundRemovalError, "Background removal")

    async def remove_background(self, image_url: str) -> str:
        """Retry wrapper: `attempt * retry_delay` between attempts, last error propagates."""
        last_error: Optional[BackgroundRemovalError] = None

        with track_stage_latency("background_removal"):
            for attempt in range(1, self.max_attempts + 1):
                try:
                    output_url = await self.remove_background_once(image_url)
                    logger.info("background_removal_completed", attempt=attempt)
                    return output_url
                except BackgroundRemovalError as e:
                    last_error = e
                    logger.warning(
                        "background_removal_attempt_failed",
                        attempt=attempt,
                        max_attempts=self.max_attempts,
                        error=e.message
                    )
                    if attempt < self.max_attempts:
                        await self._sleep(self.retry_delay * attempt)

        raise last_error
