"""
Generation Client - Replicate text-to-image

Submits a prediction against an ordered list of candidate models,
retrying rate-limited submissions, then long-polls the prediction until it
reaches a terminal state or the deadline passes.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from wardrobe_imagery.core.config import Settings, settings, split_csv
from wardrobe_imagery.core.exceptions import GenerationError
from wardrobe_imagery.core.logging import get_logger
from wardrobe_imagery.core.metrics import record_replicate_call, track_stage_latency
from wardrobe_imagery.engines.replicate.base import (
    GenerationResult,
    IImageGenerator,
    ReplicateClientBase,
)
from wardrobe_imagery.engines.replicate.schemas import Prediction, resolve_output_url

logger = get_logger(__name__)

SERVICE = "replicate_generation"

MAX_SUBMIT_ATTEMPTS = 3
DEFAULT_RETRY_AFTER_SECONDS = 10
MAX_RETRY_AFTER_SECONDS = 30
CANDIDATE_REJECTED_STATUSES = (404, 422)


@dataclass(frozen=True)
class Candidate:
    """One endpoint/model to try."""
    label: str
    path: str
    body: Dict[str, Any] = field(default_factory=dict)


def parse_retry_after(response: httpx.Response) -> float:
    """
    Seconds to wait after a 429.

    Reads the Retry-After header, then a `retry_after` field in the JSON
    body, defaulting to 10 seconds.
    """
    header_value = response.headers.get("retry-after")
    if header_value:
        try:
            seconds = int(header_value)
            if seconds > 0:
                return float(seconds)
        except ValueError:
            pass

    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        retry_after = payload.get("retry_after")
        if isinstance(retry_after, (int, float)) and not isinstance(retry_after, bool) and retry_after > 0:
            return float(retry_after)

    return float(DEFAULT_RETRY_AFTER_SECONDS)


class ReplicateGenerationClient(ReplicateClientBase, IImageGenerator):
    """Replicate implementation of the image generation port."""

    def __init__(
        self,
        api_token: Optional[str],
        api_url: str = "https://api.replicate.com/v1",
        pinned_version: Optional[str] = None,
        model_aliases: Sequence[str] = ("google/imagen-4", "google-deepmind/imagen-4"),
        submit_timeout: float = 60.0,
        poll_timeout: float = 30.0,
        poll_interval: float = 1.5,
        poll_ceiling: float = 120.0,
        download_timeout: float = 30.0,
        retry_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic
    ):
        super().__init__(api_token, api_url, transport)
        self.pinned_version = pinned_version
        self.model_aliases = list(model_aliases)
        self.submit_timeout = submit_timeout
        self.poll_timeout = poll_timeout
        self.poll_interval = poll_interval
        self.poll_ceiling = poll_ceiling
        self.download_timeout = download_timeout
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        s: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "ReplicateGenerationClient":
        s = s or settings
        return cls(
            api_token=s.REPLICATE_API_TOKEN,
            api_url=s.REPLICATE_API_URL,
            pinned_version=s.REPLICATE_IMAGEN_VERSION or None,
            model_aliases=split_csv(s.REPLICATE_GENERATION_MODELS),
            submit_timeout=s.SUBMIT_TIMEOUT,
            poll_timeout=s.POLL_REQUEST_TIMEOUT,
            poll_interval=s.POLL_INTERVAL_SECONDS,
            poll_ceiling=s.POLL_CEILING_SECONDS,
            download_timeout=s.DOWNLOAD_TIMEOUT,
            transport=transport,
        )

    def build_candidates(self, prompt: str) -> List[Candidate]:
        """Pinned version first (when configured), then each model alias."""
        model_input = {"prompt": prompt, "aspect_ratio": "1:1"}
        candidates = []
        if self.pinned_version:
            candidates.append(Candidate(
                label=f"version:{self.pinned_version}",
                path="/predictions",
                body={"version": self.pinned_version, "input": model_input},
            ))
        for alias in self.model_aliases:
            candidates.append(Candidate(
                label=alias,
                path=f"/models/{alias}/predictions",
                body={"input": model_input},
            ))
        return candidates

    async def generate(self, prompt: str, deadline: Optional[float] = None) -> GenerationResult:
        """
        Run a generation job to completion.

        Args:
            prompt: Text prompt
            deadline: Absolute time (same clock as the client) after which
                polling is abandoned. Defaults to now + poll ceiling.

        Returns:
            GenerationResult with the output URL and elapsed duration
        """
        if not self.api_token:
            raise GenerationError("REPLICATE_API_TOKEN not configured")

        start = time.monotonic()
        with track_stage_latency("generation"):
            async with self._client(self.submit_timeout) as client:
                prediction = await self._submit(client, self.build_candidates(prompt))
                prediction = await self._poll(client, prediction, deadline)

        image_url = resolve_output_url(prediction, GenerationError, "Replicate generation")
        duration_ms = self._elapsed_ms(start)

        logger.info(
            "generation_completed",
            prediction_id=prediction.id,
            duration_ms=duration_ms
        )
        return GenerationResult(image_url=image_url, duration_ms=duration_ms, prediction_id=prediction.id)

    async def generate_bytes(self, prompt: str, deadline: Optional[float] = None) -> Tuple[bytes, int]:
        """Generate, then download the output image."""
        result = await self.generate(prompt, deadline)
        try:
            async with httpx.AsyncClient(timeout=self.download_timeout, transport=self._transport) as client:
                response = await client.get(result.image_url)
        except httpx.HTTPError as e:
            raise GenerationError(f"Failed to download generated image: {e}")
        if not response.is_success:
            raise GenerationError(
                f"Failed to download generated image: HTTP {response.status_code}",
                http_status=response.status_code
            )
        return response.content, result.duration_ms

    async def _submit(self, client: httpx.AsyncClient, candidates: List[Candidate]) -> Prediction:
        """
        Submit against each candidate in order.

        Per candidate: up to 3 attempts. 429 waits for the retry-after hint,
        404/422 move straight to the next candidate, other failures are
        retried until attempts run out.
        """
        last_status: Optional[int] = None
        last_error = ""

        for candidate in candidates:
            for attempt in range(1, MAX_SUBMIT_ATTEMPTS + 1):
                try:
                    response = await client.post(candidate.path, json=candidate.body)
                except httpx.HTTPError as e:
                    last_status, last_error = None, str(e)
                    record_replicate_call(SERVICE, "transport_error", 0)
                    logger.warning(
                        "generation_submit_transport_error",
                        candidate=candidate.label,
                        attempt=attempt,
                        error=last_error
                    )
                    if attempt < MAX_SUBMIT_ATTEMPTS:
                        await self._sleep(self.retry_delay)
                    continue

                if response.is_success:
                    record_replicate_call(SERVICE, "submitted", response.status_code)
                    logger.info("generation_submitted", candidate=candidate.label, attempt=attempt)
                    return self._parse_prediction(response, GenerationError)

                last_status = response.status_code
                last_error = response.text
                record_replicate_call(SERVICE, "error", last_status)

                if last_status == 429:
                    if attempt < MAX_SUBMIT_ATTEMPTS:
                        wait = min(parse_retry_after(response), MAX_RETRY_AFTER_SECONDS)
                        logger.warning(
                            "generation_rate_limited",
                            candidate=candidate.label,
                            attempt=attempt,
                            retry_after_seconds=wait
                        )
                        await self._sleep(wait)
                    continue

                if last_status in CANDIDATE_REJECTED_STATUSES:
                    logger.warning(
                        "generation_candidate_rejected",
                        candidate=candidate.label,
                        http_status=last_status
                    )
                    break

                logger.warning(
                    "generation_submit_failed",
                    candidate=candidate.label,
                    attempt=attempt,
                    http_status=last_status
                )
                if attempt < MAX_SUBMIT_ATTEMPTS:
                    await self._sleep(self.retry_delay)

        raise GenerationError(
            f"Replicate API error ({last_status}): {last_error}",
            http_status=last_status
        )

    async def _poll(
        self,
        client: httpx.AsyncClient,
        prediction: Prediction,
        deadline: Optional[float]
    ) -> Prediction:
        """Poll until terminal. Exceeding the deadline is a hard failure."""
        poll_url = prediction.poll_url
        if prediction.is_terminal or not poll_url:
            return prediction

        if deadline is None:
            deadline = self._clock() + self.poll_ceiling

        while True:
            try:
                response = await client.get(poll_url, timeout=self.poll_timeout)
            except httpx.HTTPError as e:
                raise GenerationError(f"Replicate poll error: {e}")

            if not response.is_success:
                record_replicate_call(SERVICE, "poll_error", response.status_code)
                raise GenerationError(
                    f"Replicate poll error ({response.status_code}): {response.text}",
                    http_status=response.status_code
                )

            prediction = self._parse_prediction(response, GenerationError)
            if prediction.is_terminal:
                record_replicate_call(SERVICE, prediction.status, response.status_code)
                return prediction

            if self._clock() >= deadline:
                record_replicate_call(SERVICE, "timeout", response.status_code)
                raise GenerationError(
                    f"Replicate polling timed out after {int(self.poll_ceiling)}s"
                )

            await self._sleep(self.poll_interval)
