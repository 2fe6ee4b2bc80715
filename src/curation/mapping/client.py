"""HTTP client for the external LLM transformation service.

The service exposes two JSON endpoints:
- POST /transform: structured learning items for a mapped chunk
- POST /regenerate: a new payload for an item an operator sent back

Transient failures (timeouts, connection errors, 408/429/5xx) are
retried with exponential backoff and jitter. Everything else surfaces as
ExternalServiceError.

Source:
- src/curation/mapping/transformation.py (TransformationClient protocol)
- src/curation/feedback/loop.py (Regenerator protocol)
- src/curation/config.py (transformation_url, transformation_timeout_seconds)
"""

import asyncio
import logging
import random
from typing import Any, Dict, Optional

import httpx

from src.curation.feedback.models import OperatorFeedback
from src.curation.mapping.models import TopicMapping, TransformationResult
from src.curation.mapping.transformation import ExternalServiceError
from src.curation.state.models import CurationItem


logger = logging.getLogger(__name__)


class HttpTransformationClient:
    """Async client for the transformation service.

    Implements both TransformationClient and Regenerator.

    Attributes:
        base_url: Base URL of the transformation service.
        max_retries: Maximum number of retry attempts for transient failures.
        base_delay: Base delay in seconds for exponential backoff.
        max_delay: Maximum delay in seconds between retries.
        timeout: Request timeout in seconds.

    Example:
        >>> async with HttpTransformationClient("http://transformer:8000") as client:
        ...     result = await client.transform(mapping)
    """

    # HTTP status codes that should trigger a retry
    RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

    def __init__(
        self,
        base_url: str,
        max_retries: int = 2,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client, creating it if necessary."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"User-Agent": "curation-pipeline/1.0"},
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HttpTransformationClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _calculate_backoff(self, attempt: int) -> float:
        """Exponential backoff with full jitter."""
        capped_delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        return random.uniform(0, capped_delay)

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST JSON with retry logic and return the decoded body.

        Raises:
            ExternalServiceError: If the request fails after all retries
                or the response is not a JSON object.
        """
        last_error: Optional[str] = None
        last_status: Optional[int] = None

        for attempt in range(self.max_retries + 1):
            try:
                response = await self.client.post(path, json=payload)
            except httpx.TimeoutException:
                last_error = "request timed out"
            except httpx.RequestError as e:
                last_error = f"request error: {e}"
            else:
                if response.status_code in self.RETRYABLE_STATUS_CODES:
                    last_status = response.status_code
                    last_error = f"transformation service returned {response.status_code}"
                elif response.status_code >= 400:
                    logger.error(
                        "Transformation service error",
                        extra={
                            "status_code": response.status_code,
                            "path": path,
                            "response_body": response.text[:500],
                        },
                    )
                    raise ExternalServiceError(
                        f"Transformation service error: {response.status_code}",
                        status_code=response.status_code,
                    )
                else:
                    try:
                        body = response.json()
                    except ValueError as e:
                        raise ExternalServiceError(
                            f"Invalid JSON from transformation service: {e}",
                            status_code=response.status_code,
                        ) from e
                    if not isinstance(body, dict):
                        raise ExternalServiceError(
                            "Transformation service returned a non-object body",
                            status_code=response.status_code,
                        )
                    return body

            if attempt < self.max_retries:
                delay = self._calculate_backoff(attempt)
                logger.warning(
                    "Transient transformation service failure, retrying",
                    extra={
                        "error": last_error,
                        "attempt": attempt + 1,
                        "max_retries": self.max_retries,
                        "delay": delay,
                        "path": path,
                    },
                )
                await asyncio.sleep(delay)

        raise ExternalServiceError(
            f"Transformation service request failed after {self.max_retries + 1} "
            f"attempts: {last_error}",
            status_code=last_status,
        )

    async def transform(self, mapping: TopicMapping) -> TransformationResult:
        body = await self._post(
            "/transform",
            {
                "mapping_id": mapping.id,
                "chunk_id": mapping.chunk_id,
                "topic_id": mapping.topic_id,
                "language": mapping.language,
                "level": mapping.level.value if mapping.level else None,
            },
        )
        try:
            return TransformationResult(
                parsed_result=body.get("parsed_result", {}),
                tokens_in=body.get("tokens_in", 0),
                tokens_out=body.get("tokens_out", 0),
                cost_usd=body.get("cost_usd", 0.0),
                duration_ms=body.get("duration_ms", 0),
            )
        except ValueError as e:
            raise ExternalServiceError(f"Malformed transformation result: {e}") from e

    async def regenerate(
        self, item: CurationItem, feedback: Optional[OperatorFeedback]
    ) -> Dict[str, Any]:
        body = await self._post(
            "/regenerate",
            {
                "item_id": item.item_id,
                "item_type": item.item_type.value,
                "language": item.language,
                "level": item.level.value if item.level else None,
                "data": item.data,
                "feedback": feedback.model_dump(mode="json") if feedback else None,
            },
        )
        data = body.get("data")
        if not isinstance(data, dict):
            raise ExternalServiceError("Regeneration response has no data object")
        return data
