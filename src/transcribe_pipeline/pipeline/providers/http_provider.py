"""HTTP provider adapter: POST a job descriptor, read back JSON output."""

from __future__ import annotations

import logging

import httpx

from transcribe_pipeline.pipeline.errors import (
    ProviderFatalError,
    ProviderRetryableError,
    ProviderUnavailableError,
)
from transcribe_pipeline.pipeline.providers.base import ProviderLimits, ProviderOutput, ProviderRequest

logger = logging.getLogger(__name__)

_HTTP_TOO_MANY_REQUESTS = 429
_HTTP_SERVER_ERROR = 500
_HTTP_REQUEST_TIMEOUT = 408


class HttpProvider:
    """Call a processing endpoint that accepts payload descriptors.

    The endpoint fetches the payload from external storage itself; only the
    descriptor and optional segment bounds travel in the request body.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        name: str,
        limits: ProviderLimits,
        endpoint: str,
        timeout_seconds: float = 120.0,
        enabled: bool = True,
        client: httpx.Client | None = None,
    ) -> None:
        self.name = name
        self.limits = limits
        self.endpoint = endpoint
        self.enabled = enabled
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
        )

    def is_available(self) -> bool:
        return self.enabled

    def close(self) -> None:
        self._client.close()

    def process(self, request: ProviderRequest) -> ProviderOutput:
        if not self.enabled:
            raise ProviderUnavailableError(f"{self.name} is disabled", provider=self.name)

        body: dict[str, object] = {
            "job_id": request.job_id,
            "kind": request.kind.value,
            "payload": {
                "uri": request.payload.uri,
                "size_bytes": request.payload.size_bytes,
                "format": request.payload.format,
                "duration_seconds": request.payload.duration_seconds,
            },
        }
        if request.segment is not None:
            body["segment"] = request.segment.to_dict()

        try:
            response = self._client.post(self.endpoint, json=body)
        except httpx.TimeoutException as error:
            logger.warning("Timeout calling provider %s for job %s", self.name, request.job_id)
            raise ProviderRetryableError(
                f"{self.name} timed out: {error}",
                provider=self.name,
                timed_out=True,
            ) from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error calling provider %s: %s", self.name, error)
            raise ProviderRetryableError(
                f"{self.name} network error: {error}",
                provider=self.name,
            ) from error

        status = response.status_code
        if status == _HTTP_TOO_MANY_REQUESTS:
            raise ProviderRetryableError(
                f"{self.name} rate limited (HTTP 429)",
                provider=self.name,
                rate_limited=True,
            )
        if status == _HTTP_REQUEST_TIMEOUT:
            raise ProviderRetryableError(
                f"{self.name} request timeout (HTTP 408)",
                provider=self.name,
                timed_out=True,
            )
        if status >= _HTTP_SERVER_ERROR:
            raise ProviderRetryableError(f"{self.name} HTTP {status}", provider=self.name)
        if not response.is_success:
            raise ProviderFatalError(
                f"{self.name} rejected input (HTTP {status}): {response.text[:300]}",
                provider=self.name,
            )

        try:
            data = response.json()
        except ValueError as error:
            raise ProviderFatalError(
                f"{self.name} returned a non-JSON body",
                provider=self.name,
            ) from error
        if not isinstance(data, dict) or not isinstance(data.get("text"), str):
            raise ProviderFatalError(f"{self.name} response has no 'text' field", provider=self.name)
        units = data.get("units")
        metadata = data.get("metadata")
        return ProviderOutput(
            text=data["text"],
            units=float(units) if isinstance(units, int | float) else None,
            metadata=metadata if isinstance(metadata, dict) else {},
        )
