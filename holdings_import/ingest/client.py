"""
HTTP client for the remote ingestion endpoint.

One call per batch.  Failures are classified so the driver can tell a
cooldown-and-retry situation (rate limiting, timeouts) from a failure that
should end the current file.
"""

import logging

import httpx

from holdings_import.config import INGEST_API_KEY, INGEST_TIMEOUT_SECONDS, INGEST_URL
from holdings_import.errors import (
    RateLimitError,
    RemoteIngestionError,
    SubmissionTimeoutError,
    is_rate_limit_message,
)
from holdings_import.models import Batch, BatchResult

logger = logging.getLogger(__name__)


def build_payload(batch: Batch, year: int, session_id: str) -> dict:
    return {
        "records": [r.model_dump(mode="json") for r in batch.records],
        "dimension": year,
        "batchInfo": {"current": batch.batch_index, "total": batch.total_batches},
        "sessionId": session_id,
    }


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text or resp.reason_phrase
    if isinstance(data, dict):
        return str(data.get("error") or data.get("message") or data)
    return str(data)


def parse_response(resp: httpx.Response) -> BatchResult:
    """Turn an endpoint response into a BatchResult or raise a classified error."""
    if resp.status_code == 429:
        raise RateLimitError(f"HTTP 429: {_error_message(resp)}", status_code=429)

    if resp.is_error:
        message = _error_message(resp)
        if is_rate_limit_message(message):
            raise RateLimitError(message, status_code=resp.status_code)
        raise RemoteIngestionError(
            f"HTTP {resp.status_code}: {message}", status_code=resp.status_code
        )

    try:
        data = resp.json()
    except ValueError as e:
        raise RemoteIngestionError(f"Malformed response: {e}", status_code=resp.status_code) from e

    if not isinstance(data, dict):
        raise RemoteIngestionError("Malformed response: expected a JSON object", status_code=resp.status_code)

    # Edge functions report failures in the body with a 2xx status
    if data.get("error"):
        message = str(data["error"])
        if is_rate_limit_message(message):
            raise RateLimitError(message, status_code=resp.status_code)
        raise RemoteIngestionError(message, status_code=resp.status_code)

    if "processedRows" not in data:
        raise RemoteIngestionError("Malformed response: missing processedRows", status_code=resp.status_code)

    return BatchResult(
        processed_rows=int(data["processedRows"]),
        duplicates=int(data.get("duplicates", 0) or 0),
        errors=int(data.get("errors", 0) or 0),
    )


class IngestionClient:
    """Submits batches to the ingestion endpoint over a shared AsyncClient."""

    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url or INGEST_URL
        self.api_key = api_key if api_key is not None else INGEST_API_KEY
        self.timeout = timeout or INGEST_TIMEOUT_SECONDS
        self._client = client
        self._owns_client = client is None

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def submit(self, batch: Batch, *, year: int, session_id: str) -> BatchResult:
        client = self._get_client()
        try:
            resp = await client.post(
                self.url,
                json=build_payload(batch, year, session_id),
                headers=self._headers(),
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise SubmissionTimeoutError(
                f"Batch {batch.batch_index}/{batch.total_batches} timed out after {self.timeout}s"
            ) from e
        except httpx.HTTPError as e:
            raise RemoteIngestionError(f"Transport error: {e}") from e

        result = parse_response(resp)
        logger.debug(
            "Batch %d/%d accepted: %d processed, %d duplicates",
            batch.batch_index, batch.total_batches, result.processed_rows, result.duplicates,
        )
        return result

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()


async def check_endpoint(url: str | None = None) -> bool:
    """Return True if the ingestion endpoint answers at all (any non-5xx status)."""
    url = url or INGEST_URL
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            resp = await client.options(url)
            return resp.status_code < 500
    except httpx.HTTPError:
        return False
