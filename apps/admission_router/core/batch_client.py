"""Client for the Anthropic Message Batches API."""

import json
from typing import Any, Dict, List, Optional

import httpx
import structlog

from libs.contracts.batch import BatchRequest, BatchResult, BatchState, BatchStatus, BatchUsage
from libs.utils.exceptions import BatchNotFoundError, SubmissionFailedError, UpstreamError

logger = structlog.get_logger(__name__)

BATCHES_PATH = "/v1/messages/batches"
DEFAULT_MAX_TOKENS = 1024

_PASSTHROUGH_STATES = {state.value for state in BatchState}


def build_request_params(request: BatchRequest, default_max_tokens: int = DEFAULT_MAX_TOKENS) -> Dict[str, Any]:
    """One entry of the ``requests`` array of a batch submission."""
    params: Dict[str, Any] = {
        "model": request.model,
        "max_tokens": request.max_tokens or default_max_tokens,
        "messages": [{"role": "user", "content": request.user_message}],
    }
    if request.system_prompt:
        params["system"] = request.system_prompt
    return {"custom_id": request.id, "params": params}


def _count(counts: Dict[str, Any], key: str) -> int:
    value = counts.get(key, 0)
    return value if isinstance(value, int) and value > 0 else 0


def map_processing_status(raw_status: Optional[str], counts: Dict[str, Any]) -> BatchState:
    """Normalize an upstream processing status to a BatchState.

    ``ended`` is neither success nor failure by itself; the request counts
    decide.
    """
    if raw_status in ("in_progress", "canceling"):
        return BatchState.IN_PROGRESS
    if raw_status == "ended":
        if _count(counts, "succeeded") > 0:
            return BatchState.COMPLETED
        if _count(counts, "errored") > 0 or _count(counts, "expired") > 0:
            return BatchState.FAILED
        if _count(counts, "canceled") > 0:
            return BatchState.CANCELED
        return BatchState.COMPLETED
    if raw_status in _PASSTHROUGH_STATES:
        return BatchState(raw_status)
    return BatchState.PENDING


def parse_batch_status(payload: Dict[str, Any]) -> BatchStatus:
    counts = payload.get("request_counts") or payload.get("counts") or {}
    raw_status = payload.get("processing_status") or payload.get("status")

    total = sum(_count(counts, key) for key in counts)
    failed = _count(counts, "errored") + _count(counts, "canceled") + _count(counts, "expired")

    fields: Dict[str, Any] = {
        "batch_id": payload["id"],
        "status": map_processing_status(raw_status, counts),
        "total_requests": total,
        "completed_requests": _count(counts, "succeeded"),
        "failed_requests": failed,
    }
    if payload.get("created_at"):
        fields["created_at"] = payload["created_at"]
    if payload.get("expires_at"):
        fields["expires_at"] = payload["expires_at"]
    return BatchStatus(**fields)


def _first_text(content: Any) -> Optional[str]:
    if isinstance(content, list) and content and isinstance(content[0], dict):
        return content[0].get("text")
    return None


def parse_result_record(record: Dict[str, Any]) -> BatchResult:
    """Parse one line of the results stream."""
    request_id = record.get("custom_id", "")
    result = record.get("result") or {}
    result_type = result.get("type", "unknown")

    if result_type == "succeeded":
        message = result.get("message") or {}
        content = _first_text(message.get("content"))
        if content is None:
            content = _first_text(result.get("content"))
        usage_data = message.get("usage") or result.get("usage")
        usage = None
        if isinstance(usage_data, dict):
            usage = BatchUsage(
                input_tokens=usage_data.get("input_tokens", 0),
                output_tokens=usage_data.get("output_tokens", 0),
            )
        return BatchResult(request_id=request_id, success=True, content=content, usage=usage)

    error = result.get("error") or {}
    # Upstream nests the API error one level down for errored results.
    if isinstance(error.get("error"), dict):
        error = error["error"]
    message = error.get("message") if isinstance(error, dict) else None
    return BatchResult(request_id=request_id, success=False, error=message or result_type)


def parse_results_jsonl(text: str) -> List[BatchResult]:
    results = []
    for line_number, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except ValueError:
            logger.warning("Skipping unparseable result line", line_number=line_number)
            continue
        if not isinstance(record, dict):
            logger.warning("Skipping non-object result line", line_number=line_number)
            continue
        results.append(parse_result_record(record))
    return results


class AnthropicBatchClient:
    """Thin async wrapper over the batch endpoints.

    Status and result reads raise BatchNotFoundError on 404 and UpstreamError
    for every other transport or HTTP failure. Submission failures raise
    SubmissionFailedError.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = "https://api.anthropic.com",
        anthropic_version: str = "2023-06-01",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {
            "content-type": "application/json",
            "anthropic-version": anthropic_version,
        }
        if api_key:
            headers["x-api-key"] = api_key
        else:
            logger.warning("Batch API key not configured")

        self.client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def create_batch(
        self,
        requests: List[BatchRequest],
        default_max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> BatchStatus:
        payload = {"requests": [build_request_params(r, default_max_tokens) for r in requests]}
        try:
            response = await self.client.post(BATCHES_PATH, json=payload)
            response.raise_for_status()
            return parse_batch_status(response.json())
        except httpx.HTTPStatusError as e:
            logger.error(
                "Batch submission rejected",
                status_code=e.response.status_code,
                body=e.response.text[:500],
            )
            raise SubmissionFailedError(
                f"Batch submission rejected with HTTP {e.response.status_code}",
                {"upstream_status": e.response.status_code},
            ) from e
        except httpx.RequestError as e:
            logger.error("Batch submission transport error", error=str(e))
            raise SubmissionFailedError(f"Batch submission failed: {e}") from e
        except (ValueError, KeyError) as e:
            raise SubmissionFailedError(f"Malformed submission response: {e}") from e

    async def retrieve_batch(self, batch_id: str) -> Dict[str, Any]:
        """Raw batch object; carries ``results_url`` once ended."""
        response = await self._request("GET", f"{BATCHES_PATH}/{batch_id}", batch_id)
        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamError(f"Malformed status response for batch {batch_id}") from e
        if not isinstance(payload, dict) or "id" not in payload:
            raise UpstreamError(f"Malformed status response for batch {batch_id}")
        return payload

    async def fetch_results(self, batch_id: str, results_url: Optional[str] = None) -> List[BatchResult]:
        url = results_url or f"{BATCHES_PATH}/{batch_id}/results"
        response = await self._request("GET", url, batch_id)
        return parse_results_jsonl(response.text)

    async def cancel_batch(self, batch_id: str) -> BatchStatus:
        response = await self._request("POST", f"{BATCHES_PATH}/{batch_id}/cancel", batch_id)
        try:
            return parse_batch_status(response.json())
        except (KeyError, TypeError, ValueError) as e:
            raise UpstreamError(f"Malformed cancel response for batch {batch_id}: {e}") from e

    async def _request(self, method: str, url: str, batch_id: str) -> httpx.Response:
        try:
            response = await self.client.request(method, url)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            if status_code == 404:
                raise BatchNotFoundError(batch_id) from e
            logger.error(
                "Batch API error",
                method=method,
                batch_id=batch_id,
                status_code=status_code,
            )
            raise UpstreamError(
                f"Batch API returned HTTP {status_code} for batch {batch_id}",
                upstream_status=status_code,
            ) from e
        except httpx.RequestError as e:
            logger.error("Batch API transport error", method=method, batch_id=batch_id, error=str(e))
            raise UpstreamError(f"Batch API request failed: {e}") from e

    async def aclose(self) -> None:
        await self.client.aclose()
