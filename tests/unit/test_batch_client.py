"""Unit tests for the downstream batch API client and its payload parsing."""

import json

import httpx
import pytest

from apps.admission_router.core.batch_client import (
    AnthropicBatchClient,
    build_request_params,
    map_processing_status,
    parse_batch_status,
    parse_result_record,
    parse_results_jsonl,
)
from libs.contracts.batch import BatchRequest, BatchState
from libs.utils.exceptions import BatchNotFoundError, SubmissionFailedError, UpstreamError
from tests._helpers.batch_api import (
    BATCH_API_URL,
    ended_payload,
    errored_record,
    succeeded_record,
)


class TestStatusMapping:
    """Test upstream status normalization."""

    @pytest.mark.parametrize("raw,counts,expected", [
        ("in_progress", {}, BatchState.IN_PROGRESS),
        ("canceling", {}, BatchState.IN_PROGRESS),
        ("ended", {"succeeded": 1, "errored": 5}, BatchState.COMPLETED),
        ("ended", {"errored": 2}, BatchState.FAILED),
        ("ended", {"expired": 1, "canceled": 1}, BatchState.FAILED),
        ("ended", {"canceled": 3}, BatchState.CANCELED),
        ("ended", {}, BatchState.COMPLETED),
        ("pending", {}, BatchState.PENDING),
        ("something_new", {}, BatchState.PENDING),
        (None, {}, BatchState.PENDING),
    ])
    def test_mapping(self, raw, counts, expected):
        assert map_processing_status(raw, counts) == expected

    def test_parse_counts(self):
        status = parse_batch_status(ended_payload("batch_9", succeeded=3, errored=1, canceled=1, expired=2))
        assert status.batch_id == "batch_9"
        assert status.status == BatchState.COMPLETED
        assert status.total_requests == 7
        assert status.completed_requests == 3
        assert status.failed_requests == 4
        assert status.expires_at is not None

    def test_parse_generic_shape(self):
        status = parse_batch_status({"id": "batch_1", "status": "pending", "counts": {"processing": 3}})
        assert status.status == BatchState.PENDING
        assert status.total_requests == 3

    def test_default_created_at_is_timezone_aware(self):
        status = parse_batch_status({"id": "batch_1", "status": "pending"})
        assert status.created_at.tzinfo is not None


class TestResultParsing:
    """Test result record parsing."""

    def test_succeeded_record(self):
        result = parse_result_record(succeeded_record("req_1", "hello", 12, 7))
        assert result.success
        assert result.request_id == "req_1"
        assert result.content == "hello"
        assert result.usage.input_tokens == 12
        assert result.usage.output_tokens == 7

    def test_succeeded_record_with_flat_content(self):
        result = parse_result_record({
            "custom_id": "req_2",
            "result": {"type": "succeeded", "content": [{"type": "text", "text": "flat"}]},
        })
        assert result.success
        assert result.content == "flat"
        assert result.usage is None

    def test_errored_record(self):
        result = parse_result_record(errored_record("req_3", "overloaded"))
        assert not result.success
        assert result.error == "overloaded"

    @pytest.mark.parametrize("result_type", ["expired", "canceled"])
    def test_other_types_use_type_as_error(self, result_type):
        result = parse_result_record({"custom_id": "req_4", "result": {"type": result_type}})
        assert not result.success
        assert result.error == result_type

    def test_jsonl_skips_blank_and_invalid_lines(self):
        text = "\n".join([
            json.dumps(succeeded_record("req_1")),
            "",
            "{not json",
            json.dumps(errored_record("req_2")),
            "[1, 2]",
        ])
        results = parse_results_jsonl(text)
        assert [r.request_id for r in results] == ["req_1", "req_2"]


class TestRequestParams:
    """Test submission payload entries."""

    def test_defaults(self):
        request = BatchRequest(model="claude-haiku-4.5", user_message="hi", id="req_1")
        assert build_request_params(request) == {
            "custom_id": "req_1",
            "params": {
                "model": "claude-haiku-4.5",
                "max_tokens": 1024,
                "messages": [{"role": "user", "content": "hi"}],
            },
        }

    def test_system_prompt_and_max_tokens(self):
        request = BatchRequest(
            model="claude-sonnet-4", user_message="hi", system_prompt="be brief", max_tokens=64, id="req_2"
        )
        params = build_request_params(request, default_max_tokens=2048)["params"]
        assert params["system"] == "be brief"
        assert params["max_tokens"] == 64


def client_for(handler) -> AnthropicBatchClient:
    return AnthropicBatchClient(
        api_key="secret",
        base_url=BATCH_API_URL,
        anthropic_version="2023-06-01",
        transport=httpx.MockTransport(handler),
    )


class TestAnthropicBatchClient:
    """Test HTTP behaviour against a mock transport."""

    @pytest.mark.asyncio
    async def test_sends_auth_headers(self):
        seen = {}

        def handler(request):
            seen.update(request.headers)
            return httpx.Response(200, json={"id": "batch_1", "processing_status": "in_progress"})

        client = client_for(handler)
        status = await client.create_batch([BatchRequest(model="m", user_message="u", id="req_1")])
        await client.aclose()

        assert status.status == BatchState.IN_PROGRESS
        assert seen["x-api-key"] == "secret"
        assert seen["anthropic-version"] == "2023-06-01"

    @pytest.mark.asyncio
    async def test_submission_http_error(self):
        client = client_for(lambda request: httpx.Response(529, json={"error": {"message": "overloaded"}}))
        with pytest.raises(SubmissionFailedError):
            await client.create_batch([BatchRequest(model="m", user_message="u", id="req_1")])
        await client.aclose()

    @pytest.mark.asyncio
    async def test_submission_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = client_for(handler)
        with pytest.raises(SubmissionFailedError):
            await client.create_batch([BatchRequest(model="m", user_message="u", id="req_1")])
        await client.aclose()

    @pytest.mark.asyncio
    async def test_not_found(self):
        client = client_for(lambda request: httpx.Response(404, json={}))
        with pytest.raises(BatchNotFoundError) as exc_info:
            await client.retrieve_batch("batch_x")
        assert exc_info.value.batch_id == "batch_x"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_server_error_is_upstream_error(self):
        client = client_for(lambda request: httpx.Response(503, text="unavailable"))
        with pytest.raises(UpstreamError) as exc_info:
            await client.retrieve_batch("batch_1")
        assert exc_info.value.upstream_status == 503
        await client.aclose()

    @pytest.mark.asyncio
    async def test_malformed_status_body(self):
        client = client_for(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(UpstreamError):
            await client.retrieve_batch("batch_1")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_results_follow_results_url(self):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            return httpx.Response(200, text=json.dumps(succeeded_record("req_1")) + "\n")

        client = client_for(handler)
        results = await client.fetch_results("batch_1", f"{BATCH_API_URL}/files/batch_1/results")
        await client.aclose()

        assert paths == ["/files/batch_1/results"]
        assert results[0].request_id == "req_1"

    @pytest.mark.asyncio
    async def test_cancel(self):
        def handler(request):
            assert request.url.path == "/v1/messages/batches/batch_1/cancel"
            return httpx.Response(200, json={"id": "batch_1", "processing_status": "canceling"})

        client = client_for(handler)
        status = await client.cancel_batch("batch_1")
        await client.aclose()
        assert status.status == BatchState.IN_PROGRESS
