"""
Tests for the external endpoint client and its failure classification.
"""

import httpx
import pytest

from src.core.config import EndpointOptions
from src.core.delivery import ExternalEndpointClient, is_retryable_status
from src.core.exceptions import DeliveryError
from src.core.messaging import EndpointTransport


ENDPOINT = "https://hl7.example.test/api/SubmitHL7Message"


def make_client(handler, api_key: str = "") -> ExternalEndpointClient:
    options = EndpointOptions(url=ENDPOINT, timeout_seconds=2, api_key=api_key)
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ExternalEndpointClient(options, client=http)


class TestClassification:

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504])
    def test_retryable(self, status):
        assert is_retryable_status(status) is True

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 409, 422])
    def test_permanent(self, status):
        assert is_retryable_status(status) is False


class TestPostMessage:

    @pytest.mark.asyncio
    async def test_success(self, hl7_message):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = request.content.decode("utf-8")
            seen["headers"] = request.headers
            return httpx.Response(202)

        client = make_client(handler, api_key="secret")
        result = await client.post_message(hl7_message, correlation_id="corr-1")

        assert result.success is True
        assert result.status_code == 202
        assert seen["url"] == ENDPOINT
        assert seen["body"] == hl7_message
        assert seen["headers"]["x-api-key"] == "secret"
        assert seen["headers"]["x-correlation-id"] == "corr-1"
        assert seen["headers"]["content-type"].startswith("text/plain")

    @pytest.mark.asyncio
    async def test_no_api_key_header_when_unset(self):
        seen = {}

        def handler(request):
            seen["headers"] = request.headers
            return httpx.Response(200)

        await make_client(handler).post_message("MSH|1")

        assert "x-api-key" not in seen["headers"]

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        client = make_client(lambda request: httpx.Response(503, text="busy"))

        result = await client.post_message("MSH|1")

        assert result.success is False
        assert result.retryable is True
        assert result.status_code == 503

    @pytest.mark.asyncio
    async def test_client_error_is_permanent(self):
        client = make_client(lambda request: httpx.Response(400, text="bad segment"))

        result = await client.post_message("MSH|1")

        assert result.success is False
        assert result.retryable is False
        assert result.status_code == 400

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        result = await make_client(handler).post_message("MSH|1")

        assert result.success is False
        assert result.retryable is True
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_connection_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        result = await make_client(handler).post_message("MSH|1")

        assert result.success is False
        assert result.retryable is True

    @pytest.mark.asyncio
    async def test_blank_message_is_permanent_failure(self):
        calls = []
        client = make_client(lambda request: calls.append(request) or httpx.Response(200))

        result = await client.post_message("   ", correlation_id="corr-1")

        assert result.success is False
        assert result.retryable is False
        assert calls == []


class TestEndpointTransport:

    @pytest.mark.asyncio
    async def test_failure_raises_delivery_error(self):
        transport = EndpointTransport(make_client(lambda request: httpx.Response(422)))

        with pytest.raises(DeliveryError) as exc_info:
            await transport.send("MSH|1", "corr-1")

        assert exc_info.value.retryable is False
        assert exc_info.value.status_code == 422
        assert exc_info.value.correlation_id == "corr-1"

    @pytest.mark.asyncio
    async def test_success_returns_quietly(self):
        transport = EndpointTransport(make_client(lambda request: httpx.Response(200)))

        await transport.send("MSH|1", "corr-1")
