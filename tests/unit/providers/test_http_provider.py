"""
Unit tests for HttpJsonProvider status mapping, using httpx.MockTransport.
"""

import json

import httpx
import pytest

from enrichment_engine.coordinator import Credential, Record, ResultStatus
from enrichment_engine.errors import (
    AuthFailed,
    PermanentError,
    RateLimited,
    RecordNotFound,
    TransientError,
)
from enrichment_engine.providers import HttpJsonProvider

URL = "https://api.example.test/v2/enrich"
CRED = Credential(id="api1", secret="secret-token-0001")


def _provider(handler, **kwargs):
    return HttpJsonProvider(URL, transport=httpx.MockTransport(handler), **kwargs)


@pytest.mark.asyncio
async def test_success_projects_fields_and_sends_credential():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["key"] = request.headers["x-api-key"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200, json={"found": True, "email": "ada@acme.io", "company": {"name": "Acme"}}
        )

    async with _provider(
        handler, body_field="person_linkedin_url", output_fields=["email", "company.name", "phone"]
    ) as provider:
        result = await provider.enrich(Record("https://www.linkedin.com/in/ada"), CRED)

    assert seen["key"] == "secret-token-0001"
    assert seen["body"] == {"person_linkedin_url": "https://www.linkedin.com/in/ada"}
    assert result.status is ResultStatus.SUCCESS
    assert dict(result.fields) == {"email": "ada@acme.io", "company.name": "Acme", "phone": None}


@pytest.mark.asyncio
async def test_without_output_fields_keeps_top_level_scalars():
    def handler(request):
        return httpx.Response(200, json={"email": "a@b.co", "score": 3, "nested": {"x": 1}})

    async with _provider(handler) as provider:
        result = await provider.enrich(Record("k"), CRED)
    assert dict(result.fields) == {"email": "a@b.co", "score": 3}


@pytest.mark.asyncio
async def test_found_false_is_not_found():
    def handler(request):
        return httpx.Response(200, json={"found": False})

    async with _provider(handler) as provider:
        with pytest.raises(RecordNotFound):
            await provider.enrich(Record("k"), CRED)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, exc_type",
    [
        (401, AuthFailed),
        (403, AuthFailed),
        (404, RecordNotFound),
        (400, PermanentError),
        (422, PermanentError),
        (500, TransientError),
        (503, TransientError),
    ],
)
async def test_status_mapping(status, exc_type):
    def handler(request):
        return httpx.Response(status, json={"message": "provider says no"})

    async with _provider(handler) as provider:
        with pytest.raises(exc_type) as ei:
            await provider.enrich(Record("k"), CRED)
    assert f"HTTP {status}" in str(ei.value)
    assert "provider says no" in str(ei.value)


@pytest.mark.asyncio
async def test_rate_limited_with_retry_after():
    def handler(request):
        return httpx.Response(429, headers={"Retry-After": "2"}, text="Too Many Requests")

    async with _provider(handler) as provider:
        with pytest.raises(RateLimited) as ei:
            await provider.enrich(Record("k"), CRED)
    assert ei.value.retry_after == 2.0


@pytest.mark.asyncio
async def test_transport_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with _provider(handler) as provider:
        with pytest.raises(TransientError):
            await provider.enrich(Record("k"), CRED)


@pytest.mark.asyncio
async def test_verify():
    def handler(request):
        if request.headers["x-api-key"] == "good":
            return httpx.Response(200, json={"remaining_credits": 10})
        return httpx.Response(401)

    async with _provider(handler, verify_url="https://api.example.test/key-info") as provider:
        assert await provider.verify(Credential(id="a", secret="good")) is True
        assert await provider.verify(Credential(id="b", secret="bad")) is False

    async with _provider(handler) as provider:
        assert await provider.verify(Credential(id="b", secret="bad")) is True
