"""Tests for the buffered proxy path: auth, admission, forwarding and recording."""

import asyncio
import json

import httpx
import pytest
from httpx import AsyncClient
from sqlmodel import select

from app.core import diagnostics
from app.models.usage import RequestLog, UsageDaily
from app.services import recorder

ADMIN_HEADERS = {"Authorization": "Bearer test-admin-token"}
CHAT_PATH = "/openai/deployments/gpt4o/chat/completions?api-version=2024-06-01"


async def _create_tenant(client: AsyncClient, slug: str, **fields) -> dict:
    resp = await client.post("/v1/tenants", headers=ADMIN_HEADERS, json={
        "name": f"{slug} Co", "slug": slug, **fields,
    })
    assert resp.status_code == 201, resp.text
    return resp.json()


async def _chat(client: AsyncClient, api_key: str, body: dict | None = None, **headers):
    return await client.post(
        CHAT_PATH,
        headers={"api-key": api_key, **headers},
        json=body or {"model": "gpt-4o", "messages": [{"role": "user", "content": "Hi"}]},
    )


def chat_completion(model: str = "gpt-4o-2024-08-06", prompt: int = 100, completion: int = 50) -> dict:
    return {
        "model": model,
        "choices": [{"index": 0, "message": {"role": "assistant", "content": "Hello"}}],
        "usage": {"prompt_tokens": prompt, "completion_tokens": completion},
    }


async def _logs(session) -> list[RequestLog]:
    return list((await session.execute(select(RequestLog))).scalars().all())


@pytest.mark.asyncio
async def test_buffered_request_is_forwarded_and_recorded(client, session, upstream):
    created = await _create_tenant(client, "acme")

    resp = await _chat(client, created["api_key"])
    await recorder.drain()

    assert resp.status_code == 200
    assert resp.json()["choices"][0]["message"]["content"] == "Hello"

    sent = upstream.requests[0]
    assert sent.url.path == "/openai/deployments/gpt4o/chat/completions"
    assert sent.url.params["api-version"] == "2024-06-01"
    assert sent.headers["api-key"] == "upstream-secret"

    [log] = await _logs(session)
    assert log.model == "gpt-4o-2024-08-06"
    assert log.deployment == "gpt4o"
    assert log.endpoint == "chat/completions"
    assert (log.prompt_tokens, log.completion_tokens, log.total_tokens) == (100, 50, 150)
    # gpt-4o at $2.50 / $10 per million tokens
    assert log.cost_usd == pytest.approx(100 * 2.5e-6 + 50 * 10e-6)
    assert log.status_code == 200
    assert log.is_stream is False
    assert log.used_fallback_pricing is False
    assert log.total_ms >= log.upstream_ms

    [row] = (await session.execute(select(UsageDaily))).scalars().all()
    assert row.user_id == "_anonymous"
    assert row.request_count == 1
    assert row.total_cost == pytest.approx(log.cost_usd)


@pytest.mark.asyncio
async def test_unknown_key_is_401(client, upstream):
    await _create_tenant(client, "acme")
    resp = await _chat(client, "tb-not-a-real-key")
    assert resp.status_code == 401
    assert resp.json()["error"] == "invalid_api_key"
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_missing_key_is_401(client):
    resp = await client.post(CHAT_PATH, json={"model": "gpt-4o"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_deactivated_tenant_is_403_not_401(client, upstream):
    created = await _create_tenant(client, "acme")
    resp = await client.delete(f"/v1/tenants/{created['tenant']['id']}", headers=ADMIN_HEADERS)
    assert resp.status_code == 204

    resp = await _chat(client, created["api_key"])
    assert resp.status_code == 403
    assert resp.json()["error"] == "tenant_deactivated"
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_rotated_key_stops_working(client):
    created = await _create_tenant(client, "acme")
    resp = await client.post(
        f"/v1/tenants/{created['tenant']['id']}/rotate-key", headers=ADMIN_HEADERS
    )
    new_key = resp.json()["api_key"]

    assert (await _chat(client, created["api_key"])).status_code == 401
    assert (await _chat(client, new_key)).status_code == 200


@pytest.mark.asyncio
async def test_budget_exceeded_after_crossing_request(client, session, upstream):
    """$5 daily cap; each call costs $3. Two succeed, the third is denied."""
    created = await _create_tenant(client, "acme", budget_daily=5.0)
    # 400k prompt + 200k completion tokens of gpt-4o: $1 + $2
    upstream.handler = lambda _: httpx.Response(
        200, json=chat_completion("gpt-4o", prompt=400_000, completion=200_000)
    )

    for _ in range(2):
        resp = await _chat(client, created["api_key"])
        assert resp.status_code == 200
        await recorder.drain()

    resp = await _chat(client, created["api_key"])
    body = resp.json()
    assert resp.status_code == 429
    assert body["error"] == "budget_exceeded"
    assert body["period"] == "daily"
    assert body["scope"] == "project"
    assert body["limit"] == 5.0
    assert body["used"] == pytest.approx(6.0)
    assert len(upstream.requests) == 2
    assert len(await _logs(session)) == 2
    assert diagnostics.recording_failures == 0


@pytest.mark.asyncio
async def test_unpriced_model_rejected_before_upstream(client, upstream):
    created = await _create_tenant(client, "acme")
    resp = await _chat(client, created["api_key"], {"model": "mystery-model", "messages": []})

    assert resp.status_code == 422
    assert resp.json() == {
        "error": "model_not_priced",
        "message": "No pricing is known for model 'mystery-model'",
        "model": "mystery-model",
    }
    assert upstream.requests == []
    assert diagnostics.unknown_models["mystery-model"] == 1


@pytest.mark.asyncio
async def test_unknown_response_model_recorded_at_zero_and_flagged(client, session, upstream):
    created = await _create_tenant(client, "acme")
    upstream.handler = lambda _: httpx.Response(200, json=chat_completion("mystery-2"))

    # No model in the request body, so nothing to pre-validate
    resp = await _chat(client, created["api_key"], {"messages": []})
    await recorder.drain()

    assert resp.status_code == 200
    [log] = await _logs(session)
    assert log.cost_usd == 0.0
    assert log.used_fallback_pricing is True
    assert diagnostics.unknown_models["mystery-2"] == 1


@pytest.mark.asyncio
async def test_upstream_unreachable_is_502(client, upstream):
    created = await _create_tenant(client, "acme")

    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    upstream.handler = refuse
    resp = await _chat(client, created["api_key"])
    assert resp.status_code == 502
    assert resp.json()["error"] == "upstream_unreachable"


@pytest.mark.asyncio
async def test_upstream_errors_pass_through(client, session, upstream):
    created = await _create_tenant(client, "acme")
    error = {"error": {"code": "content_filter", "message": "Filtered"}}
    upstream.handler = lambda _: httpx.Response(400, json=error, headers={"x-ms-region": "eu"})

    resp = await _chat(client, created["api_key"])
    await recorder.drain()

    assert resp.status_code == 400
    assert resp.json() == error
    assert resp.headers["x-ms-region"] == "eu"
    [log] = await _logs(session)
    assert log.status_code == 400
    assert log.cost_usd == 0.0
    assert log.used_fallback_pricing is False
    # Error responses without usage are not extraction failures
    assert diagnostics.extraction_failures == 0


@pytest.mark.asyncio
async def test_success_without_usage_is_recorded_unpriced(client, session, upstream):
    created = await _create_tenant(client, "acme")
    upstream.handler = lambda _: httpx.Response(200, json={"model": "gpt-4o", "choices": []})

    resp = await _chat(client, created["api_key"])
    await recorder.drain()

    assert resp.status_code == 200
    assert diagnostics.extraction_failures == 1
    [log] = await _logs(session)
    assert log.prompt_tokens == 0
    assert log.cost_usd == 0.0
    assert log.used_fallback_pricing is True


@pytest.mark.asyncio
async def test_non_json_body_forwarded_verbatim(client, upstream):
    created = await _create_tenant(client, "acme")
    resp = await client.post(
        CHAT_PATH, headers={"api-key": created["api_key"]}, content=b"raw-bytes"
    )
    assert resp.status_code == 200
    assert upstream.requests[0].content == b"raw-bytes"


@pytest.mark.asyncio
async def test_user_header_attributes_usage(client, session):
    created = await _create_tenant(client, "acme")
    await _chat(client, created["api_key"], **{"X-Tollbooth-User": "  alice  "})
    await recorder.drain()

    [log] = await _logs(session)
    assert log.user_id == "alice"
    [row] = (await session.execute(select(UsageDaily))).scalars().all()
    assert row.user_id == "alice"


@pytest.mark.asyncio
async def test_tenant_endpoint_is_used(client, upstream):
    created = await _create_tenant(
        client, "acme", endpoint_url="https://acme.openai.test", endpoint_key="acme-key"
    )
    await _chat(client, created["api_key"])
    sent = upstream.requests[0]
    assert sent.url.host == "acme.openai.test"
    assert sent.headers["api-key"] == "acme-key"


@pytest.mark.asyncio
async def test_concurrent_requests_all_recorded(client, session):
    created = await _create_tenant(client, "acme")
    responses = await asyncio.gather(*(_chat(client, created["api_key"]) for _ in range(10)))
    await recorder.drain()

    assert all(r.status_code == 200 for r in responses)
    [row] = (await session.execute(select(UsageDaily))).scalars().all()
    assert row.request_count == 10
    assert row.prompt_tokens == 1000
    assert len(await _logs(session)) == 10
    assert json.loads(responses[0].content)["usage"]["total_tokens"] == 150
