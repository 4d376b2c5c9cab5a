"""Tests for registered users and personal API keys."""

import pytest
from httpx import AsyncClient
from sqlmodel import select

from app.core.config import get_settings
from app.models.usage import RequestLog
from app.services import recorder

ADMIN_HEADERS = {"Authorization": "Bearer test-admin-token"}
CHAT_PATH = "/openai/deployments/gpt4o/chat/completions"


async def _tenant(client: AsyncClient, slug: str = "acme", **fields) -> dict:
    resp = await client.post("/v1/tenants", headers=ADMIN_HEADERS, json={
        "name": f"{slug} Co", "slug": slug, "allow_user_keys": True, **fields,
    })
    return resp.json()


async def _register(client: AsyncClient, email: str) -> dict:
    resp = await client.post("/v1/users", headers=ADMIN_HEADERS, json={"email": email})
    assert resp.status_code == 201, resp.text
    return resp.json()


async def _mint(client: AsyncClient, tenant_id: str, user_id: str):
    return await client.post(
        f"/v1/tenants/{tenant_id}/users/{user_id}/keys", headers=ADMIN_HEADERS
    )


@pytest.mark.asyncio
async def test_register_derives_id_from_email(client: AsyncClient):
    user = await _register(client, "Jane.Doe@Example.com")
    assert user["id"] == "jane.doe@example.com"
    assert user["email"] == "jane.doe@example.com"


@pytest.mark.asyncio
async def test_corporate_domain_users_get_short_id(client: AsyncClient, monkeypatch):
    monkeypatch.setattr(get_settings(), "corporate_domain", "acme-corp.com")
    user = await _register(client, "jane@acme-corp.com")
    assert user["id"] == "jane"

    resp = await client.get("/v1/users/jane", headers=ADMIN_HEADERS)
    assert resp.json()["email"] == "jane@acme-corp.com"


@pytest.mark.asyncio
async def test_duplicate_registration_conflicts(client: AsyncClient):
    await _register(client, "jane@example.com")
    resp = await client.post("/v1/users", headers=ADMIN_HEADERS, json={"email": "jane@example.com"})
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_invalid_email_rejected(client: AsyncClient):
    resp = await client.post("/v1/users", headers=ADMIN_HEADERS, json={"email": "not-an-email"})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_personal_key_resolves_to_user_and_ignores_header(client: AsyncClient, session):
    tenant = await _tenant(client)
    user = await _register(client, "jane@example.com")
    key = (await _mint(client, tenant["tenant"]["id"], user["id"])).json()
    assert key["user_id"] == user["id"]

    resp = await client.post(
        CHAT_PATH,
        headers={"api-key": key["api_key"], "X-Tollbooth-User": "mallory"},
        json={"model": "gpt-4o"},
    )
    await recorder.drain()

    assert resp.status_code == 200
    [log] = (await session.execute(select(RequestLog))).scalars().all()
    assert log.user_id == "jane@example.com"


@pytest.mark.asyncio
async def test_minting_again_revokes_previous_key(client: AsyncClient):
    tenant = await _tenant(client)
    user = await _register(client, "jane@example.com")
    first = (await _mint(client, tenant["tenant"]["id"], user["id"])).json()
    second = (await _mint(client, tenant["tenant"]["id"], user["id"])).json()

    resp = await client.post(CHAT_PATH, headers={"api-key": first["api_key"]}, json={})
    assert resp.status_code == 401
    resp = await client.post(CHAT_PATH, headers={"api-key": second["api_key"]}, json={})
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_personal_keys_require_tenant_opt_in(client: AsyncClient):
    tenant = await _tenant(client, allow_user_keys=False)
    user = await _register(client, "jane@example.com")
    resp = await _mint(client, tenant["tenant"]["id"], user["id"])
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_mint_for_unknown_user_is_404(client: AsyncClient):
    tenant = await _tenant(client)
    resp = await _mint(client, tenant["tenant"]["id"], "ghost")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_revoke_personal_key(client: AsyncClient):
    tenant = await _tenant(client)
    user = await _register(client, "jane@example.com")
    key = (await _mint(client, tenant["tenant"]["id"], user["id"])).json()

    path = f"/v1/tenants/{tenant['tenant']['id']}/users/{user['id']}/keys"
    assert (await client.delete(path, headers=ADMIN_HEADERS)).status_code == 204
    assert (await client.delete(path, headers=ADMIN_HEADERS)).status_code == 404

    resp = await client.post(CHAT_PATH, headers={"api-key": key["api_key"]}, json={})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_personal_key_hits_user_ceiling(client: AsyncClient):
    tenant = await _tenant(client, default_user_budget_daily=0.0001)
    user = await _register(client, "jane@example.com")
    key = (await _mint(client, tenant["tenant"]["id"], user["id"])).json()
    headers = {"api-key": key["api_key"]}

    assert (await client.post(CHAT_PATH, headers=headers, json={})).status_code == 200
    await recorder.drain()

    resp = await client.post(CHAT_PATH, headers=headers, json={})
    assert resp.status_code == 429
    assert resp.json()["scope"] == "user"

    # The shared key is still within the (unlimited) project budget
    resp = await client.post(CHAT_PATH, headers={"api-key": tenant["api_key"]}, json={})
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_tenant_users_lists_spend_and_key_holders(client: AsyncClient):
    tenant = await _tenant(client)
    tenant_id = tenant["tenant"]["id"]
    user = await _register(client, "jane@example.com")
    await _mint(client, tenant_id, user["id"])

    await client.post(
        CHAT_PATH,
        headers={"api-key": tenant["api_key"], "X-Tollbooth-User": "bob"},
        json={},
    )
    await recorder.drain()

    resp = await client.get(f"/v1/tenants/{tenant_id}/users", headers=ADMIN_HEADERS)
    rows = {r["user_id"]: r for r in resp.json()}
    assert rows["bob"]["requests_today"] == 1
    assert rows["bob"]["has_personal_key"] is False
    assert rows["jane@example.com"]["cost_today"] == 0.0
    assert rows["jane@example.com"]["has_personal_key"] is True
    assert list(rows) == ["bob", "jane@example.com"]
