from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from policytracker.tests.utils.auth import auth_headers, make_policy, new_user_id, seed_policies


@pytest.mark.asyncio
async def test_health_is_public_and_enveloped(client) -> None:
    response = await client.get("/v1/health", headers={"X-Request-Id": "req-123"})

    assert response.status_code == 200
    body = response.json()
    assert body["data"]["status"] == "ok"
    assert body["meta"] == {"request_id": "req-123", "api_version": "v1"}
    assert response.headers["X-Request-Id"] == "req-123"


@pytest.mark.asyncio
async def test_readiness_checks_database(client) -> None:
    response = await client.get("/v1/health/ready")

    assert response.json()["data"] == {"status": "ok", "database": "ok"}


@pytest.mark.asyncio
async def test_missing_token_is_unauthorized(client) -> None:
    response = await client.get("/v1/usage")

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_expired_token_is_unauthorized(client) -> None:
    headers = auth_headers(new_user_id(), expires_in=timedelta(minutes=-5))

    response = await client.get("/v1/usage", headers=headers)

    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Session expired"


@pytest.mark.asyncio
async def test_tampered_token_is_unauthorized(client) -> None:
    headers = auth_headers(new_user_id())
    headers["Authorization"] = headers["Authorization"][:-4] + "abcd"

    response = await client.get("/v1/usage", headers=headers)

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_subscription_status_for_free_user(client) -> None:
    response = await client.get("/v1/subscription", headers=auth_headers(new_user_id()))

    assert response.json()["data"] == {"subscribed": False, "tier": None, "end_date": None}


@pytest.mark.asyncio
async def test_dashboard_aggregates_owner_policies(client) -> None:
    user_id = new_user_id()
    today = datetime.now(timezone.utc).date()
    await seed_policies(
        [
            make_policy(user_id, expiry=today + timedelta(days=3), company_name="HDFC ERGO GENERAL INSURANCE"),
            make_policy(user_id, expiry=today + timedelta(days=120), company_name="hdfc ergo"),
            make_policy(user_id, expiry=today - timedelta(days=10), company_name="Tata AIG"),
            make_policy(new_user_id(), expiry=today + timedelta(days=1)),
        ]
    )

    response = await client.get("/v1/dashboard", headers=auth_headers(user_id))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["stats"]["total"] == 3
    assert data["stats"]["expired"] == 1
    assert data["renewals"]["count"] == 1
    assert [entry["days_remaining"] for entry in data["follow_ups"]] == [3]
    companies = {entry["company"]: entry for entry in data["commission"]["by_company"]}
    assert companies["HDFC Ergo"]["count"] == 2
    assert data["commission"]["lifetime"] == pytest.approx(3000)
    assert data["usage"]["policy_count"] == 3


@pytest.mark.asyncio
async def test_openapi_marks_bearer_auth(client) -> None:
    response = await client.get("/v1/openapi.json")

    schema = response.json()
    assert "BearerAuth" in schema["components"]["securitySchemes"]
    assert "security" not in schema["paths"]["/v1/health"]["get"]
    assert schema["paths"]["/v1/usage"]["get"]["security"] == [{"BearerAuth": []}]
