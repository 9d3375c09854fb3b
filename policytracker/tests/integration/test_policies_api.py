from __future__ import annotations

from datetime import date, timedelta

import pytest
from sqlalchemy import select

from policytracker.domain.models import AuditEvent
from policytracker.persistence.db import SessionLocal
from policytracker.tests.utils.auth import (
    auth_headers,
    create_subscription,
    make_policy,
    new_user_id,
    seed_policies,
)


def _policy_payload(**overrides) -> dict:
    payload = {
        "client_name": "Ravi Kumar",
        "policy_number": "MOT-2026-0001",
        "insurance_type": "Vehicle Insurance",
        "company_name": "HDFC Ergo",
        "vehicle_number": "MH12AB1234",
        "policy_active_date": "2026-01-01",
        "policy_expiry_date": "2026-12-31",
        "net_premium": 12000,
        "commission_percentage": 12.5,
    }
    payload.update(overrides)
    return payload


@pytest.mark.asyncio
async def test_policy_crud_round_trip(client) -> None:
    headers = auth_headers(new_user_id())

    created = await client.post("/v1/policies", json=_policy_payload(), headers=headers)
    assert created.status_code == 201
    policy = created.json()["data"]
    assert policy["status"] == "active"

    listed = await client.get("/v1/policies", params={"q": "ravi"}, headers=headers)
    page = listed.json()["data"]
    assert page["total"] == 1
    assert page["items"][0]["id"] == policy["id"]

    updated = await client.patch(
        f"/v1/policies/{policy['id']}", json={"net_premium": 15000}, headers=headers
    )
    assert updated.status_code == 200
    assert updated.json()["data"]["net_premium"] == 15000

    deleted = await client.delete(f"/v1/policies/{policy['id']}", headers=headers)
    assert deleted.status_code == 204
    missing = await client.get(f"/v1/policies/{policy['id']}", headers=headers)
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_policies_are_scoped_to_owner(client) -> None:
    owner = new_user_id()
    created = await client.post("/v1/policies", json=_policy_payload(), headers=auth_headers(owner))
    policy_id = created.json()["data"]["id"]

    other = await client.get(f"/v1/policies/{policy_id}", headers=auth_headers(new_user_id()))
    assert other.status_code == 404


@pytest.mark.asyncio
async def test_expiry_before_active_date_is_rejected(client) -> None:
    response = await client.post(
        "/v1/policies",
        json=_policy_payload(policy_active_date="2026-05-01", policy_expiry_date="2026-04-01"),
        headers=auth_headers(new_user_id()),
    )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_free_tier_policy_limit_returns_402(client) -> None:
    user_id = new_user_id()
    expiry = date.today() + timedelta(days=200)
    await seed_policies([make_policy(user_id, expiry=expiry) for _ in range(200)])

    response = await client.post("/v1/policies", json=_policy_payload(), headers=auth_headers(user_id))

    assert response.status_code == 402
    error = response.json()["error"]
    assert error["code"] == "QUOTA_EXCEEDED"
    assert error["details"] == {"metric": "policies", "limit": 200, "used": 200, "tier": "free"}
    async with SessionLocal() as session:
        events = (await session.execute(select(AuditEvent.event_type))).scalars().all()
    assert "usage.policy.blocked" in events


@pytest.mark.asyncio
async def test_pro_tier_is_not_capped(client) -> None:
    user_id = new_user_id()
    await create_subscription(user_id)
    expiry = date.today() + timedelta(days=200)
    await seed_policies([make_policy(user_id, expiry=expiry) for _ in range(200)])

    response = await client.post("/v1/policies", json=_policy_payload(), headers=auth_headers(user_id))

    assert response.status_code == 201


@pytest.mark.asyncio
async def test_client_crud(client) -> None:
    headers = auth_headers(new_user_id())

    created = await client.post(
        "/v1/clients", json={"name": "Sunita Rao", "phone": "9000000001"}, headers=headers
    )
    assert created.status_code == 201
    client_id = created.json()["data"]["id"]

    listed = await client.get("/v1/clients", headers=headers)
    assert listed.json()["data"]["total"] == 1

    updated = await client.patch(f"/v1/clients/{client_id}", json={"address": "Pune"}, headers=headers)
    assert updated.json()["data"]["address"] == "Pune"

    deleted = await client.delete(f"/v1/clients/{client_id}", headers=headers)
    assert deleted.status_code == 204


def _error_fields(response) -> list[str]:
    return [error["loc"][-1] for error in response.json()["error"]["details"]["errors"]]


@pytest.mark.asyncio
async def test_policy_fields_are_normalized_on_create(client) -> None:
    response = await client.post(
        "/v1/policies",
        json=_policy_payload(
            policy_number="  mot-2026-0042 ",
            client_name="  Ravi Kumar ",
            vehicle_number="mh 12-ab 1234",
            contact_number="98765-43210",
            company_name="   ",
        ),
        headers=auth_headers(new_user_id()),
    )

    assert response.status_code == 201
    policy = response.json()["data"]
    assert policy["policy_number"] == "MOT-2026-0042"
    assert policy["client_name"] == "Ravi Kumar"
    assert policy["vehicle_number"] == "MH12AB1234"
    assert policy["contact_number"] == "9876543210"
    assert policy["company_name"] is None


@pytest.mark.asyncio
async def test_insurance_type_defaults_to_vehicle(client) -> None:
    payload = _policy_payload()
    del payload["insurance_type"]

    response = await client.post("/v1/policies", json=payload, headers=auth_headers(new_user_id()))

    assert response.status_code == 201
    assert response.json()["data"]["insurance_type"] == "Vehicle Insurance"


@pytest.mark.asyncio
async def test_invalid_policy_fields_are_rejected(client) -> None:
    response = await client.post(
        "/v1/policies",
        json=_policy_payload(
            insurance_type="Motor",
            contact_number="12345",
            policy_number="P" * 101,
            vehicle_number="X" * 21,
        ),
        headers=auth_headers(new_user_id()),
    )

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"
    assert set(_error_fields(response)) == {"insurance_type", "contact_number", "policy_number", "vehicle_number"}


@pytest.mark.asyncio
async def test_null_on_required_policy_field_is_rejected(client) -> None:
    headers = auth_headers(new_user_id())
    created = await client.post("/v1/policies", json=_policy_payload(), headers=headers)
    policy_id = created.json()["data"]["id"]

    for field in ("client_name", "policy_number", "insurance_type", "policy_expiry_date", "status"):
        response = await client.patch(f"/v1/policies/{policy_id}", json={field: None}, headers=headers)
        assert response.status_code == 422, field
        assert _error_fields(response) == [field]

    unchanged = await client.get(f"/v1/policies/{policy_id}", headers=headers)
    assert unchanged.json()["data"]["client_name"] == "Ravi Kumar"


@pytest.mark.asyncio
async def test_optional_policy_field_can_be_cleared(client) -> None:
    headers = auth_headers(new_user_id())
    created = await client.post("/v1/policies", json=_policy_payload(), headers=headers)
    policy_id = created.json()["data"]["id"]

    response = await client.patch(f"/v1/policies/{policy_id}", json={"vehicle_number": None}, headers=headers)

    assert response.status_code == 200
    assert response.json()["data"]["vehicle_number"] is None


@pytest.mark.asyncio
async def test_client_fields_are_validated(client) -> None:
    headers = auth_headers(new_user_id())

    invalid = await client.post(
        "/v1/clients",
        json={"name": " ", "email": "not-an-email", "phone": "98765", "address": "a" * 501},
        headers=headers,
    )
    assert invalid.status_code == 422
    assert set(_error_fields(invalid)) == {"name", "email", "phone", "address"}

    created = await client.post(
        "/v1/clients",
        json={"name": " Sunita Rao ", "email": " sunita@example.com ", "phone": "(900) 000-0001"},
        headers=headers,
    )
    assert created.status_code == 201
    data = created.json()["data"]
    assert data["name"] == "Sunita Rao"
    assert data["email"] == "sunita@example.com"
    assert data["phone"] == "9000000001"

    nulled = await client.patch(f"/v1/clients/{data['id']}", json={"name": None}, headers=headers)
    assert nulled.status_code == 422
    assert _error_fields(nulled) == ["name"]
