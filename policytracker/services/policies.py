from __future__ import annotations

from datetime import date
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from policytracker.core.errors import DatabaseError
from policytracker.domain.models import Client, Policy


logger = logging.getLogger(__name__)

POLICY_MUTABLE_FIELDS = frozenset(
    {
        "client_name",
        "policy_number",
        "insurance_type",
        "company_name",
        "contact_number",
        "vehicle_number",
        "policy_active_date",
        "policy_expiry_date",
        "net_premium",
        "commission_percentage",
        "status",
        "document_url",
    }
)
CLIENT_MUTABLE_FIELDS = frozenset({"name", "phone", "email", "address"})


def policy_to_dict(policy: Policy) -> dict[str, Any]:
    return {
        "id": policy.id,
        "client_name": policy.client_name,
        "policy_number": policy.policy_number,
        "insurance_type": policy.insurance_type,
        "company_name": policy.company_name,
        "contact_number": policy.contact_number,
        "vehicle_number": policy.vehicle_number,
        "policy_active_date": policy.policy_active_date.isoformat(),
        "policy_expiry_date": policy.policy_expiry_date.isoformat(),
        "net_premium": policy.net_premium,
        "commission_percentage": policy.commission_percentage,
        "status": policy.status,
        "document_url": policy.document_url,
        "created_at": policy.created_at.isoformat() if policy.created_at else None,
        "updated_at": policy.updated_at.isoformat() if policy.updated_at else None,
    }


def client_to_dict(client: Client) -> dict[str, Any]:
    return {
        "id": client.id,
        "name": client.name,
        "phone": client.phone,
        "email": client.email,
        "address": client.address,
        "created_at": client.created_at.isoformat() if client.created_at else None,
    }


async def _commit(session: AsyncSession, event: str, **context: Any) -> None:
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        details = " ".join(f"{key}={value}" for key, value in context.items())
        logger.error("%s_failed %s", event, details, exc_info=exc)
        raise DatabaseError(f"{event} failed") from exc


async def list_policies(
    session: AsyncSession,
    user_id: str,
    *,
    search: str | None = None,
    status: str | None = None,
    expiring_from: date | None = None,
    expiring_to: date | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Policy], int]:
    """Return one page of the user's policies, newest first, with the total count."""
    filters = [Policy.user_id == user_id]
    if search:
        pattern = f"%{search.strip()}%"
        filters.append(
            or_(
                Policy.client_name.ilike(pattern),
                Policy.policy_number.ilike(pattern),
                Policy.vehicle_number.ilike(pattern),
                Policy.company_name.ilike(pattern),
            )
        )
    if status:
        filters.append(Policy.status == status)
    if expiring_from is not None:
        filters.append(Policy.policy_expiry_date >= expiring_from)
    if expiring_to is not None:
        filters.append(Policy.policy_expiry_date <= expiring_to)

    total = await session.scalar(select(func.count()).select_from(Policy).where(*filters))
    result = await session.execute(
        select(Policy)
        .where(*filters)
        .order_by(Policy.created_at.desc(), Policy.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), int(total or 0)


async def get_policy(session: AsyncSession, user_id: str, policy_id: str) -> Policy | None:
    result = await session.execute(
        select(Policy).where(Policy.id == policy_id, Policy.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def create_policy(session: AsyncSession, user_id: str, fields: dict[str, Any]) -> Policy:
    # Quota checks happen at the route; this only persists.
    values = {key: value for key, value in fields.items() if key in POLICY_MUTABLE_FIELDS}
    values.setdefault("status", "active")
    policy = Policy(id=uuid4().hex, user_id=user_id, **values)
    session.add(policy)
    await _commit(session, "policy_create", user_id=user_id[:8])
    await session.refresh(policy)
    logger.info("policy_created user_id=%s policy_id=%s", user_id[:8], policy.id)
    return policy


async def update_policy(
    session: AsyncSession,
    user_id: str,
    policy_id: str,
    changes: dict[str, Any],
) -> Policy | None:
    policy = await get_policy(session, user_id, policy_id)
    if policy is None:
        return None
    for key, value in changes.items():
        if key in POLICY_MUTABLE_FIELDS:
            setattr(policy, key, value)
    await _commit(session, "policy_update", user_id=user_id[:8], policy_id=policy_id)
    await session.refresh(policy)
    return policy


async def delete_policy(session: AsyncSession, user_id: str, policy_id: str) -> bool:
    policy = await get_policy(session, user_id, policy_id)
    if policy is None:
        return False
    await session.delete(policy)
    await _commit(session, "policy_delete", user_id=user_id[:8], policy_id=policy_id)
    logger.info("policy_deleted user_id=%s policy_id=%s", user_id[:8], policy_id)
    return True


async def list_clients(
    session: AsyncSession,
    user_id: str,
    *,
    search: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Client], int]:
    filters = [Client.user_id == user_id]
    if search:
        pattern = f"%{search.strip()}%"
        filters.append(or_(Client.name.ilike(pattern), Client.phone.ilike(pattern), Client.email.ilike(pattern)))
    total = await session.scalar(select(func.count()).select_from(Client).where(*filters))
    result = await session.execute(
        select(Client).where(*filters).order_by(Client.name.asc(), Client.id.asc()).limit(limit).offset(offset)
    )
    return list(result.scalars().all()), int(total or 0)


async def get_client(session: AsyncSession, user_id: str, client_id: str) -> Client | None:
    result = await session.execute(
        select(Client).where(Client.id == client_id, Client.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def create_client(session: AsyncSession, user_id: str, fields: dict[str, Any]) -> Client:
    values = {key: value for key, value in fields.items() if key in CLIENT_MUTABLE_FIELDS}
    client = Client(id=uuid4().hex, user_id=user_id, **values)
    session.add(client)
    await _commit(session, "client_create", user_id=user_id[:8])
    await session.refresh(client)
    return client


async def update_client(
    session: AsyncSession,
    user_id: str,
    client_id: str,
    changes: dict[str, Any],
) -> Client | None:
    client = await get_client(session, user_id, client_id)
    if client is None:
        return None
    for key, value in changes.items():
        if key in CLIENT_MUTABLE_FIELDS:
            setattr(client, key, value)
    await _commit(session, "client_update", user_id=user_id[:8], client_id=client_id)
    await session.refresh(client)
    return client


async def delete_client(session: AsyncSession, user_id: str, client_id: str) -> bool:
    client = await get_client(session, user_id, client_id)
    if client is None:
        return False
    await session.delete(client)
    await _commit(session, "client_delete", user_id=user_id[:8], client_id=client_id)
    return True
