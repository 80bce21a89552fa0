"""Fraud rule persistence: CRUD, toggling and typed decoding of stored rules."""

import uuid
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models import FraudRuleDB

from .errors import NotFoundError
from .models import FraudRule, fraud_rule_adapter

logger = structlog.get_logger()

_RULE_FIELDS = (
    "id",
    "name",
    "description",
    "rule_type",
    "conditions",
    "action",
    "severity",
    "score_impact",
    "is_active",
    "applicable_order_types",
    "applicable_user_roles",
    "trigger_count",
    "false_positive_count",
    "last_triggered_at",
)


def rule_to_dict(row: FraudRuleDB) -> dict[str, Any]:
    data = {name: getattr(row, name) for name in _RULE_FIELDS}
    data["created_by"] = row.created_by
    data["created_at"] = row.created_at
    data["updated_at"] = row.updated_at
    return data


def decode_rule(row: FraudRuleDB) -> FraudRule:
    """Decode a stored row into its typed rule variant."""
    data = {name: getattr(row, name) for name in _RULE_FIELDS}
    data["conditions"] = data["conditions"] or {}
    return fraud_rule_adapter.validate_python(data)


def decode_rules(rows: list[FraudRuleDB]) -> list[FraudRule]:
    """Decode rows, skipping any whose stored conditions no longer validate."""
    rules: list[FraudRule] = []
    for row in rows:
        try:
            rules.append(decode_rule(row))
        except ValidationError as exc:
            logger.warning(
                "rule_skipped_invalid",
                rule_id=row.id,
                rule_type=row.rule_type,
                errors=exc.error_count(),
            )
    return rules


async def list_rules(session: AsyncSession, is_active: bool | None = None) -> list[FraudRuleDB]:
    stmt = select(FraudRuleDB).order_by(FraudRuleDB.created_at.desc())
    if is_active is not None:
        stmt = stmt.where(FraudRuleDB.is_active == is_active)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_active_rules(session: AsyncSession) -> list[FraudRule]:
    """Active rules, typed. This is the read path every check goes through."""
    rows = await list_rules(session, is_active=True)
    return decode_rules(rows)


async def get_rule(session: AsyncSession, rule_id: str) -> FraudRuleDB:
    result = await session.execute(select(FraudRuleDB).where(FraudRuleDB.id == rule_id))
    row = result.scalar_one_or_none()
    if row is None:
        raise NotFoundError("Rule", rule_id)
    return row


async def upsert_rule(
    session: AsyncSession,
    payload: dict[str, Any],
    rule_id: str | None = None,
    created_by: str | None = None,
) -> FraudRuleDB:
    """Create a rule, or replace the definition of an existing one.

    The payload is validated against its rule-type variant before anything is
    written; counters are never taken from the payload.
    """
    rule = fraud_rule_adapter.validate_python(payload)
    values = rule.model_dump(
        mode="json",
        include={
            "name",
            "description",
            "rule_type",
            "conditions",
            "action",
            "severity",
            "score_impact",
            "is_active",
            "applicable_order_types",
            "applicable_user_roles",
        },
    )
    now = datetime.now(UTC)

    if rule_id is not None:
        row = await get_rule(session, rule_id)
        for key, value in values.items():
            setattr(row, key, value)
        row.updated_at = now
    else:
        row = FraudRuleDB(
            id=str(uuid.uuid4()),
            **values,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        session.add(row)

    await session.commit()
    logger.info(
        "rule_upserted",
        rule_id=row.id,
        rule_type=values["rule_type"],
        created=rule_id is None,
    )
    return row


async def toggle_rule(session: AsyncSession, rule_id: str, is_active: bool) -> FraudRuleDB:
    row = await get_rule(session, rule_id)
    row.is_active = is_active
    row.updated_at = datetime.now(UTC)
    await session.commit()
    logger.info("rule_toggled", rule_id=rule_id, is_active=is_active)
    return row


async def delete_rule(session: AsyncSession, rule_id: str) -> None:
    await get_rule(session, rule_id)
    await session.execute(delete(FraudRuleDB).where(FraudRuleDB.id == rule_id))
    await session.commit()
    logger.info("rule_deleted", rule_id=rule_id)
