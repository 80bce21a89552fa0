"""Fraud alert pipeline: creation, admin review and Kafka publishing."""

import uuid
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models import FraudAlertDB, FraudRuleDB

from .config import FraudConfig, default_config
from .errors import AlertAlreadyResolvedError, NotFoundError
from .models import (
    AlertReview,
    AlertStatus,
    AlertType,
    FraudCheckInput,
    FraudFlag,
    ReviewDecision,
    RiskLevel,
)
from .profiles import apply_block, increment_counter

logger = structlog.get_logger()


def derive_alert_type(flags: list[FraudFlag]) -> AlertType:
    """Alert type of the highest-scoring flag, taken from the analyzer that raised it."""
    if not flags:
        return AlertType.MANUAL
    top = max(flags, key=lambda f: f.score)
    return top.category or AlertType.BEHAVIOR


def alert_to_dict(alert: FraudAlertDB) -> dict[str, Any]:
    return {
        "id": alert.id,
        "user_id": alert.user_id,
        "order_id": alert.order_id,
        "rule_id": alert.rule_id,
        "alert_type": alert.alert_type,
        "severity": alert.severity,
        "details": alert.details,
        "risk_score": alert.risk_score,
        "status": alert.status,
        "reviewed_by": alert.reviewed_by,
        "reviewed_at": alert.reviewed_at.isoformat() if alert.reviewed_at else None,
        "resolution_notes": alert.resolution_notes,
        "user_blocked": alert.user_blocked,
        "order_cancelled": alert.order_cancelled,
        "refund_issued": alert.refund_issued,
        "ip_address": alert.ip_address,
        "user_agent": alert.user_agent,
        "created_at": alert.created_at.isoformat() if alert.created_at else None,
    }


def create_alert(
    session: AsyncSession,
    check_input: FraudCheckInput,
    flags: list[FraudFlag],
    triggered_rules: list[str],
    risk_score: float,
    risk_level: RiskLevel,
    now: datetime,
) -> FraudAlertDB:
    """Stage a pending alert on the session; the caller owns the commit.

    The alert points at the rule behind its highest-scoring flag, which is the
    rule that receives false-positive feedback if the alert is dismissed.
    """
    top_rule_id = None
    ranked = sorted((f for f in flags if f.rule_id), key=lambda f: f.score, reverse=True)
    if ranked:
        top_rule_id = ranked[0].rule_id

    device = check_input.device
    alert = FraudAlertDB(
        id=str(uuid.uuid4()),
        user_id=check_input.user_id,
        order_id=check_input.order_id,
        rule_id=top_rule_id,
        alert_type=derive_alert_type(flags).value,
        severity=risk_level.value,
        details={
            "flags": [f.model_dump(mode="json") for f in flags],
            "triggered_rules": triggered_rules,
            "input_data": check_input.model_dump(mode="json"),
        },
        risk_score=risk_score,
        status=AlertStatus.PENDING.value,
        ip_address=(device.ip or None) if device else None,
        user_agent=device.user_agent if device else None,
        created_at=now,
    )
    session.add(alert)

    logger.warning(
        "fraud_alert_created",
        alert_id=alert.id,
        user_id=check_input.user_id,
        order_id=check_input.order_id,
        risk_score=risk_score,
        severity=risk_level.value,
        alert_type=alert.alert_type,
    )
    return alert


async def get_alert(session: AsyncSession, alert_id: str) -> FraudAlertDB:
    result = await session.execute(select(FraudAlertDB).where(FraudAlertDB.id == alert_id))
    alert = result.scalar_one_or_none()
    if alert is None:
        raise NotFoundError("Alert", alert_id)
    return alert


async def list_alerts(
    session: AsyncSession,
    status: str | None = None,
    severity: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[FraudAlertDB], int]:
    conditions = []
    if status:
        conditions.append(FraudAlertDB.status == status)
    if severity:
        conditions.append(FraudAlertDB.severity == severity)
    if start_date:
        conditions.append(FraudAlertDB.created_at >= start_date)
    if end_date:
        conditions.append(FraudAlertDB.created_at <= end_date)

    count_stmt = select(func.count()).select_from(FraudAlertDB).where(*conditions)
    total = (await session.execute(count_stmt)).scalar_one() or 0

    stmt = (
        select(FraudAlertDB)
        .where(*conditions)
        .order_by(FraudAlertDB.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all()), total


async def review_alert(
    session: AsyncSession,
    alert_id: str,
    reviewer_id: str,
    review: AlertReview,
    config: FraudConfig | None = None,
) -> FraudAlertDB:
    """Resolve a pending alert. Resolution is final.

    The status flip is a conditional UPDATE on status='pending', so of two
    concurrent reviews only one can win; the loser gets AlertAlreadyResolvedError.
    Order cancellation and refunds are recorded as intents only.
    """
    cfg = config or default_config
    alert = await get_alert(session, alert_id)
    if alert.status != AlertStatus.PENDING.value:
        raise AlertAlreadyResolvedError(alert_id, alert.status)

    now = datetime.now(UTC)
    confirmed = review.decision == ReviewDecision.CONFIRMED
    block = confirmed and review.block_user

    result = await session.execute(
        update(FraudAlertDB)
        .where(FraudAlertDB.id == alert_id, FraudAlertDB.status == AlertStatus.PENDING.value)
        .values(
            status=review.decision.value,
            reviewed_by=reviewer_id,
            reviewed_at=now,
            resolution_notes=review.notes,
            user_blocked=block,
            order_cancelled=review.cancel_order,
            refund_issued=review.issue_refund,
        )
    )
    if result.rowcount == 0:
        await session.rollback()
        raise AlertAlreadyResolvedError(alert_id, "resolved")

    if confirmed:
        await increment_counter(session, alert.user_id, "confirmed_fraud_count")
        if block:
            await apply_block(
                session,
                alert.user_id,
                blocked_by=reviewer_id,
                reason=review.notes or "Confirmed fraud",
                config=cfg,
            )
    else:
        await increment_counter(session, alert.user_id, "dismissed_alert_count")
        if alert.rule_id:
            await session.execute(
                update(FraudRuleDB)
                .where(FraudRuleDB.id == alert.rule_id)
                .values(
                    false_positive_count=FraudRuleDB.false_positive_count + 1,
                    updated_at=now,
                )
            )

    await session.commit()
    await session.refresh(alert)

    logger.info(
        "fraud_alert_reviewed",
        alert_id=alert_id,
        reviewer_id=reviewer_id,
        decision=review.decision.value,
        user_blocked=block,
        order_cancelled=review.cancel_order,
        refund_issued=review.issue_refund,
    )
    return alert


async def publish_alert(
    alert: FraudAlertDB,
    producer,
    topic: str | None = None,
    event_type: str = "fraud.alert.created",
) -> None:
    """Publish an alert event to Kafka for downstream consumers.

    Args:
        alert: The alert DB record to publish.
        producer: An aiokafka AIOKafkaProducer instance.
        topic: Destination topic; defaults to the configured alert topic.
        event_type: Lifecycle event name carried in the payload.
    """
    if producer is None:
        logger.debug("kafka_producer_not_available", alert_id=alert.id)
        return

    topic = topic or default_config.alerts.kafka_topic
    payload = {"event_type": event_type, **alert_to_dict(alert)}

    try:
        await producer.send_and_wait(topic, value=payload, key=alert.user_id)
        logger.info("alert_published_to_kafka", alert_id=alert.id, topic=topic)
    except Exception:
        logger.exception("alert_publish_failed", alert_id=alert.id, topic=topic)
