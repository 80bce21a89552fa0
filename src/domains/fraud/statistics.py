"""Read-only aggregations over alerts, profiles, rules and check logs."""

from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import Date, cast, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models import FraudAlertDB, FraudCheckLogDB, FraudRuleDB, UserRiskScoreDB

from .models import AlertStatus, Severity

TREND_DAYS = 7


def false_positive_rate(dismissed: int, confirmed: int) -> float:
    """dismissed / (dismissed + confirmed), or 0.0 when nothing has been reviewed."""
    reviewed = dismissed + confirmed
    return round(dismissed / reviewed, 4) if reviewed else 0.0


async def get_statistics(session: AsyncSession, now: datetime | None = None) -> dict[str, Any]:
    """Fraud dashboard: today's volume, review backlog, FP rate, breakdowns, trend."""
    now = now or datetime.now(UTC)
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    trend_start = start_of_day - timedelta(days=TREND_DAYS - 1)

    alerts_today = (
        await session.execute(
            select(func.count()).select_from(FraudAlertDB).where(
                FraudAlertDB.created_at >= start_of_day
            )
        )
    ).scalar_one() or 0

    high_risk_orders = (
        await session.execute(
            select(func.count(func.distinct(FraudAlertDB.order_id))).where(
                FraudAlertDB.severity.in_([Severity.HIGH.value, Severity.CRITICAL.value]),
                FraudAlertDB.status == AlertStatus.PENDING.value,
            )
        )
    ).scalar_one() or 0

    blocked_users = (
        await session.execute(
            select(func.count()).select_from(UserRiskScoreDB).where(
                UserRiskScoreDB.is_blocked.is_(True)
            )
        )
    ).scalar_one() or 0

    reviewed = (
        await session.execute(
            select(
                func.count(FraudAlertDB.id).filter(
                    FraudAlertDB.status == AlertStatus.DISMISSED.value
                ),
                func.count(FraudAlertDB.id).filter(
                    FraudAlertDB.status == AlertStatus.CONFIRMED.value
                ),
            )
        )
    ).one()
    dismissed, confirmed = int(reviewed[0] or 0), int(reviewed[1] or 0)

    severity_result = await session.execute(
        select(FraudAlertDB.severity, func.count(FraudAlertDB.id)).group_by(
            FraudAlertDB.severity
        )
    )
    alerts_by_severity = {row[0]: row[1] for row in severity_result.all()}

    type_result = await session.execute(
        select(FraudAlertDB.alert_type, func.count(FraudAlertDB.id)).group_by(
            FraudAlertDB.alert_type
        )
    )
    alerts_by_type = {row[0]: row[1] for row in type_result.all()}

    day = cast(FraudAlertDB.created_at, Date)
    trend_result = await session.execute(
        select(day, func.count(FraudAlertDB.id))
        .where(FraudAlertDB.created_at >= trend_start)
        .group_by(day)
        .order_by(day)
    )
    counts_by_day = {str(row[0]): row[1] for row in trend_result.all()}
    recent_trends = []
    for offset in range(TREND_DAYS):
        date = (trend_start + timedelta(days=offset)).date().isoformat()
        recent_trends.append({"date": date, "count": counts_by_day.get(date, 0)})

    return {
        "alerts_today": alerts_today,
        "high_risk_orders": high_risk_orders,
        "blocked_users": blocked_users,
        "reviewed_alerts": {"dismissed": dismissed, "confirmed": confirmed},
        "false_positive_rate": false_positive_rate(dismissed, confirmed),
        "alerts_by_severity": alerts_by_severity,
        "alerts_by_type": alerts_by_type,
        "recent_trends": recent_trends,
        "rule_performance": await get_rule_performance(session),
    }


async def get_rule_performance(session: AsyncSession) -> list[dict[str, Any]]:
    """Per-rule trigger and false-positive counts, for tuning. Never applied automatically."""
    result = await session.execute(
        select(
            FraudRuleDB.id,
            FraudRuleDB.name,
            FraudRuleDB.rule_type,
            FraudRuleDB.is_active,
            FraudRuleDB.trigger_count,
            FraudRuleDB.false_positive_count,
        ).order_by(FraudRuleDB.trigger_count.desc())
    )
    performance = []
    for row in result.all():
        triggers = int(row[4] or 0)
        false_positives = int(row[5] or 0)
        performance.append(
            {
                "rule_id": row[0],
                "name": row[1],
                "rule_type": row[2],
                "is_active": row[3],
                "trigger_count": triggers,
                "false_positive_count": false_positives,
                "false_positive_ratio": round(false_positives / triggers, 4) if triggers else 0.0,
            }
        )
    return performance


def check_log_to_dict(row: FraudCheckLogDB) -> dict[str, Any]:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "order_id": row.order_id,
        "check_type": row.check_type,
        "input_data": row.input_data,
        "risk_score": row.risk_score,
        "risk_level": row.risk_level,
        "triggered_rules": row.triggered_rules,
        "recommendation": row.recommendation,
        "final_decision": row.final_decision,
        "processing_time_ms": row.processing_time_ms,
        "ip_address": row.ip_address,
        "user_agent": row.user_agent,
        "device_fingerprint": row.device_fingerprint,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


async def query_check_logs(
    session: AsyncSession,
    user_id: str | None = None,
    check_type: str | None = None,
    risk_level: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[FraudCheckLogDB], int]:
    conditions = []
    if user_id:
        conditions.append(FraudCheckLogDB.user_id == user_id)
    if check_type:
        conditions.append(FraudCheckLogDB.check_type == check_type)
    if risk_level:
        conditions.append(FraudCheckLogDB.risk_level == risk_level)

    total = (
        await session.execute(select(func.count()).select_from(FraudCheckLogDB).where(*conditions))
    ).scalar_one() or 0

    result = await session.execute(
        select(FraudCheckLogDB)
        .where(*conditions)
        .order_by(FraudCheckLogDB.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), total
