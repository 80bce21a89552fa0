"""Velocity analyzer: event counts inside a sliding time window."""

from collections.abc import Sequence
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models import OrderDB, PaymentDB

from ..config import FraudConfig
from ..models import (
    AlertType,
    FraudCheckInput,
    FraudFlag,
    RuleType,
    VelocityMetric,
    VelocityRule,
)
from .base import Analyzer


def _format_hours(seconds: int) -> str:
    hours = seconds / 3600
    return f"{hours:g}"


class VelocityAnalyzer(Analyzer):
    """Triggers when a user's orders or payment attempts within a window reach a threshold.

    Counts are recomputed on every check; there is no persistent counter.
    """

    name = "velocity"
    rule_type = RuleType.VELOCITY
    category = AlertType.VELOCITY

    async def analyze(
        self,
        check_input: FraudCheckInput,
        rules: Sequence[VelocityRule],
        session: AsyncSession,
        config: FraudConfig,
        now: datetime,
    ) -> list[FraudFlag]:
        flags: list[FraudFlag] = []

        for rule in rules:
            conditions = rule.conditions
            window_start = now - timedelta(seconds=conditions.time_window_seconds)
            count = await self._count_events(
                session, check_input.user_id, conditions.metric, window_start
            )

            if count < conditions.threshold:
                continue

            metric_words = conditions.metric.value.replace("_", " ")
            flags.append(
                self._flag(
                    rule,
                    name=f"velocity_{conditions.metric.value}",
                    description=(
                        f"{metric_words}: {count} in last "
                        f"{_format_hours(conditions.time_window_seconds)} hour(s), "
                        f"threshold: {conditions.threshold}"
                    ),
                    default_score=config.flags.velocity,
                )
            )

        return flags

    async def _count_events(
        self,
        session: AsyncSession,
        user_id: str,
        metric: VelocityMetric,
        window_start: datetime,
    ) -> int:
        if metric == VelocityMetric.ORDERS_PER_HOUR:
            stmt = select(func.count()).select_from(OrderDB).where(
                OrderDB.customer_id == user_id,
                OrderDB.created_at >= window_start,
            )
        else:
            stmt = select(func.count()).select_from(PaymentDB).where(
                PaymentDB.customer_id == user_id,
                PaymentDB.created_at >= window_start,
            )
        result = await session.execute(stmt)
        return result.scalar_one() or 0
