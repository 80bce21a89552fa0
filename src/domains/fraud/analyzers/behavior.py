"""Behavior analyzer: account age, refund history and order-size anomalies."""

from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models import OrderDB, UserDB

from ..config import FraudConfig
from ..models import (
    AlertType,
    BehaviorRule,
    FraudCheckInput,
    FraudFlag,
    RuleType,
    Severity,
)
from .base import Analyzer


class BehaviorAnalyzer(Analyzer):
    """Runs on every check.

    Refund rate is computed over the user's whole order history, not a window.
    """

    name = "behavior"
    rule_type = RuleType.BEHAVIOR
    category = AlertType.BEHAVIOR

    async def analyze(
        self,
        check_input: FraudCheckInput,
        rules: Sequence[BehaviorRule],
        session: AsyncSession,
        config: FraudConfig,
        now: datetime,
    ) -> list[FraudFlag]:
        if not rules:
            return []

        created_at = await self._user_created_at(session, check_input.user_id)
        if created_at is None:
            return []

        account_age_days = max((now - created_at).days, 0)
        needs_history = any(
            r.conditions.max_refund_rate_percent is not None
            or (r.conditions.unusual_order_patterns and check_input.order_details is not None)
            for r in rules
        )
        total_orders, refunded_orders, average_amount = (0, 0, 0.0)
        if needs_history:
            total_orders, refunded_orders, average_amount = await self._order_history(
                session, check_input.user_id
            )
        refund_rate = (refunded_orders / total_orders) * 100 if total_orders > 0 else 0.0

        flags: list[FraudFlag] = []
        for rule in rules:
            conditions = rule.conditions

            if conditions.min_account_age_days and account_age_days < conditions.min_account_age_days:
                flags.append(
                    self._flag(
                        rule,
                        name="new_account",
                        description=(
                            f"Account is only {account_age_days} days old, "
                            f"minimum required: {conditions.min_account_age_days} days"
                        ),
                        default_score=config.flags.new_account,
                        severity=Severity.LOW,
                    )
                )

            if (
                conditions.max_refund_rate_percent is not None
                and refund_rate > conditions.max_refund_rate_percent
            ):
                flags.append(
                    self._flag(
                        rule,
                        name="high_refund_rate",
                        description=(
                            f"Refund rate ({refund_rate:.1f}%) exceeds maximum allowed "
                            f"({conditions.max_refund_rate_percent:g}%)"
                        ),
                        default_score=config.flags.high_refund_rate,
                    )
                )

            order = check_input.order_details
            multiplier = config.behavior.unusual_order_multiplier
            if (
                conditions.unusual_order_patterns
                and order is not None
                and average_amount > 0
                and order.total_amount >= average_amount * multiplier
            ):
                flags.append(
                    self._flag(
                        rule,
                        name="unusual_order_amount",
                        description=(
                            f"Order amount is {order.total_amount / average_amount:.1f}x "
                            "the user's average"
                        ),
                        default_score=config.flags.unusual_order_amount,
                        severity=Severity.MEDIUM,
                    )
                )

        return flags

    @staticmethod
    async def _user_created_at(session: AsyncSession, user_id: str) -> datetime | None:
        result = await session.execute(select(UserDB.created_at).where(UserDB.id == user_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def _order_history(session: AsyncSession, user_id: str) -> tuple[int, int, float]:
        stmt = select(
            func.count(OrderDB.id),
            func.count(OrderDB.id).filter(OrderDB.payment_status == "refunded"),
            func.avg(OrderDB.total_amount),
        ).where(OrderDB.customer_id == user_id)
        result = await session.execute(stmt)
        row = result.one()
        return int(row[0] or 0), int(row[1] or 0), float(row[2] or 0.0)
