"""Payment analyzer: failed attempts and amount limits."""

from collections.abc import Sequence
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models import PaymentDB

from ..config import FraudConfig
from ..models import (
    AlertType,
    FraudCheckInput,
    FraudFlag,
    PaymentRule,
    RuleType,
    Severity,
)
from .base import Analyzer


class PaymentAnalyzer(Analyzer):
    """Triggers on repeated failed payments and on amounts outside configured limits.

    The small-transaction flag needs its toggle; the large-transaction flag does not.
    """

    name = "payment"
    rule_type = RuleType.PAYMENT
    category = AlertType.PAYMENT

    def applies(self, check_input: FraudCheckInput) -> bool:
        return check_input.payment is not None

    async def analyze(
        self,
        check_input: FraudCheckInput,
        rules: Sequence[PaymentRule],
        session: AsyncSession,
        config: FraudConfig,
        now: datetime,
    ) -> list[FraudFlag]:
        payment = check_input.payment
        if payment is None:
            return []

        flags: list[FraudFlag] = []

        for rule in rules:
            conditions = rule.conditions
            window_seconds = (
                conditions.time_window_seconds or config.payment.default_window_seconds
            )

            if conditions.max_failed_attempts:
                failed = await self._failed_payments(
                    session, check_input.user_id, now - timedelta(seconds=window_seconds)
                )
                if failed >= conditions.max_failed_attempts:
                    flags.append(
                        self._flag(
                            rule,
                            name="excessive_failed_payments",
                            description=(
                                f"{failed} failed payment attempts in the last "
                                f"{window_seconds / 3600:g} hours"
                            ),
                            default_score=config.flags.excessive_failed_payments,
                        )
                    )

            if not payment.amount:
                continue

            if (
                conditions.flag_small_transactions
                and conditions.min_transaction_amount
                and payment.amount < conditions.min_transaction_amount
            ):
                flags.append(
                    self._flag(
                        rule,
                        name="small_transaction",
                        description=(
                            f"Transaction amount ({payment.amount:g}) is below minimum "
                            f"threshold ({conditions.min_transaction_amount:g})"
                        ),
                        default_score=config.flags.small_transaction,
                        severity=Severity.LOW,
                    )
                )

            if (
                conditions.max_transaction_amount
                and payment.amount > conditions.max_transaction_amount
            ):
                flags.append(
                    self._flag(
                        rule,
                        name="large_transaction",
                        description=(
                            f"Transaction amount ({payment.amount:g}) exceeds maximum "
                            f"threshold ({conditions.max_transaction_amount:g})"
                        ),
                        default_score=config.flags.large_transaction,
                    )
                )

        return flags

    @staticmethod
    async def _failed_payments(session: AsyncSession, user_id: str, since: datetime) -> int:
        stmt = select(func.count()).select_from(PaymentDB).where(
            PaymentDB.customer_id == user_id,
            PaymentDB.status == "failed",
            PaymentDB.created_at >= since,
        )
        result = await session.execute(stmt)
        return result.scalar_one() or 0
