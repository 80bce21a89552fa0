"""Abstract base class for fraud signal analyzers."""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import FraudConfig
from ..models import AlertType, FraudCheckInput, FraudFlag, FraudRule, RuleType, Severity


class Analyzer(ABC):
    """Base class for all analyzers.

    An analyzer consumes the subset of the check input it understands, plus
    stored history, and emits zero or more flags. It only ever receives rules
    of its own rule type.
    """

    name: str
    rule_type: RuleType
    category: AlertType
    # Analyzers that keep history of their own still run when they have no rules
    runs_without_rules: bool = False

    def applies(self, check_input: FraudCheckInput) -> bool:
        """Whether the input carries what this analyzer needs."""
        return True

    def select_rules(
        self, rules: Sequence[FraudRule], check_input: FraudCheckInput
    ) -> list[FraudRule]:
        order_type = check_input.order_details.order_type if check_input.order_details else None
        return [
            r
            for r in rules
            if r.rule_type == self.rule_type and r.applies_to_order_type(order_type)
        ]

    @abstractmethod
    async def analyze(
        self,
        check_input: FraudCheckInput,
        rules: Sequence[FraudRule],
        session: AsyncSession,
        config: FraudConfig,
        now: datetime,
    ) -> list[FraudFlag]:
        """Evaluate this analyzer's rules and return the flags that fired."""
        ...

    def _flag(
        self,
        rule: FraudRule,
        name: str,
        description: str,
        default_score: int,
        severity: Severity | str | None = None,
    ) -> FraudFlag:
        """Convenience: build a flag attributed to a rule and this analyzer."""
        return FraudFlag(
            name=name,
            score=rule.score_impact or default_score,
            severity=severity or rule.severity,
            description=description,
            category=self.category,
            rule_id=rule.id,
        )
