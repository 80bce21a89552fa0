"""Fraud check pipeline: rules -> analyzers -> aggregate -> persist -> alert."""

import asyncio
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.database import async_session_factory
from src.db.models import FraudAlertDB, FraudCheckLogDB, FraudRuleDB

from .alerts import create_alert, publish_alert
from .analyzers import Analyzer, default_analyzers
from .classification import clamp_score, classify_risk_level, recommend
from .config import FraudConfig, default_config
from .errors import StorageError
from .ip_intelligence import IpIntelligenceService
from .models import (
    AlertType,
    FraudCheckInput,
    FraudCheckResult,
    FraudFlag,
    FraudRule,
    Recommendation,
    Severity,
)
from .profiles import get_profile, record_check
from .rule_store import list_active_rules

logger = structlog.get_logger()


class FraudScorer:
    """Orchestrates one fraud check end to end.

    The user's persisted score is the starting point of every check, so scores
    compound across checks. Same-user checks are serialized by a transaction
    scoped advisory lock; checks for different users never contend.
    """

    def __init__(
        self,
        config: FraudConfig | None = None,
        session_factory: Callable[[], AsyncSession] | None = None,
        analyzers: Sequence[Analyzer] | None = None,
        ip_intelligence: IpIntelligenceService | None = None,
        kafka_producer=None,
    ) -> None:
        self._config = config or default_config
        self._session_factory = session_factory or async_session_factory
        self._ip_intelligence = ip_intelligence or IpIntelligenceService(config=self._config)
        self._analyzers = (
            list(analyzers)
            if analyzers is not None
            else default_analyzers(self._ip_intelligence)
        )
        self._kafka_producer = kafka_producer

    @property
    def config(self) -> FraudConfig:
        return self._config

    @property
    def ip_intelligence(self) -> IpIntelligenceService:
        return self._ip_intelligence

    async def check(self, check_input: FraudCheckInput) -> FraudCheckResult:
        """Score a user action. Never raises for internal failures.

        Anything that breaks outside a single analyzer degrades to the safe
        default: a review recommendation with one system_error flag.
        """
        started = time.perf_counter()
        now = datetime.now(UTC)

        try:
            result, alert = await self._run(check_input, now, started)
        except Exception:
            logger.exception(
                "fraud_check_failed",
                user_id=check_input.user_id,
                order_id=check_input.order_id,
                check_type=check_input.check_type.value,
            )
            result = self._safe_default(started)
            await self._log_safe_default(check_input, result, now)
            return result

        if alert is not None:
            await publish_alert(
                alert, self._kafka_producer, topic=self._config.alerts.kafka_topic
            )

        logger.info(
            "fraud_check_completed",
            user_id=check_input.user_id,
            order_id=check_input.order_id,
            check_type=check_input.check_type.value,
            risk_score=result.risk_score,
            risk_level=result.risk_level.value,
            recommendation=result.recommendation.value,
            flag_count=len(result.flags),
            degraded_analyzers=result.degraded_analyzers,
            processing_time_ms=result.processing_time_ms,
        )
        return result

    async def _run(
        self, check_input: FraudCheckInput, now: datetime, started: float
    ) -> tuple[FraudCheckResult, FraudAlertDB | None]:
        # Analyzers never read the profile. No connection is held while they run,
        # and the locked transaction below is the only one a lock waiter holds.
        rules = await self._load_rules()
        flags, degraded = await self._run_analyzers(check_input, rules, now)

        async with self._session_factory() as session:
            try:
                await session.execute(
                    select(func.pg_advisory_xact_lock(func.hashtext(check_input.user_id)))
                )
                profile = await get_profile(session, check_input.user_id)
                baseline = profile.risk_score if profile is not None else 0.0

                score = clamp_score(baseline + sum(f.score for f in flags))
                risk_level = classify_risk_level(score, self._config)
                recommendation = recommend(score, self._config)
                triggered_rules = _distinct_rule_ids(flags)

                alert = None
                if recommendation != Recommendation.ALLOW:
                    alert = create_alert(
                        session, check_input, flags, triggered_rules, score, risk_level, now
                    )

                processing_time_ms = _elapsed_ms(started)
                session.add(
                    _check_log(
                        check_input, score, risk_level.value, triggered_rules,
                        recommendation.value, processing_time_ms, now,
                    )
                )
                await record_check(session, check_input.user_id, score, risk_level, flags, now)
                for rule_id in triggered_rules:
                    await session.execute(
                        update(FraudRuleDB)
                        .where(FraudRuleDB.id == rule_id)
                        .values(
                            trigger_count=FraudRuleDB.trigger_count + 1,
                            last_triggered_at=now,
                        )
                    )
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise StorageError(f"fraud check persistence failed: {exc}") from exc

        return (
            FraudCheckResult(
                risk_score=score,
                risk_level=risk_level,
                recommendation=recommendation,
                flags=flags,
                triggered_rules=triggered_rules,
                processing_time_ms=processing_time_ms,
                alert_id=alert.id if alert is not None else None,
                degraded_analyzers=degraded,
            ),
            alert,
        )

    async def _load_rules(self) -> list[FraudRule]:
        async with self._session_factory() as session:
            try:
                return await list_active_rules(session)
            except SQLAlchemyError as exc:
                raise StorageError(f"rule load failed: {exc}") from exc

    async def _run_analyzers(
        self,
        check_input: FraudCheckInput,
        rules: Sequence[FraudRule],
        now: datetime,
    ) -> tuple[list[FraudFlag], list[str]]:
        """Fan out to every applicable analyzer and join before scoring.

        Each analyzer gets its own session. One that raises contributes no
        flags and is reported in degraded_analyzers, unless the failure came
        from storage (pool checkout timeout included), which degrades the
        whole check to the safe default.
        """
        scheduled: list[tuple[Analyzer, list[FraudRule]]] = []
        for analyzer in self._analyzers:
            if not analyzer.applies(check_input):
                continue
            selected = analyzer.select_rules(rules, check_input)
            if selected or analyzer.runs_without_rules:
                scheduled.append((analyzer, selected))

        outcomes = await asyncio.gather(
            *(self._run_one(analyzer, selected, check_input, now) for analyzer, selected in scheduled),
            return_exceptions=True,
        )

        flags: list[FraudFlag] = []
        degraded: list[str] = []
        for (analyzer, _), outcome in zip(scheduled, outcomes, strict=True):
            if isinstance(outcome, SQLAlchemyError):
                raise StorageError(
                    f"{analyzer.name} analyzer storage failure: {outcome}"
                ) from outcome
            if isinstance(outcome, BaseException):
                logger.error(
                    "analyzer_failed",
                    analyzer=analyzer.name,
                    user_id=check_input.user_id,
                    error=str(outcome),
                    exc_info=outcome,
                )
                degraded.append(analyzer.name)
                continue
            flags.extend(outcome)
        return flags, degraded

    async def _run_one(
        self,
        analyzer: Analyzer,
        rules: list[FraudRule],
        check_input: FraudCheckInput,
        now: datetime,
    ) -> list[FraudFlag]:
        async with self._session_factory() as session:
            return await analyzer.analyze(check_input, rules, session, self._config, now)

    def _safe_default(self, started: float) -> FraudCheckResult:
        safe = self._config.safe_default
        score = clamp_score(safe.score)
        return FraudCheckResult(
            risk_score=score,
            risk_level=classify_risk_level(score, self._config),
            recommendation=Recommendation.REVIEW,
            flags=[
                FraudFlag(
                    name=safe.flag_name,
                    score=score,
                    severity=Severity.MEDIUM,
                    description=safe.description,
                    category=AlertType.MANUAL,
                )
            ],
            processing_time_ms=_elapsed_ms(started),
        )

    async def _log_safe_default(
        self, check_input: FraudCheckInput, result: FraudCheckResult, now: datetime
    ) -> None:
        """Best-effort audit row for a degraded check, in a fresh session."""
        try:
            async with self._session_factory() as session:
                session.add(
                    _check_log(
                        check_input, result.risk_score, result.risk_level.value, [],
                        result.recommendation.value, result.processing_time_ms, now,
                    )
                )
                await session.commit()
        except Exception:
            logger.exception("fraud_check_log_failed", user_id=check_input.user_id)


def _distinct_rule_ids(flags: list[FraudFlag]) -> list[str]:
    seen: list[str] = []
    for flag in flags:
        if flag.rule_id and flag.rule_id not in seen:
            seen.append(flag.rule_id)
    return seen


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _check_log(
    check_input: FraudCheckInput,
    score: float,
    risk_level: str,
    triggered_rules: list[str],
    recommendation: str,
    processing_time_ms: int,
    now: datetime,
) -> FraudCheckLogDB:
    device = check_input.device
    return FraudCheckLogDB(
        user_id=check_input.user_id,
        order_id=check_input.order_id,
        check_type=check_input.check_type.value,
        input_data=check_input.model_dump(mode="json"),
        risk_score=score,
        risk_level=risk_level,
        triggered_rules=triggered_rules,
        recommendation=recommendation,
        final_decision=recommendation,
        processing_time_ms=processing_time_ms,
        ip_address=(device.ip or None) if device else None,
        user_agent=device.user_agent if device else None,
        device_fingerprint=device.fingerprint if device else None,
        created_at=now,
    )
