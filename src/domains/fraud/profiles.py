"""User risk profile store: the rolling per-user baseline and block state."""

from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models import DeviceFingerprintDB, FraudAlertDB, OrderDB, UserDB, UserRiskScoreDB

from .classification import classify_risk_level
from .config import FraudConfig, default_config
from .models import FraudFlag, RiskFactorEntry, RiskLevel

logger = structlog.get_logger()


def profile_to_dict(row: UserRiskScoreDB) -> dict[str, Any]:
    return {
        "user_id": row.user_id,
        "risk_score": row.risk_score,
        "risk_level": row.risk_level,
        "factors": row.factors or [],
        "flag_count": row.flag_count,
        "confirmed_fraud_count": row.confirmed_fraud_count,
        "dismissed_alert_count": row.dismissed_alert_count,
        "is_blocked": row.is_blocked,
        "blocked_at": row.blocked_at.isoformat() if row.blocked_at else None,
        "blocked_by": row.blocked_by,
        "blocked_reason": row.blocked_reason,
        "unblock_at": row.unblock_at.isoformat() if row.unblock_at else None,
        "last_calculated": row.last_calculated.isoformat() if row.last_calculated else None,
    }


def device_to_dict(row: DeviceFingerprintDB) -> dict[str, Any]:
    return {
        "fingerprint_hash": row.fingerprint_hash,
        "device_info": row.device_info or {},
        "ip_address": row.ip_address,
        "first_seen": row.first_seen.isoformat() if row.first_seen else None,
        "last_seen": row.last_seen.isoformat() if row.last_seen else None,
        "session_count": row.session_count,
    }


def flags_to_factors(flags: list[FraudFlag]) -> list[dict[str, Any]]:
    return [
        RiskFactorEntry(
            name=f.name,
            score=f.score,
            weight=f.score / 100,
            description=f.description,
        ).model_dump()
        for f in flags
    ]


async def get_profile(session: AsyncSession, user_id: str) -> UserRiskScoreDB | None:
    result = await session.execute(
        select(UserRiskScoreDB).where(UserRiskScoreDB.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def record_check(
    session: AsyncSession,
    user_id: str,
    score: float,
    risk_level: RiskLevel,
    flags: list[FraudFlag],
    now: datetime,
) -> None:
    """Write a check's outcome onto the profile, creating it on first check.

    Single INSERT .. ON CONFLICT statement, so the flag counter increment is
    applied by the database rather than read back and rewritten.
    """
    increment = 1 if flags else 0
    factors = flags_to_factors(flags)
    stmt = insert(UserRiskScoreDB).values(
        user_id=user_id,
        risk_score=score,
        risk_level=risk_level.value,
        factors=factors,
        flag_count=increment,
        confirmed_fraud_count=0,
        dismissed_alert_count=0,
        is_blocked=False,
        last_calculated=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[UserRiskScoreDB.user_id],
        set_={
            "risk_score": score,
            "risk_level": risk_level.value,
            "factors": factors,
            "flag_count": UserRiskScoreDB.flag_count + increment,
            "last_calculated": now,
            "updated_at": now,
        },
    )
    await session.execute(stmt)


async def increment_counter(session: AsyncSession, user_id: str, column: str) -> None:
    """Atomically bump confirmed_fraud_count or dismissed_alert_count."""
    attr = getattr(UserRiskScoreDB, column)
    await session.execute(
        update(UserRiskScoreDB)
        .where(UserRiskScoreDB.user_id == user_id)
        .values({column: attr + 1, "updated_at": datetime.now(UTC)})
    )


async def apply_block(
    session: AsyncSession,
    user_id: str,
    blocked_by: str,
    reason: str,
    unblock_at: datetime | None = None,
    config: FraudConfig | None = None,
) -> None:
    """Set block state without committing, so callers can fold it into their transaction.

    A user with no profile yet starts at the maximum score.
    """
    cfg = config or default_config
    now = datetime.now(UTC)
    block_values = {
        "is_blocked": True,
        "blocked_at": now,
        "blocked_by": blocked_by,
        "blocked_reason": reason,
        "unblock_at": unblock_at,
        "updated_at": now,
    }
    stmt = insert(UserRiskScoreDB).values(
        user_id=user_id,
        risk_score=100.0,
        risk_level=classify_risk_level(100.0, cfg).value,
        factors=[],
        flag_count=0,
        confirmed_fraud_count=0,
        dismissed_alert_count=0,
        last_calculated=now,
        **block_values,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[UserRiskScoreDB.user_id],
        set_=block_values,
    )
    await session.execute(stmt)
    await session.execute(
        update(UserDB).where(UserDB.id == user_id).values(status="suspended", updated_at=now)
    )


async def block_user(
    session: AsyncSession,
    user_id: str,
    blocked_by: str,
    reason: str,
    unblock_at: datetime | None = None,
    config: FraudConfig | None = None,
) -> None:
    """Block a user. Re-blocking refreshes the audit fields and is not an error."""
    await apply_block(session, user_id, blocked_by, reason, unblock_at, config)
    await session.commit()
    logger.warning(
        "user_blocked",
        user_id=user_id,
        blocked_by=blocked_by,
        reason=reason,
        unblock_at=unblock_at.isoformat() if unblock_at else None,
    )


async def unblock_user(session: AsyncSession, user_id: str) -> None:
    now = datetime.now(UTC)
    await session.execute(
        update(UserRiskScoreDB)
        .where(UserRiskScoreDB.user_id == user_id)
        .values(
            is_blocked=False,
            blocked_at=None,
            blocked_by=None,
            blocked_reason=None,
            unblock_at=None,
            updated_at=now,
        )
    )
    await session.execute(
        update(UserDB).where(UserDB.id == user_id).values(status="active", updated_at=now)
    )
    await session.commit()
    logger.info("user_unblocked", user_id=user_id)


async def is_blocked(session: AsyncSession, user_id: str, now: datetime | None = None) -> bool:
    """Whether the user is currently blocked.

    A block whose unblock_at has passed is released on read. Nothing else in
    the engine acts on unblock_at.
    """
    now = now or datetime.now(UTC)
    profile = await get_profile(session, user_id)
    if profile is None or not profile.is_blocked:
        return False
    if profile.unblock_at is not None and profile.unblock_at <= now:
        await unblock_user(session, user_id)
        logger.info("user_block_expired", user_id=user_id)
        return False
    return True


async def get_user_risk_profile(
    session: AsyncSession,
    user_id: str,
    config: FraudConfig | None = None,
) -> dict[str, Any]:
    """Profile plus recent alerts, devices and order stats for the admin view."""
    from .alerts import alert_to_dict

    cfg = config or default_config
    limit = cfg.alerts.recent_alert_limit

    profile = await get_profile(session, user_id)

    alerts_result = await session.execute(
        select(FraudAlertDB)
        .where(FraudAlertDB.user_id == user_id)
        .order_by(FraudAlertDB.created_at.desc())
        .limit(limit)
    )
    recent_alerts = [alert_to_dict(a) for a in alerts_result.scalars().all()]

    devices_result = await session.execute(
        select(DeviceFingerprintDB)
        .where(DeviceFingerprintDB.user_id == user_id)
        .order_by(DeviceFingerprintDB.last_seen.desc())
        .limit(limit)
    )
    devices = [device_to_dict(d) for d in devices_result.scalars().all()]

    device_count_result = await session.execute(
        select(func.count()).select_from(DeviceFingerprintDB).where(
            DeviceFingerprintDB.user_id == user_id
        )
    )
    device_count = device_count_result.scalar_one() or 0

    stats_result = await session.execute(
        select(
            func.count(OrderDB.id),
            func.count(OrderDB.id).filter(OrderDB.status == "cancelled"),
            func.count(OrderDB.id).filter(OrderDB.payment_status == "refunded"),
        ).where(OrderDB.customer_id == user_id)
    )
    stats = stats_result.one_or_none() or (0, 0, 0)

    return {
        "user_id": user_id,
        "risk_score": profile_to_dict(profile) if profile else None,
        "recent_alerts": recent_alerts,
        "device_count": device_count,
        "devices": devices,
        "order_stats": {
            "total": int(stats[0] or 0),
            "cancelled": int(stats[1] or 0),
            "refunded": int(stats[2] or 0),
        },
    }


async def list_high_risk_users(session: AsyncSession, limit: int = 20) -> list[dict[str, Any]]:
    result = await session.execute(
        select(UserRiskScoreDB)
        .where(UserRiskScoreDB.risk_level.in_([RiskLevel.HIGH.value, RiskLevel.CRITICAL.value]))
        .order_by(UserRiskScoreDB.risk_score.desc())
        .limit(limit)
    )
    return [profile_to_dict(p) for p in result.scalars().all()]


async def list_blocked_users(
    session: AsyncSession, limit: int = 50, offset: int = 0
) -> tuple[list[dict[str, Any]], int]:
    result = await session.execute(
        select(UserRiskScoreDB)
        .where(UserRiskScoreDB.is_blocked.is_(True))
        .order_by(UserRiskScoreDB.blocked_at.desc())
        .limit(limit)
        .offset(offset)
    )
    users = [profile_to_dict(p) for p in result.scalars().all()]

    count_result = await session.execute(
        select(func.count()).select_from(UserRiskScoreDB).where(
            UserRiskScoreDB.is_blocked.is_(True)
        )
    )
    return users, count_result.scalar_one() or 0
