"""Fraud check endpoint and the admin surface for rules, alerts, users and stats."""

from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from fastapi import APIRouter, Body, Depends, Query, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.db.database import get_session
from src.domains.fraud import alerts as alert_manager
from src.domains.fraud import profiles, rule_store, statistics
from src.domains.fraud.analyzers import generate_fingerprint_hash
from src.domains.fraud.config import FraudConfig
from src.domains.fraud.models import (
    AlertReview,
    AlertType,
    BlockRequest,
    FraudCheckInput,
    FraudCheckResult,
    FraudFlag,
    Recommendation,
    RiskLevel,
    RuleToggle,
    Severity,
)
from src.domains.fraud.scorer import FraudScorer

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/fraud", tags=["fraud"])


def get_scorer(request: Request) -> FraudScorer:
    scorer = getattr(request.app.state, "fraud_scorer", None)
    if scorer is None:
        scorer = FraudScorer(config=FraudConfig.from_env())
        request.app.state.fraud_scorer = scorer
    return scorer


def get_kafka_producer(request: Request):
    return getattr(request.app.state, "kafka_producer", None)


def get_principal(request: Request) -> str:
    """Authenticated admin id, asserted by the gateway in front of this service."""
    principal = request.headers.get(settings.principal_header)
    if not principal:
        raise PermissionError(f"missing {settings.principal_header} header")
    return principal


admin_router = APIRouter(
    prefix="/api/v1/admin/fraud",
    tags=["fraud-admin"],
    dependencies=[Depends(get_principal)],
)


def client_ip(headers: Mapping[str, str], fallback: str | None = None) -> str | None:
    """First hop of X-Forwarded-For, then X-Real-IP, then the socket peer."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return fallback


def _complete_device(check_input: FraudCheckInput, request: Request) -> FraudCheckInput:
    """Fill a missing device ip and fingerprint from the request itself."""
    device = check_input.device
    if device is None:
        return check_input

    changes: dict[str, str] = {}
    if not device.ip:
        peer = request.client.host if request.client else None
        ip = client_ip(request.headers, fallback=peer)
        if ip:
            changes["ip"] = ip
    if not device.fingerprint and device.device_info:
        changes["fingerprint"] = generate_fingerprint_hash(device.device_info)
    if not changes:
        return check_input
    return check_input.model_copy(update={"device": device.model_copy(update=changes)})


def _blocked_result() -> FraudCheckResult:
    return FraudCheckResult(
        risk_score=100.0,
        risk_level=RiskLevel.CRITICAL,
        recommendation=Recommendation.BLOCK,
        flags=[
            FraudFlag(
                name="user_blocked",
                score=100.0,
                severity=Severity.CRITICAL,
                description="User is blocked",
                category=AlertType.MANUAL,
            )
        ],
    )


@router.post("/check")
async def check_fraud(
    check_input: FraudCheckInput,
    request: Request,
    session: AsyncSession = Depends(get_session),  # noqa: B008
    scorer: FraudScorer = Depends(get_scorer),  # noqa: B008
) -> dict:
    try:
        blocked = await profiles.is_blocked(session, check_input.user_id)
    except SQLAlchemyError:
        # The scorer applies the degraded-mode policy if storage is really down
        logger.warning("fraud_block_gate_failed", user_id=check_input.user_id, exc_info=True)
        blocked = False

    if blocked:
        logger.info("fraud_check_user_blocked", user_id=check_input.user_id)
        return _blocked_result().model_dump(mode="json")

    result = await scorer.check(_complete_device(check_input, request))
    return result.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


@admin_router.get("/rules")
async def list_rules(
    session: AsyncSession = Depends(get_session),  # noqa: B008
    is_active: bool | None = None,
) -> dict:
    rows = await rule_store.list_rules(session, is_active=is_active)
    return {"items": [rule_store.rule_to_dict(r) for r in rows], "total": len(rows)}


@admin_router.post("/rules", status_code=201)
async def create_rule(
    payload: dict[str, Any] = Body(...),  # noqa: B008
    session: AsyncSession = Depends(get_session),  # noqa: B008
    principal: str = Depends(get_principal),
) -> dict:
    row = await rule_store.upsert_rule(session, payload, created_by=principal)
    return rule_store.rule_to_dict(row)


@admin_router.get("/rules/{rule_id}")
async def get_rule(
    rule_id: str,
    session: AsyncSession = Depends(get_session),  # noqa: B008
) -> dict:
    return rule_store.rule_to_dict(await rule_store.get_rule(session, rule_id))


@admin_router.put("/rules/{rule_id}")
async def update_rule(
    rule_id: str,
    payload: dict[str, Any] = Body(...),  # noqa: B008
    session: AsyncSession = Depends(get_session),  # noqa: B008
    principal: str = Depends(get_principal),
) -> dict:
    row = await rule_store.upsert_rule(session, payload, rule_id=rule_id, created_by=principal)
    return rule_store.rule_to_dict(row)


@admin_router.patch("/rules/{rule_id}/toggle")
async def toggle_rule(
    rule_id: str,
    toggle: RuleToggle,
    session: AsyncSession = Depends(get_session),  # noqa: B008
) -> dict:
    row = await rule_store.toggle_rule(session, rule_id, toggle.is_active)
    return rule_store.rule_to_dict(row)


@admin_router.delete("/rules/{rule_id}")
async def delete_rule(
    rule_id: str,
    session: AsyncSession = Depends(get_session),  # noqa: B008
) -> dict:
    await rule_store.delete_rule(session, rule_id)
    return {"deleted": True, "rule_id": rule_id}


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


@admin_router.get("/alerts")
async def list_alerts(
    session: AsyncSession = Depends(get_session),  # noqa: B008
    status: str | None = None,
    severity: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> dict:
    items, total = await alert_manager.list_alerts(
        session,
        status=status,
        severity=severity,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )
    return {
        "items": [alert_manager.alert_to_dict(a) for a in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@admin_router.get("/alerts/{alert_id}")
async def get_alert(
    alert_id: str,
    session: AsyncSession = Depends(get_session),  # noqa: B008
) -> dict:
    return alert_manager.alert_to_dict(await alert_manager.get_alert(session, alert_id))


@admin_router.post("/alerts/{alert_id}/review")
async def review_alert(
    alert_id: str,
    review: AlertReview,
    session: AsyncSession = Depends(get_session),  # noqa: B008
    principal: str = Depends(get_principal),
    producer=Depends(get_kafka_producer),  # noqa: B008
    scorer: FraudScorer = Depends(get_scorer),  # noqa: B008
) -> dict:
    alert = await alert_manager.review_alert(
        session, alert_id, principal, review, config=scorer.config
    )
    await alert_manager.publish_alert(
        alert,
        producer,
        topic=scorer.config.alerts.kafka_topic,
        event_type="fraud.alert.reviewed",
    )
    return alert_manager.alert_to_dict(alert)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@admin_router.get("/users/{user_id}/risk")
async def get_user_risk(
    user_id: str,
    session: AsyncSession = Depends(get_session),  # noqa: B008
) -> dict:
    return await profiles.get_user_risk_profile(session, user_id)


@admin_router.post("/users/{user_id}/block")
async def block_user(
    user_id: str,
    block: BlockRequest,
    session: AsyncSession = Depends(get_session),  # noqa: B008
    principal: str = Depends(get_principal),
) -> dict:
    unblock_at = None
    if block.duration_hours:
        unblock_at = datetime.now(UTC) + timedelta(hours=block.duration_hours)
    await profiles.block_user(session, user_id, principal, block.reason, unblock_at=unblock_at)
    return {
        "user_id": user_id,
        "is_blocked": True,
        "blocked_by": principal,
        "reason": block.reason,
        "unblock_at": unblock_at.isoformat() if unblock_at else None,
    }


@admin_router.post("/users/{user_id}/unblock")
async def unblock_user(
    user_id: str,
    session: AsyncSession = Depends(get_session),  # noqa: B008
) -> dict:
    await profiles.unblock_user(session, user_id)
    return {"user_id": user_id, "is_blocked": False}


@admin_router.get("/high-risk-users")
async def high_risk_users(
    session: AsyncSession = Depends(get_session),  # noqa: B008
    limit: int = Query(default=20, ge=1, le=200),
) -> dict:
    items = await profiles.list_high_risk_users(session, limit=limit)
    return {"items": items, "total": len(items)}


@admin_router.get("/blocked-users")
async def blocked_users(
    session: AsyncSession = Depends(get_session),  # noqa: B008
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> dict:
    items, total = await profiles.list_blocked_users(session, limit=limit, offset=offset)
    return {"items": items, "total": total, "limit": limit, "offset": offset}


# ---------------------------------------------------------------------------
# IP intelligence
# ---------------------------------------------------------------------------


@admin_router.post("/ip-intelligence/{ip_address}/refresh")
async def refresh_ip_intelligence(
    ip_address: str,
    session: AsyncSession = Depends(get_session),  # noqa: B008
    scorer: FraudScorer = Depends(get_scorer),  # noqa: B008
) -> dict:
    """Pull one IP from the reputation provider into the cache the check path reads."""
    reputation = await scorer.ip_intelligence.refresh(session, ip_address)
    return {
        "ip_address": ip_address,
        "refreshed": reputation is not None,
        "reputation": reputation.model_dump() if reputation else None,
    }


# ---------------------------------------------------------------------------
# Statistics and audit
# ---------------------------------------------------------------------------


@admin_router.get("/stats")
async def fraud_stats(
    session: AsyncSession = Depends(get_session),  # noqa: B008
) -> dict:
    return await statistics.get_statistics(session)


@admin_router.get("/logs")
async def check_logs(
    session: AsyncSession = Depends(get_session),  # noqa: B008
    user_id: str | None = None,
    check_type: str | None = None,
    risk_level: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> dict:
    items, total = await statistics.query_check_logs(
        session,
        user_id=user_id,
        check_type=check_type,
        risk_level=risk_level,
        limit=limit,
        offset=offset,
    )
    return {
        "items": [statistics.check_log_to_dict(row) for row in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    }
