"""Unit tests for the user risk profile store and block state."""

from datetime import timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy.dialects import postgresql

from src.domains.fraud import profiles
from src.domains.fraud.models import FraudFlag, RiskLevel
from tests.conftest import NOW, make_result, make_session


def _compiled(stmt):
    return stmt.compile(dialect=postgresql.dialect())


def _profile(**overrides):
    data = {
        "user_id": "user-1",
        "risk_score": 40.0,
        "risk_level": "low",
        "factors": [],
        "flag_count": 2,
        "confirmed_fraud_count": 0,
        "dismissed_alert_count": 1,
        "is_blocked": False,
        "blocked_at": None,
        "blocked_by": None,
        "blocked_reason": None,
        "unblock_at": None,
        "last_calculated": NOW,
    }
    data.update(overrides)
    return SimpleNamespace(**data)


class TestRecordCheck:
    @pytest.mark.asyncio
    async def test_flag_count_increments_only_with_flags(self):
        session = make_session()
        flag = FraudFlag(name="new_device", score=10, severity="low", description="d")

        await profiles.record_check(session, "user-1", 10.0, RiskLevel.LOW, [flag], NOW)
        await profiles.record_check(session, "user-1", 10.0, RiskLevel.LOW, [], NOW)

        with_flags = _compiled(session.execute.await_args_list[0].args[0])
        without_flags = _compiled(session.execute.await_args_list[1].args[0])
        assert with_flags.params["flag_count"] == 1
        assert without_flags.params["flag_count"] == 0
        assert "ON CONFLICT" in str(with_flags)
        assert "flag_count +" in str(with_flags)
        session.commit.assert_not_awaited()

    def test_factors_are_replaced_by_the_latest_flags(self):
        flag = FraudFlag(name="vpn_detected", score=20, severity="high", description="VPN")
        assert profiles.flags_to_factors([flag]) == [
            {"name": "vpn_detected", "score": 20.0, "weight": 0.2, "description": "VPN"}
        ]


class TestBlocking:
    @pytest.mark.asyncio
    async def test_block_new_user_starts_at_max_score(self):
        session = make_session()
        await profiles.block_user(session, "user-1", "admin-1", "Chargebacks")

        upsert = _compiled(session.execute.await_args_list[0].args[0])
        assert upsert.params["risk_score"] == 100.0
        assert upsert.params["risk_level"] == "critical"
        assert upsert.params["is_blocked"] is True
        suspend = _compiled(session.execute.await_args_list[1].args[0])
        assert suspend.params["status"] == "suspended"
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reblock_is_idempotent(self):
        session = make_session()
        await profiles.block_user(session, "user-1", "admin-1", "first")
        await profiles.block_user(session, "user-1", "admin-2", "second")

        upsert = str(_compiled(session.execute.await_args_list[2].args[0]))
        # Existing profiles keep their score; only block fields are refreshed
        set_clause = upsert.split("DO UPDATE SET")[1].split("RETURNING")[0]
        assert "blocked_by" in set_clause
        assert "risk_score" not in set_clause
        assert session.commit.await_count == 2

    @pytest.mark.asyncio
    async def test_unblock_clears_every_block_field(self):
        session = make_session()
        await profiles.unblock_user(session, "user-1")

        params = _compiled(session.execute.await_args_list[0].args[0]).params
        assert params["is_blocked"] is False
        for field in ("blocked_at", "blocked_by", "blocked_reason", "unblock_at"):
            assert params[field] is None
        restore = _compiled(session.execute.await_args_list[1].args[0])
        assert restore.params["status"] == "active"
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_is_blocked(self):
        session = make_session(make_result(scalar_one_or_none=_profile(is_blocked=True)))
        assert await profiles.is_blocked(session, "user-1", now=NOW) is True

        session = make_session(make_result(scalar_one_or_none=None))
        assert await profiles.is_blocked(session, "user-1", now=NOW) is False

    @pytest.mark.asyncio
    async def test_expired_block_is_released_on_read(self):
        expired = _profile(is_blocked=True, unblock_at=NOW - timedelta(minutes=1))
        session = make_session(make_result(scalar_one_or_none=expired), make_result(), make_result())

        assert await profiles.is_blocked(session, "user-1", now=NOW) is False
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_future_unblock_keeps_block(self):
        pending = _profile(is_blocked=True, unblock_at=NOW + timedelta(hours=2))
        session = make_session(make_result(scalar_one_or_none=pending))
        assert await profiles.is_blocked(session, "user-1", now=NOW) is True
        session.commit.assert_not_awaited()


class TestRiskProfileView:
    @pytest.mark.asyncio
    async def test_aggregates_profile_alerts_devices_and_orders(self):
        device = SimpleNamespace(
            fingerprint_hash="fp-1",
            device_info={"os": "Android"},
            ip_address="198.51.100.2",
            first_seen=NOW,
            last_seen=NOW,
            session_count=4,
        )
        session = make_session(
            make_result(scalar_one_or_none=_profile()),
            make_result(scalars=[]),
            make_result(scalars=[device]),
            make_result(scalar_one=1),
            make_result(one_or_none=(12, 2, 1)),
        )

        view = await profiles.get_user_risk_profile(session, "user-1")

        assert view["risk_score"]["risk_score"] == 40.0
        assert view["recent_alerts"] == []
        assert view["device_count"] == 1
        assert view["devices"][0]["session_count"] == 4
        assert view["order_stats"] == {"total": 12, "cancelled": 2, "refunded": 1}

    @pytest.mark.asyncio
    async def test_blocked_users_listing(self):
        session = make_session(
            make_result(scalars=[_profile(is_blocked=True, blocked_at=NOW)]),
            make_result(scalar_one=1),
        )
        users, total = await profiles.list_blocked_users(session)
        assert total == 1
        assert users[0]["blocked_at"] == NOW.isoformat()
