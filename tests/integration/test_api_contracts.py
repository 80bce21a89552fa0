"""API contract tests for the fraud check and admin endpoints.

Every request goes through the real app with a mocked session dependency, so
routing, validation, error mapping and response shapes are all exercised.
"""

from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError

from src.api.routes.fraud import client_ip, get_scorer
from src.db.database import get_session
from src.db.models import FraudAlertDB
from src.domains.fraud.analyzers import generate_fingerprint_hash
from src.domains.fraud.config import FraudConfig
from src.domains.fraud.ip_intelligence import IpIntelligenceService, IpReputation
from src.domains.fraud.models import FraudCheckResult
from src.domains.fraud.scorer import FraudScorer
from src.main import app
from tests.conftest import make_result, make_session, override_get_session, session_factory_for

pytestmark = pytest.mark.integration

BASE_URL = "http://test"
ADMIN = {"X-Principal-Id": "admin-1"}

CHECK_BODY = {
    "user_id": "user-1",
    "order_id": "order-1",
    "check_type": "order_creation",
    "order_details": {
        "total_amount": 42.5,
        "order_type": "food",
        "pickup_address": {"lat": 18.59, "lng": -72.30},
        "delivery_address": {"lat": 18.54, "lng": -72.33},
    },
    "device": {"fingerprint": "fp-1", "ip": "203.0.113.5", "user_agent": "app/2.1"},
    "payment": {"method": "card", "amount": 42.5, "card_last_four": "4242"},
}


def _install(session=None, scorer=None):
    session = session or make_session()
    app.dependency_overrides[get_session] = override_get_session(session)
    if scorer is not None:
        app.dependency_overrides[get_scorer] = lambda: scorer
    return session


def _client():
    return AsyncClient(transport=ASGITransport(app=app), base_url=BASE_URL)


def _alert(status="pending") -> FraudAlertDB:
    return FraudAlertDB(
        id="alert-1",
        user_id="user-1",
        order_id="order-1",
        rule_id=None,
        alert_type="payment",
        severity="high",
        details={"flags": []},
        risk_score=77.0,
        status=status,
        user_blocked=False,
        order_cancelled=False,
        refund_issued=False,
        created_at=datetime(2026, 3, 10, tzinfo=UTC),
    )


@pytest.fixture(autouse=True)
def _clear_overrides():
    yield
    app.dependency_overrides.clear()


class TestFraudCheck:
    endpoint = "/api/v1/fraud/check"

    @pytest.mark.asyncio
    async def test_check_returns_result(self):
        scorer = SimpleNamespace(
            check=AsyncMock(
                return_value=FraudCheckResult(
                    risk_score=20, risk_level="low", recommendation="allow"
                )
            )
        )
        _install(scorer=scorer)

        async with _client() as client:
            resp = await client.post(self.endpoint, json=CHECK_BODY)

        assert resp.status_code == 200
        data = resp.json()
        assert data["risk_score"] == 20
        assert data["risk_level"] == "low"
        assert data["recommendation"] == "allow"
        assert data["flags"] == []
        assert data["degraded_analyzers"] == []
        scorer.check.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_blocked_user_short_circuits(self):
        blocked = SimpleNamespace(is_blocked=True, unblock_at=None)
        scorer = SimpleNamespace(check=AsyncMock())
        _install(make_session(make_result(scalar_one_or_none=blocked)), scorer=scorer)

        async with _client() as client:
            resp = await client.post(self.endpoint, json=CHECK_BODY)

        assert resp.status_code == 200
        assert resp.json()["recommendation"] == "block"
        scorer.check.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_malformed_input_rejected_before_scoring(self):
        scorer = SimpleNamespace(check=AsyncMock())
        _install(scorer=scorer)

        async with _client() as client:
            resp = await client.post(
                self.endpoint,
                json={**CHECK_BODY, "payment": {"method": "card", "amount": -1}},
            )

        assert resp.status_code == 422
        scorer.check.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_check_type(self):
        _install(scorer=SimpleNamespace(check=AsyncMock()))
        async with _client() as client:
            resp = await client.post(self.endpoint, json={**CHECK_BODY, "check_type": "refund"})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_storage_outage_degrades_to_review(self):
        def unavailable():
            session = make_session()
            session.execute = AsyncMock(
                side_effect=OperationalError("SELECT 1", {}, Exception("connection refused"))
            )
            return session

        scorer = FraudScorer(
            config=FraudConfig(),
            session_factory=session_factory_for(unavailable(), unavailable()),
            analyzers=[],
        )
        _install(unavailable(), scorer=scorer)

        async with _client() as client:
            resp = await client.post(self.endpoint, json=CHECK_BODY)

        assert resp.status_code == 200
        data = resp.json()
        assert data["recommendation"] == "review"
        assert data["risk_score"] == 50
        assert [f["name"] for f in data["flags"]] == ["system_error"]

    @pytest.mark.asyncio
    async def test_device_ip_taken_from_forwarded_header(self):
        scorer = SimpleNamespace(
            check=AsyncMock(
                return_value=FraudCheckResult(
                    risk_score=0, risk_level="low", recommendation="allow"
                )
            )
        )
        _install(scorer=scorer)
        body = {**CHECK_BODY, "device": {"device_info": {"os": "Android", "model": "Pixel"}}}

        async with _client() as client:
            resp = await client.post(
                self.endpoint,
                json=body,
                headers={"X-Forwarded-For": "198.51.100.7, 10.0.0.1"},
            )

        assert resp.status_code == 200
        sent = scorer.check.await_args.args[0]
        assert sent.device.ip == "198.51.100.7"
        assert sent.device.fingerprint == generate_fingerprint_hash(
            {"os": "Android", "model": "Pixel"}
        )


class TestClientIp:
    def test_first_forwarded_hop_wins(self):
        headers = {"x-forwarded-for": "203.0.113.1, 10.0.0.2", "x-real-ip": "10.0.0.9"}
        assert client_ip(headers, fallback="127.0.0.1") == "203.0.113.1"

    def test_real_ip_when_not_forwarded(self):
        assert client_ip({"x-real-ip": " 203.0.113.2 "}) == "203.0.113.2"

    def test_fallback(self):
        assert client_ip({"x-forwarded-for": " "}, fallback="127.0.0.1") == "127.0.0.1"
        assert client_ip({}) is None


class TestAdminAuth:
    @pytest.mark.asyncio
    async def test_missing_principal_is_forbidden(self):
        _install()
        async with _client() as client:
            resp = await client.get("/api/v1/admin/fraud/rules")
        assert resp.status_code == 403
        assert resp.json()["error"] == "forbidden"


class TestRules:
    base = "/api/v1/admin/fraud/rules"

    @pytest.mark.asyncio
    async def test_list_rules_empty(self):
        _install()
        async with _client() as client:
            resp = await client.get(self.base, headers=ADMIN, params={"is_active": "true"})
        assert resp.status_code == 200
        assert resp.json() == {"items": [], "total": 0}

    @pytest.mark.asyncio
    async def test_create_rule(self):
        session = _install()
        body = {
            "name": "Order burst",
            "rule_type": "velocity",
            "severity": "medium",
            "score_impact": 10,
            "conditions": {
                "metric": "orders_per_hour",
                "threshold": 5,
                "time_window_seconds": 3600,
            },
        }
        async with _client() as client:
            resp = await client.post(self.base, json=body, headers=ADMIN)

        assert resp.status_code == 201
        data = resp.json()
        assert data["rule_type"] == "velocity"
        assert data["created_by"] == "admin-1"
        assert data["conditions"]["threshold"] == 5
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_create_rule_with_bad_conditions(self):
        session = _install()
        body = {"name": "Broken", "rule_type": "payment", "conditions": {"max_failed_attempts": 0}}
        async with _client() as client:
            resp = await client.post(self.base, json=body, headers=ADMIN)
        assert resp.status_code == 400
        session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_rule(self):
        _install()
        async with _client() as client:
            resp = await client.get(f"{self.base}/missing", headers=ADMIN)
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_delete_unknown_rule(self):
        _install()
        async with _client() as client:
            resp = await client.delete(f"{self.base}/missing", headers=ADMIN)
        assert resp.status_code == 404


class TestAlerts:
    base = "/api/v1/admin/fraud/alerts"

    @pytest.mark.asyncio
    async def test_list_alerts(self):
        _install(make_session(make_result(scalar_one=1), make_result(scalars=[_alert()])))
        async with _client() as client:
            resp = await client.get(self.base, headers=ADMIN, params={"status": "pending"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 1
        assert data["items"][0]["id"] == "alert-1"

    @pytest.mark.asyncio
    async def test_review_pending_alert(self):
        session = _install(
            make_session(
                make_result(scalar_one_or_none=_alert()),
                make_result(rowcount=1),
                make_result(),
            )
        )
        async with _client() as client:
            resp = await client.post(
                f"{self.base}/alert-1/review",
                json={"decision": "dismissed", "notes": "Known customer"},
                headers=ADMIN,
            )
        assert resp.status_code == 200
        assert resp.json()["id"] == "alert-1"
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_review_resolved_alert_conflicts(self):
        _install(make_session(make_result(scalar_one_or_none=_alert(status="dismissed"))))
        async with _client() as client:
            resp = await client.post(
                f"{self.base}/alert-1/review", json={"decision": "confirmed"}, headers=ADMIN
            )
        assert resp.status_code == 409
        assert resp.json()["error"] == "conflict"

    @pytest.mark.asyncio
    async def test_review_invalid_decision(self):
        _install()
        async with _client() as client:
            resp = await client.post(
                f"{self.base}/alert-1/review", json={"decision": "maybe"}, headers=ADMIN
            )
        assert resp.status_code == 422


class TestUsers:
    base = "/api/v1/admin/fraud/users"

    @pytest.mark.asyncio
    async def test_block_with_duration(self):
        session = _install()
        async with _client() as client:
            resp = await client.post(
                f"{self.base}/user-1/block",
                json={"reason": "Chargeback ring", "duration_hours": 24},
                headers=ADMIN,
            )
        assert resp.status_code == 200
        data = resp.json()
        assert data["is_blocked"] is True
        assert data["blocked_by"] == "admin-1"
        assert data["unblock_at"] is not None
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_block_requires_reason(self):
        _install()
        async with _client() as client:
            resp = await client.post(f"{self.base}/user-1/block", json={}, headers=ADMIN)
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_unblock(self):
        _install()
        async with _client() as client:
            resp = await client.post(f"{self.base}/user-1/unblock", headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json() == {"user_id": "user-1", "is_blocked": False}

    @pytest.mark.asyncio
    async def test_risk_profile_for_unknown_user(self):
        _install()
        async with _client() as client:
            resp = await client.get(f"{self.base}/user-1/risk", headers=ADMIN)
        assert resp.status_code == 200
        data = resp.json()
        assert data["risk_score"] is None
        assert data["order_stats"] == {"total": 0, "cancelled": 0, "refunded": 0}


class TestDashboards:
    base = "/api/v1/admin/fraud"

    @pytest.mark.asyncio
    async def test_stats(self):
        _install()
        async with _client() as client:
            resp = await client.get(f"{self.base}/stats", headers=ADMIN)
        assert resp.status_code == 200
        data = resp.json()
        assert data["false_positive_rate"] == 0.0
        assert len(data["recent_trends"]) == 7

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["logs", "high-risk-users", "blocked-users"])
    async def test_listings(self, path):
        _install()
        async with _client() as client:
            resp = await client.get(f"{self.base}/{path}", headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json()["items"] == []

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self):
        _install()
        async with _client() as client:
            resp = await client.get(
                f"{self.base}/stats", headers={**ADMIN, "X-Request-ID": "req-42"}
            )
        assert resp.headers["X-Request-ID"] == "req-42"


class StaticIpProvider:
    name = "static"

    async def lookup(self, ip_address):
        return IpReputation(ip_address=ip_address, is_vpn=True, country="US")


class TestIpIntelligence:
    base = "/api/v1/admin/fraud/ip-intelligence"

    @pytest.mark.asyncio
    async def test_refresh_caches_provider_answer(self):
        scorer = FraudScorer(
            config=FraudConfig(),
            ip_intelligence=IpIntelligenceService(provider=StaticIpProvider()),
            analyzers=[],
        )
        session = _install(scorer=scorer)

        async with _client() as client:
            resp = await client.post(f"{self.base}/203.0.113.5/refresh", headers=ADMIN)

        assert resp.status_code == 200
        data = resp.json()
        assert data["refreshed"] is True
        assert data["reputation"]["is_vpn"] is True
        session.execute.assert_awaited_once()
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_refresh_without_provider_is_noop(self):
        scorer = FraudScorer(config=FraudConfig(), analyzers=[])
        session = _install(scorer=scorer)

        async with _client() as client:
            resp = await client.post(f"{self.base}/203.0.113.5/refresh", headers=ADMIN)

        assert resp.status_code == 200
        assert resp.json() == {"ip_address": "203.0.113.5", "refreshed": False, "reputation": None}
        session.execute.assert_not_awaited()
