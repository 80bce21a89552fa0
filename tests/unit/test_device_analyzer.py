"""Unit tests for device fingerprint analysis and tracking."""

import pytest

from src.domains.fraud.analyzers import DeviceAnalyzer, generate_fingerprint_hash
from src.domains.fraud.config import FraudConfig
from src.domains.fraud.models import CheckType, DeviceRule, FraudCheckInput
from tests.conftest import NOW, make_result, make_session

CONFIG = FraudConfig()


def _rule(**conditions) -> DeviceRule:
    return DeviceRule.model_validate(
        {
            "id": "rule-device",
            "name": "Device checks",
            "score_impact": 0,
            "conditions": conditions,
        }
    )


def _input(fingerprint="fp-abc") -> FraudCheckInput:
    return FraudCheckInput.model_validate(
        {
            "user_id": "user-1",
            "check_type": CheckType.LOGIN,
            "device": {
                "fingerprint": fingerprint,
                "ip": "198.51.100.4",
                "user_agent": "Mozilla/5.0",
                "device_info": {"os": "iOS", "model": "iPhone"},
            },
        }
    )


class TestFingerprintHash:
    def test_key_order_does_not_matter(self):
        a = generate_fingerprint_hash({"os": "iOS", "model": "iPhone"})
        b = generate_fingerprint_hash({"model": "iPhone", "os": "iOS"})
        assert a == b
        assert len(a) == 64

    def test_different_devices_differ(self):
        assert generate_fingerprint_hash({"os": "iOS"}) != generate_fingerprint_hash(
            {"os": "Android"}
        )


class TestDeviceAnalyzer:
    analyzer = DeviceAnalyzer()

    def test_requires_device(self):
        no_device = FraudCheckInput(user_id="user-1", check_type=CheckType.LOGIN)
        assert not self.analyzer.applies(no_device)
        assert self.analyzer.applies(_input())

    @pytest.mark.asyncio
    async def test_shared_device_at_limit_flags(self):
        session = make_session(make_result(scalar_one=3), make_result())
        flags = await self.analyzer.analyze(
            _input(),
            [_rule(max_accounts_per_device=3, trust_new_devices=True)],
            session,
            CONFIG,
            NOW,
        )
        assert [f.name for f in flags] == ["multiple_accounts_device"]
        assert flags[0].score == CONFIG.flags.multiple_accounts_device
        assert flags[0].category == "device"

    @pytest.mark.asyncio
    async def test_shared_device_below_limit(self):
        session = make_session(make_result(scalar_one=2), make_result())
        flags = await self.analyzer.analyze(
            _input(),
            [_rule(max_accounts_per_device=3, trust_new_devices=True)],
            session,
            CONFIG,
            NOW,
        )
        assert flags == []

    @pytest.mark.asyncio
    async def test_globally_new_device_flags_unless_trusted(self):
        session = make_session(make_result(scalar_one=0), make_result())
        flags = await self.analyzer.analyze(_input(), [_rule()], session, CONFIG, NOW)
        assert [f.name for f in flags] == ["new_device"]
        assert flags[0].severity == "low"

        session = make_session(make_result(scalar_one=0), make_result())
        trusted = await self.analyzer.analyze(
            _input(), [_rule(trust_new_devices=True)], session, CONFIG, NOW
        )
        assert trusted == []

    @pytest.mark.asyncio
    async def test_device_change(self):
        session = make_session(
            make_result(scalar_one=1),
            make_result(scalar_one_or_none="fp-previous"),
            make_result(),
        )
        flags = await self.analyzer.analyze(
            _input(),
            [_rule(trust_new_devices=True, flag_device_changes=True)],
            session,
            CONFIG,
            NOW,
        )
        assert [f.name for f in flags] == ["device_change"]
        assert flags[0].severity == "medium"

    @pytest.mark.asyncio
    async def test_same_device_is_not_a_change(self):
        session = make_session(
            make_result(scalar_one=1),
            make_result(scalar_one_or_none="fp-abc"),
            make_result(),
        )
        flags = await self.analyzer.analyze(
            _input(),
            [_rule(trust_new_devices=True, flag_device_changes=True)],
            session,
            CONFIG,
            NOW,
        )
        assert flags == []

    @pytest.mark.asyncio
    async def test_device_recorded_even_without_rules(self):
        session = make_session(make_result())
        flags = await self.analyzer.analyze(_input(), [], session, CONFIG, NOW)

        assert flags == []
        session.execute.assert_awaited_once()
        session.commit.assert_awaited_once()
        stmt = session.execute.await_args.args[0]
        assert stmt.table.name == "device_fingerprints"
